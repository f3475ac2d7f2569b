"""
The config module manages the runtime configuration of omstore and is based on
the Donfig python library.

Values can be set programmatically::

    from omstore.config import config

    config.set({"rechunk.memory_budget": 50_000_000})

or with environment variables of the form ``OMSTORE_RECHUNK__MEMORY_BUDGET``.
The double underscore ``__`` is used to indicate nested access.

For more information, see the Donfig documentation at https://github.com/pytroll/donfig.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from donfig import Config as DConfig

if TYPE_CHECKING:
    from donfig.config_obj import ConfigSet


class Config(DConfig):  # type: ignore[misc]
    """The Config will collect configuration from config files and environment variables

    Example environment variables:
    Grabs environment variables of the form "OMSTORE_FOO__BAR_BAZ=123" and
    turns these into config variables of the form ``{"foo": {"bar-baz": 123}}``
    It transforms the key and value in the following way:

    -  Lower-cases the key text
    -  Treats ``__`` (double-underscore) as nested access
    -  Calls ``ast.literal_eval`` on the value

    """

    def reset(self) -> None:
        self.clear()
        self.refresh()

    def single_threaded(self) -> ConfigSet:
        """
        Run every chunk operation on the calling thread.
        """
        return self.set({"threading.max_workers": 1})


# The default configuration for omstore
config = Config(
    "omstore",
    defaults=[
        {
            "codec": {
                "integer_scheme": "delta2d",
                "float_scheme": "xor2d",
                "compressor": "zlib",
                "level": 1,
            },
            "threading": {"max_workers": None},
            "io": {"retries": 3, "retry_wait": 0.05},
            "rechunk": {
                # number of array elements held in memory at once
                "memory_budget": 64 * 1024 * 1024,
                "log_every": 10,
            },
            "layout": {"time_dimension": "time"},
        }
    ],
)
