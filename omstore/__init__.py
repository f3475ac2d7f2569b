# flake8: noqa
import logging
from typing import Literal, Union

from omstore.codecs import Varint, default_scheme, get_scheme, scheme_registry
from omstore.config import config
from omstore.core import Array, create_array, open_array, save_array
from omstore.errors import (ContainsArrayError, CorruptChunk, InvalidFormat,
                            LayoutMismatch, NotFinalized, OmStoreError,
                            OutOfBounds, ReadOnlyError, WriterLocked)
from omstore.indexing import SPATIAL_MAJOR, TEMPORAL_MAJOR, ChunkIndex, layout_order
from omstore.meta import ArrayMetadata, Dimension
from omstore.rechunk import plan_rechunk, rechunk, rechunk_to, temporal_to_spatial
from omstore.storage import FileStore, MemoryStore, Store
from omstore.sync import ThreadSynchronizer

try:
    from omstore.version import version as __version__
except ImportError:
    __version__ = "unknown"

_LOGGER_NAME = "omstore"


def _ensure_handler() -> logging.Handler:
    logger = logging.getLogger(_LOGGER_NAME)
    if not logger.handlers:
        logger.addHandler(logging.StreamHandler())
    return logger.handlers[0]


def set_log_level(
    level: Union[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], int],
) -> None:
    """Set the logging level of the omstore logger.

    A stream handler is attached on first use, so messages show up without
    any further logging setup.
    """
    _ensure_handler()
    logging.getLogger(_LOGGER_NAME).setLevel(level)


def set_format(log_format: str) -> None:
    """Set the format of omstore log messages, e.g. ``"%(message)s"``."""
    _ensure_handler().setFormatter(logging.Formatter(fmt=log_format))


__all__ = [
    "Array",
    "ArrayMetadata",
    "ChunkIndex",
    "ContainsArrayError",
    "CorruptChunk",
    "Dimension",
    "FileStore",
    "InvalidFormat",
    "LayoutMismatch",
    "MemoryStore",
    "NotFinalized",
    "OmStoreError",
    "OutOfBounds",
    "ReadOnlyError",
    "SPATIAL_MAJOR",
    "Store",
    "TEMPORAL_MAJOR",
    "ThreadSynchronizer",
    "Varint",
    "WriterLocked",
    "__version__",
    "config",
    "create_array",
    "default_scheme",
    "get_scheme",
    "layout_order",
    "open_array",
    "plan_rechunk",
    "rechunk",
    "rechunk_to",
    "save_array",
    "scheme_registry",
    "set_format",
    "set_log_level",
    "temporal_to_spatial",
]
