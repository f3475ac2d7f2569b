"""Conversion of an array into a different chunk shape and axis order.

The destination grid is covered by *windows*: hyper-rectangles aligned to the
destination chunk grid. Each window is read from the source in one
:meth:`~omstore.core.Array.read_range` call, then cut into destination chunks
which are encoded and written. Only one window (plus the source chunks being
decoded for it) is held in memory at a time.

Windows start out as ``lcm(source_chunk, destination_chunk)`` along every
dimension, so they are aligned to both grids and each source chunk is decoded
exactly once. When such a window does not fit into the memory budget it is
shrunk, trading repeated source decodes for memory.
"""
import collections
import itertools
import logging
import os
from concurrent.futures import CancelledError
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np

from omstore.config import config
from omstore.core import Array, create_array, open_array
from omstore.errors import ContainsArrayError, LayoutMismatch, NotFinalized, ReadOnlyError
from omstore.indexing import SPATIAL_MAJOR
from omstore.meta import check_compatible
from omstore.storage import FileStore
from omstore.sync import map_chunks
from omstore.sync import max_workers as default_max_workers
from omstore.util import ceildiv, lcm, normalize_order

__all__ = ["RechunkPlan", "plan_rechunk", "rechunk", "rechunk_to", "temporal_to_spatial"]

logger = logging.getLogger(__name__)


class RechunkPlan(collections.namedtuple(
        "RechunkPlan", ("shape", "window", "source_order", "estimate", "memory_budget"))):
    """How a rechunk traverses the array.

    Parameters
    ----------
    shape : tuple of ints
        Logical shape of the array.
    window : tuple of ints
        Window extent along each logical dimension.
    source_order : tuple of ints
        Physical axis order of the source; windows are visited row-major in
        this order so consecutive windows touch neighbouring source chunks.
    estimate : int
        Estimated peak number of buffered elements.
    memory_budget : int
        Budget the window was sized against, in elements.

    """

    @property
    def window_grid(self) -> Tuple[int, ...]:
        """Number of windows along each logical dimension."""
        return tuple(ceildiv(s, w) for s, w in zip(self.shape, self.window))

    @property
    def nwindows(self) -> int:
        return int(np.prod(self.window_grid, dtype=np.int64))

    @property
    def within_budget(self) -> bool:
        return self.estimate <= self.memory_budget

    def iter_windows(self) -> Iterator[Tuple[Tuple[int, ...], Tuple[int, ...]]]:
        """Yield ``(start, stop)`` of every window."""
        grid = self.window_grid
        inverse = np.argsort(self.source_order)
        for physical in itertools.product(*(range(grid[i]) for i in self.source_order)):
            coords = tuple(physical[i] for i in inverse)
            start = tuple(c * w for c, w in zip(coords, self.window))
            stop = tuple(min(a + w, s) for a, w, s in zip(start, self.window, self.shape))
            yield start, stop


def plan_rechunk(shape: Sequence[int], source_chunks: Sequence[int],
                 target_chunks: Sequence[int], source_order: Optional[Sequence[int]] = None,
                 memory_budget: Optional[int] = None,
                 max_workers: Optional[int] = None) -> RechunkPlan:
    """Size the windows for a rechunk.

    Parameters
    ----------
    shape : sequence of ints
        Logical shape shared by source and destination.
    source_chunks, target_chunks : sequence of ints
        Nominal chunk shapes, in logical order.
    source_order : sequence of ints, optional
        Physical axis order of the source.
    memory_budget : int, optional
        Maximum number of buffered elements; defaults to the
        ``rechunk.memory_budget`` config value.
    max_workers : int, optional
        Number of source chunks that may be decoded at the same time.

    Returns
    -------
    plan : RechunkPlan

    Examples
    --------
    >>> from omstore.rechunk import plan_rechunk
    >>> plan_rechunk((100, 10, 10), (10, 10, 10), (100, 1, 1), max_workers=1).window
    (100, 10, 10)
    >>> plan_rechunk((100, 10, 10), (10, 10, 10), (100, 1, 1),
    ...              memory_budget=2500, max_workers=1).window
    (100, 2, 5)

    """
    shape = tuple(int(s) for s in shape)
    source_chunks = tuple(int(c) for c in source_chunks)
    target_chunks = tuple(int(c) for c in target_chunks)
    source_order = normalize_order(source_order, len(shape))
    if memory_budget is None:
        memory_budget = int(config.get("rechunk.memory_budget"))
    if max_workers is None:
        max_workers = default_max_workers()

    source_chunk_size = int(np.prod(source_chunks, dtype=np.int64))

    # window extent counted in destination chunks
    units = [ceildiv(min(lcm(a, b), s), b)
             for s, a, b in zip(shape, source_chunks, target_chunks)]

    def window():
        return tuple(min(u * c, s) for u, c, s in zip(units, target_chunks, shape))

    def estimate():
        return int(np.prod(window(), dtype=np.int64)) + max(1, max_workers) * source_chunk_size

    while estimate() > memory_budget and max(units) > 1:
        axis = units.index(max(units))
        units[axis] //= 2

    plan = RechunkPlan(shape, window(), source_order, estimate(), memory_budget)
    if not plan.within_budget:
        logger.warning("rechunk needs about %s buffered elements, more than the budget of %s",
                       plan.estimate, memory_budget)
    return plan


def _check_cancelled(cancel_event):
    if cancel_event is not None and cancel_event.is_set():
        raise CancelledError()


def rechunk(source: Array, target: Array, memory_budget: Optional[int] = None,
            max_workers: Optional[int] = None, cancel_event=None) -> Array:
    """Copy all data of `source` into the empty, writable `target` and
    finalize it.

    Parameters
    ----------
    source : Array
        Finalized array to read.
    target : Array
        Freshly created array with the same dimensions, in any chunk shape,
        axis order or compression.
    memory_budget : int, optional
        Maximum number of buffered elements, see :func:`plan_rechunk`.
    max_workers : int, optional
        Number of source chunks decoded, and of destination chunks encoded,
        at the same time.
    cancel_event : threading.Event, optional
        Checked between windows; once set the conversion stops.

    Returns
    -------
    target : Array
        The finalized target.

    Raises
    ------
    LayoutMismatch
        If source and target do not describe the same dataset.
    concurrent.futures.CancelledError
        If `cancel_event` was set. The target is left unsealed, as it is on
        any other error.

    """
    if not source.is_finalized:
        raise NotFinalized()
    if target.read_only:
        raise ReadOnlyError()
    if target.nchunks_initialized:
        raise ContainsArrayError(target.store)
    reason = check_compatible(source.meta, target.meta)
    if reason is not None:
        raise LayoutMismatch(reason)

    if max_workers is None:
        max_workers = default_max_workers()
    plan = plan_rechunk(source.shape, source.chunks, target.chunks, source.order,
                        memory_budget=memory_budget, max_workers=max_workers)
    log_every = max(1, int(config.get("rechunk.log_every")))
    logger.info("rechunking %s -> %s: chunks %s -> %s, order %s -> %s, %s windows of %s",
                source, target, source.chunks, target.chunks, source.order, target.order,
                plan.nwindows, plan.window)

    index = target.index
    for i, (start, stop) in enumerate(plan.iter_windows(), start=1):
        _check_cancelled(cancel_event)

        block = source.read_range(start, stop, workers=max_workers)

        def _write(projection):
            target.write_chunk(projection.chunk_coords, block[projection.out_selection])

        map_chunks(_write, index.project(start, stop), workers=max_workers)

        if i % log_every == 0 or i == plan.nwindows:
            logger.info("processed window %s/%s", i, plan.nwindows)

    _check_cancelled(cancel_event)
    return target.finalize()


def _is_same_file(store, path):
    if isinstance(path, FileStore):
        path = path.path
    if not isinstance(store, FileStore) or not isinstance(path, (str, os.PathLike)):
        return False
    return os.path.exists(path) and os.path.samefile(store.path, path)


def rechunk_to(source, path, chunks=None, order=None, layout=None, compression=None,
               compression_params=None, memory_budget=None, max_workers=None,
               cancel_event=None, **kwargs) -> Array:
    """Rechunk `source` into a new array at `path`.

    Anything not given is taken from the source: chunk shape, axis order,
    compression, dtype, fill value and attributes. Further keyword arguments
    go to :func:`omstore.core.create_array` (e.g. ``overwrite=True``).

    Returns the finalized destination array. A destination that is the
    source file itself is refused with :class:`ContainsArrayError`, even with
    ``overwrite=True``.
    """
    own_source = not isinstance(source, Array)
    if own_source:
        source = open_array(source)
    try:
        if _is_same_file(source.store, path):
            raise ContainsArrayError(path)
        if chunks is None:
            chunks = source.chunks
        if order is None and layout is None:
            order = source.order
        if compression is None:
            compression = source.compression
            if compression_params is None:
                compression_params = source.compression_params
        kwargs.setdefault("dtype", source.dtype)
        kwargs.setdefault("fill_value", source.fill_value)
        kwargs.setdefault("attributes", source.attrs)

        target = create_array(path, dimensions=source.dimensions, chunks=chunks, order=order,
                              layout=layout, compression=compression,
                              compression_params=compression_params, **kwargs)
        try:
            return rechunk(source, target, memory_budget=memory_budget,
                           max_workers=max_workers, cancel_event=cancel_event)
        except BaseException:
            target.close()
            raise
    finally:
        if own_source:
            source.close()


def temporal_to_spatial(source, path, chunks=None, **kwargs) -> Array:
    """Rewrite `source` in ``spatial-major`` layout, with the time dimension
    as the innermost physical axis."""
    return rechunk_to(source, path, chunks=chunks, layout=SPATIAL_MAJOR, **kwargs)
