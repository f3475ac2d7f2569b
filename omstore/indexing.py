import collections
import itertools
import numbers
from typing import Optional, Sequence, Tuple

import numpy as np

from omstore.config import config
from omstore.errors import OutOfBounds, err_wrong_ndim
from omstore.util import ceildiv, normalize_order


TEMPORAL_MAJOR = 'temporal-major'
SPATIAL_MAJOR = 'spatial-major'
LAYOUTS = (TEMPORAL_MAJOR, SPATIAL_MAJOR)


ChunkDimProjection = collections.namedtuple(
    'ChunkDimProjection',
    ('dim_chunk_ix', 'dim_chunk_sel', 'dim_out_sel')
)
"""A mapping from chunk to output array for a single dimension.

Parameters
----------
dim_chunk_ix
    Index of chunk.
dim_chunk_sel
    Selection of items from chunk array.
dim_out_sel
    Selection of items in target (output) array.

"""


ChunkProjection = collections.namedtuple(
    'ChunkProjection',
    ('chunk_coords', 'chunk_selection', 'out_selection')
)
"""A mapping of items from chunk to output array. Can be used to extract items from the
chunk array for loading into an output array. Can also be used to extract items from a
value array for setting/updating in a chunk array.

Parameters
----------
chunk_coords
    Indices of chunk.
chunk_selection
    Selection of items from chunk array.
out_selection
    Selection of items in target (output) array.

"""


ChunkLocation = collections.namedtuple(
    'ChunkLocation',
    ('chunk_coords', 'local_offset')
)
"""Where a single element lives.

Parameters
----------
chunk_coords
    Indices of the owning chunk.
local_offset
    Row-major offset of the element inside the chunk's actual (fill) shape,
    counted in physical axis order.

"""


def chunk_count(shape: Sequence[int], chunks: Sequence[int]) -> Tuple[int, ...]:
    """Number of chunks along each dimension, boundary chunks included."""
    return tuple(ceildiv(s, c) for s, c in zip(shape, chunks))


class RangeDimIndexer(object):
    """Chunks touched by the half-open range ``[start, stop)`` along one
    dimension."""

    def __init__(self, start, stop, dim_len, dim_chunk_len):
        self.start = start
        self.stop = stop
        self.dim_len = dim_len
        self.dim_chunk_len = dim_chunk_len
        self.nitems = stop - start

    def __iter__(self):

        if self.nitems <= 0:
            return

        # figure out the range of chunks we need to visit
        dim_chunk_ix_from = self.start // self.dim_chunk_len
        dim_chunk_ix_to = ceildiv(self.stop, self.dim_chunk_len)

        for dim_chunk_ix in range(dim_chunk_ix_from, dim_chunk_ix_to):

            # compute offsets for chunk within overall array
            dim_offset = dim_chunk_ix * self.dim_chunk_len
            dim_limit = min(self.dim_len, (dim_chunk_ix + 1) * self.dim_chunk_len)

            sel_start = max(self.start, dim_offset)
            sel_stop = min(self.stop, dim_limit)

            dim_chunk_sel = slice(sel_start - dim_offset, sel_stop - dim_offset)
            dim_out_sel = slice(sel_start - self.start, sel_stop - self.start)

            yield ChunkDimProjection(dim_chunk_ix, dim_chunk_sel, dim_out_sel)


class ChunkIndex(object):
    """Coordinate arithmetic for a regular chunk grid with a physical axis
    order.

    Parameters
    ----------
    shape : tuple of ints
        Logical extent of each dimension.
    chunks : tuple of ints
        Nominal chunk extent of each logical dimension.
    order : tuple of ints, optional
        Permutation vector; ``order[i]`` is the logical axis stored as
        physical axis ``i`` (axis 0 outermost). Defaults to the identity.
    names : tuple of str, optional
        Dimension names, only used in error messages.

    Notes
    -----
    Every translation between logical and physical axis order goes through
    :meth:`to_physical` and :meth:`to_logical`. Chunks are numbered by a
    flat index that runs row-major over the physical chunk grid, so chunks
    adjacent along the innermost physical axis have adjacent numbers.

    """

    def __init__(self, shape, chunks, order=None, names=None):
        self.shape = tuple(int(s) for s in shape)
        self.chunks = tuple(int(c) for c in chunks)
        self.ndim = len(self.shape)
        if len(self.chunks) != self.ndim:
            raise ValueError('chunks must have one entry per dimension')
        self.order = normalize_order(order, self.ndim)
        self.inverse_order = tuple(int(i) for i in np.argsort(self.order))
        self.names = tuple(names) if names is not None else None

        self.cdata_shape = chunk_count(self.shape, self.chunks)
        self.nchunks = int(np.prod(self.cdata_shape, dtype=np.int64))

        # flat index strides over the physical chunk grid
        physical_cdata_shape = self.to_physical(self.cdata_shape)
        strides = []
        stride = 1
        for n in reversed(physical_cdata_shape):
            strides.append(stride)
            stride *= n
        self._physical_strides = tuple(reversed(strides))
        self._physical_cdata_shape = physical_cdata_shape

    def __repr__(self):
        return '%s(shape=%r, chunks=%r, order=%r)' % (
            type(self).__name__, self.shape, self.chunks, self.order)

    def _dim_name(self, axis):
        if self.names is not None:
            return self.names[axis]
        return 'axis %s' % axis

    def _check_ndim(self, seq):
        if len(seq) != self.ndim:
            err_wrong_ndim(seq, self.shape)

    def to_physical(self, seq):
        """Reorder a per-logical-axis sequence into physical axis order."""
        return tuple(seq[i] for i in self.order)

    def to_logical(self, seq):
        """Reorder a per-physical-axis sequence into logical axis order."""
        return tuple(seq[i] for i in self.inverse_order)

    def check_chunk_coords(self, chunk_coords):
        chunk_coords = tuple(int(c) for c in chunk_coords)
        self._check_ndim(chunk_coords)
        for axis, (c, n) in enumerate(zip(chunk_coords, self.cdata_shape)):
            if c < 0 or c >= n:
                raise OutOfBounds(c, 'chunks of ' + self._dim_name(axis), n)
        return chunk_coords

    def flat_index(self, chunk_coords):
        chunk_coords = self.check_chunk_coords(chunk_coords)
        return sum(c * s for c, s in
                   zip(self.to_physical(chunk_coords), self._physical_strides))

    def chunk_coords_from_flat(self, index):
        index = int(index)
        if index < 0 or index >= self.nchunks:
            raise OutOfBounds(index, 'flat chunk index', self.nchunks)
        physical = np.unravel_index(index, self._physical_cdata_shape)
        return self.to_logical(tuple(int(i) for i in physical))

    def iter_chunks(self):
        """All chunk coordinates, in flat index order."""
        for physical in itertools.product(*(range(n) for n in self._physical_cdata_shape)):
            yield self.to_logical(physical)

    def chunk_origin(self, chunk_coords):
        return tuple(c * n for c, n in zip(chunk_coords, self.chunks))

    def chunk_shape(self, chunk_coords):
        """Actual (fill) logical shape of a chunk; boundary chunks are
        truncated to the array extent."""
        chunk_coords = self.check_chunk_coords(chunk_coords)
        return tuple(min(n, s - c * n)
                     for c, n, s in zip(chunk_coords, self.chunks, self.shape))

    def chunk_size(self, chunk_coords):
        """Number of valid elements held by a chunk."""
        return int(np.prod(self.chunk_shape(chunk_coords), dtype=np.int64))

    def chunk_selection(self, chunk_coords):
        """Logical region covered by a chunk, as a tuple of slices."""
        shape = self.chunk_shape(chunk_coords)
        return tuple(slice(o, o + n)
                     for o, n in zip(self.chunk_origin(chunk_coords), shape))

    def locate(self, coord):
        """Owning chunk and local offset of a single logical coordinate."""
        coord = tuple(coord)
        self._check_ndim(coord)
        for axis, (i, s) in enumerate(zip(coord, self.shape)):
            if not isinstance(i, numbers.Integral):
                raise TypeError('coordinates must be integers, found %r' % (i,))
            if i < 0 or i >= s:
                raise OutOfBounds(i, self._dim_name(axis), s)
        chunk_coords = tuple(int(i) // c for i, c in zip(coord, self.chunks))
        fill_shape = self.to_physical(self.chunk_shape(chunk_coords))
        local = self.to_physical(tuple(int(i) % c for i, c in zip(coord, self.chunks)))
        local_offset = int(np.ravel_multi_index(local, fill_shape))
        return ChunkLocation(chunk_coords, local_offset)

    def check_range(self, start, stop):
        """Validate a half-open hyper-rectangle, returning it as int tuples."""
        start = tuple(int(i) for i in start)
        stop = tuple(int(i) for i in stop)
        self._check_ndim(start)
        self._check_ndim(stop)
        for axis, (a, b, s) in enumerate(zip(start, stop, self.shape)):
            if a < 0 or a > s:
                raise OutOfBounds(a, self._dim_name(axis), s)
            if b < a or b > s:
                raise OutOfBounds(b, self._dim_name(axis), s)
        return start, stop

    def project(self, start, stop):
        """Yield one :class:`ChunkProjection` per chunk overlapping
        ``[start, stop)``; each chunk is visited exactly once."""
        start, stop = self.check_range(start, stop)
        dim_indexers = [RangeDimIndexer(a, b, s, c) for a, b, s, c in
                        zip(start, stop, self.shape, self.chunks)]
        for dim_projections in itertools.product(*dim_indexers):
            chunk_coords = tuple(p.dim_chunk_ix for p in dim_projections)
            chunk_selection = tuple(p.dim_chunk_sel for p in dim_projections)
            out_selection = tuple(p.dim_out_sel for p in dim_projections)
            yield ChunkProjection(chunk_coords, chunk_selection, out_selection)


def clamp_range(shape, start, stop):
    """Clamp a requested viewport into the array bounds.

    Useful for viewers that may ask for a region partly outside the array;
    the result is always accepted by :meth:`ChunkIndex.check_range`.
    """
    if len(start) != len(shape) or len(stop) != len(shape):
        err_wrong_ndim(start if len(start) != len(shape) else stop, shape)
    start = tuple(min(max(int(a), 0), s) for a, s in zip(start, shape))
    stop = tuple(min(max(int(b), a), s) for a, b, s in zip(start, stop, shape))
    return start, stop


def time_axis(names: Optional[Sequence[str]],
              time_dimension: Optional[str] = None) -> int:
    """Logical axis holding time: the dimension called `time_dimension`, or
    axis 0 when no dimension carries that name."""
    if time_dimension is None:
        time_dimension = config.get('layout.time_dimension')
    if names is not None and time_dimension in names:
        return list(names).index(time_dimension)
    return 0


def layout_order(names: Optional[Sequence[str]], layout: str, ndim: Optional[int] = None,
                 time_dimension: Optional[str] = None) -> Tuple[int, ...]:
    """Permutation vector for a named layout.

    ``temporal-major`` stores time as the outermost physical axis and
    ``spatial-major`` as the innermost; the remaining axes keep their logical
    relative order.

    >>> layout_order(('time', 'lat', 'lon'), 'spatial-major')
    (1, 2, 0)
    >>> layout_order(('lat', 'lon', 'time'), 'temporal-major')
    (2, 0, 1)

    """
    if ndim is None:
        ndim = len(names)
    t = time_axis(names, time_dimension)
    others = tuple(i for i in range(ndim) if i != t)
    if layout == TEMPORAL_MAJOR:
        return (t,) + others
    elif layout == SPATIAL_MAJOR:
        return others + (t,)
    raise ValueError('layout must be one of %r, found: %r' % (LAYOUTS, layout))


def normalize_integer_selection(dim_sel, dim_len, dim_name='axis'):

    # normalize type to int
    dim_sel = int(dim_sel)

    # handle wraparound
    if dim_sel < 0:
        dim_sel = dim_len + dim_sel

    # handle out of bounds
    if dim_sel >= dim_len or dim_sel < 0:
        raise OutOfBounds(dim_sel, dim_name, dim_len)

    return dim_sel


def replace_ellipsis(selection, shape):

    if not isinstance(selection, tuple):
        selection = (selection,)

    # count number of ellipsis present
    n_ellipsis = sum(1 for i in selection if i is Ellipsis)

    if n_ellipsis > 1:
        # more than 1 is an error
        raise IndexError("an index can only have a single ellipsis ('...')")

    elif n_ellipsis == 1:
        # locate the ellipsis, count how many items to left and right
        n_items_l = selection.index(Ellipsis)  # items to left of ellipsis
        n_items_r = len(selection) - (n_items_l + 1)  # items to right of ellipsis
        n_items = len(selection) - 1  # all non-ellipsis items

        if n_items >= len(shape):
            # ellipsis does nothing, just remove it
            selection = tuple(i for i in selection if i is not Ellipsis)

        else:
            # replace ellipsis with as many slices are needed for number of dims
            new_item = selection[:n_items_l] + ((slice(None),) * (len(shape) - n_items))
            if n_items_r:
                new_item += selection[-n_items_r:]
            selection = new_item

    # fill out selection if not completely specified
    if len(selection) < len(shape):
        selection += (slice(None),) * (len(shape) - len(selection))

    # check selection not too long
    if len(selection) > len(shape):
        err_wrong_ndim(selection, shape)

    return selection


def basic_selection_to_range(selection, shape, names=None):
    """Translate a basic selection (integers, unit-step slices, Ellipsis) into
    ``(start, stop, drop_axes)`` where `drop_axes` are the axes indexed by an
    integer."""
    selection = replace_ellipsis(selection, shape)
    start, stop, drop_axes = [], [], []
    for axis, (dim_sel, dim_len) in enumerate(zip(selection, shape)):
        dim_name = names[axis] if names is not None else 'axis %s' % axis
        if isinstance(dim_sel, numbers.Integral):
            i = normalize_integer_selection(dim_sel, dim_len, dim_name)
            start.append(i)
            stop.append(i + 1)
            drop_axes.append(axis)
        elif isinstance(dim_sel, slice):
            a, b, step = dim_sel.indices(dim_len)
            if step != 1:
                raise IndexError('only slices with step 1 are supported')
            start.append(a)
            stop.append(max(a, b))
        else:
            raise IndexError('unsupported selection item for basic indexing; '
                             'expected integer or slice, got {!r}'.format(type(dim_sel)))
    return tuple(start), tuple(stop), tuple(drop_axes)
