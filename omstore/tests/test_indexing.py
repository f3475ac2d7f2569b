import numpy as np
import pytest
from numpy.testing import assert_array_equal

from omstore.errors import OutOfBounds
from omstore.indexing import (
    SPATIAL_MAJOR,
    TEMPORAL_MAJOR,
    ChunkIndex,
    RangeDimIndexer,
    basic_selection_to_range,
    chunk_count,
    clamp_range,
    layout_order,
    normalize_integer_selection,
    replace_ellipsis,
    time_axis,
)


def test_normalize_integer_selection():

    assert 1 == normalize_integer_selection(1, 100)
    assert 99 == normalize_integer_selection(-1, 100)
    with pytest.raises(IndexError):
        normalize_integer_selection(100, 100)
    with pytest.raises(IndexError):
        normalize_integer_selection(1000, 100)
    with pytest.raises(OutOfBounds):
        normalize_integer_selection(-1000, 100)


def test_replace_ellipsis():

    # 1D, single item
    assert (0,) == replace_ellipsis(0, (100,))

    # 1D
    assert (slice(None),) == replace_ellipsis(Ellipsis, (100,))
    assert (slice(None),) == replace_ellipsis(slice(None), (100,))
    assert (slice(None, 100),) == replace_ellipsis(slice(None, 100), (100,))
    assert (slice(0, None),) == replace_ellipsis(slice(0, None), (100,))
    assert (slice(None),) == replace_ellipsis((slice(None), Ellipsis), (100,))
    assert (slice(None),) == replace_ellipsis((Ellipsis, slice(None)), (100,))

    # 2D, single item
    assert (0, 0) == replace_ellipsis((0, 0), (100, 100))
    assert (-1, 1) == replace_ellipsis((-1, 1), (100, 100))

    # 2D, single col/row
    assert (0, slice(None)) == replace_ellipsis((0, slice(None)), (100, 100))
    assert (0, slice(None)) == replace_ellipsis((0,), (100, 100))
    assert (slice(None), 0) == replace_ellipsis((slice(None), 0), (100, 100))

    # 2D slice
    assert ((slice(None), slice(None)) ==
            replace_ellipsis(Ellipsis, (100, 100)))
    assert ((slice(None), slice(None)) ==
            replace_ellipsis((Ellipsis, slice(None)), (100, 100)))
    assert ((slice(None), 0) ==
            replace_ellipsis((Ellipsis, 0), (100, 100)))

    with pytest.raises(IndexError):
        replace_ellipsis((Ellipsis, Ellipsis), (100, 100))
    with pytest.raises(IndexError):
        replace_ellipsis((0, 0, 0), (100, 100))


def test_basic_selection_to_range():
    shape = (100, 10, 20)

    start, stop, drop = basic_selection_to_range(Ellipsis, shape)
    assert (0, 0, 0) == start
    assert shape == stop
    assert () == drop

    start, stop, drop = basic_selection_to_range((5, slice(2, 4), -1), shape)
    assert (5, 2, 19) == start
    assert (6, 4, 20) == stop
    assert (0, 2) == drop

    # slices are clamped like numpy
    start, stop, drop = basic_selection_to_range(slice(90, 200), shape)
    assert (90, 0, 0) == start
    assert (100, 10, 20) == stop

    # empty slice
    start, stop, drop = basic_selection_to_range(slice(50, 10), shape)
    assert 50 == start[0] and 50 == stop[0]

    with pytest.raises(IndexError):
        basic_selection_to_range(slice(0, 10, 2), shape)
    with pytest.raises(IndexError):
        basic_selection_to_range([1, 2], shape)
    with pytest.raises(OutOfBounds) as e:
        basic_selection_to_range((0, 10), shape, names=('time', 'lat', 'lon'))
    assert 'lat' in str(e.value)


def test_chunk_count():
    assert (3,) == chunk_count((25,), (10,))
    assert (10, 1, 1) == chunk_count((100, 10, 10), (10, 10, 10))
    assert (1, 2) == chunk_count((1, 11), (1, 10))


def test_range_dim_indexer():
    projections = list(RangeDimIndexer(5, 25, 25, 10))
    assert [0, 1, 2] == [p.dim_chunk_ix for p in projections]
    assert slice(5, 10) == projections[0].dim_chunk_sel
    assert slice(0, 5) == projections[0].dim_out_sel
    assert slice(0, 10) == projections[1].dim_chunk_sel
    assert slice(5, 15) == projections[1].dim_out_sel
    assert slice(0, 5) == projections[2].dim_chunk_sel
    assert slice(15, 20) == projections[2].dim_out_sel

    assert [] == list(RangeDimIndexer(7, 7, 25, 10))


def test_boundary_chunk_shape():
    index = ChunkIndex((25,), (10,))
    assert 3 == index.nchunks
    assert (10,) == index.chunk_shape((0,))
    assert (10,) == index.chunk_shape((1,))
    assert (5,) == index.chunk_shape((2,))
    assert 5 == index.chunk_size((2,))
    assert (slice(20, 25),) == index.chunk_selection((2,))

    index = ChunkIndex((25, 7), (10, 3))
    assert (5, 1) == index.chunk_shape((2, 2))
    assert (10, 3) == index.chunk_shape((0, 1))


def test_flat_index_identity_order():
    index = ChunkIndex((20, 30, 40), (10, 10, 10))
    assert (2, 3, 4) == index.cdata_shape
    assert 0 == index.flat_index((0, 0, 0))
    assert 1 == index.flat_index((0, 0, 1))
    assert 4 == index.flat_index((0, 1, 0))
    assert 12 == index.flat_index((1, 0, 0))
    assert 23 == index.flat_index((1, 2, 3))
    flat = [index.flat_index(c) for c in index.iter_chunks()]
    assert list(range(24)) == flat


def test_flat_index_permuted():
    # time is stored innermost
    index = ChunkIndex((100, 20, 30), (10, 10, 10), order=(1, 2, 0))
    assert (10, 2, 3) == index.cdata_shape
    assert 0 == index.flat_index((0, 0, 0))
    # neighbours along time are adjacent
    assert 1 == index.flat_index((1, 0, 0))
    assert 10 == index.flat_index((0, 0, 1))
    assert 30 == index.flat_index((0, 1, 0))
    for i in range(index.nchunks):
        assert i == index.flat_index(index.chunk_coords_from_flat(i))
    assert list(range(index.nchunks)) == [index.flat_index(c) for c in index.iter_chunks()]
    assert (20, 30, 100) == index.to_physical((100, 20, 30))
    assert (100, 20, 30) == index.to_logical((20, 30, 100))


def test_chunk_coords_out_of_bounds():
    index = ChunkIndex((25,), (10,))
    with pytest.raises(OutOfBounds):
        index.flat_index((3,))
    with pytest.raises(OutOfBounds):
        index.flat_index((-1,))
    with pytest.raises(OutOfBounds):
        index.chunk_coords_from_flat(3)
    with pytest.raises(IndexError):
        index.flat_index((0, 0))


@pytest.mark.parametrize('order', [(0, 1, 2), (1, 2, 0), (2, 0, 1), (2, 1, 0)])
def test_locate(order):
    shape = (25, 7, 9)
    chunks = (10, 3, 4)
    index = ChunkIndex(shape, chunks, order=order)
    data = np.arange(np.prod(shape)).reshape(shape)

    for coord in [(0, 0, 0), (24, 6, 8), (13, 4, 5), (20, 6, 3), (9, 2, 3)]:
        loc = index.locate(coord)
        region = data[index.chunk_selection(loc.chunk_coords)]
        # chunk buffer as stored: physical axis order, C contiguous
        buffer = np.ascontiguousarray(region.transpose(order)).ravel()
        assert data[coord] == buffer[loc.local_offset]


def test_locate_out_of_bounds():
    index = ChunkIndex((25, 10), (10, 10), names=('time', 'lat'))
    with pytest.raises(OutOfBounds) as e:
        index.locate((25, 0))
    assert 'time' in str(e.value)
    with pytest.raises(OutOfBounds):
        index.locate((0, -1))
    with pytest.raises(IndexError):
        index.locate((0,))
    with pytest.raises(TypeError):
        index.locate((0.5, 0))


def test_project():
    shape = (25, 7)
    index = ChunkIndex(shape, (10, 3))
    data = np.arange(np.prod(shape)).reshape(shape)

    start, stop = (5, 2), (23, 7)
    out = np.zeros((18, 5), dtype=data.dtype)
    seen = []
    for p in index.project(start, stop):
        seen.append(p.chunk_coords)
        chunk = data[index.chunk_selection(p.chunk_coords)]
        out[p.out_selection] = chunk[p.chunk_selection]
    assert_array_equal(data[5:23, 2:7], out)
    # every covering chunk exactly once
    assert len(seen) == len(set(seen)) == 3 * 3


def test_project_empty():
    index = ChunkIndex((25,), (10,))
    assert [] == list(index.project((5,), (5,)))


def test_check_range():
    index = ChunkIndex((25, 10), (10, 10))
    assert ((0, 0), (25, 10)) == index.check_range([0, 0], [25, 10])
    with pytest.raises(OutOfBounds):
        index.check_range((0, 0), (26, 10))
    with pytest.raises(OutOfBounds):
        index.check_range((-1, 0), (5, 10))
    with pytest.raises(OutOfBounds):
        index.check_range((6, 0), (5, 10))
    with pytest.raises(IndexError):
        index.check_range((0,), (5,))


def test_clamp_range():
    shape = (100, 10)
    assert ((0, 0), (100, 10)) == clamp_range(shape, (-5, -5), (500, 50))
    assert ((90, 5), (100, 10)) == clamp_range(shape, (90, 5), (110, 15))
    # entirely outside: empty
    assert ((100, 10), (100, 10)) == clamp_range(shape, (200, 20), (300, 30))
    with pytest.raises(IndexError):
        clamp_range(shape, (0,), (1, 1))


def test_time_axis():
    assert 0 == time_axis(('time', 'lat', 'lon'))
    assert 2 == time_axis(('lat', 'lon', 'time'))
    assert 0 == time_axis(('x', 'y'))
    assert 0 == time_axis(None)
    assert 1 == time_axis(('lat', 't'), time_dimension='t')


def test_layout_order():
    names = ('time', 'lat', 'lon')
    assert (0, 1, 2) == layout_order(names, TEMPORAL_MAJOR)
    assert (1, 2, 0) == layout_order(names, SPATIAL_MAJOR)
    names = ('lat', 'lon', 'time')
    assert (2, 0, 1) == layout_order(names, TEMPORAL_MAJOR)
    assert (0, 1, 2) == layout_order(names, SPATIAL_MAJOR)
    # unnamed: first axis is time
    assert (1, 0) == layout_order(None, SPATIAL_MAJOR, ndim=2)
    with pytest.raises(ValueError):
        layout_order(names, 'diagonal')
