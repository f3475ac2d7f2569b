import numpy as np
import pytest
from numcodecs.registry import get_codec
from numpy.testing import assert_array_almost_equal, assert_array_equal

from omstore.codecs import (
    Delta2D,
    NoneScheme,
    ScaledDelta2D,
    Varint,
    XOR2D,
    decode,
    default_scheme,
    encode,
    get_scheme,
    scheme_registry,
    zigzag_decode,
    zigzag_encode,
)
from omstore.config import config
from omstore.errors import CorruptChunk


def _field(shape, dtype):
    """Smooth data with some noise, like a weather variable."""
    n = int(np.prod(shape))
    x = np.linspace(0, 4 * np.pi, n)
    values = 100 * np.sin(x) + np.random.RandomState(42).normal(scale=3, size=n)
    if np.dtype(dtype).kind == "u":
        values += 200
    return values.astype(dtype).reshape(shape)


def test_zigzag():
    values = np.array([0, -1, 1, -2, 2, np.iinfo('i8').max, np.iinfo('i8').min], dtype='i8')
    encoded = zigzag_encode(values)
    assert_array_equal(np.array([0, 1, 2, 3, 4], dtype='u8'), encoded[:5])
    assert_array_equal(values, zigzag_decode(encoded))


def test_varint():
    codec = Varint()
    values = np.array([0, 1, -1, 63, -64, 64, 300, -300, 2**40, np.iinfo('i8').max,
                       np.iinfo('i8').min], dtype='i8')
    enc = codec.encode(values)
    assert_array_equal(values, codec.decode(enc))
    # small values take one byte each
    assert 4 == len(codec.encode(np.array([0, 1, -1, 63], dtype='i8')))
    assert 10 == len(codec.encode(np.array([np.iinfo('i8').min], dtype='i8')))

    out = np.empty(values.shape, dtype='i8')
    codec.decode(enc, out=out)
    assert_array_equal(values, out)

    assert 0 == codec.decode(codec.encode(np.array([], dtype='i8'))).size


def test_varint_registered():
    codec = get_codec(dict(id='omstore.varint'))
    assert isinstance(codec, Varint)


def test_varint_truncated():
    codec = Varint()
    enc = codec.encode(np.array([300], dtype='i8'))
    with pytest.raises(ValueError):
        codec.decode(enc[:-1])
    with pytest.raises(ValueError):
        codec.decode(b'\x80' * 11 + b'\x00')


@pytest.mark.parametrize('scheme_id,dtype', [
    ('none', 'f4'),
    ('none', 'i2'),
    ('delta2d', 'i1'),
    ('delta2d', 'i2'),
    ('delta2d', 'u2'),
    ('delta2d', 'i4'),
    ('delta2d', 'u4'),
    ('delta2d', 'i8'),
    ('delta2d', 'u8'),
    ('xor2d', 'f4'),
    ('xor2d', 'f8'),
    ('xor2d', 'i4'),
])
@pytest.mark.parametrize('shape', [(1,), (25,), (10, 10), (3, 7, 5)])
def test_lossless_roundtrip(scheme_id, dtype, shape):
    chunk = _field(shape, dtype)
    cdata = encode(chunk, scheme_id)
    assert isinstance(cdata, bytes)
    actual = decode(cdata, scheme_id, None, chunk.size, dtype, shape)
    assert np.dtype(dtype) == actual.dtype
    assert_array_equal(chunk, actual)

    if len(shape) == 1:
        # shape defaults to the flat element count
        assert_array_equal(chunk, decode(cdata, scheme_id, None, chunk.size, dtype))


def test_integer_extremes():
    for dtype in 'i1', 'u1', 'i4', 'u4', 'i8', 'u8':
        info = np.iinfo(dtype)
        chunk = np.array([[info.min, info.max, 0], [info.max, info.min, 1]], dtype=dtype)
        cdata = encode(chunk, 'delta2d')
        assert_array_equal(chunk, decode(cdata, 'delta2d', None, 6, dtype, (2, 3)))


def test_xor2d_special_floats():
    chunk = np.array([[np.nan, np.inf, -np.inf], [-0.0, 1e-40, np.nan]], dtype='f4')
    cdata = encode(chunk, 'xor2d')
    actual = decode(cdata, 'xor2d', None, 6, 'f4', (2, 3))
    # bit-exact, including NaN payloads and signed zero
    assert_array_equal(chunk.view('u4'), actual.view('u4'))


def test_scaled_delta2d():
    params = dict(scale_factor=20.0, add_offset=0.0)
    chunk = _field((10, 10), 'f4')
    chunk[3, 4] = np.nan
    cdata = encode(chunk, 'scaled_delta2d', params)
    actual = decode(cdata, 'scaled_delta2d', params, chunk.size, 'f4', chunk.shape)
    assert np.isnan(actual[3, 4])
    mask = ~np.isnan(chunk)
    assert np.all(np.abs(actual[mask] - chunk[mask]) <= 0.5 / 20 + 1e-4)
    assert_array_almost_equal(chunk[mask], actual[mask], decimal=1)


def test_scaled_delta2d_offset():
    scheme = ScaledDelta2D(scale_factor=10, add_offset=273.15)
    chunk = np.array([250.0, 273.15, 300.05], dtype='f8')
    actual = scheme.decode(scheme.encode(chunk), 'f8', chunk.shape)
    assert_array_almost_equal(chunk, actual, decimal=1)
    with pytest.raises(ValueError):
        ScaledDelta2D(scale_factor=0)


def test_deterministic():
    chunk = _field((20, 30), 'f4')
    for scheme_id in 'none', 'xor2d', 'scaled_delta2d':
        assert encode(chunk, scheme_id) == encode(chunk.copy(), scheme_id)


def test_compressors():
    chunk = np.arange(2500, dtype="i4").reshape(50, 50)
    raw = encode(chunk, Delta2D(compressor=None))
    zlib = encode(chunk, Delta2D(compressor='zlib', level=9))
    zstd = encode(chunk, Delta2D(compressor='zstd', level=3))
    assert len(zlib) < len(raw)
    assert len(zstd) < len(raw)
    for scheme in Delta2D(compressor=None), Delta2D(compressor='zstd', level=3):
        cdata = encode(chunk, scheme)
        assert_array_equal(chunk, scheme.decode(cdata, 'i4', chunk.shape))
    with pytest.raises(ValueError):
        Delta2D(compressor='lz4-but-not-really')


def test_corrupt_chunk():
    chunk = _field((10, 10), 'f4')

    # count mismatch
    cdata = encode(chunk, 'xor2d')
    with pytest.raises(CorruptChunk):
        decode(cdata, 'xor2d', None, 99, 'f4', (99,))

    # garbage behind the compressor
    with pytest.raises(CorruptChunk):
        decode(b'not zlib data', 'xor2d', None, 100, 'f4', (10, 10))

    # truncated varint stream
    scheme = Delta2D(compressor=None)
    cdata = scheme.encode(np.array([1000, 2000], dtype='i4'))
    with pytest.raises(CorruptChunk):
        scheme.decode(cdata[:-1], 'i4', (2,))

    # wrong number of integers
    with pytest.raises(CorruptChunk):
        scheme.decode(cdata, 'i4', (3,))

    # raw bytes of the wrong length
    with pytest.raises(CorruptChunk):
        NoneScheme().decode(b'\x00' * 7, 'f4', (2,))


def test_shape_must_match_count():
    cdata = encode(np.zeros(4, dtype='f4'), 'none')
    with pytest.raises(ValueError):
        decode(cdata, 'none', None, 4, 'f4', (3,))


def test_get_scheme():
    assert {'none', 'delta2d', 'xor2d', 'scaled_delta2d'} <= set(scheme_registry)
    scheme = get_scheme('xor2d', dict(compressor='zstd', level=5))
    assert isinstance(scheme, XOR2D)
    assert dict(compressor='zstd', level=5) == scheme.get_config()
    assert scheme == get_scheme('xor2d', scheme.get_config())
    assert scheme != get_scheme('xor2d', dict(compressor='zlib', level=5))
    assert 'XOR2D' in repr(scheme)
    with pytest.raises(ValueError):
        get_scheme('bogus')


def test_check_dtype():
    Delta2D().check_dtype('i4')
    with pytest.raises(ValueError):
        Delta2D().check_dtype('f4')
    with pytest.raises(ValueError):
        ScaledDelta2D().check_dtype('i2')
    XOR2D().check_dtype('f8')


def test_default_scheme():
    assert 'xor2d' == default_scheme('f4')
    assert 'delta2d' == default_scheme('i2')
    with config.set({'codec.float_scheme': 'none'}):
        assert 'none' == default_scheme('f8')


def test_default_compressor_from_config():
    with config.set({'codec.compressor': 'zstd', 'codec.level': 7}):
        scheme = XOR2D()
    assert dict(compressor='zstd', level=7) == scheme.get_config()
    assert dict(compressor=None, level=None) == NoneScheme().get_config()
