"""Chunk compression schemes.

A scheme turns one decoded chunk (a numpy array in physical axis order) into
bytes and back. The scheme identifier and its parameters are stored once per
array in the metadata, never per chunk. Every scheme is deterministic: the
same chunk and parameters always yield the same bytes.

Available schemes
-----------------
``none``
    Raw little-endian element bytes, optionally compressed.
``delta2d``
    Lossless, integers. The chunk is viewed as rows along its last physical
    axis; each row is replaced by its difference to the previous row, the
    differences are zigzag mapped and packed as LEB128 variable-length
    integers (see :class:`Varint`), then compressed.
``xor2d``
    Lossless, any dtype (meant for floats). Each row of bit patterns is XORed
    with the previous row, the bytes are shuffled and compressed.
``scaled_delta2d``
    Lossy, floats. Values are quantized to int16 with
    ``round((x - add_offset) * scale_factor)``, NaN is stored as the int16
    maximum, and the integers take the ``delta2d`` path.

Compressors are numcodecs codecs: ``zlib`` (default), ``zstd`` or ``None``.
"""
import zlib

import numpy as np
from numcodecs import Shuffle, Zlib, Zstd
from numcodecs.abc import Codec
from numcodecs.compat import ensure_bytes, ensure_contiguous_ndarray
from numcodecs.registry import register_codec

from omstore.config import config
from omstore.errors import CorruptChunk

__all__ = [
    "Varint",
    "Scheme",
    "get_scheme",
    "default_scheme",
    "encode",
    "decode",
    "scheme_registry",
]

# longest LEB128 encoding of a 64 bit value
_MAX_VARINT_BYTES = 10

_INT16_NAN = np.iinfo(np.int16).max


def zigzag_encode(values):
    values = values.astype(np.int64, copy=False)
    return ((values << 1) ^ (values >> 63)).view(np.uint64)


def zigzag_decode(values):
    values = values.astype(np.uint64, copy=False)
    return (values >> np.uint64(1)).view(np.int64) ^ -(values & np.uint64(1)).view(np.int64)


class Varint(Codec):
    """Zigzag + LEB128 variable-length packing of 64 bit signed integers.

    Small magnitudes (such as deltas between neighbouring samples) take a
    single byte; the full int64 range takes at most ten.

    Examples
    --------
    >>> import numpy as np
    >>> from omstore.codecs import Varint
    >>> codec = Varint()
    >>> bytes(codec.encode(np.array([0, -1, 1, 300], dtype='i8')))
    b'\\x00\\x01\\x02\\xd8\\x04'
    >>> codec.decode(codec.encode(np.array([0, -1, 1, 300], dtype='i8')))
    array([  0,  -1,   1, 300])

    """

    codec_id = "omstore.varint"

    def encode(self, buf):
        values = ensure_contiguous_ndarray(buf).view("<i8")
        u = zigzag_encode(values)

        # number of 7 bit groups needed for each value
        nbytes = np.ones(u.shape, dtype=np.intp)
        for k in range(1, _MAX_VARINT_BYTES):
            nbytes += u >= (np.uint64(1) << np.uint64(7 * k))

        ends = np.cumsum(nbytes)
        starts = ends - nbytes
        out = np.empty(int(ends[-1]) if u.size else 0, dtype=np.uint8)
        for k in range(_MAX_VARINT_BYTES):
            sel = nbytes > k
            if not sel.any():
                break
            group = ((u[sel] >> np.uint64(7 * k)) & np.uint64(0x7F)).astype(np.uint8)
            group[nbytes[sel] > k + 1] |= 0x80
            out[starts[sel] + k] = group
        return out.tobytes()

    def decode(self, buf, out=None):
        b = np.frombuffer(ensure_bytes(buf), dtype=np.uint8)
        if b.size and b[-1] & 0x80:
            raise ValueError("truncated varint stream")

        ends = np.flatnonzero((b & 0x80) == 0)
        starts = np.empty_like(ends)
        starts[:1] = 0
        starts[1:] = ends[:-1] + 1
        lengths = ends - starts + 1
        if lengths.size and lengths.max() > _MAX_VARINT_BYTES:
            raise ValueError("varint longer than %s bytes" % _MAX_VARINT_BYTES)

        u = np.zeros(ends.shape, dtype=np.uint64)
        for k in range(int(lengths.max()) if lengths.size else 0):
            sel = lengths > k
            group = (b[starts[sel] + k] & 0x7F).astype(np.uint64)
            u[sel] |= group << np.uint64(7 * k)

        values = zigzag_decode(u)
        if out is not None:
            out = ensure_contiguous_ndarray(out).view("<i8")
            out[...] = values
            return out
        return values


register_codec(Varint)


def _get_compressor(name, level):
    if name is None:
        return None
    if name == "zlib":
        return Zlib(level=1 if level is None else level)
    if name == "zstd":
        return Zstd(level=1 if level is None else level)
    raise ValueError("unknown compressor: %r" % name)


def _row_shape(shape):
    """View any chunk shape as (rows, columns) along the last axis."""
    count = int(np.prod(shape, dtype=np.int64))
    cols = shape[-1] if len(shape) >= 2 else 1
    return count // cols if cols else 0, cols


scheme_registry = dict()


def register_scheme(cls):
    scheme_registry[cls.scheme_id] = cls
    return cls


class Scheme(object):
    """Base class for chunk compression schemes.

    Parameters
    ----------
    compressor : {'zlib', 'zstd', None}
        Byte compressor applied after the numeric transform.
    level : int, optional
        Compression level.

    """

    scheme_id = None
    kinds = "iuf"
    default_compressor = "zlib"

    def __init__(self, compressor="default", level=None):
        if compressor == "default":
            compressor = config.get("codec.compressor", self.default_compressor)
        if level is None and compressor is not None:
            level = config.get("codec.level", 1)
        self.compressor_name = compressor
        self.level = level
        self.compressor = _get_compressor(compressor, level)

    def get_config(self):
        return {
            "compressor": self.compressor_name,
            "level": self.level,
        }

    def check_dtype(self, dtype):
        dtype = np.dtype(dtype)
        if dtype.kind not in self.kinds:
            raise ValueError("scheme %r does not support dtype %s"
                             % (self.scheme_id, dtype))

    def __eq__(self, other):
        return (type(self) is type(other)
                and self.get_config() == other.get_config())

    def __repr__(self):
        params = ", ".join("%s=%r" % kv for kv in sorted(self.get_config().items()))
        return "%s(%s)" % (type(self).__name__, params)

    def _compress(self, payload):
        if self.compressor is None:
            return ensure_bytes(payload)
        return ensure_bytes(self.compressor.encode(payload))

    def _decompress(self, cdata):
        if self.compressor is None:
            return ensure_bytes(cdata)
        try:
            return ensure_bytes(self.compressor.decode(cdata))
        except (zlib.error, RuntimeError, ValueError) as e:
            raise CorruptChunk(self.scheme_id, "decompression failed (%s)" % e)

    def encode(self, chunk):
        raise NotImplementedError

    def decode(self, cdata, dtype, shape):
        raise NotImplementedError


@register_scheme
class NoneScheme(Scheme):

    scheme_id = "none"
    default_compressor = None

    def __init__(self, compressor=None, level=None):
        super().__init__(compressor=compressor, level=level)

    def encode(self, chunk):
        chunk = np.ascontiguousarray(chunk)
        return self._compress(chunk.astype(chunk.dtype.newbyteorder("<"), copy=False).tobytes())

    def decode(self, cdata, dtype, shape):
        dtype = np.dtype(dtype).newbyteorder("<")
        payload = self._decompress(cdata)
        count = int(np.prod(shape, dtype=np.int64))
        if len(payload) != count * dtype.itemsize:
            raise CorruptChunk(self.scheme_id, "expected %s bytes, found %s"
                               % (count * dtype.itemsize, len(payload)))
        return np.frombuffer(payload, dtype=dtype).reshape(shape).copy()


@register_scheme
class Delta2D(Scheme):

    scheme_id = "delta2d"
    kinds = "iu"

    def __init__(self, compressor="default", level=None):
        super().__init__(compressor=compressor, level=level)
        self.varint = Varint()

    def encode(self, chunk):
        chunk = np.ascontiguousarray(chunk)
        rows = chunk.reshape(_row_shape(chunk.shape))
        if rows.dtype.itemsize == 8:
            # wrapping int64 arithmetic is undone exactly on decode
            work = rows.view(np.int64)
        else:
            work = rows.astype(np.int64)
        deltas = work.copy()
        deltas[1:] -= work[:-1]
        return self._compress(self.varint.encode(deltas.ravel()))

    def decode(self, cdata, dtype, shape):
        dtype = np.dtype(dtype).newbyteorder("<")
        payload = self._decompress(cdata)
        try:
            values = self.varint.decode(payload)
        except ValueError as e:
            raise CorruptChunk(self.scheme_id, str(e))
        count = int(np.prod(shape, dtype=np.int64))
        if values.size != count:
            raise CorruptChunk(self.scheme_id, "expected %s elements, found %s"
                               % (count, values.size))
        rows = values.reshape(_row_shape(shape))
        np.cumsum(rows, axis=0, out=rows)
        if dtype.itemsize == 8:
            return rows.view(dtype).reshape(shape)
        return rows.astype(dtype).reshape(shape)


@register_scheme
class XOR2D(Scheme):

    scheme_id = "xor2d"

    def encode(self, chunk):
        chunk = np.ascontiguousarray(chunk)
        itemsize = chunk.dtype.itemsize
        bits = chunk.view("<u%s" % itemsize).reshape(_row_shape(chunk.shape))
        xored = bits.copy()
        xored[1:] ^= bits[:-1]
        shuffled = Shuffle(elementsize=itemsize).encode(xored.tobytes())
        return self._compress(shuffled)

    def decode(self, cdata, dtype, shape):
        dtype = np.dtype(dtype).newbyteorder("<")
        payload = self._decompress(cdata)
        count = int(np.prod(shape, dtype=np.int64))
        if len(payload) != count * dtype.itemsize:
            raise CorruptChunk(self.scheme_id, "expected %s bytes, found %s"
                               % (count * dtype.itemsize, len(payload)))
        unshuffled = ensure_bytes(Shuffle(elementsize=dtype.itemsize).decode(payload))
        bits = np.frombuffer(unshuffled, dtype="<u%s" % dtype.itemsize)
        bits = np.bitwise_xor.accumulate(bits.reshape(_row_shape(shape)), axis=0)
        return bits.view(dtype).reshape(shape)


@register_scheme
class ScaledDelta2D(Delta2D):

    scheme_id = "scaled_delta2d"
    kinds = "f"

    def __init__(self, scale_factor=1.0, add_offset=0.0, compressor="default", level=None):
        super().__init__(compressor=compressor, level=level)
        if not scale_factor:
            raise ValueError("scale_factor must be non-zero")
        self.scale_factor = float(scale_factor)
        self.add_offset = float(add_offset)

    def get_config(self):
        cfg = super().get_config()
        cfg.update(scale_factor=self.scale_factor, add_offset=self.add_offset)
        return cfg

    def encode(self, chunk):
        values = np.asarray(chunk, dtype=np.float64)
        scaled = np.round((values - self.add_offset) * self.scale_factor)
        nan = np.isnan(scaled)
        scaled = np.clip(np.where(nan, 0, scaled), np.iinfo(np.int16).min, _INT16_NAN - 1)
        quantized = scaled.astype(np.int16)
        quantized[nan] = _INT16_NAN
        return super().encode(quantized)

    def decode(self, cdata, dtype, shape):
        quantized = super().decode(cdata, np.int16, shape)
        values = quantized.astype(np.float64) / self.scale_factor + self.add_offset
        values[quantized == _INT16_NAN] = np.nan
        return values.astype(np.dtype(dtype).newbyteorder("<"))


def get_scheme(scheme_id, params=None):
    """Instantiate the scheme registered under `scheme_id`."""
    try:
        cls = scheme_registry[scheme_id]
    except KeyError:
        raise ValueError("unknown compression scheme: %r" % (scheme_id,))
    return cls(**dict(params or {}))


def default_scheme(dtype):
    """The configured default scheme identifier for `dtype`."""
    if np.dtype(dtype).kind == "f":
        return config.get("codec.float_scheme")
    return config.get("codec.integer_scheme")


def encode(chunk, scheme, params=None):
    """Encode one chunk buffer to bytes.

    Parameters
    ----------
    chunk : ndarray
        Chunk elements; the last axis is treated as the row axis.
    scheme : str or Scheme
        Scheme identifier or instance.
    params : dict, optional
        Scheme parameters, ignored when `scheme` is an instance.

    """
    if not isinstance(scheme, Scheme):
        scheme = get_scheme(scheme, params)
    return scheme.encode(chunk)


def decode(cdata, scheme, params, expected_count, dtype, shape=None):
    """Decode bytes produced by :func:`encode` back into a chunk buffer.

    Raises :class:`omstore.errors.CorruptChunk` when `cdata` does not yield
    exactly `expected_count` elements.
    """
    if not isinstance(scheme, Scheme):
        scheme = get_scheme(scheme, params)
    shape = (int(expected_count),) if shape is None else tuple(shape)
    if int(np.prod(shape, dtype=np.int64)) != expected_count:
        raise ValueError("shape %r does not hold %s elements" % (shape, expected_count))
    return scheme.decode(cdata, dtype, shape)
