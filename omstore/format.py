"""Binary framing of an array file.

All integers are little endian::

    offset  size  field
    0       4     magic b"OMST"
    4       1     format version (1)
    5       1     flags; bit 0 set once the array is finalized (sealed)
    6       2     reserved, zero
    8       8     metadata length in bytes
    16      8     number of chunk directory entries
    24      8     data section length in bytes (0 until sealed)
    32      ...   metadata (JSON, see :mod:`omstore.meta`)
    ...     16*n  chunk directory: (offset, length) pairs, u8 each, offsets
                  relative to the data section; length 0 means the chunk was
                  never written and reads as the fill value
    ...     ...   data section: concatenated encoded chunks

The directory is indexed by the flat chunk index of
:class:`omstore.indexing.ChunkIndex`. A file whose sealed bit is clear is
still being written and must not be read.
"""
import collections
import struct

import numpy as np

from omstore.errors import InvalidFormat

MAGIC = b'OMST'
VERSION = 1
FLAG_SEALED = 0x01

PRELUDE = struct.Struct('<4sBBHQQQ')
PRELUDE_SIZE = PRELUDE.size
ENTRY_SIZE = 16

DIRECTORY_DTYPE = np.dtype('<u8')


class Prelude(collections.namedtuple(
        'Prelude', ('version', 'flags', 'meta_length', 'nchunks', 'data_length'))):

    @property
    def sealed(self):
        return bool(self.flags & FLAG_SEALED)

    @property
    def meta_offset(self):
        return PRELUDE_SIZE

    @property
    def directory_offset(self):
        return PRELUDE_SIZE + self.meta_length

    @property
    def data_offset(self):
        return self.directory_offset + ENTRY_SIZE * self.nchunks

    @property
    def expected_size(self):
        return self.data_offset + self.data_length


def encode_prelude(meta_length, nchunks, data_length=0, sealed=False):
    flags = FLAG_SEALED if sealed else 0
    return PRELUDE.pack(MAGIC, VERSION, flags, 0, meta_length, nchunks, data_length)


def decode_prelude(buf):
    if len(buf) < PRELUDE_SIZE:
        raise InvalidFormat('file too short for header (%s bytes)' % len(buf))
    magic, version, flags, reserved, meta_length, nchunks, data_length = \
        PRELUDE.unpack(bytes(buf[:PRELUDE_SIZE]))
    if magic != MAGIC:
        raise InvalidFormat('bad magic %r' % magic)
    if version != VERSION:
        raise InvalidFormat('unsupported format version %s' % version)
    if flags & ~FLAG_SEALED or reserved:
        raise InvalidFormat('unknown header flags')
    return Prelude(version, flags, meta_length, nchunks, data_length)


def new_directory(nchunks):
    """An empty chunk directory: one (offset, length) row per chunk."""
    return np.zeros((nchunks, 2), dtype=DIRECTORY_DTYPE)


def encode_directory(directory):
    return np.ascontiguousarray(directory, dtype=DIRECTORY_DTYPE).tobytes()


def decode_directory(buf, nchunks, data_length):
    if len(buf) != nchunks * ENTRY_SIZE:
        raise InvalidFormat('chunk directory truncated')
    directory = np.frombuffer(buf, dtype=DIRECTORY_DTYPE).reshape(nchunks, 2)
    ends = directory[:, 0] + directory[:, 1]
    # a wrapped sum would be smaller than its offset
    if np.any(ends > data_length) or np.any(ends < directory[:, 0]):
        raise InvalidFormat('chunk directory points past the data section')
    return directory.copy()
