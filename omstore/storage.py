"""Byte-range storage backends.

A store holds the bytes of exactly one array file and offers positional
reads and writes. Positional I/O has no shared file cursor, so any number of
threads may read a sealed array through the same store concurrently.

Modes follow h5py semantics:

r : read only, must exist
w : create, truncate if exists (truncation is left to the writer, once it
    holds the writer lock)
w- or x : create, fail if exists
"""
import logging
import os
import threading
from typing import Union

from omstore.errors import ReadOnlyError, WriterLocked

logger = logging.getLogger(__name__)


class Store(object):
    """Abstract base class for array file storage."""

    read_only = True

    def read(self, offset: int, length: int) -> bytes:
        """Read up to `length` bytes starting at `offset`."""
        raise NotImplementedError

    def write(self, offset: int, data) -> None:
        raise NotImplementedError

    def size(self) -> int:
        raise NotImplementedError

    def truncate(self, size: int) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    def acquire_writer(self) -> None:
        """Claim exclusive write access for the lifetime of a writer."""
        pass

    def release_writer(self) -> None:
        pass

    def spool(self) -> 'Store':
        """A new, empty store of the same kind used to rebuild this one."""
        raise NotImplementedError

    def replace_with(self, other: 'Store') -> None:
        """Adopt the content of a store returned by :meth:`spool`."""
        raise NotImplementedError

    def _check_writable(self):
        if self.read_only:
            raise ReadOnlyError()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class MemoryStore(Store):
    """Store holding the file in a bytearray.

    Parameters
    ----------
    data : bytes-like, optional
        Initial content; the store is read-only when given.

    """

    def __init__(self, data=None, read_only=None):
        self._buf = bytearray(data) if data is not None else bytearray()
        self.read_only = (data is not None) if read_only is None else read_only
        self._mutex = threading.Lock()

    def __repr__(self):
        return '%s(%s bytes)' % (type(self).__name__, len(self._buf))

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def read(self, offset, length):
        return bytes(self._buf[offset:offset + length])

    def write(self, offset, data):
        self._check_writable()
        data = memoryview(data).cast('B')
        end = offset + len(data)
        with self._mutex:
            if end > len(self._buf):
                self._buf.extend(b'\x00' * (end - len(self._buf)))
            self._buf[offset:end] = data

    def size(self):
        return len(self._buf)

    def truncate(self, size):
        self._check_writable()
        with self._mutex:
            del self._buf[size:]

    def spool(self):
        return MemoryStore(read_only=False)

    def replace_with(self, other):
        self._check_writable()
        with self._mutex:
            self._buf = bytearray(other.getvalue())


class FileStore(Store):
    """Store backed by a single file on the local file system.

    Parameters
    ----------
    path : string or PathLike
        Location of the file.
    mode : {'r', 'w', 'w-', 'x'}
        Access mode; see the module docstring.

    Notes
    -----
    Writers additionally take an inter-process lock on ``<path>.lock`` via
    the `fasteners <https://fasteners.readthedocs.io/>`_ package, so only one
    process at a time can build a given file.

    """

    def __init__(self, path: Union[str, os.PathLike], mode: str = 'r'):
        self.path = os.fspath(path)
        self.mode = mode
        if mode == 'r':
            flags = os.O_RDONLY
        elif mode == 'w':
            flags = os.O_RDWR | os.O_CREAT
        elif mode in ('w-', 'x'):
            flags = os.O_RDWR | os.O_CREAT | os.O_EXCL
        else:
            raise ValueError('bad mode: %r' % mode)
        self.read_only = mode == 'r'
        self._fd = os.open(self.path, flags | getattr(os, 'O_BINARY', 0), 0o666)
        self._lock = None

    def __repr__(self):
        return '%s(%r, mode=%r)' % (type(self).__name__, self.path, self.mode)

    @property
    def closed(self):
        return self._fd is None

    def read(self, offset, length):
        parts = []
        while length > 0:
            part = os.pread(self._fd, length, offset)
            if not part:
                break
            parts.append(part)
            offset += len(part)
            length -= len(part)
        return b''.join(parts)

    def write(self, offset, data):
        self._check_writable()
        view = memoryview(data).cast('B')
        while len(view):
            n = os.pwrite(self._fd, view, offset)
            view = view[n:]
            offset += n

    def size(self):
        if self._fd is None:
            return os.path.getsize(self.path)
        return os.fstat(self._fd).st_size

    def truncate(self, size):
        self._check_writable()
        os.ftruncate(self._fd, size)

    def flush(self):
        if not self.read_only:
            os.fsync(self._fd)

    def close(self):
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
        self.release_writer()

    def acquire_writer(self):
        import fasteners

        if self._lock is None:
            lock = fasteners.InterProcessLock(self.path + '.lock')
            if not lock.acquire(blocking=False):
                raise WriterLocked(self.path)
            self._lock = lock

    def release_writer(self):
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    def spool(self):
        spool = FileStore(self.path + '.spool', mode='w')
        spool.truncate(0)
        return spool

    def replace_with(self, other):
        self._check_writable()
        other.flush()
        other_path = other.path
        os.close(other._fd)
        other._fd = None
        os.close(self._fd)
        os.replace(other_path, self.path)
        self._fd = os.open(self.path, os.O_RDWR | getattr(os, 'O_BINARY', 0))
        logger.debug('rebuilt %s', self.path)


def normalize_store_arg(store, mode='r') -> Store:
    """Turn a path, bytes or store into a :class:`Store`."""
    if isinstance(store, Store):
        return store
    if isinstance(store, (str, os.PathLike)):
        return FileStore(store, mode=mode)
    if isinstance(store, (bytes, bytearray, memoryview)):
        if mode != 'r':
            raise ValueError('bytes can only be opened for reading')
        return MemoryStore(store)
    if store is None and mode != 'r':
        return MemoryStore(read_only=False)
    raise TypeError('unsupported store type: %r' % type(store))
