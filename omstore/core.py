import logging
import os
import threading

import numpy as np

from omstore.config import config
from omstore.errors import (
    ContainsArrayError,
    CorruptChunk,
    InvalidFormat,
    NotFinalized,
    ReadOnlyError,
)
from omstore.format import (
    ENTRY_SIZE,
    PRELUDE_SIZE,
    decode_directory,
    decode_prelude,
    encode_directory,
    encode_prelude,
    new_directory,
)
from omstore.indexing import (
    SPATIAL_MAJOR,
    TEMPORAL_MAJOR,
    basic_selection_to_range,
    clamp_range,
    layout_order,
)
from omstore.meta import ArrayMetadata
from omstore.storage import FileStore, Store, normalize_store_arg
from omstore.sync import map_chunks
from omstore.util import (
    InfoReporter,
    TreeNode,
    TreeViewer,
    human_readable_size,
    nolock,
    retry_call,
)

__all__ = ["Array", "open_array", "create_array", "save_array"]

logger = logging.getLogger(__name__)


class Array:
    """A chunked N-dimensional array held in a single store.

    Arrays are obtained from :func:`open_array` (finalized, read-only) or
    :func:`create_array` (writable until :meth:`finalize`); do not
    instantiate directly.

    All coordinates are in logical dimension order. The physical axis order
    only decides how chunks are numbered and how elements are laid out
    inside a chunk.

    Parameters
    ----------
    store : Store
        Storage holding the array file.
    meta : ArrayMetadata
        Array metadata.
    directory : ndarray
        Chunk directory, one (offset, length) row per flat chunk index.
    data_length : int
        Bytes used in the data section.
    finalized : bool
        Whether the file is sealed.
    synchronizer : object, optional
        Per-chunk locks serializing writes to the same chunk.
    own_store : bool
        Close the store when the array is closed.

    """

    def __init__(self, store, meta, directory, data_length, finalized,
                 synchronizer=None, own_store=False):
        self._store = store
        self._meta = meta
        self._index = meta.get_index()
        self._scheme = meta.get_scheme()
        self._meta_bytes = meta.encode()
        self._directory = directory
        self._data_length = data_length
        self._finalized = finalized
        self._synchronizer = synchronizer
        self._own_store = own_store
        # guards the append cursor and the chunk directory
        self._mutex = threading.Lock()

        self._directory_offset = PRELUDE_SIZE + len(self._meta_bytes)
        self._data_offset = self._directory_offset + ENTRY_SIZE * meta.nchunks

    @property
    def store(self):
        """A Store providing the underlying storage for the array."""
        return self._store

    @property
    def meta(self) -> ArrayMetadata:
        return self._meta

    @property
    def name(self):
        """File name of the array, if it lives on disk."""
        if isinstance(self._store, FileStore):
            return os.path.basename(self._store.path)
        return None

    @property
    def shape(self):
        """A tuple of integers describing the length of each logical
        dimension of the array."""
        return self._meta.shape

    @property
    def chunks(self):
        """A tuple of integers describing the nominal chunk extent along each
        logical dimension."""
        return self._meta.chunks

    @property
    def dimensions(self):
        return self._meta.dimensions

    @property
    def names(self):
        return self._meta.names

    @property
    def dtype(self):
        return self._meta.dtype

    @property
    def order(self):
        """Permutation vector: logical axis stored at each physical axis."""
        return self._meta.order

    @property
    def layout(self):
        """``'temporal-major'``, ``'spatial-major'`` or ``'custom'``."""
        for layout in (TEMPORAL_MAJOR, SPATIAL_MAJOR):
            if layout_order(self.names, layout) == self.order:
                return layout
        return 'custom'

    @property
    def compression(self):
        return self._meta.compression

    @property
    def compression_params(self):
        return dict(self._meta.compression_params)

    @property
    def fill_value(self):
        return self._meta.fill_value

    @property
    def attrs(self):
        """User attributes stored with the array."""
        return dict(self._meta.attributes)

    @property
    def ndim(self):
        return self._meta.ndim

    @property
    def size(self):
        return self._meta.size

    @property
    def index(self):
        """The :class:`omstore.indexing.ChunkIndex` of the array."""
        return self._index

    @property
    def cdata_shape(self):
        """Number of chunks along each logical dimension."""
        return self._index.cdata_shape

    @property
    def nchunks(self):
        return self._index.nchunks

    @property
    def nchunks_initialized(self):
        """Number of chunks that have been written."""
        return int(np.count_nonzero(self._directory[:, 1]))

    @property
    def nbytes(self):
        return self.size * self.dtype.itemsize

    @property
    def nbytes_stored(self):
        return self._store.size()

    @property
    def is_finalized(self):
        return self._finalized

    @property
    def read_only(self):
        return self._finalized

    def __len__(self):
        return self.shape[0]

    def __repr__(self):
        t = type(self)
        r = "<{}.{}".format(t.__module__, t.__name__)
        if self.name:
            r += " %r" % self.name
        r += " %s" % str(self.shape)
        r += " %s" % self.dtype
        if not self._finalized:
            r += " unfinalized"
        r += ">"
        return r

    # reading

    def _check_readable(self):
        if not self._finalized:
            raise NotFinalized()

    def _chunk_key(self, chunk_coords):
        return ".".join(map(str, chunk_coords))

    def _read_chunk_bytes(self, chunk_coords, offset, length):
        cdata = retry_call(
            self._store.read,
            args=(self._data_offset + offset, length),
            exceptions=(OSError,),
            retries=max(0, int(config.get("io.retries"))) + 1,
            wait=config.get("io.retry_wait"),
        )
        if len(cdata) != length:
            raise CorruptChunk(self._chunk_key(chunk_coords),
                               "expected %s bytes, read %s" % (length, len(cdata)))
        return cdata

    def _decode_chunk(self, chunk_coords):
        fill_shape = self._index.chunk_shape(chunk_coords)
        offset, length = (int(v) for v in
                          self._directory[self._index.flat_index(chunk_coords)])
        if length == 0:
            return np.full(fill_shape, self.fill_value, dtype=self.dtype)

        cdata = self._read_chunk_bytes(chunk_coords, offset, length)
        try:
            chunk = self._scheme.decode(cdata, self.dtype, self._index.to_physical(fill_shape))
        except CorruptChunk as e:
            raise CorruptChunk("%s chunk %s" % (self.compression, self._chunk_key(chunk_coords)),
                               e.reason) from e
        return chunk.transpose(self._index.inverse_order)

    def get_chunk(self, chunk_coords):
        """Decode one chunk; the result has the chunk's actual (fill) shape
        in logical dimension order."""
        self._check_readable()
        chunk_coords = self._index.check_chunk_coords(chunk_coords)
        return np.ascontiguousarray(self._decode_chunk(chunk_coords))

    def read_range(self, start, stop, out=None, workers=None):
        """Read the half-open hyper-rectangle ``[start, stop)``.

        Parameters
        ----------
        start, stop : sequence of ints
            One coordinate per logical dimension.
        out : ndarray, optional
            Destination with shape ``stop - start``.
        workers : int, optional
            Maximum number of chunks decoded at the same time; defaults to
            the `threading.max_workers` config value.

        Returns
        -------
        out : ndarray

        Raises
        ------
        OutOfBounds
            If the range leaves the array; nothing is read in that case.
        NotFinalized
            If the array is still being written.

        """
        self._check_readable()
        start, stop = self._index.check_range(start, stop)
        out_shape = tuple(b - a for a, b in zip(start, stop))
        if out is None:
            out = np.empty(out_shape, dtype=self.dtype)
        elif out.shape != out_shape:
            raise ValueError("out has shape %r, expected %r" % (out.shape, out_shape))

        def _load(projection):
            chunk = self._decode_chunk(projection.chunk_coords)
            out[projection.out_selection] = chunk[projection.chunk_selection]

        map_chunks(_load, self._index.project(start, stop), workers=workers)
        return out

    def read_viewport(self, start, stop):
        """Like :meth:`read_range` but clamps the range into the array
        first; a viewport entirely outside yields an empty result."""
        start, stop = clamp_range(self.shape, start, stop)
        return self.read_range(start, stop)

    def __getitem__(self, selection):
        """Retrieve data using integers and unit-step slices.

        Examples
        --------
        >>> import numpy as np
        >>> import omstore
        >>> z = omstore.save_array(None, np.arange(100).reshape(10, 10), chunks=(5, 5))
        >>> z[2, 3:6]
        array([23, 24, 25])

        """
        start, stop, drop_axes = basic_selection_to_range(selection, self.shape, self.names)
        result = self.read_range(start, stop)
        if drop_axes:
            result = result.reshape(tuple(n for axis, n in enumerate(result.shape)
                                          if axis not in drop_axes))
            if result.ndim == 0:
                return result[()]
        return result

    def __array__(self, *args, **kwargs):
        a = self.read_range((0,) * self.ndim, self.shape)
        if args:
            a = a.astype(args[0])
        return a

    # writing

    def _check_writable(self):
        if self._finalized:
            raise ReadOnlyError()

    def write_chunk(self, chunk_coords, data):
        """Encode and store one chunk.

        `data` holds the chunk in logical dimension order, shaped like the
        chunk's actual (fill) extent; a boundary chunk may also be passed
        with the nominal chunk shape, in which case the part outside the
        array is dropped. Rewriting a chunk replaces it.
        """
        self._check_writable()
        chunk_coords = self._index.check_chunk_coords(chunk_coords)
        fill_shape = self._index.chunk_shape(chunk_coords)

        data = np.asarray(data)
        if data.shape != fill_shape:
            if data.shape == self.chunks:
                data = data[tuple(slice(0, n) for n in fill_shape)]
            else:
                raise ValueError("chunk %s expects shape %r, got %r"
                                 % (self._chunk_key(chunk_coords), fill_shape, data.shape))

        physical = np.ascontiguousarray(
            data.astype(self.dtype, copy=False).transpose(self._index.order))
        cdata = self._scheme.encode(physical)

        key = self._chunk_key(chunk_coords)
        lock = self._synchronizer[key] if self._synchronizer is not None else nolock
        with lock:
            with self._mutex:
                self._check_writable()
                offset = self._data_length
                self._data_length += len(cdata)
            self._store.write(self._data_offset + offset, cdata)
            with self._mutex:
                self._directory[self._index.flat_index(chunk_coords)] = (offset, len(cdata))

    def _is_canonical(self):
        """True when written chunks are contiguous in flat index order, which
        is the layout :meth:`finalize` guarantees."""
        lengths = self._directory[:, 1]
        written = lengths > 0
        expected = np.cumsum(lengths) - lengths
        return (bool(np.all(self._directory[written, 0] == expected[written]))
                and int(lengths.sum()) == self._data_length)

    def _compact(self):
        spool = self._store.spool()
        header = encode_prelude(len(self._meta_bytes), self.nchunks)
        spool.write(0, header + self._meta_bytes)
        directory = new_directory(self.nchunks)
        cursor = 0
        for i, (offset, length) in enumerate(self._directory):
            if not length:
                continue
            cdata = self._store.read(self._data_offset + int(offset), int(length))
            spool.write(self._data_offset + cursor, cdata)
            directory[i] = (cursor, length)
            cursor += int(length)
        logger.info("rewrote data section of %s: %s -> %s bytes",
                    self._store, self._data_length, cursor)
        self._store.replace_with(spool)
        self._directory = directory
        self._data_length = cursor

    def finalize(self):
        """Seal the array.

        Writes the chunk directory and marks the file as complete; the array
        becomes read-only. Chunks that were rewritten or written out of order
        are first laid out again in flat chunk order, so the final bytes only
        depend on the final content of each chunk.
        """
        with self._mutex:
            self._check_writable()
            if not self._is_canonical():
                self._compact()

            meta_length = len(self._meta_bytes)
            self._store.write(self._directory_offset, encode_directory(self._directory))
            self._store.write(0, encode_prelude(meta_length, self.nchunks, self._data_length))
            self._store.truncate(self._data_offset + self._data_length)
            self._store.flush()

            # the sealed flag goes last
            self._store.write(0, encode_prelude(meta_length, self.nchunks, self._data_length,
                                                sealed=True))
            self._store.flush()
            self._finalized = True
            self._store.release_writer()

        logger.debug("finalized %r: %s of %s chunks written", self,
                     self.nchunks_initialized, self.nchunks)
        return self

    def close(self):
        """Release the store; an unfinalized array stays unsealed."""
        self._store.release_writer()
        if self._own_store:
            self._store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    # reporting

    @property
    def info(self):
        """Report some diagnostic information about the array.

        Examples
        --------
        >>> import omstore
        >>> z = omstore.create_array(None, dimensions=[('time', 100), ('lat', 10)],
        ...                          chunks=(10, 10), dtype='f4')
        >>> z.info  # doctest: +ELLIPSIS
        Type               : omstore.core.Array
        Data type          : float32
        Shape              : (100, 10)
        Dimensions         : time, lat
        Chunk shape        : (10, 10)
        Layout             : temporal-major (0, 1)
        Compression        : xor2d (compressor='zlib', level=1)
        Fill value         : nan
        Store type         : omstore.storage.MemoryStore
        No. bytes          : 4000 (3.9K)
        No. bytes stored   : ...
        Chunks initialized : 0/10
        Finalized          : False
        <BLANKLINE>

        """
        return InfoReporter(self)

    def info_items(self):

        def typestr(o):
            return "{}.{}".format(type(o).__module__, type(o).__name__)

        def bytestr(n):
            if n > 2**10:
                return "{} ({})".format(n, human_readable_size(n))
            else:
                return str(n)

        params = ", ".join("%s=%r" % kv for kv in sorted(self.compression_params.items()))
        items = []
        if self.name:
            items += [("Name", self.name)]
        items += [
            ("Type", typestr(self)),
            ("Data type", "%s" % self.dtype),
            ("Shape", str(self.shape)),
            ("Dimensions", ", ".join(self.names)),
            ("Chunk shape", str(self.chunks)),
            ("Layout", "%s %s" % (self.layout, self.order)),
            ("Compression", "%s (%s)" % (self.compression, params)),
            ("Fill value", str(self.fill_value)),
            ("Store type", typestr(self._store)),
            ("No. bytes", bytestr(self.nbytes)),
            ("No. bytes stored", bytestr(self.nbytes_stored)),
            ("Chunks initialized", "{}/{}".format(self.nchunks_initialized, self.nchunks)),
            ("Finalized", str(self._finalized)),
        ]
        if self.attrs:
            items += [("Attributes", ", ".join(sorted(self.attrs)))]
        return items

    def tree(self):
        """A printable tree of the array's structure.

        Examples
        --------
        >>> import omstore
        >>> z = omstore.create_array(None, dimensions=[('time', 100), ('lat', 10)],
        ...                          chunks=(10, 10), dtype='i2', compression='none',
        ...                          attributes={'scale_factor': 20.0})
        >>> print(z.tree())
        / (100, 10) int16
         ├── dimensions
         │   ├── time: 100 (chunk 10)
         │   └── lat: 10 (chunk 10)
         ├── layout: temporal-major (0, 1)
         ├── compression: none
         │   ├── compressor: None
         │   └── level: None
         └── attributes
             └── scale_factor: 20.0

        """
        dims = [TreeNode("%s: %s (chunk %s)" % (d.name, d.extent, c))
                for d, c in zip(self.dimensions, self.chunks)]
        params = [TreeNode("%s: %r" % kv) for kv in sorted(self.compression_params.items())]
        children = [
            TreeNode("dimensions", dims),
            TreeNode("layout: %s %s" % (self.layout, self.order)),
            TreeNode("compression: %s" % self.compression, params),
        ]
        if self.attrs:
            children.append(TreeNode("attributes", [TreeNode("%s: %r" % kv)
                                                    for kv in sorted(self.attrs.items())]))
        root = TreeNode("%s %s %s" % (self.name or "/", self.shape, self.dtype), children)
        return TreeViewer(root)


def open_array(store, synchronizer=None):
    """Open a finalized array for reading.

    Parameters
    ----------
    store : Store, string, PathLike or bytes
        Where the array file lives.
    synchronizer : object, optional
        Kept on the returned array; finalized arrays need no locking.

    Returns
    -------
    z : omstore.core.Array

    Raises
    ------
    InvalidFormat
        If the header, metadata or chunk directory is malformed or does not
        match the file length.
    NotFinalized
        If the file is still being written (or its writer died).

    """
    own_store = not isinstance(store, Store)
    store = normalize_store_arg(store, mode="r")
    try:
        size = store.size()
        prelude = decode_prelude(store.read(0, PRELUDE_SIZE))
        if not prelude.sealed:
            raise NotFinalized()
        if size != prelude.expected_size:
            raise InvalidFormat("file has %s bytes, header declares %s"
                                % (size, prelude.expected_size))
        meta_bytes = store.read(prelude.meta_offset, prelude.meta_length)
        meta = ArrayMetadata.decode(meta_bytes)
        if meta.nchunks != prelude.nchunks:
            raise InvalidFormat("header declares %s chunks, metadata implies %s"
                                % (prelude.nchunks, meta.nchunks))
        if meta.encode() != meta_bytes:
            raise InvalidFormat("metadata is not in canonical form")
        directory = decode_directory(
            store.read(prelude.directory_offset, ENTRY_SIZE * prelude.nchunks),
            prelude.nchunks, prelude.data_length)
    except BaseException:
        if own_store:
            store.close()
        raise

    logger.debug("opened %s: shape=%s chunks=%s", store, meta.shape, meta.chunks)
    return Array(store, meta, directory, prelude.data_length, finalized=True,
                 synchronizer=synchronizer, own_store=own_store)


def create_array(store=None, shape=None, chunks=None, dtype="f4", dimensions=None,
                 compression=None, compression_params=None, order=None, layout=None,
                 fill_value=None, attributes=None, overwrite=False, synchronizer=None,
                 meta=None):
    """Create a new, writable array.

    Parameters
    ----------
    store : Store, string or PathLike, optional
        Where to write; an in-memory store is used when None.
    shape : int or tuple of ints, optional
        Array shape; may be omitted when `dimensions` carry extents.
    chunks : int or tuple of ints, optional
        Nominal chunk shape; defaults to one chunk holding everything.
    dtype : string or dtype, optional
        Fixed-width integer or float type.
    dimensions : sequence, optional
        ``(name, extent)`` pairs or names, in logical order.
    compression : string, optional
        Scheme identifier (see :mod:`omstore.codecs`); defaults by dtype.
    compression_params : dict, optional
        Scheme parameters.
    order : tuple of ints, optional
        Permutation vector (logical axis stored at each physical axis).
    layout : {'temporal-major', 'spatial-major'}, optional
        Named alternative to `order`.
    fill_value : object, optional
        Value of chunks never written; NaN for floats, 0 otherwise.
    attributes : dict, optional
        JSON-serializable user attributes.
    overwrite : bool, optional
        Replace an existing file.
    synchronizer : object, optional
        Per-chunk write locks, e.g. :class:`omstore.sync.ThreadSynchronizer`.
    meta : ArrayMetadata, optional
        Complete metadata, used instead of the other layout arguments.

    Returns
    -------
    z : omstore.core.Array

    """
    if meta is None:
        meta = ArrayMetadata.create(
            shape=shape, chunks=chunks, dtype=dtype, dimensions=dimensions,
            compression=compression, compression_params=compression_params,
            order=order, layout=layout, fill_value=fill_value, attributes=attributes)

    own_store = not isinstance(store, Store)
    try:
        store = normalize_store_arg(store, mode="w" if overwrite else "w-")
    except FileExistsError as e:
        raise ContainsArrayError(os.fspath(store)) from e
    try:
        store.acquire_writer()
        if store.size() and not overwrite:
            raise ContainsArrayError(store)
        store.truncate(0)

        meta_bytes = meta.encode()
        directory = new_directory(meta.nchunks)
        store.write(0, encode_prelude(len(meta_bytes), meta.nchunks)
                    + meta_bytes + encode_directory(directory))
    except BaseException:
        store.release_writer()
        if own_store:
            store.close()
        raise

    logger.debug("created %s: shape=%s chunks=%s order=%s compression=%s", store,
                 meta.shape, meta.chunks, meta.order, meta.compression)
    return Array(store, meta, directory, 0, finalized=False,
                 synchronizer=synchronizer, own_store=own_store)


def save_array(store, data, chunks=None, **kwargs):
    """Write a whole numpy array into a new, finalized array.

    Extra keyword arguments are passed to :func:`create_array`.

    Examples
    --------
    >>> import numpy as np
    >>> import omstore
    >>> z = omstore.save_array(None, np.arange(20, dtype='i4'), chunks=8)
    >>> z.cdata_shape
    (3,)

    """
    data = np.asarray(data)
    kwargs.setdefault("dtype", data.dtype)
    if kwargs.get("dimensions") is None:
        kwargs["shape"] = data.shape
    z = create_array(store, chunks=chunks, **kwargs)
    try:
        index = z.index
        map_chunks(lambda c: z.write_chunk(c, data[index.chunk_selection(c)]),
                   index.iter_chunks())
        z.finalize()
    except BaseException:
        z.close()
        raise
    return z

