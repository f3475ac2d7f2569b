from __future__ import annotations

import collections
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from omstore.codecs import Scheme, default_scheme, get_scheme
from omstore.errors import InvalidFormat
from omstore.indexing import ChunkIndex, chunk_count, layout_order
from omstore.util import (
    decode_fill_value,
    encode_fill_value,
    json_dumps,
    json_loads,
    normalize_chunks,
    normalize_dtype,
    normalize_fill_value,
    normalize_order,
    normalize_shape,
)

FORMAT_VERSION = 1


Dimension = collections.namedtuple('Dimension', ('name', 'extent'))
"""One logical axis of an array; its position in the logical ordering is its
position in :attr:`ArrayMetadata.dimensions`."""


def normalize_dimensions(dimensions=None, shape=None):
    """Build Dimension tuples from names/extents, plain extents or both.

    `dimensions` may hold :class:`Dimension` objects, ``(name, extent)`` pairs
    or bare names (then `shape` supplies the extents). Unnamed axes are
    called ``dim_0``, ``dim_1``...
    """
    if dimensions is None:
        shape = normalize_shape(shape)
        return tuple(Dimension('dim_%s' % i, s) for i, s in enumerate(shape))

    dims = []
    for i, d in enumerate(dimensions):
        if isinstance(d, str):
            if shape is None:
                raise TypeError('shape is required when dimensions are given by name')
            d = (d, normalize_shape(shape)[i])
        name, extent = d
        dims.append(Dimension(str(name), int(extent)))
    dims = tuple(dims)

    if shape is not None and normalize_shape(shape) != tuple(d.extent for d in dims):
        raise ValueError('shape %r disagrees with dimensions %r' % (shape, dims))
    normalize_shape([d.extent for d in dims])
    names = [d.name for d in dims]
    if len(set(names)) != len(names):
        raise ValueError('dimension names must be unique, found: %r' % (names,))
    return dims


@dataclass(frozen=True)
class ArrayMetadata:
    """Everything needed to interpret the chunks of one array.

    Instances are immutable; use :meth:`create` to build normalized metadata
    from loose arguments.
    """

    dimensions: Tuple[Dimension, ...]
    chunks: Tuple[int, ...]
    dtype: np.dtype
    compression: str
    compression_params: Mapping[str, Any]
    order: Tuple[int, ...]
    fill_value: Any
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, shape=None, chunks=None, dtype='f4', dimensions=None,
               compression=None, compression_params=None, order=None,
               layout=None, fill_value=None, attributes=None) -> 'ArrayMetadata':
        dimensions = normalize_dimensions(dimensions, shape)
        shape = tuple(d.extent for d in dimensions)
        chunks = normalize_chunks(chunks, shape)
        dtype = normalize_dtype(dtype)

        if order is not None and layout is not None:
            raise ValueError('order and layout are mutually exclusive')
        if layout is not None:
            order = layout_order([d.name for d in dimensions], layout)
        order = normalize_order(order, len(shape))

        if isinstance(compression, Scheme):
            scheme = compression
        else:
            if compression is None:
                compression = default_scheme(dtype)
            scheme = get_scheme(compression, compression_params)
        scheme.check_dtype(dtype)

        return cls(
            dimensions=dimensions,
            chunks=chunks,
            dtype=dtype,
            compression=scheme.scheme_id,
            compression_params=scheme.get_config(),
            order=order,
            fill_value=normalize_fill_value(fill_value, dtype),
            attributes=dict(attributes or {}),
        )

    def evolve(self, **kwargs) -> 'ArrayMetadata':
        """A copy with some fields replaced, re-normalized."""
        values = dict(
            dimensions=self.dimensions,
            chunks=self.chunks,
            dtype=self.dtype,
            compression=self.compression,
            compression_params=self.compression_params,
            order=self.order,
            fill_value=self.fill_value,
            attributes=self.attributes,
        )
        if 'layout' in kwargs:
            values.pop('order')
        if 'compression' in kwargs and 'compression_params' not in kwargs:
            values.pop('compression_params')
        values.update(kwargs)
        return ArrayMetadata.create(**values)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(d.extent for d in self.dimensions)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self.dimensions)

    @property
    def ndim(self) -> int:
        return len(self.dimensions)

    @property
    def size(self) -> int:
        """Total number of elements."""
        return int(np.prod(self.shape, dtype=np.int64))

    @property
    def physical_shape(self) -> Tuple[int, ...]:
        return tuple(self.shape[i] for i in self.order)

    @property
    def physical_chunks(self) -> Tuple[int, ...]:
        return tuple(self.chunks[i] for i in self.order)

    @property
    def cdata_shape(self) -> Tuple[int, ...]:
        return chunk_count(self.shape, self.chunks)

    @property
    def nchunks(self) -> int:
        return int(np.prod(self.cdata_shape, dtype=np.int64))

    def get_index(self) -> ChunkIndex:
        return ChunkIndex(self.shape, self.chunks, self.order, self.names)

    def get_scheme(self) -> Scheme:
        return get_scheme(self.compression, self.compression_params)

    def to_dict(self) -> Dict[str, Any]:
        return dict(
            omstore_format=FORMAT_VERSION,
            dimensions=[dict(name=d.name, extent=d.extent) for d in self.dimensions],
            chunks=list(self.chunks),
            dtype=self.dtype.str,
            compression=dict(id=self.compression, **self.compression_params),
            order=list(self.order),
            fill_value=encode_fill_value(self.fill_value, self.dtype),
            attributes=dict(self.attributes),
        )

    def encode(self) -> bytes:
        return json_dumps(self.to_dict())

    @classmethod
    def from_dict(cls, meta: Mapping[str, Any]) -> 'ArrayMetadata':
        version = meta.get('omstore_format', None)
        if version != FORMAT_VERSION:
            raise InvalidFormat('unsupported metadata version: %r' % (version,))
        try:
            dtype = normalize_dtype(meta['dtype'])
            compression = dict(meta['compression'])
            scheme_id = compression.pop('id')
            return cls.create(
                dimensions=[(d['name'], d['extent']) for d in meta['dimensions']],
                chunks=meta['chunks'],
                dtype=dtype,
                compression=scheme_id,
                compression_params=compression,
                order=meta['order'],
                fill_value=decode_fill_value(meta['fill_value'], dtype),
                attributes=meta.get('attributes', {}),
            )
        except Exception as e:
            raise InvalidFormat('error decoding metadata: %s' % e) from e

    @classmethod
    def decode(cls, s) -> 'ArrayMetadata':
        try:
            meta = json_loads(s)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidFormat('metadata is not valid JSON: %s' % e) from e
        if not isinstance(meta, dict):
            raise InvalidFormat('metadata must be a JSON object')
        return cls.from_dict(meta)

    def __eq__(self, other):
        if not isinstance(other, ArrayMetadata):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self):
        return hash(self.encode())


def check_compatible(source: ArrayMetadata, target: ArrayMetadata) -> Optional[str]:
    """Reason why `target` cannot hold the same logical data as `source`, or
    None when the two describe the same dataset."""
    if source.ndim != target.ndim:
        return 'source has %s dimensions, target has %s' % (source.ndim, target.ndim)
    if source.shape != target.shape:
        return 'source shape %r differs from target shape %r' % (source.shape, target.shape)
    if source.names != target.names:
        return ('source dimensions %r differ from target dimensions %r'
                % (source.names, target.names))
    return None


__all__ = [
    'ArrayMetadata',
    'Dimension',
    'FORMAT_VERSION',
    'check_compatible',
    'normalize_dimensions',
]
