import json
import math
import numbers
import time
from textwrap import TextWrapper

import numpy as np
from asciitree import BoxStyle, LeftAligned
from asciitree.traversal import Traversal
from numcodecs.compat import ensure_text

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union


def json_dumps(o: Any) -> bytes:
    """Write JSON in a consistent, human-readable way."""
    return json.dumps(o, indent=4, sort_keys=True, ensure_ascii=True,
                      separators=(',', ': ')).encode('ascii')


def json_loads(s: Union[bytes, str]) -> Dict[str, Any]:
    """Read JSON in a consistent way."""
    return json.loads(ensure_text(s, 'ascii'))


def ceildiv(a: int, b: int) -> int:
    return -(-a // b)


def normalize_shape(shape) -> Tuple[int, ...]:
    """Convenience function to normalize the `shape` argument."""

    if shape is None:
        raise TypeError('shape is None')

    # handle 1D convenience form
    if isinstance(shape, numbers.Integral):
        shape = (int(shape),)

    # normalize
    shape = tuple(int(s) for s in shape)
    if any(s <= 0 for s in shape):
        raise ValueError('dimension extents must be positive, found: %r' % (shape,))
    return shape


def normalize_chunks(chunks: Any, shape: Tuple[int, ...]) -> Tuple[int, ...]:
    """Convenience function to normalize the `chunks` argument for an array
    with the given `shape`."""

    # N.B., expect shape already normalized

    # handle no chunking
    if chunks is None or chunks is False:
        return shape

    # handle 1D convenience form
    if isinstance(chunks, numbers.Integral):
        chunks = tuple(int(chunks) for _ in shape)

    chunks = tuple(chunks)

    # handle bad dimensionality
    if len(chunks) != len(shape):
        raise ValueError('chunks must have one entry per dimension; expected %s, got %s'
                         % (len(shape), len(chunks)))

    # handle None or -1 in chunks
    chunks = tuple(s if c == -1 or c is None else int(c)
                   for s, c in zip(shape, chunks))

    for s, c in zip(shape, chunks):
        if c <= 0:
            raise ValueError('chunk extents must be positive, found: %r' % (chunks,))
        if c > s:
            raise ValueError('chunk extent %s exceeds dimension extent %s' % (c, s))

    return chunks


def normalize_order(order: Optional[Sequence[int]], ndim: int) -> Tuple[int, ...]:
    """Normalize a permutation vector; ``None`` means identity."""
    if order is None:
        return tuple(range(ndim))
    order = tuple(int(i) for i in order)
    if sorted(order) != list(range(ndim)):
        raise ValueError('order must be a permutation of range(%s), found: %r'
                         % (ndim, order))
    return order


def normalize_dtype(dtype) -> np.dtype:
    """Normalize to a little-endian, fixed-width numeric dtype."""
    dtype = np.dtype(dtype)
    if dtype.kind not in 'iuf' or dtype.itemsize not in (1, 2, 4, 8):
        raise ValueError('only fixed-width integer and float dtypes are supported, '
                         'found: %r' % dtype)
    return dtype.newbyteorder('<')


def normalize_fill_value(fill_value, dtype: np.dtype):

    if fill_value is None:
        # NaN for floats, zero otherwise
        if dtype.kind == 'f':
            return np.array(np.nan, dtype=dtype)[()]
        return np.zeros((), dtype=dtype)[()]

    try:
        fill_value = np.array(fill_value, dtype=dtype)[()]
    except Exception as e:
        # re-raise with our own error message to be helpful
        raise ValueError('fill_value {!r} is not valid for dtype {}; nested '
                         'exception: {}'.format(fill_value, dtype, e))

    return fill_value


def encode_fill_value(v: Any, dtype: np.dtype) -> Any:
    if dtype.kind == 'f':
        if np.isnan(v):
            return 'NaN'
        elif np.isposinf(v):
            return 'Infinity'
        elif np.isneginf(v):
            return '-Infinity'
        return float(v)
    return int(v)


def decode_fill_value(v: Any, dtype: np.dtype) -> Any:
    if dtype.kind == 'f':
        if v == 'NaN':
            return np.array(np.nan, dtype=dtype)[()]
        elif v == 'Infinity':
            return np.array(np.inf, dtype=dtype)[()]
        elif v == '-Infinity':
            return np.array(-np.inf, dtype=dtype)[()]
    return np.array(v, dtype=dtype)[()]


def human_readable_size(size) -> str:
    if size < 2**10:
        return '%s' % size
    elif size < 2**20:
        return '%.1fK' % (size / float(2**10))
    elif size < 2**30:
        return '%.1fM' % (size / float(2**20))
    elif size < 2**40:
        return '%.1fG' % (size / float(2**30))
    elif size < 2**50:
        return '%.1fT' % (size / float(2**40))
    else:
        return '%.1fP' % (size / float(2**50))


def lcm(a: int, b: int) -> int:
    return a * b // math.gcd(a, b)


def info_text_report(items) -> str:
    keys = [k for k, v in items]
    max_key_len = max(len(k) for k in keys)
    report = ''
    for k, v in items:
        wrapper = TextWrapper(width=80,
                              initial_indent=k.ljust(max_key_len) + ' : ',
                              subsequent_indent=' '*max_key_len + ' : ')
        text = wrapper.fill(str(v))
        report += text + '\n'
    return report


class InfoReporter(object):

    def __init__(self, obj):
        self.obj = obj

    def __repr__(self):
        items = self.obj.info_items()
        return info_text_report(items)


class TreeNode(object):
    """A labelled node; `children` are other TreeNodes."""

    def __init__(self, text: str, children: Optional[List['TreeNode']] = None):
        self.text = text
        self.children = children or []

    def get_children(self):
        return self.children

    def get_text(self):
        return self.text


class TreeTraversal(Traversal):

    def get_children(self, node):
        return node.get_children()

    def get_root(self, tree):
        return tree

    def get_text(self, node):
        return node.get_text()


class TreeViewer(object):

    def __init__(self, root: TreeNode):

        self.root = root

        self.text_kwargs = dict(
            horiz_len=2,
            label_space=1,
            indent=1
        )

        self.bytes_kwargs = dict(
            UP_AND_RIGHT="+",
            HORIZONTAL="-",
            VERTICAL="|",
            VERTICAL_AND_RIGHT="+"
        )

        self.unicode_kwargs = dict(
            UP_AND_RIGHT="└",
            HORIZONTAL="─",
            VERTICAL="│",
            VERTICAL_AND_RIGHT="├"
        )

    def __bytes__(self):
        drawer = LeftAligned(
            traverse=TreeTraversal(),
            draw=BoxStyle(gfx=self.bytes_kwargs, **self.text_kwargs)
        )
        return drawer(self.root).encode()

    def __str__(self):
        drawer = LeftAligned(
            traverse=TreeTraversal(),
            draw=BoxStyle(gfx=self.unicode_kwargs, **self.text_kwargs)
        )
        return drawer(self.root)

    def __repr__(self):
        return self.__str__()


class NoLock(object):
    """A lock that doesn't lock."""

    def __enter__(self):
        pass

    def __exit__(self, *args):
        pass


nolock = NoLock()


def retry_call(callabl: Callable,
               args=None,
               kwargs=None,
               exceptions: Tuple[Any, ...] = (),
               retries: int = 10,
               wait: float = 0.1) -> Any:
    """
    Make several attempts to invoke the callable. If one of the given exceptions
    is raised, wait the given period of time and retry up to the given number of
    retries.
    """

    if args is None:
        args = ()
    if kwargs is None:
        kwargs = {}

    for attempt in range(1, retries+1):
        try:
            return callabl(*args, **kwargs)
        except exceptions:
            if attempt < retries:
                time.sleep(wait)
            else:
                raise
