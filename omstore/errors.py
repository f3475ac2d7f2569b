class OmStoreError(Exception):
    pass


class _BaseOmStoreError(OmStoreError, ValueError):
    _msg = ""

    def __init__(self, *args):
        super().__init__(self._msg.format(*args))


class InvalidFormat(_BaseOmStoreError):
    _msg = "invalid array file: {0}"


class CorruptChunk(_BaseOmStoreError):
    _msg = "corrupt chunk data ({0}): {1}"

    def __init__(self, where, reason):
        super().__init__(where, reason)
        self.where = where
        self.reason = reason


class LayoutMismatch(_BaseOmStoreError):
    _msg = "cannot rechunk between layouts: {0}"


class ContainsArrayError(_BaseOmStoreError):
    _msg = "store {0!r} already contains data"


class WriterLocked(_BaseOmStoreError):
    _msg = "another process is writing {0!r}"


class NotFinalized(OmStoreError):
    def __init__(self):
        super().__init__("array has not been finalized")


class OutOfBounds(OmStoreError, IndexError):
    _msg = "index {0} out of bounds for dimension {1!r} with length {2}"

    def __init__(self, *args):
        super().__init__(self._msg.format(*args))


class ReadOnlyError(OmStoreError, PermissionError):
    def __init__(self):
        super().__init__("array is read-only")


def err_wrong_ndim(selection, shape):
    raise IndexError(
        f"wrong number of indices for array; expected {len(shape)}, got {len(selection)}"
    )
