"""Error taxonomy for cup scoring."""


class CupError(Exception):
    """Base class for cup service errors."""


class CupValidationError(CupError):
    """
    Malformed or duplicate input.

    Raised before any write happens. ``errors`` holds one (index, reason)
    pair per offending record; index is None for non-record input.
    """

    def __init__(self, message: str, errors: list[tuple[int | None, str]] | None = None):
        super().__init__(message)
        self.errors = errors or []

    @property
    def indices(self) -> list[int]:
        return sorted({index for index, _ in self.errors if index is not None})


class NotFoundError(CupError):
    """A season or round that was explicitly asked for does not exist."""


class NotAccessibleError(CupError):
    """The data store could not be read (as opposed to returning nothing)."""


class StorageError(CupError):
    """A batch write failed."""

    def __init__(self, message: str, batch_index: int | None = None):
        super().__init__(message)
        self.batch_index = batch_index


class CriticalStorageError(StorageError):
    """Constraint, connection, timeout or permission failure; stop writing."""


class NonCriticalStorageError(StorageError):
    """Isolated batch failure; later batches may still succeed."""


class ConflictError(CupError):
    """A stored value changed underneath a correction."""

    def __init__(self, message: str, existing_value: int, attempted_value: int):
        super().__init__(message)
        self.existing_value = existing_value
        self.attempted_value = attempted_value
