"""Exceptions raised inside the coordinator's storage and queue layers."""


class CoordinatorError(Exception):
    """Base class for coordinator errors."""


class PersistenceError(CoordinatorError):
    """A JSON document could not be written or validated on disk."""


class CorruptedFileError(PersistenceError):
    """A persisted JSON document exists but cannot be parsed or has the wrong shape."""
