"""
Error handling and exception classes.

All coordination-layer failures derive from CoordinationError. Errors that
are worth retrying (lock contention) derive from TransientError; validation
and lookup failures derive from PermanentError.

Example usage:
    from meeting_coord.errors import LockAcquisitionError, ValidationError
"""

from meeting_coord.errors.exceptions import (
    CoordinationError, TransientError, PermanentError,
    ValidationError, NotFoundError, ConfigurationError, PersistenceError,
    SharedMemoryError, LockAcquisitionError, MemoryWriteError,
    AtomicUpdateError, RevertError,
)

__all__ = [
    "CoordinationError", "TransientError", "PermanentError",
    "ValidationError", "NotFoundError", "ConfigurationError", "PersistenceError",
    "SharedMemoryError", "LockAcquisitionError", "MemoryWriteError",
    "AtomicUpdateError", "RevertError",
]
