"""Custom exception hierarchy."""
from typing import Any, Dict, Optional


class CoordinationError(Exception):
    """Base exception for all coordination-layer errors."""
    code: str = "SYS_001"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class TransientError(CoordinationError):
    """Errors that may resolve on retry (lock contention, timeouts)."""
    code = "SYS_010"

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after


class PermanentError(CoordinationError):
    """Errors that won't resolve on retry (validation, not found)."""
    code = "SYS_020"


class ValidationError(PermanentError):
    """Input validation failed."""
    code = "VAL_001"


class NotFoundError(PermanentError):
    """Resource not found."""
    code = "SYS_002"

    def __init__(self, message: str, resource: str = None, resource_id: str = None):
        super().__init__(message, {"resource": resource, "resource_id": resource_id})
        self.resource = resource
        self.resource_id = resource_id


class ConfigurationError(PermanentError):
    """Configuration error."""
    code = "CFG_001"


class PersistenceError(CoordinationError):
    """Snapshot or state persistence failed."""
    code = "PER_001"


# Shared memory

class SharedMemoryError(CoordinationError):
    """Base class for shared memory failures."""
    code = "MEM_001"


class LockAcquisitionError(SharedMemoryError, TransientError):
    """A key lock could not be acquired within the retry budget."""
    code = "MEM_002"

    def __init__(self, message: str, full_key: str = None, attempts: int = 0):
        TransientError.__init__(
            self, message, details={"full_key": full_key, "attempts": attempts}
        )
        self.full_key = full_key
        self.attempts = attempts


class MemoryWriteError(SharedMemoryError):
    """The critical section of a write failed."""
    code = "MEM_003"


class AtomicUpdateError(SharedMemoryError):
    """An atomic read-modify-write exhausted its retries."""
    code = "MEM_004"

    def __init__(self, message: str, key: str = None, attempts: int = 0):
        super().__init__(message, {"key": key, "attempts": attempts})
        self.key = key
        self.attempts = attempts


class RevertError(SharedMemoryError, PermanentError):
    """No version exists to revert to."""
    code = "MEM_005"
