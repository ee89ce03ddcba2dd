"""Small helpers shared by the services."""

import time
import uuid


def now_ms() -> float:
    """Current wall-clock time as epoch milliseconds."""
    return time.time() * 1000.0


def generate_id(prefix: str = "") -> str:
    """Generate a unique identifier, optionally prefixed (``msg-3f2a...``)."""
    uid = str(uuid.uuid4())
    return f"{prefix}-{uid}" if prefix else uid
