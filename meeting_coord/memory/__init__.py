"""
Shared memory for agent coordination.

Namespaced key/value store with version history, per-key locks, atomic
read-modify-write, subscriptions, conflict detection and snapshots.
"""

from meeting_coord.memory.locks import KeyLockManager
from meeting_coord.memory.models import (
    ConflictType,
    MemoryConflict,
    MemoryEntry,
    MemoryOperation,
    MemoryOperationType,
    MemoryQueryOptions,
    MemoryUpdateNotification,
    MemoryValueType,
    VersionRecord,
    full_key,
)
from meeting_coord.memory.shared_memory import SharedMemoryService
from meeting_coord.memory.snapshots import SnapshotStore

__all__ = [
    "ConflictType",
    "KeyLockManager",
    "MemoryConflict",
    "MemoryEntry",
    "MemoryOperation",
    "MemoryOperationType",
    "MemoryQueryOptions",
    "MemoryUpdateNotification",
    "MemoryValueType",
    "SharedMemoryService",
    "SnapshotStore",
    "VersionRecord",
    "full_key",
]
