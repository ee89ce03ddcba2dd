"""
Shared memory data model.

Entries are keyed by ``namespace:key``. Version lists and audit operations
carry epoch-millisecond timestamps.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Union

from meeting_coord.utils import generate_id, now_ms


def full_key(namespace: str, key: str) -> str:
    return f"{namespace}:{key}"


def split_full_key(value: str) -> tuple:
    """Split ``namespace:key`` at the first separator."""
    namespace, _, key = value.partition(":")
    return namespace, key


class MemoryOperationType(str, Enum):
    """Kinds of operations recorded in the audit log."""
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    QUERY = "query"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class MemoryValueType(str, Enum):
    """Coarse type of a stored value."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    NULL = "null"

    @classmethod
    def of(cls, value: Any) -> "MemoryValueType":
        if value is None:
            return cls.NULL
        # bool is an int subclass
        if isinstance(value, bool):
            return cls.BOOLEAN
        if isinstance(value, str):
            return cls.STRING
        if isinstance(value, (int, float)):
            return cls.NUMBER
        if isinstance(value, (list, tuple)):
            return cls.ARRAY
        return cls.OBJECT


class ConflictType(str, Enum):
    CONCURRENT_WRITE = "concurrent_write"
    STALE_READ = "stale_read"


@dataclass
class VersionRecord:
    """One historical value of an entry."""
    value: Any
    timestamp: float
    agent_id: str
    operation: MemoryOperationType = MemoryOperationType.WRITE
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "timestamp": self.timestamp,
            "agent_id": self.agent_id,
            "operation": self.operation.value,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionRecord":
        return cls(
            value=data.get("value"),
            timestamp=float(data["timestamp"]),
            agent_id=data.get("agent_id", "system"),
            operation=MemoryOperationType(data.get("operation", "write")),
            metadata=data.get("metadata", {}),
        )


@dataclass
class MemoryEntry:
    """
    A namespaced value with its version history.

    Versions are ordered newest first.
    """
    key: str
    namespace: str
    current_value: Any = None
    value_type: MemoryValueType = MemoryValueType.NULL
    versions: List[VersionRecord] = field(default_factory=list)
    created: float = field(default_factory=now_ms)
    last_updated: float = field(default_factory=now_ms)
    subscribers: List[str] = field(default_factory=list)

    @property
    def full_key(self) -> str:
        return full_key(self.namespace, self.key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "namespace": self.namespace,
            "current_value": self.current_value,
            "value_type": self.value_type.value,
            "versions": [v.to_dict() for v in self.versions],
            "created": self.created,
            "last_updated": self.last_updated,
            "subscribers": list(self.subscribers),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEntry":
        return cls(
            key=data["key"],
            namespace=data["namespace"],
            current_value=data.get("current_value"),
            value_type=MemoryValueType(data.get("value_type", "null")),
            versions=[VersionRecord.from_dict(v) for v in data.get("versions", [])],
            created=float(data.get("created", now_ms())),
            last_updated=float(data.get("last_updated", now_ms())),
            subscribers=list(data.get("subscribers", [])),
        )


@dataclass
class MemoryOperation:
    """Audit log record."""
    type: MemoryOperationType
    key: str
    namespace: str
    agent_id: str = "system"
    timestamp: float = field(default_factory=now_ms)
    value: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)

    @property
    def full_key(self) -> str:
        return full_key(self.namespace, self.key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "key": self.key,
            "namespace": self.namespace,
            "agent_id": self.agent_id,
            "timestamp": self.timestamp,
            "value": self.value,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryOperation":
        return cls(
            id=data.get("id") or generate_id(),
            type=MemoryOperationType(data["type"]),
            key=data["key"],
            namespace=data["namespace"],
            agent_id=data.get("agent_id", "system"),
            timestamp=float(data["timestamp"]),
            value=data.get("value"),
            metadata=data.get("metadata", {}),
        )


@dataclass
class MemoryUpdateNotification:
    """Delivered to subscribers after every write or delete."""
    operation: MemoryOperationType
    key: str
    namespace: str
    new_value: Any
    old_value: Any
    agent_id: str
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)


@dataclass
class MemoryQueryOptions:
    """Filters for SharedMemoryService.query()."""
    namespaces: Optional[List[str]] = None
    key_pattern: Optional[Union[str, Pattern]] = None
    value_type: Optional[MemoryValueType] = None
    from_timestamp: Optional[float] = None
    to_timestamp: Optional[float] = None
    include_history: bool = False
    sort: Optional[str] = None  # "asc" | "desc"
    limit: Optional[int] = None

    def compiled_pattern(self) -> Optional[Pattern]:
        if self.key_pattern is None:
            return None
        if isinstance(self.key_pattern, str):
            return re.compile(self.key_pattern)
        return self.key_pattern


@dataclass
class MemoryConflict:
    """Derived report of operations that may have interfered."""
    type: ConflictType
    key: str
    namespace: str
    operations: List[MemoryOperation]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "key": self.key,
            "namespace": self.namespace,
            "operations": [op.id for op in self.operations],
        }
