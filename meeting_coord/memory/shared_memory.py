"""
Shared Memory Service - namespaced key/value store shared by agents.

Every value lives under ``namespace:key`` and keeps a newest-first version
history. Writes to one key are serialized through KeyLockManager; reads
never take the lock. Every operation is recorded in an in-memory audit log
which detect_conflicts() scans after the fact.

Subscribers register callbacks per key and agent. Each callback runs inside
its own error boundary, so one failing subscriber never blocks the others
or the write that triggered it.

Usage:
    memory = SharedMemoryService(SharedMemoryConfig())
    await memory.initialize()

    await memory.write("profile", {"name": "A"}, namespace="agents", agent_id="agent-a")
    value = await memory.read("profile", namespace="agents")

    await memory.atomic_update("counter", lambda v: (v or 0) + 1)
"""

import asyncio
import copy
import inspect
import logging
import random
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from meeting_coord.config import SharedMemoryConfig
from meeting_coord.errors import (
    AtomicUpdateError,
    ConfigurationError,
    MemoryWriteError,
    PersistenceError,
    RevertError,
    ValidationError,
)
from meeting_coord.logging_config import get_logger
from meeting_coord.memory.locks import KeyLockManager
from meeting_coord.memory.models import (
    MemoryConflict,
    ConflictType,
    MemoryEntry,
    MemoryOperation,
    MemoryOperationType,
    MemoryQueryOptions,
    MemoryUpdateNotification,
    MemoryValueType,
    VersionRecord,
    full_key,
)
from meeting_coord.memory.snapshots import SnapshotStore
from meeting_coord.observers import ListenerRegistry, invoke_isolated
from meeting_coord.utils import generate_id, now_ms

UpdateCallback = Callable[[MemoryUpdateNotification], Any]
UpdateFn = Callable[[Any], Union[Any, Awaitable[Any]]]


class SharedMemoryService:
    """In-process shared memory with versioning, locks and subscriptions."""

    def __init__(
        self,
        config: Optional[SharedMemoryConfig] = None,
        logger: Optional[logging.Logger] = None,
        snapshot_store: Optional[SnapshotStore] = None,
    ):
        self.config = config or SharedMemoryConfig()
        self._log = get_logger(logger or "meeting_coord.memory")

        self.default_namespace = self.config.default_namespace
        self.max_history_length = self.config.max_history_length
        self.persistence_enabled = self.config.persistence_enabled

        if snapshot_store is None and self.persistence_enabled:
            if not self.config.snapshot_dir:
                raise ConfigurationError(
                    "snapshot_dir is required when persistence is enabled"
                )
            snapshot_store = SnapshotStore(self.config.snapshot_dir)
        self._snapshots = snapshot_store

        self._memory: Dict[str, MemoryEntry] = {}
        self._operations: List[MemoryOperation] = []
        # full_key -> agent_id -> callbacks
        self._callbacks: Dict[str, Dict[str, List[UpdateCallback]]] = {}
        self._update_listeners = ListenerRegistry("memory.update", self._log)
        self._pending: Set[asyncio.Task] = set()

        self.locks = KeyLockManager(
            max_attempts=self.config.lock_max_attempts,
            initial_backoff_ms=self.config.lock_initial_backoff_ms,
            max_backoff_ms=self.config.lock_max_backoff_ms,
            jitter_ms=self.config.lock_jitter_ms,
            lock_timeout=self.config.lock_timeout_seconds,
            log=self._log,
        )
        self._initialized = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Load persisted state when persistence is enabled."""
        if self._initialized:
            return
        self._log.info("Initializing shared memory service")

        if self.persistence_enabled and self._snapshots is not None:
            try:
                state = self._snapshots.load_state()
                if state:
                    self._restore(state)
                    self._log.info("Restored shared memory from disk", entries=len(self._memory))
            except (PersistenceError, OSError, KeyError, ValueError, TypeError) as e:
                self._log.warning("Failed to load persisted memory state", error=str(e))

        self._initialized = True
        self._log.info("Shared memory service initialized")

    async def cleanup(self) -> None:
        """Drop all entries, operations, locks and subscriptions."""
        self._log.info("Cleaning up shared memory service")
        await self._update_listeners.drain()
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

        self.locks.clear()
        self._callbacks.clear()
        self._update_listeners.clear()
        self._memory.clear()
        self._operations.clear()
        self._initialized = False

    # =========================================================================
    # Helpers
    # =========================================================================

    def _namespace(self, namespace: Optional[str]) -> str:
        return namespace or self.default_namespace

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise ValidationError("Key is required")

    def _record_operation(self, operation: MemoryOperation) -> None:
        self._operations.append(operation)
        if len(self._operations) > self.max_history_length * 10:
            self._operations = self._operations[-self.max_history_length * 5:]

    def _apply_write(
        self,
        key: str,
        value: Any,
        namespace: str,
        agent_id: str,
        metadata: Dict[str, Any],
    ) -> None:
        """Critical section of a write. Caller must hold the key lock."""
        fk = full_key(namespace, key)
        timestamp = now_ms()
        value_type = MemoryValueType.of(value)
        version = VersionRecord(
            value=value,
            timestamp=timestamp,
            agent_id=agent_id,
            operation=MemoryOperationType.WRITE,
            metadata=dict(metadata),
        )

        entry = self._memory.get(fk)
        old_value = entry.current_value if entry else None
        if entry is None:
            entry = MemoryEntry(
                key=key,
                namespace=namespace,
                current_value=value,
                value_type=value_type,
                versions=[version],
                created=timestamp,
                last_updated=timestamp,
                # Subscriptions outlive deletes
                subscribers=list(self._callbacks.get(fk, {})),
            )
            self._memory[fk] = entry
        else:
            entry.current_value = value
            entry.value_type = value_type
            entry.last_updated = timestamp
            entry.versions.insert(0, version)
        del entry.versions[self.max_history_length:]

        self._record_operation(MemoryOperation(
            type=MemoryOperationType.WRITE,
            key=key,
            namespace=namespace,
            agent_id=agent_id,
            timestamp=timestamp,
            value=value,
            metadata=dict(metadata),
        ))

        self._handle_memory_update(MemoryUpdateNotification(
            operation=MemoryOperationType.WRITE,
            key=key,
            namespace=namespace,
            new_value=value,
            old_value=old_value,
            agent_id=agent_id,
            timestamp=timestamp,
            metadata=dict(metadata),
        ))
        self._persist_changes()

    def _handle_memory_update(self, notification: MemoryUpdateNotification) -> None:
        fk = full_key(notification.namespace, notification.key)
        for agent_id, callbacks in list(self._callbacks.get(fk, {}).items()):
            for callback in list(callbacks):
                invoke_isolated(
                    callback,
                    notification,
                    self._log,
                    context=f"subscriber {agent_id} on {fk}",
                    pending=self._pending,
                )
        self._update_listeners.notify(notification)

    def _persist_changes(self) -> None:
        if not self.persistence_enabled or self._snapshots is None:
            return
        try:
            self._snapshots.save_state(self._export_state())
        except Exception as e:
            self._log.error("Failed to persist shared memory", error=str(e))

    def _export_state(self) -> Dict[str, Any]:
        return {
            "created": now_ms(),
            "entries": [entry.to_dict() for entry in self._memory.values()],
            "operations": [op.to_dict() for op in self._operations],
        }

    def _restore(self, state: Dict[str, Any]) -> None:
        entries = [MemoryEntry.from_dict(e) for e in state.get("entries", [])]
        operations = [MemoryOperation.from_dict(o) for o in state.get("operations", [])]
        self._memory = {entry.full_key: entry for entry in entries}
        self._operations = operations
        for fk, by_agent in self._callbacks.items():
            entry = self._memory.get(fk)
            if entry is not None:
                for agent_id in by_agent:
                    if agent_id not in entry.subscribers:
                        entry.subscribers.append(agent_id)

    # =========================================================================
    # Read / write
    # =========================================================================

    async def read(
        self,
        key: str,
        namespace: Optional[str] = None,
        agent_id: str = "system",
    ) -> Any:
        """Return the current value, or None when the key does not exist."""
        namespace = self._namespace(namespace)
        entry = self._memory.get(full_key(namespace, key))
        if entry is None:
            return None

        self._record_operation(MemoryOperation(
            type=MemoryOperationType.READ,
            key=key,
            namespace=namespace,
            agent_id=agent_id,
        ))
        return entry.current_value

    async def write(
        self,
        key: str,
        value: Any,
        namespace: Optional[str] = None,
        agent_id: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Write a value under the key lock.

        Raises:
            ValidationError: If key is empty
            LockAcquisitionError: If the key stayed locked for every attempt
            MemoryWriteError: If the write itself failed
        """
        self._validate_key(key)
        namespace = self._namespace(namespace)
        fk = full_key(namespace, key)

        token = await self.locks.acquire(fk)
        try:
            self._apply_write(key, value, namespace, agent_id, metadata or {})
        except Exception as e:
            raise MemoryWriteError(
                f"Failed to write {fk}: {e}", {"full_key": fk}
            ) from e
        finally:
            self.locks.release(fk, token)

        self._log.debug("Wrote key", agent_id=agent_id, namespace=namespace, key=key)

    async def delete(
        self,
        key: str,
        namespace: Optional[str] = None,
        agent_id: str = "system",
    ) -> bool:
        """
        Delete an entry. Subscribers are notified with ``new_value=None``.

        Returns:
            False if there was nothing to delete
        """
        self._validate_key(key)
        namespace = self._namespace(namespace)
        fk = full_key(namespace, key)
        if fk not in self._memory:
            return False

        async with self.locks.hold(fk):
            entry = self._memory.pop(fk, None)
            if entry is None:
                return False

            timestamp = now_ms()
            self._record_operation(MemoryOperation(
                type=MemoryOperationType.DELETE,
                key=key,
                namespace=namespace,
                agent_id=agent_id,
                timestamp=timestamp,
            ))
            self._handle_memory_update(MemoryUpdateNotification(
                operation=MemoryOperationType.DELETE,
                key=key,
                namespace=namespace,
                new_value=None,
                old_value=entry.current_value,
                agent_id=agent_id,
                timestamp=timestamp,
            ))
            self._persist_changes()

        self._log.debug("Deleted key", agent_id=agent_id, namespace=namespace, key=key)
        return True

    async def get(self, key: str, namespace: Optional[str] = None, agent_id: str = "system") -> Any:
        return await self.read(key, namespace, agent_id)

    async def set(
        self,
        key: str,
        value: Any,
        namespace: Optional[str] = None,
        agent_id: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.write(key, value, namespace, agent_id, metadata)

    # =========================================================================
    # Query
    # =========================================================================

    async def query(self, options: Optional[MemoryQueryOptions] = None) -> Dict[str, Any]:
        """
        Scan entries and return the matches keyed by key.

        With ``include_history`` each match is a dict holding the value, the
        WRITE operations for that key and some entry metadata.
        """
        options = options or MemoryQueryOptions()
        namespaces = options.namespaces or [self.default_namespace]
        pattern = options.compiled_pattern()

        matches: List[MemoryEntry] = []
        for entry in self._memory.values():
            if entry.namespace not in namespaces:
                continue
            if pattern is not None and not pattern.search(entry.key):
                continue
            if options.value_type is not None and entry.value_type != options.value_type:
                continue
            if options.from_timestamp is not None and entry.last_updated < options.from_timestamp:
                continue
            if options.to_timestamp is not None and entry.last_updated > options.to_timestamp:
                continue
            matches.append(entry)

        if options.sort in ("asc", "desc"):
            matches.sort(key=lambda e: e.last_updated, reverse=options.sort == "desc")
        if options.limit is not None:
            matches = matches[:options.limit]

        results: Dict[str, Any] = {}
        for entry in matches:
            if options.include_history:
                results[entry.key] = {
                    "value": entry.current_value,
                    "history": [
                        op for op in self._operations
                        if op.type == MemoryOperationType.WRITE
                        and op.namespace == entry.namespace
                        and op.key == entry.key
                    ],
                    "metadata": {
                        "created": entry.created,
                        "last_updated": entry.last_updated,
                        "namespace": entry.namespace,
                    },
                }
            else:
                results[entry.key] = entry.current_value

        self._record_operation(MemoryOperation(
            type=MemoryOperationType.QUERY,
            key=pattern.pattern if pattern is not None else "*",
            namespace=",".join(namespaces),
            metadata={"matches": len(results)},
        ))
        return results

    def list_namespaces(self) -> List[str]:
        return sorted({entry.namespace for entry in self._memory.values()})

    def list_keys(
        self,
        namespace: Optional[str] = None,
        pattern: Optional[Union[str, "re.Pattern"]] = None,
    ) -> List[str]:
        namespace = self._namespace(namespace)
        if isinstance(pattern, str):
            pattern = re.compile(pattern)
        return [
            entry.key for entry in self._memory.values()
            if entry.namespace == namespace
            and (pattern is None or pattern.search(entry.key))
        ]

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(
        self,
        key: str,
        namespace: Optional[str],
        agent_id: str,
        callback: UpdateCallback,
    ) -> None:
        """
        Register ``callback`` for updates to one key.

        A placeholder entry is created when the key does not exist yet.
        """
        self._validate_key(key)
        namespace = self._namespace(namespace)
        fk = full_key(namespace, key)

        entry = self._memory.get(fk)
        if entry is None:
            entry = MemoryEntry(key=key, namespace=namespace)
            self._memory[fk] = entry
        if agent_id not in entry.subscribers:
            entry.subscribers.append(agent_id)

        callbacks = self._callbacks.setdefault(fk, {}).setdefault(agent_id, [])
        if callback not in callbacks:
            callbacks.append(callback)

        self._record_operation(MemoryOperation(
            type=MemoryOperationType.SUBSCRIBE,
            key=key,
            namespace=namespace,
            agent_id=agent_id,
        ))
        self._log.debug("Subscribed to key", agent_id=agent_id, namespace=namespace, key=key)

    async def unsubscribe(
        self,
        key: str,
        namespace: Optional[str],
        agent_id: str,
    ) -> None:
        """Remove every callback ``agent_id`` registered for the key."""
        namespace = self._namespace(namespace)
        fk = full_key(namespace, key)

        by_agent = self._callbacks.get(fk)
        if by_agent is not None:
            by_agent.pop(agent_id, None)
            if not by_agent:
                del self._callbacks[fk]

        entry = self._memory.get(fk)
        if entry is not None and agent_id in entry.subscribers:
            entry.subscribers.remove(agent_id)

        self._record_operation(MemoryOperation(
            type=MemoryOperationType.UNSUBSCRIBE,
            key=key,
            namespace=namespace,
            agent_id=agent_id,
        ))
        self._log.debug("Unsubscribed from key", agent_id=agent_id, namespace=namespace, key=key)

    def on_update(self, callback: UpdateCallback) -> None:
        """Listen to every update across all keys."""
        self._update_listeners.add(callback)

    def off_update(self, callback: UpdateCallback) -> None:
        self._update_listeners.remove(callback)

    # =========================================================================
    # History
    # =========================================================================

    async def get_history(
        self,
        key: str,
        namespace: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[VersionRecord]:
        """Versions of a key, newest first."""
        entry = self._memory.get(full_key(self._namespace(namespace), key))
        if entry is None:
            return []
        versions = list(entry.versions)
        return versions[:limit] if limit is not None else versions

    async def revert_to(
        self,
        key: str,
        timestamp: float,
        namespace: Optional[str] = None,
    ) -> Any:
        """
        Re-write the newest version at or before ``timestamp``.

        The revert is a new version, tagged with the timestamp and agent of
        the version it restores.

        Raises:
            RevertError: If the key or a matching version does not exist
        """
        namespace = self._namespace(namespace)
        fk = full_key(namespace, key)
        entry = self._memory.get(fk)
        if entry is None:
            raise RevertError(f"Key {fk} not found", {"full_key": fk})

        target = next((v for v in entry.versions if v.timestamp <= timestamp), None)
        if target is None:
            raise RevertError(
                f"No version of {fk} at or before {timestamp}",
                {"full_key": fk, "timestamp": timestamp},
            )

        value = copy.deepcopy(target.value)
        await self.write(key, value, namespace, "system", {
            "reverted_from": target.timestamp,
            "original_agent_id": target.agent_id,
        })
        self._log.info(
            "Reverted key", namespace=namespace, key=key,
            reverted_from=target.timestamp, original_agent_id=target.agent_id,
        )
        return value

    # =========================================================================
    # Atomic update
    # =========================================================================

    async def atomic_update(
        self,
        key: str,
        update_fn: UpdateFn,
        namespace: Optional[str] = None,
        agent_id: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> Any:
        """
        Read, transform and write a key while holding its lock.

        ``update_fn`` receives the current value (None for a missing key)
        and may be a plain function or a coroutine function. The whole cycle
        is retried with exponential backoff on any failure.

        Args:
            retry_delay: Base backoff in milliseconds

        Returns:
            The value that was written

        Raises:
            AtomicUpdateError: If every attempt failed
        """
        self._validate_key(key)
        namespace = self._namespace(namespace)
        fk = full_key(namespace, key)
        max_retries = max_retries if max_retries is not None else self.config.atomic_max_retries
        delay = retry_delay if retry_delay is not None else self.config.atomic_retry_delay_ms

        last_error: Optional[Exception] = None
        for attempt in range(max_retries):
            try:
                token = await self.locks.acquire(fk)
                try:
                    entry = self._memory.get(fk)
                    new_value = update_fn(entry.current_value if entry else None)
                    if inspect.isawaitable(new_value):
                        new_value = await new_value
                    self._apply_write(key, new_value, namespace, agent_id, {
                        **(metadata or {}),
                        "atomic_update": True,
                        "attempt": attempt + 1,
                    })
                finally:
                    self.locks.release(fk, token)
                if attempt:
                    self._log.info(
                        "Atomic update succeeded after retries",
                        agent_id=agent_id, namespace=namespace, key=key, attempt=attempt + 1,
                    )
                return new_value
            except Exception as e:
                last_error = e
                self._log.warning(
                    "Atomic update attempt failed",
                    agent_id=agent_id, namespace=namespace, key=key,
                    attempt=attempt + 1, max_retries=max_retries, error=str(e),
                )
                if attempt + 1 < max_retries:
                    wait_ms = min(
                        random.random() * delay + delay * (2 ** attempt),
                        self.config.atomic_max_retry_delay_ms,
                    )
                    await asyncio.sleep(wait_ms / 1000.0)

        raise AtomicUpdateError(
            f"Atomic update of {fk} failed after {max_retries} attempts: {last_error}",
            key=fk,
            attempts=max_retries,
        ) from last_error

    # =========================================================================
    # Conflicts
    # =========================================================================

    async def detect_conflicts(
        self,
        operations: Optional[List[MemoryOperation]] = None,
    ) -> List[MemoryConflict]:
        """
        Report concurrent writes and stale reads.

        Advisory only: nothing is blocked or rolled back.
        """
        if operations is None:
            operations = self._operations
        window = self.config.concurrent_write_window_ms
        stale_after = self.config.stale_read_threshold_ms

        by_key: Dict[str, List[MemoryOperation]] = {}
        for op in operations:
            if op.type in (MemoryOperationType.WRITE, MemoryOperationType.READ):
                by_key.setdefault(op.full_key, []).append(op)

        conflicts: List[MemoryConflict] = []
        for key_ops in by_key.values():
            key_ops = sorted(key_ops, key=lambda o: o.timestamp)

            writes = [op for op in key_ops if op.type == MemoryOperationType.WRITE]
            for previous, current in zip(writes, writes[1:]):
                if (
                    previous.agent_id != current.agent_id
                    and current.timestamp - previous.timestamp < window
                ):
                    conflicts.append(MemoryConflict(
                        type=ConflictType.CONCURRENT_WRITE,
                        key=current.key,
                        namespace=current.namespace,
                        operations=[previous, current],
                    ))

            for op in key_ops:
                if op.type != MemoryOperationType.READ:
                    continue
                # Only writes strictly before the read count
                prior = [w for w in writes if w.timestamp < op.timestamp]
                if not prior:
                    continue
                last_write = prior[-1]
                if op.timestamp - last_write.timestamp > stale_after:
                    conflicts.append(MemoryConflict(
                        type=ConflictType.STALE_READ,
                        key=op.key,
                        namespace=op.namespace,
                        operations=[last_write, op],
                    ))

        if conflicts:
            self._log.info(
                "Detected memory conflicts",
                count=len(conflicts),
                keys=sorted({full_key(c.namespace, c.key) for c in conflicts}),
            )
        return conflicts

    async def resolve_conflict(self, conflict: MemoryConflict, resolution: Any) -> None:
        """Write ``resolution`` as the system agent, tagged with the conflict."""
        await self.write(conflict.key, resolution, conflict.namespace, "system", {
            "conflict_resolution": True,
            "conflict_type": conflict.type.value,
            "conflicting_operations": [op.id for op in conflict.operations],
        })

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        entries_by_namespace: Dict[str, int] = {}
        total_versions = 0
        for entry in self._memory.values():
            entries_by_namespace[entry.namespace] = entries_by_namespace.get(entry.namespace, 0) + 1
            total_versions += len(entry.versions)

        operations_by_type = {t.value: 0 for t in MemoryOperationType}
        for op in self._operations:
            operations_by_type[op.type.value] += 1

        total_entries = len(self._memory)
        return {
            "total_entries": total_entries,
            "entries_by_namespace": entries_by_namespace,
            "operations_by_type": operations_by_type,
            "total_operations": len(self._operations),
            "total_versions": total_versions,
            "average_versions_per_key": total_versions / total_entries if total_entries else 0.0,
            "locks_held": self.locks.held_count(),
            "subscribed_keys": len(self._callbacks),
        }

    def get_operations(self, limit: Optional[int] = None) -> List[MemoryOperation]:
        """Audit log, oldest first. ``limit`` keeps the newest entries."""
        if limit is None:
            return list(self._operations)
        return self._operations[-limit:] if limit > 0 else []

    # =========================================================================
    # Snapshots
    # =========================================================================

    def _require_snapshots(self) -> SnapshotStore:
        if not self.persistence_enabled or self._snapshots is None:
            raise PersistenceError("Persistence is not enabled")
        return self._snapshots

    async def save_snapshot(self) -> str:
        """Write the full memory state to a new snapshot. Returns its id."""
        store = self._require_snapshots()
        snapshot_id = generate_id("snap")
        state = self._export_state()
        state["snapshot_id"] = snapshot_id
        store.save(snapshot_id, state)
        return snapshot_id

    async def load_snapshot(self, snapshot_id: str) -> None:
        """
        Replace the in-memory state with a saved snapshot.

        Raises:
            PersistenceError: If persistence is disabled or the file is corrupt
            ValidationError: If snapshot_id is empty
            NotFoundError: If no such snapshot exists
        """
        store = self._require_snapshots()
        if not snapshot_id:
            raise ValidationError("Snapshot id is required")
        state = store.load(snapshot_id)
        try:
            self._restore(state)
        except (KeyError, ValueError, TypeError) as e:
            raise PersistenceError(f"Snapshot {snapshot_id} is malformed: {e}") from e
        self._log.info("Loaded snapshot", snapshot_id=snapshot_id, entries=len(self._memory))

    async def list_snapshots(self) -> List[str]:
        return self._require_snapshots().list()
