"""
Tests for meeting_coord/memory/shared_memory.py

Tests cover:
- Read-after-write and version history
- Lock serialization of concurrent writes
- Atomic updates under contention
- Subscriptions and fan-out isolation
- Query, revert and conflict detection
- Snapshots and persistence
"""

import asyncio

import pytest

from meeting_coord.config import SharedMemoryConfig
from meeting_coord.errors import (
    AtomicUpdateError,
    MemoryWriteError,
    PersistenceError,
    NotFoundError,
    RevertError,
    ValidationError,
)
from meeting_coord.memory import (
    ConflictType,
    MemoryOperation,
    MemoryOperationType,
    MemoryQueryOptions,
    MemoryValueType,
    SharedMemoryService,
)
from meeting_coord.utils import now_ms


class TestReadWrite:
    """Test basic read and write."""

    @pytest.mark.asyncio
    async def test_read_after_write(self, memory):
        """Should read back the value just written."""
        await memory.write("agenda", ["intro", "budget"])
        assert await memory.read("agenda") == ["intro", "budget"]

    @pytest.mark.asyncio
    async def test_read_missing_returns_none(self, memory):
        """Should return None for unknown keys."""
        assert await memory.read("nothing") is None

    @pytest.mark.asyncio
    async def test_namespaces_are_separate(self, memory):
        """Should keep the same key apart in different namespaces."""
        await memory.write("topic", "a", namespace="ns1")
        await memory.write("topic", "b", namespace="ns2")
        assert await memory.read("topic", namespace="ns1") == "a"
        assert await memory.read("topic", namespace="ns2") == "b"
        assert await memory.read("topic") is None

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self, memory):
        """Should raise ValidationError for an empty key."""
        with pytest.raises(ValidationError):
            await memory.write("", 1)

    @pytest.mark.asyncio
    async def test_set_and_get_aliases(self, memory):
        """Should behave like write and read."""
        await memory.set("k", 42, agent_id="agent-a")
        assert await memory.get("k") == 42

    @pytest.mark.asyncio
    async def test_read_records_operation_only_for_existing_keys(self, memory):
        """Should audit reads of existing entries only."""
        await memory.read("missing")
        await memory.write("k", 1)
        await memory.read("k", agent_id="reader")

        reads = [op for op in memory.get_operations() if op.type == MemoryOperationType.READ]
        assert len(reads) == 1
        assert reads[0].agent_id == "reader"

    @pytest.mark.asyncio
    async def test_value_type_tracked(self, memory):
        """Should classify the stored value."""
        await memory.write("flag", True)
        await memory.write("count", 3)
        await memory.write("doc", {"a": 1})
        results = await memory.query(MemoryQueryOptions(value_type=MemoryValueType.BOOLEAN))
        assert results == {"flag": True}

    @pytest.mark.asyncio
    async def test_failure_inside_write_is_wrapped_and_releases_lock(self, memory, monkeypatch):
        """Should raise MemoryWriteError and leave the key unlocked."""
        def boom(operation):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(memory, "_record_operation", boom)
        with pytest.raises(MemoryWriteError) as exc_info:
            await memory.write("k", 1)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert not memory.locks.is_locked("default:k")


class TestHistory:
    """Test version history."""

    @pytest.mark.asyncio
    async def test_profile_example(self, memory):
        """Should keep both versions, newest first."""
        await memory.write("profile", {"name": "A"}, namespace="user:1")
        await memory.write("profile", {"name": "B"}, namespace="user:1")

        assert await memory.read("profile", namespace="user:1") == {"name": "B"}
        history = await memory.get_history("profile", namespace="user:1")
        assert [v.value for v in history] == [{"name": "B"}, {"name": "A"}]

    @pytest.mark.asyncio
    async def test_history_trimmed_to_max_length(self):
        """Should keep at most max_history_length versions."""
        memory = SharedMemoryService(SharedMemoryConfig(max_history_length=3))
        for i in range(5):
            await memory.write("k", i)

        history = await memory.get_history("k")
        assert [v.value for v in history] == [4, 3, 2]
        await memory.cleanup()

    @pytest.mark.asyncio
    async def test_history_limit(self, memory):
        """Should truncate to the requested limit."""
        for i in range(4):
            await memory.write("k", i)
        history = await memory.get_history("k", limit=2)
        assert [v.value for v in history] == [3, 2]

    @pytest.mark.asyncio
    async def test_operation_log_trimmed(self):
        """Should bound the operation log."""
        memory = SharedMemoryService(SharedMemoryConfig(max_history_length=2))
        for i in range(25):
            await memory.write("k", i)
        assert len(memory.get_operations()) <= 20
        assert memory.get_operations()[-1].value == 24
        await memory.cleanup()


class TestConcurrency:
    """Test lock serialization and atomic updates."""

    @pytest.mark.asyncio
    async def test_concurrent_writes_all_recorded(self, memory):
        """Should record one version per concurrent write."""
        async def hold():
            async with memory.locks.hold("default:shared"):
                await asyncio.sleep(0.03)

        holder = asyncio.create_task(hold())
        await asyncio.sleep(0)

        await asyncio.gather(*(
            memory.write("shared", i, agent_id=f"agent-{i}") for i in range(20)
        ))
        await holder

        history = await memory.get_history("shared")
        assert len(history) == 20
        assert sorted(v.value for v in history) == list(range(20))
        assert history[0].value == await memory.read("shared")

    @pytest.mark.asyncio
    async def test_atomic_update_counts_to_n(self, memory):
        """Should reach N after N increments."""
        await memory.write("counter", 0)
        for _ in range(10):
            await memory.atomic_update("counter", lambda v: v + 1)
        assert await memory.read("counter") == 10

    @pytest.mark.asyncio
    async def test_atomic_update_under_contention(self, memory):
        """Should not lose increments while the lock is contended."""
        await memory.write("counter", 0)

        async def hold():
            async with memory.locks.hold("default:counter"):
                await asyncio.sleep(0.05)

        holder = asyncio.create_task(hold())
        await asyncio.sleep(0)

        results = await asyncio.gather(*(
            memory.atomic_update("counter", lambda v: v + 1) for _ in range(10)
        ))
        await holder

        assert await memory.read("counter") == 10
        assert sorted(results) == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_atomic_update_async_function(self, memory):
        """Should await coroutine update functions."""
        async def append(value):
            await asyncio.sleep(0)
            return (value or []) + ["x"]

        await memory.atomic_update("items", append)
        await memory.atomic_update("items", append)
        assert await memory.read("items") == ["x", "x"]

    @pytest.mark.asyncio
    async def test_atomic_update_metadata(self, memory):
        """Should tag the version as an atomic update."""
        await memory.atomic_update("k", lambda v: 1, metadata={"reason": "init"})
        version = (await memory.get_history("k"))[0]
        assert version.metadata["atomic_update"] is True
        assert version.metadata["attempt"] == 1
        assert version.metadata["reason"] == "init"

    @pytest.mark.asyncio
    async def test_atomic_update_retries_then_fails(self, memory):
        """Should raise AtomicUpdateError after exhausting retries."""
        calls = []

        def always_fails(value):
            calls.append(value)
            raise ValueError("nope")

        with pytest.raises(AtomicUpdateError) as exc_info:
            await memory.atomic_update("k", always_fails, max_retries=3, retry_delay=1)

        assert len(calls) == 3
        assert exc_info.value.attempts == 3
        assert not memory.locks.is_locked("default:k")

    @pytest.mark.asyncio
    async def test_atomic_update_recovers_after_failure(self, memory):
        """Should succeed on a later attempt."""
        attempts = []

        def flaky(value):
            attempts.append(1)
            if len(attempts) < 2:
                raise RuntimeError("transient")
            return "ok"

        assert await memory.atomic_update("k", flaky, retry_delay=1) == "ok"
        assert (await memory.get_history("k"))[0].metadata["attempt"] == 2


class TestSubscriptions:
    """Test subscribe / unsubscribe fan-out."""

    @pytest.mark.asyncio
    async def test_callback_once_per_write(self, memory, recorder):
        """Should call the subscriber exactly once per write."""
        await memory.subscribe("topic", None, "agent-a", recorder)
        await memory.write("topic", "x", agent_id="agent-b")
        await memory.write("topic", "y", agent_id="agent-b")

        assert len(recorder.calls) == 2
        note = recorder.calls[-1]
        assert note.operation == MemoryOperationType.WRITE
        assert note.new_value == "y"
        assert note.old_value == "x"
        assert note.agent_id == "agent-b"

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_callbacks(self, memory, recorder):
        """Should not call the subscriber after unsubscribe."""
        await memory.subscribe("topic", None, "agent-a", recorder)
        await memory.unsubscribe("topic", None, "agent-a")
        await memory.write("topic", "x")
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_subscribe_creates_placeholder(self, memory, recorder):
        """Should create a NULL entry for an unknown key."""
        await memory.subscribe("later", None, "agent-a", recorder)
        stats = memory.get_stats()
        assert stats["total_entries"] == 1
        assert await memory.read("later") is None

    @pytest.mark.asyncio
    async def test_duplicate_subscription_registered_once(self, memory, recorder):
        """Should ignore the same callback registered twice."""
        await memory.subscribe("k", None, "agent-a", recorder)
        await memory.subscribe("k", None, "agent-a", recorder)
        await memory.write("k", 1)
        assert len(recorder.calls) == 1

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self, memory, recorder, failing_recorder):
        """Should keep notifying others when one subscriber raises."""
        await memory.subscribe("k", None, "bad", failing_recorder)
        await memory.subscribe("k", None, "good", recorder)

        await memory.write("k", 1)

        assert len(failing_recorder.calls) == 1
        assert len(recorder.calls) == 1
        assert await memory.read("k") == 1

    @pytest.mark.asyncio
    async def test_async_subscriber(self, memory):
        """Should run coroutine subscribers."""
        received = []

        async def on_update(note):
            received.append(note.new_value)

        await memory.subscribe("k", None, "agent-a", on_update)
        await memory.write("k", "v")
        await asyncio.sleep(0.01)
        assert received == ["v"]

    @pytest.mark.asyncio
    async def test_delete_notifies_and_keeps_subscription(self, memory, recorder):
        """Should notify with new_value None and survive the delete."""
        await memory.subscribe("k", None, "agent-a", recorder)
        await memory.write("k", 1)
        assert await memory.delete("k") is True

        delete_note = recorder.calls[-1]
        assert delete_note.operation == MemoryOperationType.DELETE
        assert delete_note.new_value is None
        assert delete_note.old_value == 1

        await memory.write("k", 2)
        assert recorder.calls[-1].new_value == 2

    @pytest.mark.asyncio
    async def test_delete_missing_key(self, memory):
        """Should return False when nothing was deleted."""
        assert await memory.delete("missing") is False

    @pytest.mark.asyncio
    async def test_service_wide_listener(self, memory, recorder):
        """Should see updates for every key."""
        memory.on_update(recorder)
        await memory.write("a", 1)
        await memory.write("b", 2, namespace="other")
        memory.off_update(recorder)
        await memory.write("c", 3)
        assert [n.key for n in recorder.calls] == ["a", "b"]


class TestQuery:
    """Test query and listing."""

    @pytest.mark.asyncio
    async def test_query_defaults_to_default_namespace(self, memory):
        """Should only scan the default namespace unless told otherwise."""
        await memory.write("a", 1)
        await memory.write("b", 2, namespace="other")
        assert await memory.query() == {"a": 1}
        assert await memory.query(MemoryQueryOptions(namespaces=["other"])) == {"b": 2}

    @pytest.mark.asyncio
    async def test_query_key_pattern(self, memory):
        """Should filter keys with a regex search."""
        await memory.write("topic:budget", 1)
        await memory.write("topic:hiring", 2)
        await memory.write("action:1", 3)
        results = await memory.query(MemoryQueryOptions(key_pattern=r"^topic:"))
        assert set(results) == {"topic:budget", "topic:hiring"}

    @pytest.mark.asyncio
    async def test_query_sort_and_limit(self, memory):
        """Should sort by last update and apply the limit."""
        for key in ("first", "second", "third"):
            await memory.write(key, key)
            await asyncio.sleep(0.005)

        newest = await memory.query(MemoryQueryOptions(sort="desc", limit=2))
        assert list(newest) == ["third", "second"]
        oldest = await memory.query(MemoryQueryOptions(sort="asc", limit=1))
        assert list(oldest) == ["first"]

    @pytest.mark.asyncio
    async def test_query_include_history(self, memory):
        """Should attach the writes for that key and namespace only."""
        await memory.write("k", 1)
        await memory.write("k", 2)
        await memory.write("k", 99, namespace="other")

        result = (await memory.query(MemoryQueryOptions(include_history=True)))["k"]
        assert result["value"] == 2
        assert [op.value for op in result["history"]] == [1, 2]
        assert result["metadata"]["namespace"] == "default"

    @pytest.mark.asyncio
    async def test_query_timestamp_range(self, memory):
        """Should filter on last update time."""
        await memory.write("old", 1)
        await asyncio.sleep(0.005)
        cutoff = now_ms()
        await asyncio.sleep(0.005)
        await memory.write("new", 2)
        assert await memory.query(MemoryQueryOptions(from_timestamp=cutoff)) == {"new": 2}
        assert await memory.query(MemoryQueryOptions(to_timestamp=cutoff)) == {"old": 1}

    @pytest.mark.asyncio
    async def test_query_recorded(self, memory):
        """Should record a QUERY operation."""
        await memory.query()
        assert memory.get_operations()[-1].type == MemoryOperationType.QUERY

    @pytest.mark.asyncio
    async def test_list_namespaces_and_keys(self, memory):
        """Should list namespaces and the keys inside one."""
        await memory.write("a1", 1)
        await memory.write("a2", 1)
        await memory.write("b", 1, namespace="other")
        assert memory.list_namespaces() == ["default", "other"]
        assert sorted(memory.list_keys()) == ["a1", "a2"]
        assert memory.list_keys(pattern="2$") == ["a2"]


class TestRevert:
    """Test revert_to."""

    @pytest.mark.asyncio
    async def test_revert_writes_old_value_as_new_version(self, memory):
        """Should restore an older value as a tagged new version."""
        await memory.write("k", "v1", agent_id="agent-a")
        checkpoint = now_ms()
        await asyncio.sleep(0.005)
        await memory.write("k", "v2", agent_id="agent-b")

        assert await memory.revert_to("k", checkpoint) == "v1"
        assert await memory.read("k") == "v1"

        history = await memory.get_history("k")
        assert len(history) == 3
        assert history[0].agent_id == "system"
        assert history[0].metadata["original_agent_id"] == "agent-a"
        assert history[0].metadata["reverted_from"] == history[2].timestamp

    @pytest.mark.asyncio
    async def test_revert_missing_key(self, memory):
        """Should raise RevertError for unknown keys."""
        with pytest.raises(RevertError):
            await memory.revert_to("missing", now_ms())

    @pytest.mark.asyncio
    async def test_revert_before_first_version(self, memory):
        """Should raise RevertError when no version is old enough."""
        await memory.write("k", 1)
        with pytest.raises(RevertError):
            await memory.revert_to("k", 0)


class TestConflicts:
    """Test conflict detection and resolution."""

    @staticmethod
    def _op(type_, agent, ts, key="k"):
        return MemoryOperation(type=type_, key=key, namespace="default", agent_id=agent, timestamp=ts)

    @pytest.mark.asyncio
    async def test_concurrent_writes_within_window(self, memory):
        """Should flag writes by different agents under 1000ms apart."""
        ops = [
            self._op(MemoryOperationType.WRITE, "a", 1000.0),
            self._op(MemoryOperationType.WRITE, "b", 1500.0),
        ]
        conflicts = await memory.detect_conflicts(ops)
        assert len(conflicts) == 1
        assert conflicts[0].type == ConflictType.CONCURRENT_WRITE
        assert conflicts[0].operations == ops

    @pytest.mark.asyncio
    async def test_writes_outside_window_not_flagged(self, memory):
        """Should not flag writes more than 1000ms apart."""
        ops = [
            self._op(MemoryOperationType.WRITE, "a", 1000.0),
            self._op(MemoryOperationType.WRITE, "b", 2500.0),
        ]
        assert await memory.detect_conflicts(ops) == []

    @pytest.mark.asyncio
    async def test_same_agent_not_flagged(self, memory):
        """Should not flag an agent racing itself."""
        ops = [
            self._op(MemoryOperationType.WRITE, "a", 1000.0),
            self._op(MemoryOperationType.WRITE, "a", 1001.0),
        ]
        assert await memory.detect_conflicts(ops) == []

    @pytest.mark.asyncio
    async def test_different_keys_not_flagged(self, memory):
        """Should only compare writes to the same key."""
        ops = [
            self._op(MemoryOperationType.WRITE, "a", 1000.0, key="x"),
            self._op(MemoryOperationType.WRITE, "b", 1001.0, key="y"),
        ]
        assert await memory.detect_conflicts(ops) == []

    @pytest.mark.asyncio
    async def test_stale_read(self, memory):
        """Should flag reads long after the last write."""
        ops = [
            self._op(MemoryOperationType.WRITE, "a", 0.0),
            self._op(MemoryOperationType.READ, "b", 10_000.0),
            self._op(MemoryOperationType.READ, "b", 40_000.0),
        ]
        conflicts = await memory.detect_conflicts(ops)
        assert [c.type for c in conflicts] == [ConflictType.STALE_READ]
        assert conflicts[0].operations[1].timestamp == 40_000.0

    @pytest.mark.asyncio
    async def test_stale_read_ignores_same_instant_write(self, memory):
        """Should measure staleness from the last write strictly before the read."""
        ops = [
            self._op(MemoryOperationType.WRITE, "a", 0.0),
            self._op(MemoryOperationType.WRITE, "a", 40_000.0),
            self._op(MemoryOperationType.READ, "b", 40_000.0),
        ]
        conflicts = await memory.detect_conflicts(ops)
        assert [c.type for c in conflicts] == [ConflictType.STALE_READ]
        assert conflicts[0].operations[0].timestamp == 0.0

    @pytest.mark.asyncio
    async def test_defaults_to_own_log(self, memory):
        """Should scan the service's operation log when given nothing."""
        await memory.write("k", 1, agent_id="a")
        await memory.write("k", 2, agent_id="b")
        conflicts = await memory.detect_conflicts()
        assert [c.type for c in conflicts] == [ConflictType.CONCURRENT_WRITE]

    @pytest.mark.asyncio
    async def test_resolve_conflict(self, memory):
        """Should write the resolution as the system agent."""
        await memory.write("k", 1, agent_id="a")
        await memory.write("k", 2, agent_id="b")
        conflict = (await memory.detect_conflicts())[0]

        await memory.resolve_conflict(conflict, 3)

        version = (await memory.get_history("k"))[0]
        assert version.value == 3
        assert version.agent_id == "system"
        assert version.metadata["conflict_resolution"] is True
        assert version.metadata["conflict_type"] == "concurrent_write"
        assert version.metadata["conflicting_operations"] == [op.id for op in conflict.operations]


class TestStats:
    """Test get_stats."""

    @pytest.mark.asyncio
    async def test_stats(self, memory):
        """Should count entries, versions and operations."""
        await memory.write("a", 1)
        await memory.write("a", 2)
        await memory.write("b", 1, namespace="other")

        stats = memory.get_stats()
        assert stats["total_entries"] == 2
        assert stats["entries_by_namespace"] == {"default": 1, "other": 1}
        assert stats["operations_by_type"]["write"] == 3
        assert stats["total_versions"] == 3
        assert stats["average_versions_per_key"] == 1.5
        assert stats["locks_held"] == 0


class TestSnapshots:
    """Test snapshot save/load and persistence."""

    @pytest.mark.asyncio
    async def test_save_and_load_snapshot(self, persistent_memory):
        """Should restore the saved state."""
        await persistent_memory.write("k", "before")
        snapshot_id = await persistent_memory.save_snapshot()
        await persistent_memory.write("k", "after")
        await persistent_memory.write("extra", 1)

        await persistent_memory.load_snapshot(snapshot_id)

        assert await persistent_memory.read("k") == "before"
        assert await persistent_memory.read("extra") is None
        assert snapshot_id in await persistent_memory.list_snapshots()

    @pytest.mark.asyncio
    async def test_load_unknown_snapshot(self, persistent_memory):
        """Should raise NotFoundError for unknown ids."""
        with pytest.raises(NotFoundError):
            await persistent_memory.load_snapshot("does-not-exist")

    @pytest.mark.asyncio
    async def test_load_empty_snapshot_id(self, persistent_memory):
        """Should raise ValidationError for an empty id."""
        with pytest.raises(ValidationError):
            await persistent_memory.load_snapshot("")

    @pytest.mark.asyncio
    async def test_snapshots_require_persistence(self, memory):
        """Should refuse snapshots when persistence is off."""
        with pytest.raises(PersistenceError):
            await memory.save_snapshot()
        with pytest.raises(PersistenceError):
            await memory.list_snapshots()

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, temp_dir):
        """Should reload persisted entries on initialize."""
        config = SharedMemoryConfig(persistence_enabled=True, snapshot_dir=str(temp_dir))
        first = SharedMemoryService(config)
        await first.initialize()
        await first.write("profile", {"name": "A"}, namespace="user:1")
        await first.cleanup()

        second = SharedMemoryService(config)
        await second.initialize()
        assert await second.read("profile", namespace="user:1") == {"name": "A"}
        assert len(await second.get_history("profile", namespace="user:1")) == 1
        await second.cleanup()

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_break_writes(self, persistent_memory, monkeypatch):
        """Should log and continue when saving state fails."""
        def broken(data):
            raise OSError("read-only filesystem")

        monkeypatch.setattr(persistent_memory._snapshots, "save_state", broken)
        await persistent_memory.write("k", 1)
        assert await persistent_memory.read("k") == 1
