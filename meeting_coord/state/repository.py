"""
State Repository - per-meeting analysis state with history.

Holds the live MeetingState for each meeting, a newest-first history of
the partial states applied to it, and notifies change subscribers after
every mutation.

Usage:
    repo = StateRepositoryService()
    await repo.initialize()

    await repo.save_meeting(Meeting(meeting_id="m-1", title="Weekly sync"))
    await repo.update_progress("m-1", {"overall_progress": 50})

    repo.subscribe_to_changes(lambda n: print(n.type, n.entity))
"""

import copy
import hashlib
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from meeting_coord.config import StateRepositoryConfig
from meeting_coord.errors import (
    ConfigurationError,
    CoordinationError,
    NotFoundError,
    ValidationError,
)
from meeting_coord.logging_config import get_logger
from meeting_coord.memory.snapshots import SnapshotStore
from meeting_coord.observers import ListenerRegistry
from meeting_coord.state.models import (
    AnalysisProgress,
    AnalysisResults,
    AnalysisStatus,
    AnalysisTeam,
    Meeting,
    MeetingState,
    StateChange,
    StateChangeNotification,
    StateChangeType,
    StateHistoryEntry,
)
from meeting_coord.utils import now_ms

ChangeCallback = Callable[[StateChangeNotification], Any]

_NESTED_MODELS = {
    "progress": AnalysisProgress,
    "team": AnalysisTeam,
    "results": AnalysisResults,
}


def _serialize(value: Any) -> Any:
    """Turn models and enums into plain, independent data."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    return copy.deepcopy(value)


def _coerce(name: str, value: Any) -> Any:
    if name == "status" and value is not None:
        return AnalysisStatus(value)
    model = _NESTED_MODELS.get(name)
    if model is not None and isinstance(value, dict):
        return model.from_dict(value)
    return value


def _snapshot_id(meeting_id: str) -> str:
    """File-safe snapshot id. The real meeting id lives inside the JSON."""
    return "meeting-" + hashlib.sha1(meeting_id.encode("utf-8")).hexdigest()


def _parse_date(value: Any) -> Optional[float]:
    """Epoch ms from an ISO string, datetime or number."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp() * 1000.0
    raise ValidationError(f"Unsupported date value: {value!r}")


class StateRepositoryService:
    """In-memory store of meeting analysis state."""

    def __init__(
        self,
        config: Optional[StateRepositoryConfig] = None,
        logger: Optional[logging.Logger] = None,
        store: Optional[SnapshotStore] = None,
    ):
        self.config = config or StateRepositoryConfig()
        self._log = get_logger(logger or "meeting_coord.state")
        self.max_history_length = self.config.max_history_length
        self.persistence_enabled = self.config.persistence_enabled

        if store is None and self.persistence_enabled:
            if not self.config.state_dir:
                raise ConfigurationError("state_dir is required when persistence is enabled")
            store = SnapshotStore(self.config.state_dir)
        self._store = store

        self._states: Dict[str, MeetingState] = {}
        self._history: Dict[str, List[StateHistoryEntry]] = {}
        self._meetings: Dict[str, Meeting] = {}
        self._listeners = ListenerRegistry("state.change", self._log)

    async def initialize(self) -> None:
        self._log.info("Initializing state repository service")
        if self.persistence_enabled and self._store is not None:
            try:
                for meeting_id in self._store.list():
                    self._restore(self._store.load(meeting_id))
                self._log.info("Loaded persisted meeting states", count=len(self._states))
            except (CoordinationError, OSError, KeyError, ValueError, TypeError) as e:
                self._log.warning("Failed to load persisted states", error=str(e))
        self._log.info("State repository service initialized")

    async def cleanup(self) -> None:
        await self._listeners.drain()
        self._listeners.clear()
        self._states.clear()
        self._history.clear()
        self._meetings.clear()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require_state(self, meeting_id: str) -> MeetingState:
        state = self._states.get(meeting_id)
        if state is None:
            raise NotFoundError(
                f"State not found for meeting ID: {meeting_id}",
                resource="meeting_state",
                resource_id=meeting_id,
            )
        return state

    @staticmethod
    def _require_meeting_id(meeting_id: str) -> None:
        if not meeting_id:
            raise ValidationError("Invalid meeting ID")

    def _emit(self, notification: StateChangeNotification) -> None:
        self._listeners.notify(notification)

    def _add_history(self, meeting_id: str, partial: Dict[str, Any], agent_id: Optional[str] = None) -> None:
        history = self._history.setdefault(meeting_id, [])
        history.insert(0, StateHistoryEntry(
            timestamp=now_ms(),
            state={k: _serialize(v) for k, v in partial.items()},
            agent_id=agent_id,
        ))
        del history[self.max_history_length:]

    def _persist_state(self, meeting_id: str) -> None:
        if not self.persistence_enabled or self._store is None:
            return
        try:
            meeting = self._meetings.get(meeting_id)
            self._store.save(_snapshot_id(meeting_id), {
                "meeting": meeting.to_dict() if meeting else None,
                "state": self._states[meeting_id].to_dict(),
                "history": [
                    {"timestamp": e.timestamp, "state": e.state, "agent_id": e.agent_id}
                    for e in self._history.get(meeting_id, [])
                ],
            })
        except Exception as e:
            self._log.error("Failed to persist meeting state", meeting_id=meeting_id, error=str(e))

    def _unpersist_state(self, meeting_id: str) -> None:
        if not self.persistence_enabled or self._store is None:
            return
        try:
            self._store.delete(_snapshot_id(meeting_id))
        except Exception as e:
            self._log.error("Failed to remove persisted meeting state", meeting_id=meeting_id, error=str(e))

    def _restore(self, data: Dict[str, Any]) -> None:
        state = MeetingState.from_dict(data["state"])
        self._states[state.meeting_id] = state
        if data.get("meeting"):
            self._meetings[state.meeting_id] = Meeting.from_dict(data["meeting"])
        self._history[state.meeting_id] = [
            StateHistoryEntry(e["timestamp"], e["state"], e.get("agent_id"))
            for e in data.get("history", [])
        ]

    def _apply_fields(self, target: Any, updates: Dict[str, Any], prefix: str, skip: tuple) -> List[StateChange]:
        """Set fields on ``target``. Nothing changes if any field is rejected."""
        unknown = sorted(n for n in updates if n not in skip and not hasattr(target, n))
        if unknown:
            raise ValidationError(f"Unknown fields: {[prefix + n for n in unknown]}")
        try:
            coerced = {n: _coerce(n, v) for n, v in updates.items() if n not in skip}
        except (ValueError, TypeError, KeyError) as e:
            raise ValidationError(f"Invalid value for {prefix.rstrip('.') or 'state'}: {e}") from e

        changes = []
        for name, value in coerced.items():
            previous = getattr(target, name)
            setattr(target, name, value)
            changes.append(StateChange(f"{prefix}{name}", previous, value))
        return changes

    # -------------------------------------------------------------------------
    # Meetings
    # -------------------------------------------------------------------------

    async def save_meeting(self, meeting: Union[Meeting, Dict[str, Any]]) -> None:
        """Store a meeting and create its initial state the first time."""
        if isinstance(meeting, dict):
            if not meeting.get("meeting_id"):
                raise ValidationError("Invalid meeting data: meeting_id is required")
            meeting = Meeting.from_dict(meeting)
        if not meeting.meeting_id:
            raise ValidationError("Invalid meeting data: meeting_id is required")

        self._log.debug("Saving meeting", meeting_id=meeting.meeting_id)
        self._meetings[meeting.meeting_id] = meeting

        if meeting.meeting_id not in self._states:
            state = MeetingState(
                meeting_id=meeting.meeting_id,
                metadata={
                    "meeting_id": meeting.meeting_id,
                    "participants": list(meeting.participants),
                    "title": meeting.title,
                    **meeting.metadata,
                },
                transcript={
                    "meeting_id": meeting.meeting_id,
                    "segments": [],
                    "raw_text": meeting.transcript,
                },
            )
            self._states[meeting.meeting_id] = state
            self._add_history(meeting.meeting_id, state.to_dict())
            self._emit(StateChangeNotification(
                type=StateChangeType.CREATED,
                entity="state",
                entity_id=meeting.meeting_id,
            ))
        self._persist_state(meeting.meeting_id)

    async def get_meeting(self, meeting_id: str) -> Optional[Meeting]:
        return self._meetings.get(meeting_id)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    async def get_state(self, meeting_id: str) -> MeetingState:
        """Live state object for a meeting. Raises NotFoundError."""
        return self._require_state(meeting_id)

    async def update_state(
        self,
        meeting_id: str,
        updates: Dict[str, Any],
        agent_id: Optional[str] = None,
    ) -> None:
        """
        Apply field updates to a meeting's state.

        A missing state is created from ``updates`` only when
        ``updates["meeting_id"]`` names the same meeting. A pending state
        moves to in_progress on its first update unless a status is given.

        Raises:
            ValidationError: On a meeting id mismatch or an unknown field
        """
        unknown = set(updates) - set(MeetingState.field_names())
        if unknown:
            raise ValidationError(f"Unknown state fields: {sorted(unknown)}")

        state = self._states.get(meeting_id)
        if state is None:
            if updates.get("meeting_id") != meeting_id:
                raise ValidationError(
                    f"Meeting ID mismatch: {updates.get('meeting_id')} vs {meeting_id}"
                )
            values = {k: _coerce(k, v) for k, v in updates.items() if v is not None}
            values.setdefault("metadata", {"meeting_id": meeting_id, "participants": []})
            values.setdefault("transcript", {"meeting_id": meeting_id, "segments": []})
            state = MeetingState(**values)
            self._states[meeting_id] = state
            self._add_history(meeting_id, state.to_dict(), agent_id)
            self._emit(StateChangeNotification(
                type=StateChangeType.CREATED,
                entity="state",
                entity_id=meeting_id,
                agent_id=agent_id,
            ))
            self._persist_state(meeting_id)
            return

        changes = self._apply_fields(state, updates, "", skip=("meeting_id",))
        if "status" not in updates and state.status == AnalysisStatus.PENDING:
            state.status = AnalysisStatus.IN_PROGRESS
            changes.append(StateChange("status", AnalysisStatus.PENDING, AnalysisStatus.IN_PROGRESS))

        if agent_id is None and isinstance(updates.get("tasks"), dict):
            agent_id = next(
                (t.get("assigned_to") for t in updates["tasks"].values()
                 if isinstance(t, dict) and t.get("assigned_to")),
                None,
            )

        partial = {k: getattr(state, k) for k in updates if k != "meeting_id"}
        if "status" not in updates:
            partial["status"] = state.status
        self._add_history(meeting_id, partial, agent_id)
        self._emit(StateChangeNotification(
            type=StateChangeType.UPDATED,
            entity="state",
            entity_id=meeting_id,
            changes=changes,
            agent_id=agent_id,
        ))
        self._persist_state(meeting_id)
        self._log.debug(
            "Updated meeting state",
            meeting_id=meeting_id, agent_id=agent_id, fields=sorted(partial),
        )

    async def delete_state(self, meeting_id: str) -> bool:
        state = self._states.pop(meeting_id, None)
        if state is None:
            return False
        self._history.pop(meeting_id, None)
        self._meetings.pop(meeting_id, None)
        self._emit(StateChangeNotification(
            type=StateChangeType.DELETED,
            entity="state",
            entity_id=meeting_id,
        ))
        self._unpersist_state(meeting_id)
        self._log.info("Deleted meeting state", meeting_id=meeting_id)
        return True

    # -------------------------------------------------------------------------
    # Team / progress / results
    # -------------------------------------------------------------------------

    async def get_team(self, meeting_id: str) -> Optional[AnalysisTeam]:
        state = self._states.get(meeting_id)
        return state.team if state else None

    async def update_team(self, meeting_id: str, updates: Dict[str, Any]) -> None:
        state = self._require_state(meeting_id)
        now = now_ms()

        if state.team is None:
            team = AnalysisTeam(meeting_id=meeting_id, created=now, updated=now)
            if updates.get("id"):
                team.id = updates["id"]
            self._apply_fields(team, updates, "team.", skip=("id", "meeting_id", "created", "updated"))
            state.team = team
            self._emit(StateChangeNotification(
                type=StateChangeType.CREATED,
                entity="team",
                entity_id=team.id,
                timestamp=now,
            ))
        else:
            changes = self._apply_fields(state.team, updates, "team.", skip=("id", "meeting_id"))
            state.team.updated = now
            self._emit(StateChangeNotification(
                type=StateChangeType.UPDATED,
                entity="team",
                entity_id=state.team.id,
                changes=changes,
                timestamp=now,
            ))

        self._add_history(meeting_id, {"team": state.team})
        self._persist_state(meeting_id)

    async def get_progress(self, meeting_id: str) -> AnalysisProgress:
        return self._require_state(meeting_id).progress

    async def update_progress(self, meeting_id: str, updates: Dict[str, Any]) -> None:
        """Update progress fields. Reaching 100 completes the analysis."""
        state = self._require_state(meeting_id)
        now = now_ms()

        changes = self._apply_fields(state.progress, updates, "progress.", skip=("meeting_id",))
        state.progress.last_updated = now
        self._emit(StateChangeNotification(
            type=StateChangeType.UPDATED,
            entity="progress",
            entity_id=meeting_id,
            changes=changes,
            timestamp=now,
        ))
        partial: Dict[str, Any] = {"progress": state.progress}

        if state.progress.overall_progress >= 100 and state.status != AnalysisStatus.COMPLETED:
            previous = state.status
            state.status = AnalysisStatus.COMPLETED
            state.end_time = now
            partial.update(status=state.status, end_time=now)
            self._emit(StateChangeNotification(
                type=StateChangeType.UPDATED,
                entity="state",
                entity_id=meeting_id,
                changes=[
                    StateChange("status", previous, AnalysisStatus.COMPLETED),
                    StateChange("end_time", None, now),
                ],
                timestamp=now,
            ))
            self._log.info("Meeting analysis completed", meeting_id=meeting_id)

        self._add_history(meeting_id, partial)
        self._persist_state(meeting_id)

    async def get_results(self, meeting_id: str) -> Optional[AnalysisResults]:
        state = self._states.get(meeting_id)
        return state.results if state else None

    async def update_results(self, meeting_id: str, updates: Dict[str, Any]) -> None:
        state = self._require_state(meeting_id)
        now = now_ms()

        if state.results is None:
            results = AnalysisResults(meeting_id=meeting_id)
            self._apply_fields(results, updates, "results.", skip=("meeting_id",))
            state.results = results
            self._emit(StateChangeNotification(
                type=StateChangeType.CREATED,
                entity="results",
                entity_id=meeting_id,
                timestamp=now,
            ))
        else:
            changes = self._apply_fields(state.results, updates, "results.", skip=("meeting_id",))
            state.results.metadata["generated_at"] = now
            self._emit(StateChangeNotification(
                type=StateChangeType.UPDATED,
                entity="results",
                entity_id=meeting_id,
                changes=changes,
                timestamp=now,
            ))

        self._add_history(meeting_id, {"results": state.results})
        self._persist_state(meeting_id)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def get_state_history(self, meeting_id: str, limit: Optional[int] = None) -> List[StateHistoryEntry]:
        """History entries, newest first."""
        history = list(self._history.get(meeting_id, []))
        return history[:limit] if limit else history

    async def get_state_at_timestamp(self, meeting_id: str, timestamp: float) -> Optional[MeetingState]:
        """
        Rebuild the state as it was at ``timestamp``.

        Replays every recorded partial state at or before the timestamp,
        oldest first. Returns None if nothing was recorded by then.
        """
        entries = [
            e for e in reversed(self._history.get(meeting_id, []))
            if e.timestamp <= timestamp
        ]
        if not entries:
            return None

        data: Dict[str, Any] = {"meeting_id": meeting_id}
        for entry in entries:
            data.update(copy.deepcopy(entry.state))
        return MeetingState.from_dict(data)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe_to_changes(self, callback: ChangeCallback) -> None:
        self._log.debug("Adding state change subscription")
        self._listeners.add(callback)

    def unsubscribe_from_changes(self, callback: ChangeCallback) -> None:
        self._log.debug("Removing state change subscription")
        self._listeners.remove(callback)

    # -------------------------------------------------------------------------
    # Listing and analysis helpers
    # -------------------------------------------------------------------------

    async def list_meetings(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        status: Optional[Union[AnalysisStatus, str]] = None,
        from_date: Any = None,
        to_date: Any = None,
    ) -> List[Dict[str, Any]]:
        """
        Summaries of known meetings.

        Date bounds apply to ``metadata["date"]``. Meetings without a date
        pass the date filters; a stored date that does not parse fails them.
        """
        status = AnalysisStatus(status) if status else None
        from_ms = _parse_date(from_date)
        to_ms = _parse_date(to_date)

        meetings = []
        for state in self._states.values():
            if status is not None and state.status != status:
                continue
            date = state.metadata.get("date")
            if (from_ms is not None or to_ms is not None) and date not in (None, ""):
                try:
                    date_ms = _parse_date(date)
                except (ValueError, ValidationError):
                    # Free-form dates cannot satisfy a date bound
                    continue
                if from_ms is not None and date_ms < from_ms:
                    continue
                if to_ms is not None and date_ms > to_ms:
                    continue
            meetings.append({
                "meeting_id": state.meeting_id,
                "title": state.metadata.get("title"),
                "date": date,
                "status": state.status.value,
            })

        end = offset + limit if limit is not None else None
        return meetings[offset:end]

    async def save_analysis_result(self, meeting_id: str, result: Dict[str, Any]) -> None:
        """Store final results, status and end time in one update."""
        self._require_meeting_id(meeting_id)
        state = self._require_state(meeting_id)
        await self.update_state(meeting_id, {
            "results": result.get("results") or state.results,
            "status": result.get("status") or state.status,
            "end_time": result.get("end_time") or now_ms(),
        })

    async def save_analysis_progress(self, meeting_id: str, progress_data: Dict[str, Any]) -> None:
        """
        Store intermediate progress.

        ``progress_data`` may carry ``progress`` (0-100), ``status`` and
        ``partial_results`` merged into the current results.
        """
        self._require_meeting_id(meeting_id)
        state = self._require_state(meeting_id)

        progress = AnalysisProgress.from_dict(state.progress.to_dict())
        if progress_data.get("progress") is not None:
            progress.overall_progress = progress_data["progress"]
        progress.last_updated = now_ms()

        results = state.results
        partial = progress_data.get("partial_results")
        if partial:
            merged = results.to_dict() if results else AnalysisResults(meeting_id=meeting_id).to_dict()
            metadata = {**merged["metadata"], **partial.get("metadata", {}), "generated_at": now_ms()}
            merged.update({k: v for k, v in partial.items() if k != "metadata"})
            merged["metadata"] = metadata
            merged["meeting_id"] = meeting_id
            results = AnalysisResults.from_dict(merged)

        await self.update_state(meeting_id, {
            "progress": progress,
            "status": progress_data.get("status") or state.status,
            "results": results,
        })

    async def get_analysis_result(self, meeting_id: str) -> Dict[str, Any]:
        self._require_meeting_id(meeting_id)
        state = self._require_state(meeting_id)
        return {
            "meeting_id": meeting_id,
            "status": state.status.value,
            "results": state.results.to_dict() if state.results else None,
            "error": list(state.errors) or None,
            "progress": state.progress.overall_progress,
        }

    async def get_analysis_status(self, meeting_id: str) -> Dict[str, Any]:
        self._require_meeting_id(meeting_id)
        state = self._require_state(meeting_id)
        return {
            "meeting_id": meeting_id,
            "status": state.status.value,
            "progress": state.progress.overall_progress,
            "partial_results": state.results.to_dict() if state.results else {},
            "updated_at": state.progress.last_updated,
        }
