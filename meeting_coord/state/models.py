"""
Meeting analysis state models.

Plain dataclasses with to_dict/from_dict so history entries and persisted
files can be rebuilt into live objects.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from meeting_coord.utils import generate_id, now_ms


class AnalysisStatus(str, Enum):
    """Lifecycle of one meeting analysis."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StateChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class Meeting:
    """Meeting as submitted for analysis."""
    meeting_id: str
    title: str = ""
    transcript: str = ""
    participants: List[Any] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meeting_id": self.meeting_id,
            "title": self.title,
            "transcript": self.transcript,
            "participants": list(self.participants),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Meeting":
        return cls(
            meeting_id=data["meeting_id"],
            title=data.get("title") or "",
            transcript=data.get("transcript") or "",
            participants=list(data.get("participants") or []),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class AnalysisProgress:
    meeting_id: str
    goals: List[Any] = field(default_factory=list)
    task_statuses: Dict[str, Any] = field(default_factory=dict)
    overall_progress: float = 0.0
    started: float = field(default_factory=now_ms)
    last_updated: float = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meeting_id": self.meeting_id,
            "goals": list(self.goals),
            "task_statuses": dict(self.task_statuses),
            "overall_progress": self.overall_progress,
            "started": self.started,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisProgress":
        return cls(**{f.name: data[f.name] for f in fields(cls) if f.name in data})


@dataclass
class AnalysisTeam:
    meeting_id: str
    id: str = field(default_factory=lambda: generate_id("team"))
    coordinator: str = ""
    specialists: List[str] = field(default_factory=list)
    created: float = field(default_factory=now_ms)
    updated: float = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "meeting_id": self.meeting_id,
            "coordinator": self.coordinator,
            "specialists": list(self.specialists),
            "created": self.created,
            "updated": self.updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisTeam":
        return cls(**{f.name: data[f.name] for f in fields(cls) if f.name in data})


@dataclass
class AnalysisResults:
    """Output of an analysis. ``summary`` holds at least a ``short`` text."""
    meeting_id: str
    summary: Dict[str, Any] = field(default_factory=lambda: {"short": ""})
    topics: List[Any] = field(default_factory=list)
    action_items: List[Any] = field(default_factory=list)
    decisions: List[Any] = field(default_factory=list)
    sentiment: Optional[Dict[str, Any]] = None
    insights: List[Any] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=lambda: {
        "processed_by": [],
        "confidence": 0,
        "version": "1.0",
        "generated_at": now_ms(),
    })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meeting_id": self.meeting_id,
            "summary": dict(self.summary),
            "topics": list(self.topics),
            "action_items": list(self.action_items),
            "decisions": list(self.decisions),
            "sentiment": self.sentiment,
            "insights": list(self.insights),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResults":
        return cls(**{f.name: data[f.name] for f in fields(cls) if f.name in data})


@dataclass
class MeetingState:
    """Full analysis state of one meeting."""
    meeting_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    transcript: Dict[str, Any] = field(default_factory=dict)
    segments: List[Any] = field(default_factory=list)
    goals: List[Any] = field(default_factory=list)
    tasks: Dict[str, Any] = field(default_factory=dict)
    progress: Optional[AnalysisProgress] = None
    team: Optional[AnalysisTeam] = None
    results: Optional[AnalysisResults] = None
    errors: List[Any] = field(default_factory=list)
    execution_id: str = field(default_factory=lambda: generate_id("exec"))
    start_time: float = field(default_factory=now_ms)
    end_time: Optional[float] = None
    status: AnalysisStatus = AnalysisStatus.PENDING

    def __post_init__(self):
        if self.progress is None:
            self.progress = AnalysisProgress(meeting_id=self.meeting_id)
        if isinstance(self.status, str):
            self.status = AnalysisStatus(self.status)

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meeting_id": self.meeting_id,
            "metadata": dict(self.metadata),
            "transcript": dict(self.transcript),
            "segments": list(self.segments),
            "goals": list(self.goals),
            "tasks": dict(self.tasks),
            "progress": self.progress.to_dict() if self.progress else None,
            "team": self.team.to_dict() if self.team else None,
            "results": self.results.to_dict() if self.results else None,
            "errors": list(self.errors),
            "execution_id": self.execution_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeetingState":
        values = {f.name: data[f.name] for f in fields(cls) if f.name in data}
        if values.get("progress") is not None:
            values["progress"] = AnalysisProgress.from_dict(values["progress"])
        if values.get("team") is not None:
            values["team"] = AnalysisTeam.from_dict(values["team"])
        if values.get("results") is not None:
            values["results"] = AnalysisResults.from_dict(values["results"])
        return cls(**values)


@dataclass
class StateChange:
    path: str
    previous_value: Any = None
    new_value: Any = None


@dataclass
class StateChangeNotification:
    """Emitted to change subscribers."""
    type: StateChangeType
    entity: str
    entity_id: str
    timestamp: float = field(default_factory=now_ms)
    changes: List[StateChange] = field(default_factory=list)
    agent_id: Optional[str] = None
    id: str = field(default_factory=generate_id)


@dataclass
class StateHistoryEntry:
    """Partial state recorded after a change. ``state`` is a plain dict."""
    timestamp: float
    state: Dict[str, Any]
    agent_id: Optional[str] = None
