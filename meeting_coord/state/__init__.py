"""
Meeting analysis state.

StateRepositoryService keeps per-meeting state (transcript, team,
progress, results), its change history and change subscriptions.
"""

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
from meeting_coord.state.repository import StateRepositoryService

__all__ = [
    "AnalysisProgress",
    "AnalysisResults",
    "AnalysisStatus",
    "AnalysisTeam",
    "Meeting",
    "MeetingState",
    "StateChange",
    "StateChangeNotification",
    "StateChangeType",
    "StateHistoryEntry",
    "StateRepositoryService",
]
