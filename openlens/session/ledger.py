"""
OpenLens Session Ledger - Append-only record of one task execution.

The ledger owns the current Session: the data entries that entered the
model context, the audit events describing every action, and the derived
aggregates (token totals, context usage, processing location).
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from openlens.session.sensitivity import classify_sensitivity

IDLE = "idle"
MIXED = "mixed"


class EventType(str, Enum):
    """Audit event type tags."""

    TASK_STARTED = "task_started"
    TASK_STEP = "task_step"
    TASK_COMPLETED = "task_completed"
    TASK_ERROR = "task_error"
    PERMISSION_REQUESTED = "permission_requested"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_DENIED = "permission_denied"
    TOOL_CALL = "tool_call"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_RESULT = "tool_call_result"
    LLM_PROMPT = "llm_prompt"
    MCP_DISCOVERED = "mcp_discovered"
    CROSS_ORIGIN_WARNING = "cross_origin_warning"


def estimate_tokens(text: str) -> int:
    """Estimate tokens (4 chars per token)."""
    return math.ceil(len(text) / 4)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class DataEntry:
    """One unit of content that entered the model's working context."""

    id: str
    origin: str
    origin_type: str  # page_content, site_mcp, user_mcp, local
    data_type: str
    token_count: int
    sensitivity: str
    entry_method: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "origin": self.origin,
            "origin_type": self.origin_type,
            "data_type": self.data_type,
            "token_count": self.token_count,
            "sensitivity": self.sensitivity,
            "entry_method": self.entry_method,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataEntry":
        return cls(
            id=data["id"],
            origin=data["origin"],
            origin_type=data["origin_type"],
            data_type=data["data_type"],
            token_count=data["token_count"],
            sensitivity=data["sensitivity"],
            entry_method=data["entry_method"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass(frozen=True)
class AuditEvent:
    """One observable action in the session."""

    id: str
    type: EventType
    origin: str
    detail: Dict[str, Any]
    processing_location: str
    timestamp: datetime
    user_action: Optional[str] = None  # approved, denied, auto, skipped
    tokens: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "origin": self.origin,
            "detail": self.detail,
            "processing_location": self.processing_location,
            "timestamp": self.timestamp.isoformat(),
            "user_action": self.user_action,
            "tokens": self.tokens,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            id=data["id"],
            type=EventType(data["type"]),
            origin=data["origin"],
            detail=data.get("detail") or {},
            processing_location=data["processing_location"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            user_action=data.get("user_action"),
            tokens=data.get("tokens"),
        )


@dataclass
class Session:
    """
    One user task execution.

    Replaced wholesale on reset; the ledger never clears it field by field.
    """

    session_id: str = field(default_factory=lambda: _new_id("sess"))
    created_at: datetime = field(default_factory=_now)
    total_tokens: int = 0
    context_used: int = 0
    context_limit: int = 8192
    processing_location: str = IDLE
    data_entries: List[DataEntry] = field(default_factory=list)
    audit_events: List[AuditEvent] = field(default_factory=list)

    @property
    def context_ratio(self) -> float:
        """Share of the context window in use, for capacity display."""
        if self.context_limit <= 0:
            return 0.0
        return self.context_used / self.context_limit

    def to_dict(self) -> Dict[str, Any]:
        """Convert session to a dictionary for serialization."""
        return {
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "total_tokens": self.total_tokens,
            "context_used": self.context_used,
            "context_limit": self.context_limit,
            "processing_location": self.processing_location,
            "data_entries": [e.to_dict() for e in self.data_entries],
            "audit_events": [e.to_dict() for e in self.audit_events],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        """Create a Session from a dictionary."""
        return cls(
            session_id=data["session_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            total_tokens=data.get("total_tokens", 0),
            context_used=data.get("context_used", 0),
            context_limit=data.get("context_limit", 8192),
            processing_location=data.get("processing_location", IDLE),
            data_entries=[DataEntry.from_dict(e) for e in data.get("data_entries", [])],
            audit_events=[AuditEvent.from_dict(e) for e in data.get("audit_events", [])],
        )


class SessionLedger:
    """
    Single writer for the current Session.

    Entries and events are appended in call order and never edited; the only
    way to discard them is ``reset()``, which swaps in a fresh Session.

    Example:
        >>> ledger = SessionLedger(context_limit=8192)
        >>> ledger.add_audit_event(EventType.TASK_STARTED, "openlens", {"intent": "..."})
        >>> ledger.add_data_entry("a.example", "page_content", "read_page", "...", "tool_call")
    """

    def __init__(self, context_limit: int = 8192, session: Optional[Session] = None):
        self.context_limit = context_limit
        self._session = session or Session(context_limit=context_limit)
        self._locations_seen: set = set()

    @property
    def session(self) -> Session:
        return self._session

    def reset(self) -> Session:
        """Start a new session: new id, empty logs, zeroed totals."""
        self._session = Session(context_limit=self.context_limit)
        self._locations_seen = set()
        return self._session

    # ── Appends ───────────────────────────────────────────────────────────

    def add_data_entry(
        self,
        origin: str,
        origin_type: str,
        data_type: str,
        content: str,
        entry_method: str,
    ) -> DataEntry:
        """
        Record content entering the context.

        Token count and sensitivity are derived from ``content`` here, once.
        """
        entry = DataEntry(
            id=_new_id("de"),
            origin=origin,
            origin_type=origin_type,
            data_type=data_type,
            token_count=estimate_tokens(content),
            sensitivity=classify_sensitivity(content),
            entry_method=entry_method,
            timestamp=_now(),
        )
        self._session.data_entries.append(entry)
        self._session.total_tokens += entry.token_count
        self._session.context_used += entry.token_count
        return entry

    def add_audit_event(
        self,
        event_type: EventType,
        origin: str,
        detail: Optional[Dict[str, Any]] = None,
        processing_location: Optional[str] = None,
        user_action: Optional[str] = None,
        tokens: Optional[int] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=_new_id("ae"),
            type=event_type,
            origin=origin,
            detail=dict(detail or {}),
            processing_location=processing_location or self._session.processing_location,
            timestamp=_now(),
            user_action=user_action,
            tokens=tokens,
        )
        self._session.audit_events.append(event)
        return event

    def add_context_tokens(self, tokens: int) -> None:
        """Account for prompt/reply tokens that are not tied to a data entry."""
        self._session.context_used += tokens

    # ── Processing location ───────────────────────────────────────────────

    def record_processing(self, location: str) -> str:
        """Note that a backend at ``location`` answered; returns the session classification."""
        self._locations_seen.add(location)
        self._session.processing_location = MIXED if len(self._locations_seen) > 1 else location
        return self._session.processing_location

    def go_idle(self) -> None:
        self._session.processing_location = IDLE

    # ── Queries ───────────────────────────────────────────────────────────

    def events(self, event_type: Optional[EventType] = None) -> List[AuditEvent]:
        if event_type is None:
            return list(self._session.audit_events)
        return [e for e in self._session.audit_events if e.type == event_type]

    def entries(self) -> List[DataEntry]:
        return list(self._session.data_entries)
