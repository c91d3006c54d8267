"""Core data types shared by the realtime modules."""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Kind of row change delivered by the change feed."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_EVENT_TYPES = frozenset(EventType)


class ConnectionState(str, Enum):
    """Lifecycle of the single physical connection.

    Attributes:
        DISCONNECTED: No transport open (initial, closed, or after an error).
        CONNECTING: Transport opening, waiting for the server confirmation.
        CONNECTED: Confirmation received; channels can be joined.
        RECONNECT_EXHAUSTED: Automatic retries spent; needs an explicit connect().
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"

    @property
    def public(self) -> str:
        """Collapse to the three states exposed to feature code."""
        if self is ConnectionState.RECONNECT_EXHAUSTED:
            return ConnectionState.DISCONNECTED.value
        return self.value


@dataclass(frozen=True)
class StateChange:
    """One ConnectionManager transition, passed to on_state_change callbacks."""
    previous: ConnectionState
    current: ConnectionState
    error: Optional[BaseException] = None
    # True when entering CONNECTED after an earlier CONNECTED (a recovery)
    recovered: bool = False


@dataclass
class ReconnectState:
    attempts: int = 0
    delay_ms: int = 0
    max_attempts: int = 5

    def reset(self) -> None:
        self.attempts = 0
        self.delay_ms = 0


class ChangeEvent(BaseModel):
    """One INSERT/UPDATE/DELETE notification, tagged with its channel key.

    The raw feed payload uses ``eventType``/``new``/``old``; the aliases keep
    that wire shape while the attributes stay snake_case.
    """
    model_config = ConfigDict(populate_by_name=True)

    event_type: EventType = Field(..., alias="eventType")
    table: str
    db_schema: str = Field(default="public", alias="schema")
    key: str = ""
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    received_at: float = Field(default_factory=time.time)
    # Denormalized fields added by the router (e.g. sender profile)
    enrichment: Dict[str, Any] = Field(default_factory=dict)

    @property
    def record(self) -> Dict[str, Any]:
        """The row the event is about: ``new`` for INSERT/UPDATE, ``old`` for DELETE."""
        if self.event_type is EventType.DELETE:
            return self.old or {}
        return self.new or {}

    @property
    def record_id(self) -> Optional[str]:
        value = self.record.get("id")
        if value is None and self.old:
            value = self.old.get("id")
        return str(value) if value is not None else None


class Signal(BaseModel):
    """Ephemeral broadcast (typing indicator) received on a typing channel."""
    key: str
    event: str = "typing"
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: float = Field(default_factory=time.time)


# =============================================================================
# HTTP status surface
# =============================================================================


class ReconnectStatus(BaseModel):
    attempts: int
    delay_ms: int
    max_attempts: int


class RealtimeStatus(BaseModel):
    """Response body of GET /realtime/status."""
    state: str
    indicator: str
    active_subscriptions: int
    reconnect: ReconnectStatus
