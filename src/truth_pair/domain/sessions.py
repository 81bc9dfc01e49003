"""Domain models for linking sessions."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ConnectionMethod(str, Enum):
    """How the phone links the new device."""

    PAIRING = "pairing"
    QR = "qr"


class SessionStatus(str, Enum):
    """Lifecycle states of a linking session."""

    PENDING = "pending"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    TERMINATED = "terminated"


TERMINAL_STATUSES = frozenset(
    {SessionStatus.CONNECTED, SessionStatus.FAILED, SessionStatus.TERMINATED}
)

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.CONNECTING, SessionStatus.FAILED, SessionStatus.TERMINATED}
    ),
    SessionStatus.CONNECTING: frozenset(
        {SessionStatus.CONNECTED, SessionStatus.FAILED, SessionStatus.TERMINATED}
    ),
    SessionStatus.CONNECTED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.TERMINATED: frozenset(),
}

SESSION_ID_PREFIX = "truth_"


def is_terminal(status: SessionStatus) -> bool:
    """Return True when no further transition is possible."""
    return status in TERMINAL_STATUSES


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """Return True if the state machine allows moving to target."""
    if current == target:
        return not is_terminal(current)
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class SessionRecord:
    """Represents one in-memory linking attempt."""

    id: str
    connection_method: ConnectionMethod
    phone_number: str | None
    status: SessionStatus
    created_at: datetime
    last_activity_at: datetime
    pairing_code: str | None = None
    qr_code: str | None = None
    credentials_base64: str | None = None
    linked_at: datetime | None = None
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the record reached a final state."""
        return is_terminal(self.status)
