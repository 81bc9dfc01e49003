"""Normalized events emitted by the WhatsApp link adapter."""

from dataclasses import dataclass
from enum import Enum

from truth_pair.domain.sessions import SessionStatus


class EventKind(str, Enum):
    """Kinds of normalized link events."""

    STATUS = "status"
    PAIRING_CODE = "pairing_code"
    QR = "qr"


@dataclass(frozen=True)
class LinkEvent:
    """A tagged event produced from the external client's callbacks.

    Credentials are folded into a ``status`` event with ``connected`` status.
    """

    kind: EventKind
    session_id: str
    status: SessionStatus | None = None
    pairing_code: str | None = None
    qr_code: str | None = None
    credentials: bytes | None = None
    reason: str | None = None

    @classmethod
    def status_change(
        cls,
        session_id: str,
        status: SessionStatus,
        reason: str | None = None,
        credentials: bytes | None = None,
    ) -> "LinkEvent":
        return cls(
            kind=EventKind.STATUS,
            session_id=session_id,
            status=status,
            reason=reason,
            credentials=credentials,
        )

    @classmethod
    def pairing(cls, session_id: str, code: str) -> "LinkEvent":
        return cls(kind=EventKind.PAIRING_CODE, session_id=session_id, pairing_code=code)

    @classmethod
    def qr(cls, session_id: str, qr_code: str) -> "LinkEvent":
        return cls(kind=EventKind.QR, session_id=session_id, qr_code=qr_code)
