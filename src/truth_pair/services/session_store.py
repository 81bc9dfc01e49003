"""In-memory session store."""

import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from truth_pair.domain.errors import (
    InternalFaultError,
    InvalidRequestError,
    SessionNotFoundError,
)
from truth_pair.domain.sessions import (
    SESSION_ID_PREFIX,
    ConnectionMethod,
    SessionRecord,
    SessionStatus,
    can_transition,
)

Clock = Callable[[], datetime]

_PHONE_SEPARATORS = re.compile(r"[\s+\-.()]")
_MIN_PHONE_DIGITS = 7
_MAX_PHONE_DIGITS = 15


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(tz=UTC)


def normalize_phone_number(raw: str | None) -> str:
    """Strip separators and validate an international phone number."""
    cleaned = _PHONE_SEPARATORS.sub("", raw or "")
    if not cleaned:
        raise InvalidRequestError("Phone number is required for pairing code method")
    if not cleaned.isdigit():
        raise InvalidRequestError("Phone number must contain digits only")
    if not _MIN_PHONE_DIGITS <= len(cleaned) <= _MAX_PHONE_DIGITS:
        raise InvalidRequestError(
            "Phone number must include the country code, e.g. 2348012345678"
        )
    return cleaned


@dataclass
class SessionStore:
    """Owns every session record, keyed by session id."""

    clock: Clock = utc_now
    _records: dict[str, SessionRecord] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._records)

    def create(
        self, method: ConnectionMethod, phone_number: str | None = None
    ) -> SessionRecord:
        """Insert a pending record and return it."""
        phone = (
            normalize_phone_number(phone_number)
            if method == ConnectionMethod.PAIRING
            else None
        )
        now = self.clock()
        record = SessionRecord(
            id=self._new_id(),
            connection_method=method,
            phone_number=phone,
            status=SessionStatus.PENDING,
            created_at=now,
            last_activity_at=now,
        )
        self._records[record.id] = record
        return record

    def get(self, session_id: str) -> SessionRecord | None:
        """Return a record by id, if present."""
        return self._records.get(session_id)

    def update(self, session_id: str, **changes: object) -> SessionRecord:
        """Apply a partial update and refresh the activity timestamp."""
        current = self._records.get(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)
        target = changes.get("status", current.status)
        if not isinstance(target, SessionStatus) or not can_transition(
            current.status, target
        ):
            raise InternalFaultError(
                f"Illegal transition {current.status.value} -> {target}"
            )
        updated = replace(current, **changes, last_activity_at=self.clock())
        _check_invariants(updated)
        self._records[session_id] = updated
        return updated

    def touch(self, session_id: str) -> SessionRecord | None:
        """Record client activity without changing anything else."""
        current = self._records.get(session_id)
        if current is None:
            return None
        updated = replace(current, last_activity_at=self.clock())
        self._records[session_id] = updated
        return updated

    def remove(self, session_id: str) -> SessionRecord | None:
        """Delete a record; removing an absent id is a no-op."""
        return self._records.pop(session_id, None)

    def sweep(self, max_idle: timedelta) -> list[SessionRecord]:
        """Remove and return records idle for longer than max_idle."""
        now = self.clock()
        expired = [
            record
            for record in self._records.values()
            if now - record.last_activity_at > max_idle
        ]
        for record in expired:
            del self._records[record.id]
        return expired

    def list_sessions(self) -> list[SessionRecord]:
        """Return all records, oldest first."""
        return sorted(self._records.values(), key=lambda record: record.created_at)

    def _new_id(self) -> str:
        while True:
            session_id = f"{SESSION_ID_PREFIX}{secrets.token_hex(8)}"
            if session_id not in self._records:
                return session_id


def _check_invariants(record: SessionRecord) -> None:
    if record.connection_method == ConnectionMethod.PAIRING and record.qr_code:
        raise InternalFaultError("Pairing session cannot hold a QR code")
    if record.connection_method == ConnectionMethod.QR and record.pairing_code:
        raise InternalFaultError("QR session cannot hold a pairing code")
    has_credentials = record.credentials_base64 is not None
    if has_credentials != (record.status == SessionStatus.CONNECTED):
        raise InternalFaultError("Credentials must be present exactly when connected")
