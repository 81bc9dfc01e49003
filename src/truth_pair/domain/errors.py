"""Error taxonomy for session management."""


class PairingError(Exception):
    """Base exception for all session management errors."""

    code = "PAIRING_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict[str, str]:
        """Convert to an API error payload."""
        return {"code": self.code, "message": self.message}


class InvalidRequestError(PairingError):
    """Raised for a bad connection method or phone number."""

    code = "INVALID_REQUEST"
    status_code = 400


class SessionNotFoundError(PairingError):
    """Raised when operating on an unknown or expired session id."""

    code = "SESSION_NOT_FOUND"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found or expired")


class AdapterFailureError(PairingError):
    """Raised when the WhatsApp client cannot establish or keep a connection."""

    code = "ADAPTER_FAILURE"
    status_code = 502


class InternalFaultError(PairingError):
    """Raised for unexpected callback shapes or broken invariants."""

    code = "INTERNAL_FAULT"
    status_code = 500
