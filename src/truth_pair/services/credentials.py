"""Encoding of linked-device credentials into the exported session string."""

import base64
import binascii

from truth_pair.domain.errors import InvalidRequestError

SESSION_STRING_PREFIX = "TRUTH-MD:~"


def encode_credentials(raw: bytes) -> str:
    """Encode raw credential material as standard Base64 text."""
    return base64.b64encode(raw).decode("ascii")


def export_session_string(encoded: str) -> str:
    """Build the canonical exported session string."""
    return f"{SESSION_STRING_PREFIX}{encoded}"


def parse_session_string(text: str) -> bytes:
    """Decode an exported session string.

    Both ``TRUTH-MD:~<b64>`` and the display form ``TRUTH-MD:~(<b64>)`` are
    accepted.
    """
    value = text.strip()
    if not value.startswith(SESSION_STRING_PREFIX):
        raise InvalidRequestError("Session string must start with TRUTH-MD:~")
    payload = value[len(SESSION_STRING_PREFIX) :]
    if payload.startswith("(") and payload.endswith(")"):
        payload = payload[1:-1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidRequestError("Session string is not valid Base64") from exc
