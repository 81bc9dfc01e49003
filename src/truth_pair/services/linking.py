"""WhatsApp link adapter: one external client connection per session."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from truth_pair.domain.errors import AdapterFailureError
from truth_pair.domain.events import LinkEvent
from truth_pair.domain.sessions import ConnectionMethod, SessionStatus

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, object]], Awaitable[None]]

CONNECTION_UPDATE = "connection.update"
CREDS_UPDATE = "creds.update"

# Close code WhatsApp sends right after pairing; the client reconnects itself.
RESTART_REQUIRED = 515

FAILURE_MESSAGE = "Could not link with WhatsApp. Please start a new session."
INTERNAL_FAULT_MESSAGE = "Unexpected error while linking. Please start a new session."


class WhatsAppClientError(AdapterFailureError):
    """Raised by a WhatsApp client when a request to it fails."""


class WhatsAppWebClient(Protocol):
    """Interface of the external WhatsApp-Web client for one session."""

    async def start_session(
        self, method: str, phone_number: str | None = None
    ) -> dict[str, object]:
        """Open the connection; may return ``pairingCode`` or ``qrCode``."""

    def on(self, event: str, listener: Listener) -> None:
        """Register a listener for ``connection.update`` or ``creds.update``."""

    async def send_text(self, jid: str, text: str) -> None:
        """Send a text message from the linked account."""

    async def logout(self) -> None:
        """Unlink the device from the phone."""

    async def end(self) -> None:
        """Close the connection and release client resources."""


class WhatsAppClientFactory(Protocol):
    """Creates one external client per session id."""

    def create_client(self, session_id: str) -> WhatsAppWebClient:
        """Return a fresh client bound to a session id."""


QrRenderer = Callable[[str], str]
EventSink = Callable[["WhatsAppLinkAdapter", LinkEvent], None]
ActivitySink = Callable[["WhatsAppLinkAdapter"], None]


@dataclass(eq=False)
class WhatsAppLinkAdapter:
    """Translates client callbacks into normalized link events."""

    session_id: str
    method: ConnectionMethod
    phone_number: str | None
    client: WhatsAppWebClient
    sink: EventSink
    render_qr: QrRenderer
    on_activity: ActivitySink | None = None
    _credentials: dict[str, object] = field(default_factory=dict)
    _opened: bool = False
    _linked: bool = False
    _failed: bool = False
    _closed: bool = False
    _start_task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return not (self._closed or self._linked or self._failed)

    def open(self) -> None:
        """Register listeners and start connecting in the background."""
        self.client.on(CONNECTION_UPDATE, self._on_connection_update)
        self.client.on(CREDS_UPDATE, self._on_creds_update)
        self._start_task = asyncio.create_task(
            self._start(), name=f"link-open-{self.session_id}"
        )

    async def close(self) -> None:
        """Tear down the client connection; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()
        try:
            if self._credentials.get("registered") and not self._linked:
                await self.client.logout()
            await self.client.end()
        except WhatsAppClientError:
            logger.warning("Failed to close WhatsApp client for %s", self.session_id)

    async def send_to_self(self, text: str) -> None:
        """Send a message to the linked account's own chat."""
        jid = self.own_jid()
        if jid is None:
            raise WhatsAppClientError("Linked account id is unknown")
        await self.client.send_text(jid, text)

    def own_jid(self) -> str | None:
        """Return the linked account's user JID without the device suffix."""
        me = self._credentials.get("me")
        raw_id = me.get("id") if isinstance(me, dict) else None
        if not isinstance(raw_id, str) or "@" not in raw_id:
            return None
        user, server = raw_id.split("@", 1)
        return f"{user.split(':', 1)[0]}@{server}"

    async def _start(self) -> None:
        try:
            result = await self.client.start_session(
                self.method.value, self.phone_number
            )
        except WhatsAppClientError as exc:
            logger.warning("WhatsApp client rejected %s: %s", self.session_id, exc)
            self._fail(FAILURE_MESSAGE)
            return
        except Exception:
            logger.exception("Unexpected error opening %s", self.session_id)
            self._fail(INTERNAL_FAULT_MESSAGE)
            return
        if not self.active:
            return
        if not isinstance(result, dict):
            logger.error("Unexpected start result for %s", self.session_id)
            self._fail(INTERNAL_FAULT_MESSAGE)
            return
        self._mark_opened()
        try:
            code = result.get("pairingCode")
            if isinstance(code, str) and code:
                self._emit_pairing_code(code)
            qr = result.get("qrCode")
            if isinstance(qr, str) and qr:
                self._emit_qr(qr)
        except ValueError:
            logger.exception("Could not publish link code for %s", self.session_id)
            self._fail(INTERNAL_FAULT_MESSAGE)

    async def _on_connection_update(self, update: dict[str, object]) -> None:
        if not self.active:
            return
        self._notify_activity()
        try:
            self._handle_connection_update(update)
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.exception("Malformed connection.update for %s", self.session_id)
            self._fail(INTERNAL_FAULT_MESSAGE)

    async def _on_creds_update(self, update: dict[str, object]) -> None:
        if not self.active:
            return
        if not isinstance(update, dict):
            logger.error("Malformed creds.update for %s", self.session_id)
            self._fail(INTERNAL_FAULT_MESSAGE)
            return
        self._credentials.update(update)
        self._notify_activity()

    def _handle_connection_update(self, update: dict[str, object]) -> None:
        connection = update.get("connection")
        qr = update.get("qr")
        code = update.get("pairingCode")
        if connection == "connecting" or qr or code:
            self._mark_opened()
        if isinstance(code, str) and code:
            self._emit_pairing_code(code)
        if isinstance(qr, str) and qr:
            self._emit_qr(qr)
        if connection == "open":
            self._complete_link()
        elif connection == "close":
            status_code = _disconnect_status_code(update)
            if status_code == RESTART_REQUIRED:
                logger.info("WhatsApp requested restart for %s", self.session_id)
                return
            logger.warning(
                "WhatsApp closed connection for %s (code %s)",
                self.session_id,
                status_code,
            )
            self._fail(FAILURE_MESSAGE)

    def _complete_link(self) -> None:
        if not self._credentials:
            logger.error("Connection opened without credentials for %s", self.session_id)
            self._fail(INTERNAL_FAULT_MESSAGE)
            return
        raw = json.dumps(self._credentials, separators=(",", ":")).encode()
        self._mark_opened()
        self._linked = True
        self.sink(
            self,
            LinkEvent.status_change(
                self.session_id, SessionStatus.CONNECTED, credentials=raw
            ),
        )

    def _notify_activity(self) -> None:
        if self.on_activity is not None:
            self.on_activity(self)

    def _mark_opened(self) -> None:
        if self._opened:
            return
        self._opened = True
        self.sink(
            self, LinkEvent.status_change(self.session_id, SessionStatus.CONNECTING)
        )

    def _emit_pairing_code(self, code: str) -> None:
        if self.method != ConnectionMethod.PAIRING:
            logger.debug("Ignoring pairing code for QR session %s", self.session_id)
            return
        self.sink(self, LinkEvent.pairing(self.session_id, code))

    def _emit_qr(self, payload: str) -> None:
        if self.method != ConnectionMethod.QR:
            return
        qr_code = payload if payload.startswith("data:") else self.render_qr(payload)
        self.sink(self, LinkEvent.qr(self.session_id, qr_code))

    def _fail(self, reason: str) -> None:
        if not self.active:
            return
        self._failed = True
        self.sink(
            self,
            LinkEvent.status_change(self.session_id, SessionStatus.FAILED, reason),
        )


def _disconnect_status_code(update: dict[str, object]) -> int | None:
    last_disconnect = update.get("lastDisconnect")
    if not isinstance(last_disconnect, dict):
        return None
    error = last_disconnect.get("error")
    if not isinstance(error, dict):
        return None
    output = error.get("output")
    status_code = output.get("statusCode") if isinstance(output, dict) else None
    return int(status_code) if status_code is not None else None
