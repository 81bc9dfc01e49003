"""Session lifecycle controller: drives linking sessions through their states."""

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any

from truth_pair.domain.errors import (
    InternalFaultError,
    InvalidRequestError,
    SessionNotFoundError,
)
from truth_pair.domain.events import EventKind, LinkEvent
from truth_pair.domain.sessions import ConnectionMethod, SessionRecord, SessionStatus
from truth_pair.services.credentials import (
    encode_credentials,
    export_session_string,
)
from truth_pair.services.linking import (
    INTERNAL_FAULT_MESSAGE,
    QrRenderer,
    WhatsAppClientError,
    WhatsAppClientFactory,
    WhatsAppLinkAdapter,
)
from truth_pair.services.session_store import SessionStore
from truth_pair.services.subscriptions import Frame, Subscription, SubscriptionHub

logger = logging.getLogger(__name__)

_PENDING_MESSAGES = {
    ConnectionMethod.PAIRING: "Session created. Requesting pairing code from WhatsApp...",
    ConnectionMethod.QR: "Session created. Generating QR code from WhatsApp servers...",
}
_CONNECTING_MESSAGE = "Connecting to WhatsApp..."
_PAIRING_CODE_MESSAGE = (
    "Open WhatsApp > Linked Devices > Link with phone number and enter the code"
)
_QR_MESSAGE = "Open WhatsApp > Settings > Linked Devices > Scan QR"
_CONNECTED_MESSAGE = "WhatsApp linked successfully"
_TERMINATED_MESSAGE = "Session terminated"
_EXPIRED_MESSAGE = "Session expired after inactivity"
_NOT_FOUND_MESSAGE = "Session not found or expired"

_DM_TEMPLATE = (
    "{session_string}\n\n"
    "This is your TRUTH-MD session ID. Keep it private and never share it."
)


@dataclass(frozen=True)
class SessionResponse:
    """Result of a session generation request."""

    session_id: str
    status: SessionStatus
    message: str
    pairing_code: str | None = None
    qr_code: str | None = None


def parse_method(method: str | None) -> ConnectionMethod:
    """Validate a connection method name."""
    try:
        return ConnectionMethod(method)
    except ValueError as exc:
        raise InvalidRequestError("Method must be 'pairing' or 'qr'") from exc


def status_frame(record: SessionRecord) -> Frame:
    """Build the status frame carrying every field a client needs to resync."""
    data: dict[str, object] = {
        "sessionId": record.id,
        "status": record.status.value,
        "message": record.message or "",
    }
    if record.pairing_code:
        data["pairingCode"] = record.pairing_code
    if record.qr_code:
        data["qrCode"] = record.qr_code
    if record.credentials_base64 is not None:
        data["credentialsBase64"] = record.credentials_base64
        data["sessionString"] = export_session_string(record.credentials_base64)
    if record.linked_at is not None:
        data["linkedAt"] = record.linked_at.isoformat()
    return Frame(event=EventKind.STATUS, data=data)


@dataclass
class SessionController:
    """State machine for WhatsApp linking sessions."""

    store: SessionStore
    hub: SubscriptionHub
    client_factory: WhatsAppClientFactory
    render_qr: QrRenderer
    idle_timeout: timedelta = timedelta(minutes=5)
    sweep_interval_seconds: float = 60
    removal_delay_seconds: float = 5
    deliver_session_to_dm: bool = True
    _adapters: dict[str, WhatsAppLinkAdapter] = field(default_factory=dict)
    _removals: dict[str, asyncio.TimerHandle] = field(default_factory=dict)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set)

    async def generate_session(
        self, method: str | None, phone_number: str | None = None
    ) -> SessionResponse:
        """Create a session and start linking in the background."""
        connection_method = parse_method(method)
        record = self.store.create(connection_method, phone_number)
        adapter = WhatsAppLinkAdapter(
            session_id=record.id,
            method=connection_method,
            phone_number=record.phone_number,
            client=self.client_factory.create_client(record.id),
            sink=self._on_link_event,
            render_qr=self.render_qr,
            on_activity=self._on_adapter_activity,
        )
        self._adapters[record.id] = adapter
        record = self.store.update(
            record.id, message=_PENDING_MESSAGES[connection_method]
        )
        adapter.open()
        logger.info("Created %s session %s", connection_method.value, record.id)
        return SessionResponse(
            session_id=record.id,
            status=record.status,
            message=record.message or "",
            pairing_code=record.pairing_code,
            qr_code=record.qr_code,
        )

    async def terminate_session(self, session_id: str) -> None:
        """Terminate a session on user request and release its connection."""
        record = self.store.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        adapter = self._adapters.pop(session_id, None)
        if not record.is_terminal:
            record = self.store.update(
                session_id,
                status=SessionStatus.TERMINATED,
                message=_TERMINATED_MESSAGE,
            )
            self.hub.publish(session_id, status_frame(record))
            logger.info("Terminated session %s", session_id)
        self._remove(session_id)
        if adapter is not None:
            await adapter.close()

    def get_snapshot(self, session_id: str) -> SessionRecord:
        """Return the current record for a session."""
        record = self.store.touch(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def subscribe(self, session_id: str) -> Subscription:
        """Attach a real-time subscriber, starting with a snapshot frame."""
        record = self.store.touch(session_id)
        if record is None:
            subscription = Subscription(session_id=session_id)
            subscription.push(
                Frame(
                    event=EventKind.STATUS,
                    data={
                        "sessionId": session_id,
                        "status": SessionStatus.TERMINATED.value,
                        "message": _NOT_FOUND_MESSAGE,
                    },
                )
            )
            subscription.close()
            return subscription
        return self.hub.subscribe(session_id, [status_frame(record)])

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)

    def record_activity(self, session_id: str) -> None:
        """Postpone the inactivity timeout of a live session."""
        self.store.touch(session_id)

    async def sweep_expired(self) -> list[str]:
        """Terminate every session idle for longer than the timeout."""
        expired = self.store.sweep(self.idle_timeout)
        for record in expired:
            if record.is_terminal:
                self._remove(record.id)
                continue
            final = replace(
                record, status=SessionStatus.TERMINATED, message=_EXPIRED_MESSAGE
            )
            self.hub.publish(record.id, status_frame(final))
            self._remove(record.id)
            logger.info("Session %s expired after inactivity", record.id)
            adapter = self._adapters.pop(record.id, None)
            if adapter is not None:
                await adapter.close()
        return [record.id for record in expired]

    async def run_sweeper(self) -> None:
        """Periodically sweep idle sessions until cancelled."""
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep_expired()
            except Exception:
                logger.exception("Session sweep failed")

    async def shutdown(self) -> None:
        """Close every open connection before the process exits."""
        for handle in self._removals.values():
            handle.cancel()
        self._removals.clear()
        adapters = list(self._adapters.values())
        self._adapters.clear()
        for adapter in adapters:
            await adapter.close()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _on_adapter_activity(self, adapter: WhatsAppLinkAdapter) -> None:
        if self._adapters.get(adapter.session_id) is adapter:
            self.record_activity(adapter.session_id)

    def _on_link_event(self, adapter: WhatsAppLinkAdapter, event: LinkEvent) -> None:
        if self._adapters.get(event.session_id) is not adapter:
            logger.debug("Discarding stale %s event for %s", event.kind, event.session_id)
            return
        record = self.store.get(event.session_id)
        if record is None or record.is_terminal:
            return
        try:
            if event.kind == EventKind.PAIRING_CODE:
                self._apply_pairing_code(record, event)
            elif event.kind == EventKind.QR:
                self._apply_qr(record, event)
            else:
                self._apply_status(record, event)
        except InternalFaultError:
            logger.exception("Invalid %s event for %s", event.kind, event.session_id)
            self._fail(event.session_id, INTERNAL_FAULT_MESSAGE)

    def _apply_pairing_code(self, record: SessionRecord, event: LinkEvent) -> None:
        if record.connection_method != ConnectionMethod.PAIRING:
            return
        self._ensure_connecting(record)
        updated = self.store.update(
            record.id, pairing_code=event.pairing_code, message=_PAIRING_CODE_MESSAGE
        )
        self.hub.publish(
            record.id,
            Frame(
                event=EventKind.PAIRING_CODE,
                data={"sessionId": record.id, "code": updated.pairing_code},
            ),
        )

    def _apply_qr(self, record: SessionRecord, event: LinkEvent) -> None:
        if record.connection_method != ConnectionMethod.QR:
            return
        self._ensure_connecting(record)
        updated = self.store.update(
            record.id, qr_code=event.qr_code, message=_QR_MESSAGE
        )
        self.hub.publish(
            record.id,
            Frame(
                event=EventKind.QR,
                data={"sessionId": record.id, "qrCode": updated.qr_code},
            ),
        )

    def _apply_status(self, record: SessionRecord, event: LinkEvent) -> None:
        if event.status == SessionStatus.CONNECTING:
            self._ensure_connecting(record)
        elif event.status == SessionStatus.CONNECTED:
            self._complete(record, event)
        elif event.status == SessionStatus.FAILED:
            self._fail(record.id, event.reason or INTERNAL_FAULT_MESSAGE)
        else:
            raise InternalFaultError(f"Unexpected status event {event.status}")

    def _ensure_connecting(self, record: SessionRecord) -> None:
        if record.status != SessionStatus.PENDING:
            return
        updated = self.store.update(
            record.id, status=SessionStatus.CONNECTING, message=_CONNECTING_MESSAGE
        )
        self.hub.publish(record.id, status_frame(updated))

    def _complete(self, record: SessionRecord, event: LinkEvent) -> None:
        if event.credentials is None:
            raise InternalFaultError("Link completed without credential material")
        self._ensure_connecting(record)
        encoded = encode_credentials(event.credentials)
        updated = self.store.update(
            record.id,
            status=SessionStatus.CONNECTED,
            credentials_base64=encoded,
            linked_at=self.store.clock(),
            message=_CONNECTED_MESSAGE,
        )
        self.hub.publish(record.id, status_frame(updated))
        logger.info("Session %s linked", record.id)
        adapter = self._adapters.pop(record.id)
        self._spawn(self._teardown(adapter, export_session_string(encoded)))
        self._schedule_removal(record.id)

    def _fail(self, session_id: str, reason: str) -> None:
        record = self.store.get(session_id)
        if record is None or record.is_terminal:
            return
        updated = self.store.update(
            session_id, status=SessionStatus.FAILED, message=reason
        )
        self.hub.publish(session_id, status_frame(updated))
        logger.warning("Session %s failed: %s", session_id, reason)
        adapter = self._adapters.pop(session_id, None)
        if adapter is not None:
            self._spawn(self._teardown(adapter, None))
        self._schedule_removal(session_id)

    async def _teardown(
        self, adapter: WhatsAppLinkAdapter, session_string: str | None
    ) -> None:
        if session_string is not None and self.deliver_session_to_dm:
            try:
                await adapter.send_to_self(
                    _DM_TEMPLATE.format(session_string=session_string)
                )
            except WhatsAppClientError:
                logger.warning(
                    "Could not deliver session string to %s", adapter.session_id
                )
        await adapter.close()

    def _schedule_removal(self, session_id: str) -> None:
        if self.removal_delay_seconds <= 0:
            self._remove(session_id)
            return
        loop = asyncio.get_running_loop()
        self._removals[session_id] = loop.call_later(
            self.removal_delay_seconds, self._remove, session_id
        )

    def _remove(self, session_id: str) -> None:
        handle = self._removals.pop(session_id, None)
        if handle is not None:
            handle.cancel()
        self.store.remove(session_id)
        self.hub.close_session(session_id)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
