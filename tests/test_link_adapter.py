"""Tests for normalization of WhatsApp client callbacks."""

import asyncio
import json

from truth_pair.domain.events import EventKind, LinkEvent
from truth_pair.domain.sessions import ConnectionMethod, SessionStatus
from truth_pair.services.linking import (
    FAILURE_MESSAGE,
    INTERNAL_FAULT_MESSAGE,
    WhatsAppClientError,
    WhatsAppLinkAdapter,
)
from tests.conftest import LINKED_CREDS, FakeWhatsAppClient, fake_render_qr, settle


def _adapter(
    method: ConnectionMethod, client: FakeWhatsAppClient
) -> tuple[WhatsAppLinkAdapter, list[LinkEvent]]:
    events: list[LinkEvent] = []
    adapter = WhatsAppLinkAdapter(
        session_id=client.session_id,
        method=method,
        phone_number="2348012345678" if method == ConnectionMethod.PAIRING else None,
        client=client,
        sink=lambda _adapter, event: events.append(event),
        render_qr=fake_render_qr,
    )
    return adapter, events


def test_pairing_start_emits_connecting_then_code() -> None:
    client = FakeWhatsAppClient("truth_a", start_result={"pairingCode": "ABCD1234"})
    adapter, events = _adapter(ConnectionMethod.PAIRING, client)

    async def scenario() -> None:
        adapter.open()
        await settle()

    asyncio.run(scenario())

    assert client.started_with == ("pairing", "2348012345678")
    assert [event.kind for event in events] == [EventKind.STATUS, EventKind.PAIRING_CODE]
    assert events[0].status == SessionStatus.CONNECTING
    assert events[1].pairing_code == "ABCD1234"


def test_rotating_qr_payloads_are_rendered_each_time() -> None:
    client = FakeWhatsAppClient("truth_q")
    adapter, events = _adapter(ConnectionMethod.QR, client)

    async def scenario() -> None:
        adapter.open()
        await settle()
        await client.emit("connection.update", {"qr": "ref-1"})
        await client.emit("connection.update", {"qr": "ref-2"})

    asyncio.run(scenario())

    qr_events = [event for event in events if event.kind == EventKind.QR]
    assert [event.qr_code for event in qr_events] == [
        "data:image/png;base64,ref-1",
        "data:image/png;base64,ref-2",
    ]
    statuses = [event.status for event in events if event.kind == EventKind.STATUS]
    assert statuses == [SessionStatus.CONNECTING]


def test_qr_session_ignores_pairing_codes_and_vice_versa() -> None:
    qr_client = FakeWhatsAppClient("truth_q", start_result={"pairingCode": "ABCD1234"})
    qr_adapter, qr_events = _adapter(ConnectionMethod.QR, qr_client)
    pairing_client = FakeWhatsAppClient("truth_p")
    pairing_adapter, pairing_events = _adapter(ConnectionMethod.PAIRING, pairing_client)

    async def scenario() -> None:
        qr_adapter.open()
        pairing_adapter.open()
        await settle()
        await pairing_client.emit("connection.update", {"qr": "ref-1"})

    asyncio.run(scenario())

    assert all(event.kind == EventKind.STATUS for event in qr_events)
    assert all(event.kind == EventKind.STATUS for event in pairing_events)


def test_credentials_are_emitted_once_on_open() -> None:
    client = FakeWhatsAppClient("truth_a", start_result={"pairingCode": "ABCD1234"})
    adapter, events = _adapter(ConnectionMethod.PAIRING, client)

    async def scenario() -> None:
        adapter.open()
        await settle()
        await client.emit("creds.update", {"me": LINKED_CREDS["me"]})
        await client.emit("creds.update", {"registered": True})
        await client.emit("connection.update", {"connection": "open"})
        await client.emit("connection.update", {"connection": "open"})

    asyncio.run(scenario())

    connected = [event for event in events if event.status == SessionStatus.CONNECTED]
    assert len(connected) == 1
    assert json.loads(connected[0].credentials or b"") == {
        "me": LINKED_CREDS["me"],
        "registered": True,
    }
    assert adapter.own_jid() == "2348012345678@s.whatsapp.net"


def test_restart_required_close_is_tolerated() -> None:
    client = FakeWhatsAppClient("truth_a")
    adapter, events = _adapter(ConnectionMethod.QR, client)
    restart = {"connection": "close", "lastDisconnect": {"error": {"output": {"statusCode": 515}}}}

    async def scenario() -> None:
        adapter.open()
        await settle()
        await client.emit("connection.update", restart)

    asyncio.run(scenario())

    assert all(event.status != SessionStatus.FAILED for event in events)
    assert adapter.active


def test_close_before_link_reports_failure() -> None:
    client = FakeWhatsAppClient("truth_a")
    adapter, events = _adapter(ConnectionMethod.QR, client)
    logged_out = {"connection": "close", "lastDisconnect": {"error": {"output": {"statusCode": 401}}}}

    async def scenario() -> None:
        adapter.open()
        await settle()
        await client.emit("connection.update", logged_out)
        await client.emit("connection.update", {"qr": "ignored"})

    asyncio.run(scenario())

    assert events[-1].status == SessionStatus.FAILED
    assert events[-1].reason == FAILURE_MESSAGE
    assert not any(event.kind == EventKind.QR for event in events)


def test_client_error_at_start_reports_failure() -> None:
    client = FakeWhatsAppClient(
        "truth_a", start_error=WhatsAppClientError("invalid phone number")
    )
    adapter, events = _adapter(ConnectionMethod.PAIRING, client)

    async def scenario() -> None:
        adapter.open()
        await settle()

    asyncio.run(scenario())

    assert len(events) == 1
    assert events[0].status == SessionStatus.FAILED


def test_malformed_callback_is_an_internal_fault() -> None:
    client = FakeWhatsAppClient("truth_a")
    adapter, events = _adapter(ConnectionMethod.QR, client)
    malformed = {"connection": "close", "lastDisconnect": {"error": {"output": {"statusCode": "??"}}}}

    async def scenario() -> None:
        adapter.open()
        await settle()
        await client.emit("connection.update", malformed)

    asyncio.run(scenario())

    assert events[-1].status == SessionStatus.FAILED
    assert events[-1].reason == INTERNAL_FAULT_MESSAGE


def test_open_without_credentials_is_an_internal_fault() -> None:
    client = FakeWhatsAppClient("truth_a")
    adapter, events = _adapter(ConnectionMethod.QR, client)

    async def scenario() -> None:
        adapter.open()
        await settle()
        await client.emit("connection.update", {"connection": "open"})

    asyncio.run(scenario())

    assert events[-1].status == SessionStatus.FAILED
    assert events[-1].reason == INTERNAL_FAULT_MESSAGE


def test_close_logs_out_half_linked_device_and_drops_late_callbacks() -> None:
    client = FakeWhatsAppClient("truth_a")
    adapter, events = _adapter(ConnectionMethod.QR, client)

    async def scenario() -> None:
        adapter.open()
        await settle()
        await client.emit("creds.update", {"registered": True})
        await adapter.close()
        await adapter.close()
        await client.emit("connection.update", {"qr": "late"})

    asyncio.run(scenario())

    assert client.logged_out
    assert client.ended
    assert not any(event.kind == EventKind.QR for event in events)


def test_close_cancels_pending_start() -> None:
    started = asyncio.Event()

    class SlowClient(FakeWhatsAppClient):
        async def start_session(
            self, method: str, phone_number: str | None = None
        ) -> dict[str, object]:
            started.set()
            await asyncio.sleep(3600)
            return {}

    client = SlowClient("truth_a")
    adapter, events = _adapter(ConnectionMethod.QR, client)

    async def scenario() -> None:
        adapter.open()
        await started.wait()
        await adapter.close()
        await settle()

    asyncio.run(scenario())

    assert events == []
    assert client.ended
    assert not client.logged_out


def test_unexpected_start_error_is_an_internal_fault() -> None:
    client = FakeWhatsAppClient("truth_a", start_error=RuntimeError("bridge crashed"))
    adapter, events = _adapter(ConnectionMethod.PAIRING, client)

    async def scenario() -> None:
        adapter.open()
        await settle()

    asyncio.run(scenario())

    assert len(events) == 1
    assert events[0].status == SessionStatus.FAILED
    assert events[0].reason == INTERNAL_FAULT_MESSAGE
    assert not adapter.active


def test_accepted_callbacks_report_activity() -> None:
    client = FakeWhatsAppClient("truth_a")
    adapter, _ = _adapter(ConnectionMethod.QR, client)
    seen: list[str] = []
    adapter.on_activity = lambda active: seen.append(active.session_id)

    async def scenario() -> None:
        adapter.open()
        await settle()
        await client.emit("creds.update", {"registered": True})
        await client.emit("connection.update", {"connection": "connecting"})
        await adapter.close()
        await client.emit("creds.update", {"registered": True})

    asyncio.run(scenario())

    assert seen == ["truth_a", "truth_a"]
