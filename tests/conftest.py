"""Shared test fixtures."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from truth_pair.adapters.whatsapp_bridge_client import HttpxWhatsAppBridge
from truth_pair.config import Settings
from truth_pair.containers import AppContainer
from truth_pair.services.linking import Listener, WhatsAppWebClient
from truth_pair.services.session_store import SessionStore
from truth_pair.services.sessions import SessionController
from truth_pair.services.subscriptions import SubscriptionHub

PHONE_NUMBER = "2348012345678"
LINKED_CREDS = {
    "me": {"id": "2348012345678:7@s.whatsapp.net", "name": "Test"},
    "registered": True,
    "noiseKey": {"private": "cHJpdmF0ZQ==", "public": "cHVibGlj"},
}


@dataclass
class FakeClock:
    """Manually advanced clock."""

    now: datetime = field(default_factory=lambda: datetime(2026, 1, 1, tzinfo=UTC))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class FakeWhatsAppClient(WhatsAppWebClient):
    """Fake WhatsApp-Web client that records calls and replays callbacks."""

    session_id: str
    start_result: dict[str, object] = field(default_factory=dict)
    start_error: Exception | None = None
    listeners: dict[str, list[Listener]] = field(default_factory=dict)
    started_with: tuple[str, str | None] | None = None
    sent: list[tuple[str, str]] = field(default_factory=list)
    send_error: Exception | None = None
    logged_out: bool = False
    ended: bool = False

    async def start_session(
        self, method: str, phone_number: str | None = None
    ) -> dict[str, object]:
        self.started_with = (method, phone_number)
        if self.start_error is not None:
            raise self.start_error
        return dict(self.start_result)

    def on(self, event: str, listener: Listener) -> None:
        self.listeners.setdefault(event, []).append(listener)

    async def emit(self, event: str, payload: dict[str, object]) -> None:
        for listener in self.listeners.get(event, []):
            await listener(payload)

    async def send_text(self, jid: str, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, text))

    async def logout(self) -> None:
        self.logged_out = True

    async def end(self) -> None:
        self.ended = True


@dataclass
class FakeClientFactory:
    """Creates fake clients and keeps them by session id."""

    start_result: dict[str, object] = field(
        default_factory=lambda: {"pairingCode": "ABCD1234"}
    )
    start_error: Exception | None = None
    clients: dict[str, FakeWhatsAppClient] = field(default_factory=dict)

    def create_client(self, session_id: str) -> FakeWhatsAppClient:
        client = FakeWhatsAppClient(
            session_id=session_id,
            start_result=self.start_result,
            start_error=self.start_error,
        )
        self.clients[session_id] = client
        return client


def fake_render_qr(payload: str) -> str:
    return f"data:image/png;base64,{payload}"


def make_controller(
    factory: FakeClientFactory | None = None,
    clock: FakeClock | None = None,
    removal_delay_seconds: float = 0,
    deliver_session_to_dm: bool = True,
) -> SessionController:
    return SessionController(
        store=SessionStore(clock=clock or FakeClock()),
        hub=SubscriptionHub(),
        client_factory=factory or FakeClientFactory(),
        render_qr=fake_render_qr,
        removal_delay_seconds=removal_delay_seconds,
        deliver_session_to_dm=deliver_session_to_dm,
    )


async def settle() -> None:
    """Let background tasks scheduled on the loop run."""
    for _ in range(5):
        await asyncio.sleep(0)


@dataclass
class FakeBridgeServer:
    """httpx MockTransport handler standing in for the bridge sidecar."""

    requests: list[tuple[str, str, dict[str, object] | None]] = field(
        default_factory=list
    )
    authorizations: list[str | None] = field(default_factory=list)
    pairing_code: str = "WXYZ5678"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, payload))
        self.authorizations.append(request.headers.get("authorization"))
        if request.method == "POST" and request.url.path == "/sessions":
            if payload and payload.get("method") == "pairing":
                return httpx.Response(200, json={"pairingCode": self.pairing_code})
            return httpx.Response(200, json={})
        return httpx.Response(200, json={"ok": True})

    def paths(self, method: str) -> list[str]:
        return [path for seen, path, _ in self.requests if seen == method]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        whatsapp_bridge_url="http://bridge.test",
        whatsapp_bridge_token="bridge-secret",
        admin_token="admin-token",
        terminal_removal_delay_seconds=0,
    )


@pytest.fixture
def bridge_server() -> FakeBridgeServer:
    return FakeBridgeServer()


@pytest.fixture
def container(settings: Settings, bridge_server: FakeBridgeServer) -> AppContainer:
    whatsapp_bridge = HttpxWhatsAppBridge(
        base_url=settings.whatsapp_bridge_url,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(bridge_server)),
        token=settings.whatsapp_bridge_token,
    )
    session_store = SessionStore()
    subscription_hub = SubscriptionHub()
    session_controller = SessionController(
        store=session_store,
        hub=subscription_hub,
        client_factory=whatsapp_bridge,
        render_qr=fake_render_qr,
        idle_timeout=timedelta(seconds=settings.session_idle_timeout_seconds),
        sweep_interval_seconds=settings.sweep_interval_seconds,
        removal_delay_seconds=settings.terminal_removal_delay_seconds,
        deliver_session_to_dm=settings.deliver_session_to_dm,
    )

    async def close_resources() -> None:
        await session_controller.shutdown()

    return AppContainer(
        settings=settings,
        whatsapp_bridge=whatsapp_bridge,
        session_store=session_store,
        subscription_hub=subscription_hub,
        session_controller=session_controller,
        close_resources=close_resources,
    )
