"""WhatsApp-Web bridge client adapter.

The bridge is a sidecar process running the WhatsApp-Web client library. It
is driven over HTTP and reports ``connection.update`` / ``creds.update``
callbacks back to this service through the ``/whatsapp/events`` webhook.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field

import httpx

from truth_pair.services.linking import Listener, WhatsAppClientError

logger = logging.getLogger(__name__)


@dataclass
class HttpxWhatsAppBridge:
    """Bridge connection shared by every session client."""

    base_url: str
    http_client: httpx.AsyncClient
    token: str | None = None
    _clients: dict[str, "BridgeSessionClient"] = field(default_factory=dict)

    @classmethod
    def create(cls, base_url: str, token: str | None = None) -> "HttpxWhatsAppBridge":
        """Create a bridge with a managed httpx session."""
        return cls(
            base_url=base_url.rstrip("/"), http_client=httpx.AsyncClient(), token=token
        )

    def create_client(self, session_id: str) -> "BridgeSessionClient":
        """Return a client bound to one session id."""
        client = BridgeSessionClient(bridge=self, session_id=session_id)
        self._clients[session_id] = client
        return client

    async def dispatch(
        self, session_id: str, event: str, payload: dict[str, object]
    ) -> bool:
        """Deliver a webhook event to the session's listeners."""
        client = self._clients.get(session_id)
        if client is None:
            logger.info("Ignoring %s for unknown bridge session %s", event, session_id)
            return False
        await client.emit(event, payload)
        return True

    def release(self, session_id: str) -> None:
        self._clients.pop(session_id, None)

    async def request(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> dict[str, object]:
        """Call the bridge API and return its JSON body."""
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=30,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise WhatsAppClientError(
                f"Bridge returned {exc.response.status_code} for {path}"
            ) from exc
        except httpx.HTTPError as exc:
            raise WhatsAppClientError(f"Bridge request failed: {exc}") from exc
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise WhatsAppClientError(
                f"Bridge returned a non-JSON body for {path}"
            ) from exc
        return body if isinstance(body, dict) else {}

    async def close(self) -> None:
        """Close the underlying HTTP client session."""
        await self.http_client.aclose()


@dataclass
class BridgeSessionClient:
    """WhatsApp-Web client for a single session, backed by the bridge."""

    bridge: HttpxWhatsAppBridge
    session_id: str
    _listeners: dict[str, list[Listener]] = field(
        default_factory=lambda: defaultdict(list)
    )

    async def start_session(
        self, method: str, phone_number: str | None = None
    ) -> dict[str, object]:
        """Ask the bridge to open a connection and request a link code."""
        payload: dict[str, object] = {"sessionId": self.session_id, "method": method}
        if phone_number is not None:
            payload["phoneNumber"] = phone_number
        return await self.bridge.request("POST", "/sessions", payload)

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    async def emit(self, event: str, payload: dict[str, object]) -> None:
        for listener in list(self._listeners.get(event, [])):
            await listener(payload)

    async def send_text(self, jid: str, text: str) -> None:
        await self.bridge.request(
            "POST", f"/sessions/{self.session_id}/messages", {"to": jid, "text": text}
        )

    async def logout(self) -> None:
        await self.bridge.request("POST", f"/sessions/{self.session_id}/logout")

    async def end(self) -> None:
        self._listeners.clear()
        self.bridge.release(self.session_id)
        await self.bridge.request("DELETE", f"/sessions/{self.session_id}")
