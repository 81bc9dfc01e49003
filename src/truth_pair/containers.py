"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

from truth_pair.adapters.qr_renderer import render_qr_data_uri
from truth_pair.adapters.whatsapp_bridge_client import HttpxWhatsAppBridge
from truth_pair.config import Settings
from truth_pair.services.session_store import SessionStore
from truth_pair.services.sessions import SessionController
from truth_pair.services.subscriptions import SubscriptionHub


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    whatsapp_bridge: HttpxWhatsAppBridge
    session_store: SessionStore
    subscription_hub: SubscriptionHub
    session_controller: SessionController
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    whatsapp_bridge = HttpxWhatsAppBridge.create(
        resolved_settings.whatsapp_bridge_url,
        token=resolved_settings.whatsapp_bridge_token,
    )
    session_store = SessionStore()
    subscription_hub = SubscriptionHub()
    session_controller = SessionController(
        store=session_store,
        hub=subscription_hub,
        client_factory=whatsapp_bridge,
        render_qr=render_qr_data_uri,
        idle_timeout=timedelta(seconds=resolved_settings.session_idle_timeout_seconds),
        sweep_interval_seconds=resolved_settings.sweep_interval_seconds,
        removal_delay_seconds=resolved_settings.terminal_removal_delay_seconds,
        deliver_session_to_dm=resolved_settings.deliver_session_to_dm,
    )

    async def close_resources() -> None:
        await session_controller.shutdown()
        await whatsapp_bridge.close()

    return AppContainer(
        settings=resolved_settings,
        whatsapp_bridge=whatsapp_bridge,
        session_store=session_store,
        subscription_hub=subscription_hub,
        session_controller=session_controller,
        close_resources=close_resources,
    )
