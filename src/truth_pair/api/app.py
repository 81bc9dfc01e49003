"""FastAPI application factory."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import (
    FastAPI,
    Header,
    HTTPException,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from truth_pair.api.admin import router as admin_router
from truth_pair.api.models import (
    BridgeEvent,
    GenerateSessionRequest,
    SubscribeMessage,
    TerminateSessionRequest,
)
from truth_pair.app_logging import configure_logging
from truth_pair.containers import AppContainer
from truth_pair.domain.errors import InvalidRequestError, PairingError
from truth_pair.services.sessions import status_frame
from truth_pair.services.subscriptions import Subscription

logger = logging.getLogger(__name__)


def create_app(container: AppContainer) -> FastAPI:
    """Create a FastAPI app configured with dependencies."""
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        controller = app.state.container.session_controller
        sweeper = asyncio.create_task(controller.run_sweeper(), name="session-sweeper")
        yield
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    app.include_router(admin_router)
    app.add_exception_handler(PairingError, _pairing_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    @app.get("/health")
    async def health(request: Request) -> dict[str, object]:
        """Simple health check endpoint."""
        state_container: AppContainer = request.app.state.container
        return {"status": "ok", "activeSessions": len(state_container.session_store)}

    @app.post("/api/generate-session")
    async def generate_session(
        body: GenerateSessionRequest, request: Request
    ) -> dict[str, object]:
        """Create a linking session for the pairing code or QR method."""
        state_container: AppContainer = request.app.state.container
        result = await state_container.session_controller.generate_session(
            body.method, body.phone_number
        )
        payload: dict[str, object] = {
            "sessionId": result.session_id,
            "status": result.status.value,
            "message": result.message,
        }
        if result.pairing_code:
            payload["pairingCode"] = result.pairing_code
        if result.qr_code:
            payload["qrCode"] = result.qr_code
        return payload

    @app.post("/api/terminate-session")
    async def terminate_session(
        body: TerminateSessionRequest, request: Request
    ) -> dict[str, object]:
        """Terminate a session and clean up its WhatsApp connection."""
        state_container: AppContainer = request.app.state.container
        await state_container.session_controller.terminate_session(body.session_id)
        return {"success": True, "message": "Session terminated"}

    @app.get("/api/session/{session_id}")
    async def session_snapshot(session_id: str, request: Request) -> dict[str, object]:
        """Return the current state of a session."""
        state_container: AppContainer = request.app.state.container
        record = state_container.session_controller.get_snapshot(session_id)
        return status_frame(record).data

    @app.post("/whatsapp/events")
    async def whatsapp_events(
        event: BridgeEvent,
        request: Request,
        x_bridge_token: str | None = Header(default=None),
    ) -> dict[str, str]:
        """Receive connection and credential callbacks from the bridge."""
        state_container: AppContainer = request.app.state.container
        expected = state_container.settings.whatsapp_bridge_token
        if expected and x_bridge_token != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        delivered = await state_container.whatsapp_bridge.dispatch(
            event.session_id, event.event, event.data
        )
        return {"status": "ok" if delivered else "ignored"}

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket) -> None:
        """Push session events to subscribed browser clients."""
        state_container: AppContainer = websocket.app.state.container
        controller = state_container.session_controller
        await websocket.accept()
        pumps: dict[Subscription, asyncio.Task[None]] = {}
        try:
            while True:
                raw = await websocket.receive_text()
                for followed in pumps:
                    controller.record_activity(followed.session_id)
                session_id = _parse_subscribe(raw)
                if session_id is None:
                    logger.warning("Ignoring malformed real-time message")
                    continue
                for finished in [sub for sub, task in pumps.items() if task.done()]:
                    controller.unsubscribe(finished)
                    del pumps[finished]
                subscription = controller.subscribe(session_id)
                pumps[subscription] = asyncio.create_task(
                    _pump(websocket, subscription)
                )
        except WebSocketDisconnect:
            logger.debug("Real-time client disconnected")
        finally:
            for subscription, task in pumps.items():
                controller.unsubscribe(subscription)
                task.cancel()
            await asyncio.gather(*pumps.values(), return_exceptions=True)

    return app


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    try:
        async for frame in subscription.frames():
            await websocket.send_json(frame.to_dict())
    except (WebSocketDisconnect, RuntimeError, OSError):
        logger.debug("Stopped streaming %s to a closed socket", subscription.session_id)


def _parse_subscribe(raw: str) -> str | None:
    try:
        message = SubscribeMessage.model_validate_json(raw)
    except ValidationError:
        return None
    if message.type != "subscribe":
        return None
    return message.session_id


async def _pairing_error_handler(request: Request, exc: PairingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


async def _validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = InvalidRequestError("Invalid request body")
    logger.info("Rejected request to %s: %s", request.url.path, exc)
    return JSONResponse(status_code=error.status_code, content=error.to_response())
