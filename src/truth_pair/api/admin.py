"""Admin API endpoints with simple token auth."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

if TYPE_CHECKING:
    from truth_pair.containers import AppContainer
    from truth_pair.domain.sessions import SessionRecord

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_admin_token(request: Request) -> str | None:
    container: AppContainer = request.app.state.container
    return container.settings.admin_token


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    admin_token: str | None = Depends(_get_admin_token),
) -> None:
    """Ensure requests include a valid admin token."""
    if not admin_token or not x_admin_token or x_admin_token != admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get("/health", dependencies=[Depends(require_admin)])
async def admin_health() -> dict[str, str]:
    """Admin health check endpoint."""
    return {"status": "ok"}


@router.get("/sessions", dependencies=[Depends(require_admin)])
async def list_sessions(request: Request) -> dict[str, object]:
    """Return live sessions without their credentials."""
    container: AppContainer = request.app.state.container
    hub = container.subscription_hub
    return {
        "sessions": [
            _session_summary(record, hub.subscriber_count(record.id))
            for record in container.session_store.list_sessions()
        ]
    }


def _session_summary(record: SessionRecord, subscribers: int) -> dict[str, object]:
    return {
        "sessionId": record.id,
        "method": record.connection_method.value,
        "status": record.status.value,
        "phoneNumber": _mask_phone(record.phone_number),
        "createdAt": record.created_at.isoformat(),
        "lastActivityAt": record.last_activity_at.isoformat(),
        "linkedAt": record.linked_at.isoformat() if record.linked_at else None,
        "subscribers": subscribers,
    }


def _mask_phone(phone_number: str | None) -> str | None:
    if not phone_number:
        return None
    return f"{'*' * (len(phone_number) - 4)}{phone_number[-4:]}"
