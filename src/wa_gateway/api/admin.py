"""Admin API endpoints with simple token auth."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from wa_gateway.domain.sessions import SessionSnapshot

if TYPE_CHECKING:
    from wa_gateway.containers import AppContainer

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


@router.get("/sessions", dependencies=[Depends(require_admin)])
async def list_sessions(request: Request) -> dict[str, object]:
    """Return the state of every managed session."""
    container: AppContainer = request.app.state.container
    return {
        "sessions": [
            serialize_snapshot(snapshot)
            for snapshot in container.session_manager.snapshot()
        ]
    }


@router.post("/sessions/{session_id}/start", dependencies=[Depends(require_admin)])
async def start_session(session_id: str, request: Request) -> dict[str, str]:
    """Start or restart a session, e.g. after a remote logout."""
    container: AppContainer = request.app.state.container
    await container.session_manager.start(session_id)
    return {"status": "success"}


@router.post("/sessions/{session_id}/stop", dependencies=[Depends(require_admin)])
async def stop_session(session_id: str, request: Request) -> dict[str, str]:
    """Close a session without reconnecting it."""
    container: AppContainer = request.app.state.container
    await container.session_manager.stop(session_id)
    return {"status": "success"}


def serialize_snapshot(snapshot: SessionSnapshot) -> dict[str, object]:
    """Render a session snapshot as JSON-friendly data."""
    return {
        "session_id": snapshot.session_id,
        "status": snapshot.status.value,
        "has_qr": snapshot.has_qr,
        "reconnect_attempts": snapshot.reconnect_attempts,
        "last_error": snapshot.last_error,
    }
