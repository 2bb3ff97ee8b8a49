"""
Server-Sent Events (SSE) streaming of live marker positions.

Each connection gets its own LiveView: an independent poll loop and
reconciliation state scoped to the caller's devices. Disconnecting stops the
poll loop and every marker timeline.

Event types:
- connected: Initial connection acknowledgement (includes view and interval)
- snapshot: Scoped devices, reconcile results and markers after each poll
- frame: Advisory marker position while animating or dead-reckoning
- error: A poll failed; the next scheduled poll retries
- heartbeat: Server timestamp when nothing else was sent
- session_ended: The session was revoked, expired or deactivated; the stream closes
"""
import json
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import async_sessionmaker
from sse_starlette.sse import EventSourceResponse

from fleetwatch.config import get_settings
from fleetwatch.database import get_session_factory
from fleetwatch.models import User
from fleetwatch.services.auth import get_current_user, get_session_token, resolve_session
from fleetwatch.services.live_sync import VIEW_KINDS, LiveView, SessionCheck
from fleetwatch.services.tracking_client import TrackingClient, get_tracking_client

settings = get_settings()
router = APIRouter(prefix="/api", tags=["stream"])


def _heartbeat() -> dict:
    now = datetime.now(timezone.utc)
    return {
        "event": "heartbeat",
        "data": json.dumps({
            "server_ts": now.isoformat(),
            "ts_ms": int(now.timestamp() * 1000),
        }),
    }


def session_checker(session_factory: async_sessionmaker, token: Optional[str]) -> SessionCheck:
    """Resolve the stream's session token afresh on each call."""
    async def check() -> Optional[User]:
        async with session_factory() as db:
            return await resolve_session(db, token)

    return check


async def live_event_generator(request: Request, view: LiveView):
    """Yield SSE events from a LiveView until the client disconnects or the session ends."""
    yield {
        "event": "connected",
        "data": json.dumps({
            "view": view.kind,
            "interval_s": view.interval_s,
            "user_id": view.user.user_id,
            "server_time": datetime.now(timezone.utc).isoformat(),
        }),
    }

    view.start()
    try:
        while True:
            if await request.is_disconnected():
                break

            event = await view.next_event(timeout=settings.sse_keepalive_s)
            if event is None:
                yield _heartbeat()
                continue

            yield {
                "event": event["event"],
                "data": json.dumps(event["data"]),
            }
            if event["event"] == "session_ended":
                break
    finally:
        await view.stop()


@router.get("/stream")
async def stream_positions(
    request: Request,
    view: str = Query("map"),
    user: User = Depends(get_current_user),
    client: TrackingClient = Depends(get_tracking_client),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    SSE endpoint for live marker updates.

    ?view=map polls every 10s, ?view=dashboard every 30s (configurable).
    Clients should use the EventSource API with automatic reconnection.
    """
    if view not in VIEW_KINDS:
        raise HTTPException(status_code=400, detail=f"view must be one of: {', '.join(VIEW_KINDS)}")

    live_view = LiveView(
        client,
        user,
        kind=view,
        session_check=session_checker(session_factory, get_session_token(request)),
    )
    return EventSourceResponse(
        live_event_generator(request, live_view),
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
