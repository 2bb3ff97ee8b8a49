"""
Per-viewer live position synchronization.

A LiveView belongs to one viewing session. It polls the tracking server on a
fixed interval (map: 10s, dashboard: 30s), scopes the snapshot to the
viewer's devices, reconciles it, and publishes events for the SSE stream:

    snapshot       - per-device reconcile results plus current markers
    frame          - advisory marker position while animating/extrapolating
    error          - a poll failed; the next tick is the retry
    session_ended  - the viewer's session is gone; polling has stopped

Before each poll the viewer's session is resolved again, so logout, expiry,
deactivation and allow-list edits take effect on the next tick.

The poll loop and the marker timelines are independent tasks. stop() cancels
all of them so nothing outlives the viewer.
"""
import asyncio
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog

from fleetwatch.config import Settings, get_settings
from fleetwatch.exceptions import FleetWatchError
from fleetwatch.models import User
from fleetwatch.services.reconciliation import MarkerFrame, ReconcileConfig, ReconciliationEngine
from fleetwatch.services.scoping import scope_devices
from fleetwatch.services.tracking_client import TrackingClient

logger = structlog.get_logger("live_sync")

VIEW_KINDS = ("map", "dashboard")
MAX_QUEUED_EVENTS = 1000

SessionCheck = Callable[[], Awaitable[Optional[User]]]


class LiveView:
    """Poll loop and reconciliation state for one viewer."""

    def __init__(
        self,
        client: TrackingClient,
        user: User,
        kind: str = "map",
        settings: Optional[Settings] = None,
        engine: Optional[ReconciliationEngine] = None,
        session_check: Optional[SessionCheck] = None,
    ):
        if kind not in VIEW_KINDS:
            raise ValueError(f"Unknown view kind: {kind}")
        self.client = client
        self.user = user
        self.kind = kind
        self.settings = settings or get_settings()
        self.engine = engine or ReconciliationEngine(ReconcileConfig.from_settings(self.settings))
        self.engine.on_frame = self._on_frame
        self.session_check = session_check
        self.session_ended = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_QUEUED_EVENTS)
        self._poll_task: Optional[asyncio.Task] = None
        self.polls = 0
        self.failures = 0

    @property
    def interval_s(self) -> float:
        if self.kind == "dashboard":
            return self.settings.dashboard_poll_interval_s
        return self.settings.map_poll_interval_s

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ============ Events ============

    def _publish(self, event_type: str, data: dict, droppable: bool = False) -> None:
        event = {"event": event_type, "data": data}
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            if droppable:
                return
            # Slow consumer: drop the oldest event to keep snapshots and errors
            self._queue.get_nowait()
            self._queue.put_nowait(event)

    def _on_frame(self, frame: MarkerFrame) -> None:
        self._publish("frame", frame.to_dict(), droppable=True)

    async def events(self) -> AsyncIterator[dict]:
        """Published events in order; runs until cancelled."""
        while True:
            yield await self._queue.get()

    async def next_event(self, timeout: float) -> Optional[dict]:
        """Next event, or None if nothing arrives within timeout."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    # ============ Polling ============

    async def poll_once(self) -> bool:
        """
        Fetch, scope and reconcile one snapshot.
        Returns False if the poll failed; failures are published, not raised.
        """
        self.polls += 1
        try:
            devices, positions = await asyncio.gather(
                self.client.list_devices(),
                self.client.list_positions(),
            )
        except FleetWatchError as e:
            self.failures += 1
            logger.warning(
                "Poll failed",
                user_id=self.user.user_id,
                view=self.kind,
                error=e.kind,
                message=e.message,
            )
            self._publish("error", {"error": e.kind, "detail": e.message})
            return False

        devices = scope_devices(self.user, devices)
        # Unscoped batch: a positionId may point at a position reporting another device id
        results = self.engine.apply_snapshot(devices, positions)

        self._publish("snapshot", {
            "server_ts": datetime.now(timezone.utc).isoformat(),
            "devices": [d.model_dump(mode="json", by_alias=True) for d in devices],
            "results": [r.to_dict() for r in results],
            "markers": self.engine.markers(),
        })
        return True

    async def check_session(self) -> bool:
        """
        Re-resolve the viewer's session and pick up role or allow-list changes.
        Returns False, and publishes session_ended, once the session is gone.
        """
        if self.session_check is None:
            return True
        user = await self.session_check()
        if user is None:
            self.session_ended = True
            logger.info("Session ended, stopping live view", user_id=self.user.user_id, view=self.kind)
            await self.engine.close()
            self._publish("session_ended", {"user_id": self.user.user_id})
            return False
        self.user = user
        return True

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                if not await self.check_session():
                    return
                await self.poll_once()
            except Exception:
                # Never let one bad cycle end the loop
                self.failures += 1
                logger.exception("Unexpected poll error", user_id=self.user.user_id)
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self.interval_s - elapsed))

    def start(self) -> None:
        """Start polling. Must be called inside an event loop."""
        if self.running:
            return
        logger.info("Live view started", user_id=self.user.user_id, view=self.kind)
        self._poll_task = asyncio.get_running_loop().create_task(
            self._poll_loop(), name=f"live-view-{self.user.user_id}-{self.kind}",
        )

    async def stop(self) -> None:
        """Cancel the poll loop and every marker timeline."""
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.engine.close()
        logger.info("Live view stopped", user_id=self.user.user_id, view=self.kind)

    async def __aenter__(self) -> "LiveView":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
