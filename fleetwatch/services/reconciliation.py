"""
Position reconciliation for live map markers.

Each poll delivers a snapshot of devices and positions. For every device the
engine:

1. Matches a position: the device's own positionId pointer first, then any
   position reported for the device id, else the device is positionless.
2. Decides how the marker moves:
       first sighting                 -> INITIAL  (snap)
       same coordinates and fix time  -> UNCHANGED (nothing restarts)
       distance >= jump threshold     -> SNAP (teleport / glitch / reassignment)
       otherwise                      -> ANIMATE (ease-out, never overshoots)
3. After the move settles, dead-reckons forward from the last real fix for a
   short horizon when the device is moving faster than the motion threshold.

Per-device marker state machine:

    (none) -> SETTLED -> ANIMATING -> SETTLED -> EXTRAPOLATING -> SETTLED
                 ^__________________________________________________|
    A new real fix cancels any ANIMATING/EXTRAPOLATING timeline at any point.

Key invariants:
    - At most one timeline task per device; starting one cancels the old one.
    - TrackState.position is always the last matched Position. Frames only
      move the advisory display coordinates.
    - apply_snapshot() never awaits a timeline, so polling is never delayed.
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

import structlog

from fleetwatch.config import Settings
from fleetwatch.schemas import Device, Position
from fleetwatch.services.geo import dead_reckon, haversine_distance, interpolate

logger = structlog.get_logger("reconciliation")


class TrackPhase(str, Enum):
    """Marker states between real fixes."""
    SETTLED = "SETTLED"              # Displayed at a real or final extrapolated point
    ANIMATING = "ANIMATING"          # Easing from the old point to a new real fix
    EXTRAPOLATING = "EXTRAPOLATING"  # Dead-reckoning past the last real fix


class ReconcileAction(str, Enum):
    """What a poll did to a device's marker."""
    INITIAL = "INITIAL"          # First sighting, placed without animation
    SNAP = "SNAP"                # Moved without animation
    ANIMATE = "ANIMATE"          # Eased to the new fix
    UNCHANGED = "UNCHANGED"      # Same reading as before
    NO_POSITION = "NO_POSITION"  # No position matched this device


@dataclass
class ReconcileConfig:
    """Tuning values for snapping, animation and dead-reckoning."""
    jump_threshold_m: float = 5000.0
    min_motion_knots: float = 0.5
    animation_duration_s: float = 2.0
    extrapolation_horizon_s: float = 8.0
    frame_interval_s: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconcileConfig":
        return cls(
            jump_threshold_m=settings.jump_threshold_m,
            min_motion_knots=settings.min_motion_knots,
            animation_duration_s=settings.animation_duration_s,
            extrapolation_horizon_s=settings.extrapolation_horizon_s,
            frame_interval_s=settings.frame_interval_s,
        )


@dataclass
class MarkerFrame:
    """Advisory display position emitted while animating or extrapolating."""
    device_id: int
    lat: float
    lng: float
    phase: TrackPhase
    progress: float  # 0..1 through the current animation or horizon

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "lat": self.lat,
            "lng": self.lng,
            "phase": self.phase.value,
            "progress": round(self.progress, 3),
        }


@dataclass
class TrackState:
    """Reconciliation state for one device, owned by a single engine."""
    device_id: int
    position: Position  # Authoritative: last matched real fix
    display_lat: float
    display_lng: float
    phase: TrackPhase = TrackPhase.SETTLED
    timeline: Optional[asyncio.Task] = None
    extrapolation_deadline: Optional[float] = None

    @property
    def lat(self) -> float:
        return self.position.latitude

    @property
    def lng(self) -> float:
        return self.position.longitude

    @property
    def speed(self) -> float:
        return self.position.speed

    @property
    def course(self) -> float:
        return self.position.course

    @property
    def fix_time(self) -> Optional[datetime]:
        return self.position.fix_time

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "position_id": self.position.id,
            "lat": self.lat,
            "lng": self.lng,
            "display_lat": self.display_lat,
            "display_lng": self.display_lng,
            "speed": self.speed,
            "course": self.course,
            "fix_time": self.fix_time.isoformat() if self.fix_time else None,
            "phase": self.phase.value,
        }


@dataclass
class ReconcileResult:
    """Outcome of reconciling one device against a snapshot."""
    device_id: int
    action: ReconcileAction
    position: Optional[Position] = None
    distance_m: Optional[float] = None
    animate: bool = False
    extrapolate: bool = False

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "action": self.action.value,
            "position_id": self.position.id if self.position else None,
            "lat": self.position.latitude if self.position else None,
            "lng": self.position.longitude if self.position else None,
            "speed": self.position.speed if self.position else None,
            "course": self.position.course if self.position else None,
            "distance_m": round(self.distance_m, 1) if self.distance_m is not None else None,
            "animate": self.animate,
            "extrapolate": self.extrapolate,
        }


# ============================================
# Pure decisions
# ============================================

def match_position(device: Device, positions: Iterable[Position]) -> Optional[Position]:
    """
    Find the current position for a device.

    The device's own positionId pointer wins, even if that position reports a
    different device id. Otherwise the first position for the device id is
    used. Returns None when neither matches.
    """
    positions = list(positions)
    if device.position_id is not None:
        for position in positions:
            if position.id == device.position_id:
                return position
    for position in positions:
        if position.device_id == device.id:
            return position
    return None


def is_same_reading(old: Position, new: Position) -> bool:
    """Same coordinates and same fix time."""
    return (
        old.latitude == new.latitude
        and old.longitude == new.longitude
        and old.fix_time == new.fix_time
    )


def decide_action(
    previous: Optional[Position],
    current: Position,
    jump_threshold_m: float,
) -> tuple[ReconcileAction, Optional[float]]:
    """
    Choose how to move a marker from previous to current.

    Returns (action, distance_m). The jump threshold is inclusive on the
    snap side: a move of exactly jump_threshold_m snaps.
    """
    if previous is None:
        return ReconcileAction.INITIAL, None

    if is_same_reading(previous, current):
        return ReconcileAction.UNCHANGED, 0.0

    distance = haversine_distance(
        previous.latitude, previous.longitude,
        current.latitude, current.longitude,
    )
    if distance >= jump_threshold_m or distance == 0:
        return ReconcileAction.SNAP, distance
    return ReconcileAction.ANIMATE, distance


# ============================================
# Engine
# ============================================

class ReconciliationEngine:
    """
    Per-view reconciliation state and marker timelines.

    Not shared between viewers. Timelines are asyncio tasks, so
    apply_snapshot() must run inside an event loop unless run_timelines is
    False (decisions only, used by tests and one-shot callers).
    """

    def __init__(
        self,
        config: Optional[ReconcileConfig] = None,
        on_frame: Optional[Callable[[MarkerFrame], None]] = None,
        run_timelines: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ReconcileConfig()
        self.on_frame = on_frame
        self.run_timelines = run_timelines
        self._clock = clock
        self._tracks: dict[int, TrackState] = {}

    # ============ Inspection ============

    @property
    def tracks(self) -> dict[int, TrackState]:
        """Copy of the per-device states, keyed by device id."""
        return dict(self._tracks)

    def get(self, device_id: int) -> Optional[TrackState]:
        return self._tracks.get(device_id)

    def active_timelines(self) -> int:
        """Number of devices with a running timeline."""
        return sum(
            1 for track in self._tracks.values()
            if track.timeline is not None and not track.timeline.done()
        )

    def markers(self) -> list[dict]:
        """Serializable state of every tracked device."""
        return [track.to_dict() for track in self._tracks.values()]

    # ============ Reconciliation ============

    def apply_snapshot(
        self,
        devices: Iterable[Device],
        positions: Iterable[Position],
    ) -> list[ReconcileResult]:
        """
        Reconcile every device against one poll's snapshot.

        Devices missing from the snapshot lose their state immediately.
        """
        positions = list(positions)
        results = []
        seen = set()

        for device in devices:
            seen.add(device.id)
            matched = match_position(device, positions)
            if matched is None:
                results.append(ReconcileResult(device.id, ReconcileAction.NO_POSITION))
                continue
            results.append(self._reconcile(device.id, matched))

        for device_id in [d for d in self._tracks if d not in seen]:
            self.discard(device_id)
            logger.debug("Device left snapshot", device_id=device_id)

        return results

    def _is_moving(self, position: Position) -> bool:
        return position.speed > self.config.min_motion_knots

    def _reconcile(self, device_id: int, position: Position) -> ReconcileResult:
        track = self._tracks.get(device_id)
        action, distance = decide_action(
            track.position if track else None,
            position,
            self.config.jump_threshold_m,
        )

        if action == ReconcileAction.UNCHANGED:
            # Leave any in-flight timeline alone
            return ReconcileResult(
                device_id, action, position, distance,
                extrapolate=track.phase == TrackPhase.EXTRAPOLATING,
            )

        start = None
        if track is None:
            track = TrackState(
                device_id=device_id,
                position=position,
                display_lat=position.latitude,
                display_lng=position.longitude,
            )
            self._tracks[device_id] = track
        else:
            self.cancel(device_id)
            start = (track.display_lat, track.display_lng)
            track.position = position

        animate = action == ReconcileAction.ANIMATE
        if not animate:
            track.display_lat = position.latitude
            track.display_lng = position.longitude
        extrapolate = self._is_moving(position)

        if self.run_timelines and (animate or extrapolate):
            self._start_timeline(track, start if animate else None)

        return ReconcileResult(device_id, action, position, distance, animate, extrapolate)

    # ============ Timelines ============

    def _start_timeline(self, track: TrackState, animate_from: Optional[tuple[float, float]]) -> None:
        self.cancel(track.device_id)
        if animate_from is not None:
            track.phase = TrackPhase.ANIMATING
        track.timeline = asyncio.get_running_loop().create_task(
            self._run_timeline(track, animate_from),
            name=f"marker-timeline-{track.device_id}",
        )

    async def _run_timeline(self, track: TrackState, animate_from: Optional[tuple[float, float]]) -> None:
        try:
            if animate_from is not None:
                await self._animate(track, animate_from)

            track.phase = TrackPhase.SETTLED
            if self._is_moving(track.position):
                await self._extrapolate(track)

            track.phase = TrackPhase.SETTLED
            track.extrapolation_deadline = None
        finally:
            if track.timeline is asyncio.current_task():
                track.timeline = None

    async def _animate(self, track: TrackState, start: tuple[float, float]) -> None:
        cfg = self.config
        end_lat, end_lng = track.position.latitude, track.position.longitude
        began = self._clock()

        while True:
            if cfg.animation_duration_s > 0:
                progress = min(1.0, (self._clock() - began) / cfg.animation_duration_s)
            else:
                progress = 1.0
            if progress >= 1.0:
                self._move(track, end_lat, end_lng, TrackPhase.ANIMATING, 1.0)
                return
            lat, lng = interpolate(start[0], start[1], end_lat, end_lng, progress)
            self._move(track, lat, lng, TrackPhase.ANIMATING, progress)
            await asyncio.sleep(cfg.frame_interval_s)

    async def _extrapolate(self, track: TrackState) -> None:
        cfg = self.config
        origin = track.position
        track.phase = TrackPhase.EXTRAPOLATING
        began = self._clock()
        track.extrapolation_deadline = began + cfg.extrapolation_horizon_s

        while True:
            await asyncio.sleep(cfg.frame_interval_s)
            elapsed = min(self._clock() - began, cfg.extrapolation_horizon_s)
            lat, lng = dead_reckon(
                origin.latitude, origin.longitude,
                origin.speed, origin.course,
                elapsed,
            )
            progress = elapsed / cfg.extrapolation_horizon_s if cfg.extrapolation_horizon_s > 0 else 1.0
            self._move(track, lat, lng, TrackPhase.EXTRAPOLATING, progress)
            if elapsed >= cfg.extrapolation_horizon_s:
                return

    def _move(self, track: TrackState, lat: float, lng: float, phase: TrackPhase, progress: float) -> None:
        track.display_lat = lat
        track.display_lng = lng
        if self.on_frame is None:
            return
        try:
            self.on_frame(MarkerFrame(track.device_id, lat, lng, phase, progress))
        except Exception:
            logger.exception("Frame callback failed", device_id=track.device_id)

    # ============ Cancellation ============

    def cancel(self, device_id: int) -> bool:
        """
        Stop a device's timeline, leaving the marker where it is.
        Returns True if a running timeline was cancelled.
        """
        track = self._tracks.get(device_id)
        if track is None:
            return False

        cancelled = False
        if track.timeline is not None and not track.timeline.done():
            track.timeline.cancel()
            cancelled = True
        track.timeline = None
        track.phase = TrackPhase.SETTLED
        track.extrapolation_deadline = None
        return cancelled

    def discard(self, device_id: int) -> None:
        """Cancel and forget a device."""
        self.cancel(device_id)
        self._tracks.pop(device_id, None)

    async def close(self) -> None:
        """Cancel every timeline, wait for them to finish, and drop all state."""
        tasks = [t.timeline for t in self._tracks.values() if t.timeline is not None]
        for device_id in list(self._tracks):
            self.cancel(device_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tracks.clear()
