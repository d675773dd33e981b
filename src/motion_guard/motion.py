from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from motion_guard import events
from motion_guard.config import SENSITIVITY_MULTIPLIERS, MotionConfig
from motion_guard.detector import FrameSignal
from motion_guard.events import EventChannel
from motion_guard.registry import StateRegistry

logger = logging.getLogger(__name__)

MIN_CONSECUTIVE_FRAMES = 3


class MotionEventType(str, Enum):
    MOTION_START = "MOTION_START"
    MOTION_END = "MOTION_END"


@dataclass
class MotionState:
    active: bool = False
    episode_start_ms: float | None = None
    consecutive_confirmed_frames: int = 0
    last_level: float = 0.0
    enabled: bool = True


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class MotionValidator:
    """Convert per-frame signals into confirmed motion events.

    A frame is a candidate when it passes every rejection rule. An episode
    opens on the first candidate frame; a confirmed ``MOTION_START`` fires
    once the episode has lasted ``min_duration_ms`` and has seen at least
    :data:`MIN_CONSECUTIVE_FRAMES` candidate frames. Firing re-arms
    the episode, so sustained motion keeps producing confirmed events. The
    first non-candidate frame closes the episode with ``MOTION_END``.
    """

    def __init__(
        self,
        config: MotionConfig,
        channel: EventChannel,
        registry: StateRegistry[MotionState] | None = None,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self._config = config
        self._channel = channel
        self._states = registry if registry is not None else StateRegistry(MotionState)
        self._clock = clock
        self._sensitivity_level = config.sensitivity_level
        self._cameras: set[str] = set()

    @property
    def sensitivity_level(self) -> str:
        return self._sensitivity_level

    def attach_camera(self, camera_id: str) -> None:
        if camera_id in self._cameras:
            logger.warning("Camera already attached: %s", camera_id)
            return
        self._cameras.add(camera_id)
        logger.info("Camera attached for motion detection: %s", camera_id)

    def detach_camera(self, camera_id: str) -> None:
        self._cameras.discard(camera_id)
        self._states.remove(camera_id)
        logger.info("Camera detached from motion detection: %s", camera_id)

    def set_enabled(self, camera_id: str, enabled: bool) -> None:
        if camera_id not in self._cameras:
            return
        self._states.get_or_create(camera_id).enabled = enabled
        logger.info("Motion detection for %s enabled=%s", camera_id, enabled)

    def set_sensitivity(self, level: str) -> None:
        if level not in SENSITIVITY_MULTIPLIERS:
            logger.warning("Ignoring unknown sensitivity level %r", level)
            return
        self._sensitivity_level = level
        logger.info("Sensitivity updated to %s", level)

    def effective_threshold(self) -> float:
        return self._config.threshold * SENSITIVITY_MULTIPLIERS[self._sensitivity_level]

    def is_candidate(self, signal: FrameSignal) -> bool:
        if signal.motion_level < self.effective_threshold():
            return False
        if signal.pixel_change_percent < self._config.min_pixel_change_percent:
            return False
        if self._config.ignore_shadows and signal.has_shadow:
            logger.debug("Motion rejected: shadow detected")
            return False
        if self._config.ignore_lighting_changes and signal.has_lighting_change:
            logger.debug("Motion rejected: lighting change detected")
            return False
        return True

    def submit(self, camera_id: str, signal: FrameSignal) -> None:
        if camera_id not in self._cameras:
            logger.warning("Frame from unknown camera %s dropped", camera_id)
            return
        state = self._states.get_or_create(camera_id)
        if not state.enabled:
            logger.debug("Frame ignored, motion detection disabled for %s", camera_id)
            return
        if self.is_candidate(signal):
            self._on_candidate(camera_id, state, signal)
        else:
            self._on_rejected(camera_id, state)

    def simulate_motion(self, camera_id: str, level: float = 50.0) -> None:
        self.submit(camera_id, FrameSignal(pixel_change_percent=10.0, motion_level=level))

    def _on_candidate(self, camera_id: str, state: MotionState, signal: FrameSignal) -> None:
        now = self._clock()
        state.last_level = signal.motion_level
        # The opening frame counts towards the consecutive-frame floor
        state.consecutive_confirmed_frames += 1
        if not state.active:
            state.active = True
            state.episode_start_ms = now

        duration_ms = now - state.episode_start_ms
        if (
            duration_ms >= self._config.min_duration_ms
            and state.consecutive_confirmed_frames >= MIN_CONSECUTIVE_FRAMES
        ):
            logger.info(
                "Motion confirmed on %s (duration=%dms, level=%.1f)",
                camera_id,
                duration_ms,
                signal.motion_level,
            )
            state.episode_start_ms = now
            state.consecutive_confirmed_frames = 0
            self._channel.publish(
                events.MOTION,
                camera_id,
                type=MotionEventType.MOTION_START.value,
                timestamp=datetime.now(timezone.utc).isoformat(),
                duration_ms=duration_ms,
                level=signal.motion_level,
            )

    def _on_rejected(self, camera_id: str, state: MotionState) -> None:
        if not state.active:
            return
        state.active = False
        state.episode_start_ms = None
        state.consecutive_confirmed_frames = 0
        logger.debug("Motion ended on %s", camera_id)
        self._channel.publish(
            events.MOTION,
            camera_id,
            type=MotionEventType.MOTION_END.value,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    def get_status(self, camera_id: str) -> dict | None:
        if camera_id not in self._cameras:
            return None
        state = self._states.get_or_create(camera_id)
        return {
            "enabled": state.enabled,
            "is_motion_active": state.active,
            "last_motion_level": state.last_level,
            "sensitivity": self._sensitivity_level,
        }

    def get_all_status(self) -> dict[str, dict | None]:
        return {camera_id: self.get_status(camera_id) for camera_id in sorted(self._cameras)}
