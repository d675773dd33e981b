from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from motion_guard import events
from motion_guard.config import AlarmConfig
from motion_guard.events import EventChannel
from motion_guard.registry import StateRegistry
from motion_guard.timers import ALARM_COOLDOWN_KEY, TimerService, alarm_key

logger = logging.getLogger(__name__)

ALARM_COOLDOWN_SECONDS = 5.0


class AlarmMode(str, Enum):
    ARMED = "ARMED"
    DISARMED = "DISARMED"
    TRIGGERED = "TRIGGERED"
    COOLDOWN = "COOLDOWN"


class AlarmHardware(Protocol):
    def activate(self, volume_level: int) -> None: ...
    def deactivate(self) -> None: ...


class SimulatedSiren:
    """Log-only stand-in used when no physical siren is wired up."""

    def activate(self, volume_level: int) -> None:
        logger.info("ALARM SOUND SIMULATION - siren active at volume %d", volume_level)

    def deactivate(self) -> None:
        logger.info("ALARM SOUND SIMULATION - siren stopped")


@dataclass
class CameraAlarm:
    is_active: bool = False
    triggered_at: datetime | None = None


class AlarmSequencer:
    def __init__(
        self,
        config: AlarmConfig,
        timers: TimerService,
        channel: EventChannel,
        hardware: AlarmHardware | None = None,
        registry: StateRegistry[CameraAlarm] | None = None,
        cooldown_seconds: float = ALARM_COOLDOWN_SECONDS,
    ) -> None:
        self._duration_seconds = config.duration_seconds
        self._volume_level = min(100, max(0, config.volume_level))
        self._enabled = config.enabled
        self._timers = timers
        self._channel = channel
        self._hardware: AlarmHardware = hardware if hardware is not None else SimulatedSiren()
        self._alarms = registry if registry is not None else StateRegistry(CameraAlarm)
        self._cooldown_seconds = cooldown_seconds
        self._mode = AlarmMode.ARMED if config.enabled else AlarmMode.DISARMED

    @property
    def mode(self) -> AlarmMode:
        return self._mode

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_hardware(self, hardware: AlarmHardware) -> None:
        self._hardware = hardware
        logger.info("Hardware alarm interface set")

    def active_cameras(self) -> list[str]:
        return [camera_id for camera_id, alarm in self._alarms.items() if alarm.is_active]

    def trigger(self, camera_id: str) -> bool:
        if self._mode is AlarmMode.DISARMED:
            logger.debug("Alarm not triggered for %s: system disarmed", camera_id)
            return False
        if self._mode is AlarmMode.COOLDOWN:
            logger.debug("Alarm not triggered for %s: in cooldown", camera_id)
            return False
        alarm = self._alarms.get_or_create(camera_id)
        if alarm.is_active:
            logger.debug("Alarm already active for %s", camera_id)
            return False

        logger.info("ALARM TRIGGERED by %s", camera_id)
        self._mode = AlarmMode.TRIGGERED
        alarm.is_active = True
        alarm.triggered_at = datetime.now(timezone.utc)
        self._activate_hardware()
        self._channel.publish(events.ALARM_TRIGGERED, camera_id)
        self._timers.start(
            alarm_key(camera_id),
            self._duration_seconds,
            lambda: self._on_alarm_timeout(camera_id),
        )
        return True

    def _on_alarm_timeout(self, camera_id: str) -> None:
        alarm = self._alarms.get(camera_id)
        if alarm is None or not alarm.is_active:
            logger.debug("Stale alarm timeout for %s ignored", camera_id)
            return
        logger.info("Alarm for %s auto-stopped after %.1fs", camera_id, self._duration_seconds)
        alarm.is_active = False
        if not self.active_cameras():
            self._deactivate_hardware()
            self._enter_cooldown()
        self._channel.publish(events.ALARM_STOPPED, camera_id)

    def _enter_cooldown(self) -> None:
        self._mode = AlarmMode.COOLDOWN
        self._timers.start(ALARM_COOLDOWN_KEY, self._cooldown_seconds, self._on_cooldown_end)

    def _on_cooldown_end(self) -> None:
        if self._mode is not AlarmMode.COOLDOWN:
            return
        self._mode = AlarmMode.ARMED
        logger.debug("Alarm system returned to ARMED")

    def stop(self, camera_id: str | None = None) -> None:
        """Silence alarms immediately and return straight to ARMED."""
        if camera_id is not None:
            self._timers.cancel(alarm_key(camera_id))
            alarm = self._alarms.get(camera_id)
            if alarm is not None:
                alarm.is_active = False
            logger.info("Alarm manually stopped for %s", camera_id)
            if self.active_cameras():
                # Other cameras still hold the siren; mode stays TRIGGERED
                self._channel.publish(events.ALARM_STOPPED, camera_id)
                return
        else:
            for cid, alarm in self._alarms.items():
                self._timers.cancel(alarm_key(cid))
                alarm.is_active = False
            logger.info("All alarms stopped")
        self._timers.cancel(ALARM_COOLDOWN_KEY)
        self._deactivate_hardware()
        self._mode = AlarmMode.ARMED
        self._channel.publish(events.ALARM_STOPPED, camera_id)

    def arm(self) -> None:
        self._timers.cancel(ALARM_COOLDOWN_KEY)
        self._mode = AlarmMode.ARMED
        logger.info("Alarm system ARMED")
        self._channel.publish(events.ALARM_ARMED)

    def disarm(self) -> None:
        self.stop()
        self._mode = AlarmMode.DISARMED
        logger.info("Alarm system DISARMED")
        self._channel.publish(events.ALARM_DISARMED)

    def toggle(self) -> AlarmMode:
        if self._mode is AlarmMode.DISARMED:
            self.arm()
        else:
            self.disarm()
        return self._mode

    def update_config(
        self,
        duration_seconds: float | None = None,
        enabled: bool | None = None,
        volume_level: int | None = None,
    ) -> dict:
        if duration_seconds is not None:
            self._duration_seconds = float(duration_seconds)
        if volume_level is not None:
            self._volume_level = min(100, max(0, int(volume_level)))
        if enabled is not None:
            self._enabled = enabled
            if enabled:
                self.arm()
            else:
                self.disarm()
        logger.info(
            "Alarm config updated (duration=%.1fs, volume=%d, enabled=%s)",
            self._duration_seconds,
            self._volume_level,
            self._enabled,
        )
        return {
            "duration_seconds": self._duration_seconds,
            "volume_level": self._volume_level,
            "enabled": self._enabled,
        }

    def get_state(self) -> dict:
        return {
            "state": self._mode.value,
            "enabled": self._enabled,
            "duration_seconds": self._duration_seconds,
            "volume_level": self._volume_level,
            "active_alarms": [
                {"camera_id": camera_id, "triggered_at": alarm.triggered_at.isoformat()}
                for camera_id, alarm in self._alarms.items()
                if alarm.is_active and alarm.triggered_at is not None
            ],
        }

    def _activate_hardware(self) -> None:
        try:
            self._hardware.activate(self._volume_level)
        except Exception:
            logger.exception("Failed to activate hardware alarm")

    def _deactivate_hardware(self) -> None:
        try:
            self._hardware.deactivate()
        except Exception:
            logger.exception("Failed to deactivate hardware alarm")
