from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import cv2
import numpy as np

from motion_guard import events
from motion_guard.alarm import AlarmHardware, AlarmSequencer
from motion_guard.capture import CaptureBackend
from motion_guard.config import Config
from motion_guard.detector import FrameAnalyzer
from motion_guard.events import Event, EventChannel
from motion_guard.motion import MotionEventType, MotionValidator
from motion_guard.recorder import RecordingController
from motion_guard.registry import StaticCameraRegistry
from motion_guard.storage import CapacityManager
from motion_guard.timers import TimerService

logger = logging.getLogger(__name__)


class SurveillanceService:
    """Single-node control loop: motion -> alarm + recording -> storage.

    Confirmed motion is delivered to the alarm sequencer and the recording
    controller as two independent subscribers of the same event; neither
    component calls the other.
    """

    def __init__(
        self,
        config: Config,
        capture_backend: CaptureBackend | None = None,
        hardware: AlarmHardware | None = None,
        channel: EventChannel | None = None,
        timers: TimerService | None = None,
        cameras: StaticCameraRegistry | None = None,
        alarm_cooldown_seconds: float | None = None,
    ) -> None:
        self.config = config
        self.channel = channel if channel is not None else EventChannel()
        self.timers = timers if timers is not None else TimerService()
        self.cameras = cameras if cameras is not None else StaticCameraRegistry()
        self.storage = CapacityManager(config.storage, self.channel)
        self.motion = MotionValidator(config.motion, self.channel)
        alarm_kwargs = {}
        if alarm_cooldown_seconds is not None:
            alarm_kwargs["cooldown_seconds"] = alarm_cooldown_seconds
        self.alarm = AlarmSequencer(
            config.alarm, self.timers, self.channel, hardware=hardware, **alarm_kwargs
        )
        self.recorder = RecordingController(
            config.recording,
            self.storage,
            self.timers,
            self.channel,
            self.cameras,
            backend=capture_backend,
        )
        self._analyzers: dict[str, FrameAnalyzer] = {}
        self._watchers: dict[str, asyncio.Task] = {}
        self._unsubscribe = self.channel.subscribe(self._on_event)

    async def start(self) -> None:
        await self.storage.initialize()
        for camera_id, uri in self.config.cameras.sources.items():
            self.add_camera(camera_id, uri)
        logger.info("Surveillance service started with %d cameras", len(self.cameras.camera_ids()))

    def _on_event(self, event: Event) -> None:
        if event.name != events.MOTION:
            return
        if event.payload.get("type") != MotionEventType.MOTION_START.value:
            return
        camera_id = event.camera_id
        if self.alarm.enabled:
            self.alarm.trigger(camera_id)
        self.recorder.start(camera_id)

    def add_camera(self, camera_id: str, uri: str | None) -> None:
        self.cameras.register(camera_id, uri)
        self.motion.attach_camera(camera_id)
        self._analyzers[camera_id] = FrameAnalyzer()

    def remove_camera(self, camera_id: str) -> None:
        watcher = self._watchers.pop(camera_id, None)
        if watcher is not None:
            watcher.cancel()
        self.motion.detach_camera(camera_id)
        self.recorder.force_stop(camera_id)
        if camera_id in self.alarm.active_cameras():
            self.alarm.stop(camera_id)
        self._analyzers.pop(camera_id, None)
        self.cameras.unregister(camera_id)

    def submit_frame(self, camera_id: str, frame: np.ndarray) -> None:
        analyzer = self._analyzers.get(camera_id)
        if analyzer is None:
            logger.warning("Frame from unknown camera %s dropped", camera_id)
            return
        self.motion.submit(camera_id, analyzer.analyze(frame))

    async def watch_camera(self, camera_id: str, frames: AsyncIterator[np.ndarray]) -> None:
        async for frame in frames:
            self.submit_frame(camera_id, frame)

    def watch(self, camera_id: str) -> asyncio.Task:
        uri = self.cameras.resolve_stream_source(camera_id)
        if not uri:
            raise ValueError(f"Camera {camera_id} has no stream source")
        task = asyncio.get_running_loop().create_task(
            self.watch_camera(
                camera_id, open_stream(uri, self.config.cameras.frame_interval_seconds)
            )
        )
        self._watchers[camera_id] = task
        return task

    async def shutdown(self) -> None:
        for task in self._watchers.values():
            task.cancel()
        await asyncio.gather(*self._watchers.values(), return_exceptions=True)
        self._watchers.clear()
        await self.recorder.stop_all()
        self.alarm.stop()
        self.timers.cancel_all()
        await self.timers.drain()
        self._unsubscribe()
        logger.info("Surveillance service stopped")

    def status(self) -> dict:
        return {
            "motion": self.motion.get_all_status(),
            "recording": self.recorder.get_all_states(),
            "alarm": self.alarm.get_state(),
            "storage": self.storage.get_health(),
        }


async def open_stream(uri: str, interval_seconds: float = 0.1) -> AsyncIterator[np.ndarray]:
    """Yield frames from an OpenCV capture, reading off the event loop thread."""
    capture = await asyncio.to_thread(cv2.VideoCapture, uri)
    try:
        if not capture.isOpened():
            logger.error("Could not open stream %s", uri)
            return
        while True:
            ok, frame = await asyncio.to_thread(capture.read)
            if not ok:
                logger.warning("Stream %s ended", uri)
                return
            yield frame
            await asyncio.sleep(interval_seconds)
    finally:
        await asyncio.to_thread(capture.release)
