from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Coroutine

from motion_guard import events
from motion_guard.capture import (
    CaptureBackend,
    CaptureError,
    CaptureHandle,
    FfmpegCaptureBackend,
    SimulatedCaptureBackend,
)
from motion_guard.config import RecordingConfig
from motion_guard.events import EventChannel
from motion_guard.registry import StateRegistry, StreamResolver
from motion_guard.storage import CapacityManager, recording_filename
from motion_guard.timers import TimerService, recording_key, reset_key

logger = logging.getLogger(__name__)


class RecordingPhase(str, Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    SAVING = "SAVING"
    RESET = "RESET"


_TRANSITIONS = {
    RecordingPhase.IDLE: {RecordingPhase.RECORDING},
    RecordingPhase.RECORDING: {RecordingPhase.SAVING, RecordingPhase.RESET},
    RecordingPhase.SAVING: {RecordingPhase.RESET},
    RecordingPhase.RESET: {RecordingPhase.IDLE},
}


@dataclass
class RecordingState:
    phase: RecordingPhase = RecordingPhase.IDLE
    output_identifier: str | None = None
    start_time: datetime | None = None


@dataclass
class _ActiveCapture:
    backend: CaptureBackend
    handle: CaptureHandle


class RecordingController:
    """Drive IDLE -> RECORDING -> SAVING -> RESET -> IDLE for each camera.

    :meth:`start` is the only entry point that begins a cycle and it refuses
    unless the camera is IDLE. Every later transition comes from a timer, the
    capture supervisor or :meth:`force_stop`. Code resuming after an await
    checks that the camera is still in the expected phase *and* on the same
    output identifier before touching state, so a cycle that was force-stopped
    (or force-stopped and restarted) is never mutated by its stale callbacks.
    """

    def __init__(
        self,
        config: RecordingConfig,
        storage: CapacityManager,
        timers: TimerService,
        channel: EventChannel,
        cameras: StreamResolver,
        backend: CaptureBackend | None = None,
        fallback_backend: CaptureBackend | None = None,
        registry: StateRegistry[RecordingState] | None = None,
    ) -> None:
        self._config = config
        self._storage = storage
        self._timers = timers
        self._channel = channel
        self._cameras = cameras
        self._backend = backend if backend is not None else FfmpegCaptureBackend()
        self._fallback = fallback_backend if fallback_backend is not None else SimulatedCaptureBackend()
        self._states = registry if registry is not None else StateRegistry(RecordingState)
        self._captures: dict[str, _ActiveCapture] = {}
        self._last_issued: dict[str, tuple[str, int]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def duration_seconds(self) -> float:
        return self._config.duration_seconds

    def phase(self, camera_id: str) -> RecordingPhase:
        state = self._states.get(camera_id)
        return state.phase if state is not None else RecordingPhase.IDLE

    def start(self, camera_id: str) -> bool:
        state = self._states.get_or_create(camera_id)
        if state.phase is not RecordingPhase.IDLE:
            logger.debug("Recording blocked for %s: phase is %s", camera_id, state.phase.value)
            return False

        started = datetime.now().astimezone()
        identifier = self._next_identifier(camera_id, started)
        self._set_phase(camera_id, state, RecordingPhase.RECORDING)
        state.start_time = started
        state.output_identifier = identifier
        logger.info(
            "Starting recording %s for %s (%.1fs)",
            identifier,
            camera_id,
            self._config.duration_seconds,
        )

        self._timers.start(
            recording_key(camera_id),
            self._config.duration_seconds,
            lambda: self._on_timer_end(camera_id),
        )
        self._spawn(self._run_capture(camera_id, identifier))
        self._channel.publish(events.RECORDING_STARTED, camera_id, filename=identifier)
        return True

    async def _run_capture(self, camera_id: str, identifier: str) -> None:
        source = self._cameras.resolve_stream_source(camera_id)
        backend = self._backend if source else self._fallback
        output_path = str(self._storage.file_path(identifier))
        try:
            handle = await backend.start_capture(source, output_path, self._config.duration_seconds)
        except CaptureError as exc:
            logger.error("Capture for %s failed to start: %s", camera_id, exc)
            self._on_capture_error(camera_id, identifier, exc)
            return

        if not self._is_current(camera_id, identifier, RecordingPhase.RECORDING):
            logger.info("Capture for %s started after its cycle ended, terminating", camera_id)
            await backend.terminate(handle)
            return

        active = _ActiveCapture(backend, handle)
        self._captures[camera_id] = active
        exit_code = await backend.wait(handle)

        if self._captures.get(camera_id) is not active:
            # Terminated on purpose by the duration timer or force_stop
            return
        del self._captures[camera_id]
        if exit_code != 0:
            self._on_capture_error(
                camera_id, identifier, CaptureError(f"capture exited with code {exit_code}")
            )
        else:
            logger.debug("Capture for %s exited cleanly ahead of the timer", camera_id)

    def _on_timer_end(self, camera_id: str) -> None:
        state = self._states.get_or_create(camera_id)
        if state.phase is not RecordingPhase.RECORDING:
            logger.warning(
                "Recording timer for %s fired in phase %s, ignoring", camera_id, state.phase.value
            )
            return
        logger.info("Recording timer ended for %s", camera_id)
        active = self._captures.pop(camera_id, None)
        self._set_phase(camera_id, state, RecordingPhase.SAVING)
        self._spawn(
            self._save_recording(camera_id, state.output_identifier, state.start_time, active)
        )

    async def _save_recording(
        self,
        camera_id: str,
        identifier: str,
        started: datetime,
        active: _ActiveCapture | None,
    ) -> None:
        if active is not None:
            try:
                await active.backend.terminate(active.handle)
            except Exception:
                logger.exception("Error stopping capture for %s", camera_id)

        error: Exception | None = None
        try:
            await self._storage.add_recording(
                camera_id, identifier, started, self._config.duration_seconds
            )
        except Exception as exc:
            logger.exception("Failed to index recording %s", identifier)
            error = exc

        if not self._is_current(camera_id, identifier, RecordingPhase.SAVING):
            logger.info("Recording %s finished saving after its cycle was stopped", identifier)
            return

        state = self._states.get_or_create(camera_id)
        self._enter_reset(camera_id, state)
        if error is None:
            logger.info("Recording saved: %s", identifier)
            self._channel.publish(events.RECORDING_COMPLETE, camera_id, filename=identifier)
        else:
            self._channel.publish(events.RECORDING_ERROR, camera_id, error=str(error))

    def _on_capture_error(self, camera_id: str, identifier: str, error: Exception) -> None:
        if not self._is_current(camera_id, identifier, RecordingPhase.RECORDING):
            logger.debug("Capture error for stale cycle %s ignored", identifier)
            return
        logger.error("Recording %s for %s failed: %s", identifier, camera_id, error)
        self._timers.cancel(recording_key(camera_id))
        self._captures.pop(camera_id, None)
        self._enter_reset(camera_id, self._states.get_or_create(camera_id))
        self._channel.publish(events.RECORDING_ERROR, camera_id, error=str(error))

    def _enter_reset(self, camera_id: str, state: RecordingState) -> None:
        self._set_phase(camera_id, state, RecordingPhase.RESET)
        identifier = state.output_identifier
        self._timers.start(
            reset_key(camera_id),
            self._config.reset_delay_seconds,
            lambda: self._on_reset_end(camera_id, identifier),
        )

    def _on_reset_end(self, camera_id: str, identifier: str | None) -> None:
        if not self._is_current(camera_id, identifier, RecordingPhase.RESET):
            return
        state = self._states.get_or_create(camera_id)
        self._set_phase(camera_id, state, RecordingPhase.IDLE)
        state.output_identifier = None
        state.start_time = None
        logger.info("Camera %s returned to IDLE", camera_id)
        self._channel.publish(events.RECORDING_READY, camera_id)

    def force_stop(self, camera_id: str) -> None:
        """Abort whatever the camera is doing and return it to IDLE."""
        self._timers.cancel(recording_key(camera_id))
        self._timers.cancel(reset_key(camera_id))
        active = self._captures.pop(camera_id, None)
        if active is not None:
            self._spawn(active.backend.terminate(active.handle))

        state = self._states.get(camera_id)
        if state is not None:
            if state.phase is not RecordingPhase.IDLE:
                logger.debug(
                    "Recording phase %s: %s -> %s (forced)",
                    camera_id,
                    state.phase.value,
                    RecordingPhase.IDLE.value,
                )
            state.phase = RecordingPhase.IDLE
            state.output_identifier = None
            state.start_time = None
        logger.info("Recording force stopped for %s", camera_id)

    async def stop_all(self) -> None:
        for camera_id in self._states:
            self.force_stop(camera_id)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("All recordings stopped")

    def get_state(self, camera_id: str) -> dict:
        state = self._states.get(camera_id) or RecordingState()
        return {
            "state": state.phase.value,
            "current_file": state.output_identifier,
            "start_time": state.start_time.isoformat() if state.start_time else None,
            "remaining_seconds": self._timers.remaining(recording_key(camera_id)),
        }

    def get_all_states(self) -> dict[str, dict]:
        return {camera_id: self.get_state(camera_id) for camera_id in self._states}

    def _set_phase(self, camera_id: str, state: RecordingState, phase: RecordingPhase) -> None:
        if phase not in _TRANSITIONS[state.phase]:
            raise RuntimeError(
                f"Illegal recording transition for {camera_id}: {state.phase.value} -> {phase.value}"
            )
        logger.debug("Recording phase %s: %s -> %s", camera_id, state.phase.value, phase.value)
        state.phase = phase

    def _is_current(self, camera_id: str, identifier: str | None, phase: RecordingPhase) -> bool:
        state = self._states.get(camera_id)
        return (
            state is not None
            and state.phase is phase
            and state.output_identifier == identifier
        )

    def _next_identifier(self, camera_id: str, started: datetime) -> str:
        ext = self._config.extension
        stamp = recording_filename(camera_id, started, ext)
        last = self._last_issued.get(camera_id)
        sequence = last[1] + 1 if last is not None and last[0] == stamp else 0
        name = recording_filename(camera_id, started, ext, sequence)
        while self._storage.has_recording(name) or self._storage.file_exists(name):
            sequence += 1
            name = recording_filename(camera_id, started, ext, sequence)
        self._last_issued[camera_id] = (stamp, sequence)
        return name

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Recording task failed", exc_info=task.exception())
