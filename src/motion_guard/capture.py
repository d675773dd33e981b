from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)

TERMINATE_TIMEOUT_SECONDS = 5.0


class CaptureError(Exception):
    """The capture process could not be started."""


@dataclass
class CaptureHandle:
    source_uri: str | None
    output_path: str
    duration_seconds: float
    process: asyncio.subprocess.Process | None = None
    exit_code: int | None = None
    _stopped: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def running(self) -> bool:
        return self.exit_code is None


class CaptureBackend(Protocol):
    async def start_capture(
        self, source_uri: str | None, output_path: str, duration_seconds: float
    ) -> CaptureHandle: ...
    async def wait(self, handle: CaptureHandle) -> int: ...
    async def terminate(self, handle: CaptureHandle) -> None: ...


def _format_seconds(value: float) -> str:
    return f"{value:g}"


class FfmpegCaptureBackend:
    """Record a bounded clip from a network stream with an ffmpeg subprocess."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        terminate_timeout: float = TERMINATE_TIMEOUT_SECONDS,
    ) -> None:
        self._ffmpeg_path = ffmpeg_path
        self._terminate_timeout = terminate_timeout

    def build_command(self, source_uri: str, output_path: str, duration_seconds: float) -> list[str]:
        cmd = [self._ffmpeg_path, "-hide_banner", "-loglevel", "error"]
        if source_uri.startswith("rtsp://"):
            cmd += ["-rtsp_transport", "tcp"]
        cmd += [
            "-i", source_uri,
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-crf", "23",
            "-c:a", "aac",
            "-b:a", "128k",
            "-movflags", "+faststart",
            "-t", _format_seconds(duration_seconds),
            "-y", output_path,
        ]
        return cmd

    async def start_capture(
        self, source_uri: str | None, output_path: str, duration_seconds: float
    ) -> CaptureHandle:
        if not source_uri:
            raise CaptureError("No stream source to capture from")
        cmd = self.build_command(source_uri, output_path, duration_seconds)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CaptureError(f"Failed to spawn ffmpeg: {exc}") from exc
        logger.debug("ffmpeg started (pid=%s): %s", process.pid, " ".join(cmd))
        return CaptureHandle(
            source_uri=source_uri,
            output_path=output_path,
            duration_seconds=duration_seconds,
            process=process,
        )

    async def wait(self, handle: CaptureHandle) -> int:
        process = handle.process
        if process is None:
            raise CaptureError("Capture handle has no process")
        _, stderr = await process.communicate()
        handle.exit_code = process.returncode
        if handle.exit_code != 0 and stderr:
            logger.error(
                "ffmpeg exited with %s: %s",
                handle.exit_code,
                stderr.decode(errors="replace").strip()[-500:],
            )
        return handle.exit_code

    async def terminate(self, handle: CaptureHandle) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=self._terminate_timeout)
        except asyncio.TimeoutError:
            logger.warning("ffmpeg (pid=%s) ignored SIGTERM, killing", process.pid)
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
        handle.exit_code = process.returncode


class SimulatedCaptureBackend:
    """Stand-in for cameras without a stream source; writes nothing."""

    def __init__(self, exit_code: int = 0) -> None:
        self._exit_code = exit_code

    async def start_capture(
        self, source_uri: str | None, output_path: str, duration_seconds: float
    ) -> CaptureHandle:
        logger.warning("No stream source, simulating capture to %s", output_path)
        return CaptureHandle(
            source_uri=source_uri,
            output_path=output_path,
            duration_seconds=duration_seconds,
        )

    async def wait(self, handle: CaptureHandle) -> int:
        try:
            await asyncio.wait_for(handle._stopped.wait(), timeout=handle.duration_seconds)
        except asyncio.TimeoutError:
            handle.exit_code = self._exit_code
        else:
            handle.exit_code = -15
        return handle.exit_code

    async def terminate(self, handle: CaptureHandle) -> None:
        handle._stopped.set()
        if handle.exit_code is None:
            handle.exit_code = -15
