from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

import aiofiles

from motion_guard import events
from motion_guard.config import StorageConfig
from motion_guard.events import EventChannel

logger = logging.getLogger(__name__)

INDEX_VERSION = "1.0"
WARNING_PERCENT = 70.0
CRITICAL_PERCENT = 90.0
CLEANUP_MARGIN_PERCENT = 10.0

_FILENAME_RE = re.compile(
    r"^(?P<camera>.+)_(?P<date>\d{4}-\d{2}-\d{2})_(?P<time>\d{2}-\d{2}-\d{2})"
    r"(?:_(?P<seq>\d+))?\.(?P<ext>[A-Za-z0-9]+)$"
)


def recording_filename(
    camera_id: str, when: datetime, extension: str = "mp4", sequence: int = 0
) -> str:
    """Build ``<camera>_<YYYY-MM-DD>_<HH-MM-SS>[_<seq>].<ext>``."""
    stem = f"{camera_id}_{when:%Y-%m-%d}_{when:%H-%M-%S}"
    if sequence:
        stem = f"{stem}_{sequence}"
    return f"{stem}.{extension}"


def parse_recording_filename(filename: str) -> dict | None:
    match = _FILENAME_RE.match(filename)
    if match is None:
        return None
    created = datetime.strptime(f"{match['date']} {match['time']}", "%Y-%m-%d %H-%M-%S")
    return {
        "camera_id": match["camera"],
        "created_at": created,
        "sequence": int(match["seq"] or 0),
        "extension": match["ext"],
    }


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StorageHealth(str, Enum):
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"


def health_for_usage(usage_percent: float) -> StorageHealth:
    if usage_percent >= CRITICAL_PERCENT:
        return StorageHealth.CRITICAL
    if usage_percent >= WARNING_PERCENT:
        return StorageHealth.WARNING
    return StorageHealth.HEALTHY


@dataclass
class RecordingIndexEntry:
    id: str
    camera_id: str
    filename: str
    created_at: str
    duration_seconds: float
    size_bytes: int = 0
    downloaded: bool = False
    downloaded_at: str | None = None

    @property
    def created(self) -> datetime:
        return _aware(datetime.fromisoformat(self.created_at))

    def to_dict(self) -> dict:
        payload = {
            "id": self.id,
            "cameraId": self.camera_id,
            "filename": self.filename,
            "createdAt": self.created_at,
            "durationSeconds": self.duration_seconds,
            "sizeBytes": self.size_bytes,
            "downloaded": self.downloaded,
        }
        if self.downloaded_at is not None:
            payload["downloadedAt"] = self.downloaded_at
        return payload

    @classmethod
    def from_dict(cls, data: dict) -> "RecordingIndexEntry":
        return cls(
            id=str(data["id"]),
            camera_id=str(data["cameraId"]),
            filename=str(data["filename"]),
            created_at=str(data["createdAt"]),
            duration_seconds=float(data.get("durationSeconds", 0)),
            size_bytes=int(data.get("sizeBytes", 0)),
            downloaded=bool(data.get("downloaded", False)),
            downloaded_at=data.get("downloadedAt"),
        )


@dataclass(frozen=True)
class StorageStats:
    used_bytes: int
    total_bytes: int
    usage_percent: float
    health: StorageHealth

    @property
    def free_bytes(self) -> int:
        return max(0, self.total_bytes - self.used_bytes)


@dataclass
class RecordingFilters:
    camera_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int | None = None
    offset: int = 0


class CapacityManager:
    """Owns the recording index and keeps storage under its ceiling.

    The in-memory list is authoritative. Every add or delete rewrites the
    whole index file; a failed write is logged and retried implicitly by the
    next mutation.
    """

    def __init__(self, config: StorageConfig, channel: EventChannel) -> None:
        self._config = config
        self._channel = channel
        self._base_path = Path(config.data_dir).expanduser().resolve()
        self._index_path = self._base_path / config.index_file
        self._recordings: list[RecordingIndexEntry] = []
        self._stats = StorageStats(0, config.capacity_bytes, 0.0, StorageHealth.HEALTHY)
        self._write_lock = asyncio.Lock()
        self._cleaning = False

    @property
    def base_path(self) -> Path:
        return self._base_path

    @property
    def index_path(self) -> Path:
        return self._index_path

    @property
    def stats(self) -> StorageStats:
        return self._stats

    async def initialize(self) -> None:
        await asyncio.to_thread(self._base_path.mkdir, parents=True, exist_ok=True)
        await self._load_index()
        await self.refresh()
        logger.info(
            "Storage initialized at %s (%d recordings, %s)",
            self._base_path,
            len(self._recordings),
            self._stats.health.value,
        )

    async def _load_index(self) -> None:
        try:
            async with aiofiles.open(self._index_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            self._recordings = []
            logger.debug("No index at %s, starting empty", self._index_path)
            await self._save_index()
            return

        try:
            data = json.loads(content)
            if not isinstance(data, dict):
                raise ValueError("index root is not an object")
            self._recordings = [RecordingIndexEntry.from_dict(r) for r in data.get("recordings", [])]
        except (ValueError, KeyError, TypeError):
            corrupt = self._index_path.with_suffix(self._index_path.suffix + ".corrupt")
            logger.exception("Index %s is unreadable, moved to %s", self._index_path, corrupt)
            await asyncio.to_thread(os.replace, self._index_path, corrupt)
            self._recordings = []
            await self._save_index()
            return
        logger.debug("Index loaded (%d recordings)", len(self._recordings))

    async def _save_index(self) -> bool:
        tmp_path = self._index_path.with_suffix(self._index_path.suffix + ".tmp")
        async with self._write_lock:
            index = {
                "version": INDEX_VERSION,
                "lastUpdated": datetime.now(timezone.utc).isoformat(),
                "recordings": [r.to_dict() for r in self._recordings],
            }
            try:
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(index, indent=2))
                await asyncio.to_thread(os.replace, tmp_path, self._index_path)
            except OSError:
                logger.exception("Failed to write index %s", self._index_path)
                return False
        logger.debug("Index saved (%d recordings)", len(self._recordings))
        return True

    def file_path(self, filename: str) -> Path:
        return self._base_path / filename

    def file_exists(self, filename: str) -> bool:
        return self.file_path(filename).exists()

    def has_recording(self, filename: str) -> bool:
        return any(r.filename == filename for r in self._recordings)

    async def add_recording(
        self,
        camera_id: str,
        filename: str,
        created_at: datetime,
        duration_seconds: float,
    ) -> RecordingIndexEntry:
        if self.has_recording(filename):
            raise ValueError(f"Recording {filename} is already indexed")
        entry = RecordingIndexEntry(
            id=f"rec_{uuid.uuid4().hex[:12]}",
            camera_id=camera_id,
            filename=filename,
            created_at=created_at.isoformat(),
            duration_seconds=float(duration_seconds),
            size_bytes=await asyncio.to_thread(self._file_size, filename),
        )
        self._recordings.append(entry)
        await self._save_index()
        logger.info("Recording added to index: %s", filename)
        self._channel.publish(events.RECORDING_ADDED, camera_id, filename=filename, id=entry.id)
        await self.refresh()
        return entry

    def get_recordings(self, filters: RecordingFilters | None = None) -> list[RecordingIndexEntry]:
        filters = filters or RecordingFilters()
        result = list(self._recordings)
        if filters.camera_id is not None:
            result = [r for r in result if r.camera_id == filters.camera_id]
        if filters.start is not None:
            result = [r for r in result if r.created >= _aware(filters.start)]
        if filters.end is not None:
            result = [r for r in result if r.created <= _aware(filters.end)]
        result.sort(key=lambda r: r.created, reverse=True)
        if filters.limit is not None:
            result = result[filters.offset : filters.offset + filters.limit]
        elif filters.offset:
            result = result[filters.offset :]
        return result

    def get_recording(self, identifier: str) -> RecordingIndexEntry | None:
        for entry in self._recordings:
            if entry.id == identifier or entry.filename == identifier:
                return entry
        return None

    async def delete_recording(self, filename: str, refresh: bool = True) -> bool:
        """Delete the file (missing is fine) then drop and persist the index entry."""
        try:
            await asyncio.to_thread(self.file_path(filename).unlink)
        except FileNotFoundError:
            logger.debug("Recording file %s already missing", filename)

        entry = self.get_recording(filename)
        if entry is not None:
            self._recordings.remove(entry)
        await self._save_index()
        logger.info("Recording deleted: %s", filename)
        self._channel.publish(
            events.RECORDING_DELETED, entry.camera_id if entry else None, filename=filename
        )
        if refresh:
            await self.refresh()
        return entry is not None

    async def mark_downloaded(self, filename: str) -> bool:
        entry = self.get_recording(filename)
        if entry is None:
            return False
        entry.downloaded = True
        entry.downloaded_at = datetime.now(timezone.utc).isoformat()
        await self._save_index()
        return True

    def _file_size(self, filename: str) -> int:
        try:
            return self.file_path(filename).stat().st_size
        except FileNotFoundError:
            return 0

    def _measure(self) -> StorageStats:
        used = sum(self._file_size(r.filename) for r in list(self._recordings))
        total = self._config.capacity_bytes
        usage = used / total * 100.0 if total > 0 else 100.0
        return StorageStats(
            used_bytes=used,
            total_bytes=total,
            usage_percent=usage,
            health=health_for_usage(usage),
        )

    async def _update_stats(self) -> StorageStats:
        try:
            self._stats = await asyncio.to_thread(self._measure)
        except OSError:
            logger.exception("Failed to measure storage usage")
            self._stats = StorageStats(
                self._stats.used_bytes,
                self._stats.total_bytes,
                self._stats.usage_percent,
                StorageHealth.ERROR,
            )
        return self._stats

    async def refresh(self) -> StorageStats:
        stats = await self._update_stats()
        if stats.health is StorageHealth.ERROR:
            return stats
        if (
            self._config.auto_cleanup
            and not self._cleaning
            and stats.usage_percent >= self._config.max_usage_percent
        ):
            await self._perform_cleanup()
            stats = self._stats
        if stats.health is StorageHealth.WARNING:
            self._channel.publish(events.STORAGE_WARNING, usage_percent=stats.usage_percent)
        elif stats.health is StorageHealth.CRITICAL:
            self._channel.publish(events.STORAGE_CRITICAL, usage_percent=stats.usage_percent)
        return stats

    async def _perform_cleanup(self) -> int:
        target = self._config.max_usage_percent - CLEANUP_MARGIN_PERCENT
        oldest_first = sorted(self._recordings, key=lambda r: r.created)
        logger.info(
            "Storage at %.1f%%, evicting oldest recordings down to %.1f%%",
            self._stats.usage_percent,
            target,
        )
        deleted = 0
        self._cleaning = True
        try:
            while self._stats.usage_percent > target and oldest_first:
                oldest = oldest_first.pop(0)
                try:
                    await self.delete_recording(oldest.filename, refresh=False)
                except OSError:
                    logger.exception("Failed to delete %s during cleanup", oldest.filename)
                    continue
                deleted += 1
                await self._update_stats()
        finally:
            self._cleaning = False
        logger.info("Storage cleanup complete (%d deleted)", deleted)
        self._channel.publish(events.CLEANUP_COMPLETE, count=deleted)
        return deleted

    def get_health(self) -> dict:
        return {
            "used_bytes": self._stats.used_bytes,
            "total_bytes": self._stats.total_bytes,
            "free_bytes": self._stats.free_bytes,
            "usage_percent": self._stats.usage_percent,
            "health": self._stats.health.value,
            "recording_count": len(self._recordings),
            "auto_cleanup": self._config.auto_cleanup,
            "max_usage_percent": self._config.max_usage_percent,
        }
