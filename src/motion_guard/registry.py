from __future__ import annotations

import logging
from typing import Callable, Generic, Iterator, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StreamResolver(Protocol):
    def resolve_stream_source(self, camera_id: str) -> str | None: ...


class StateRegistry(Generic[T]):
    """Per-camera state owned by a single component.

    Entries are created on first use and only removed by an explicit
    :meth:`remove`.
    """

    def __init__(self, factory: Callable[[], T]) -> None:
        self._factory = factory
        self._entries: dict[str, T] = {}

    def get_or_create(self, camera_id: str) -> T:
        entry = self._entries.get(camera_id)
        if entry is None:
            entry = self._factory()
            self._entries[camera_id] = entry
        return entry

    def get(self, camera_id: str) -> T | None:
        return self._entries.get(camera_id)

    def remove(self, camera_id: str) -> T | None:
        return self._entries.pop(camera_id, None)

    def items(self) -> list[tuple[str, T]]:
        return list(self._entries.items())

    def __contains__(self, camera_id: object) -> bool:
        return camera_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)


class StaticCameraRegistry:
    """In-memory camera registry mapping camera ids to stream URIs."""

    def __init__(self, sources: dict[str, str] | None = None) -> None:
        self._sources: dict[str, str | None] = dict(sources or {})

    def register(self, camera_id: str, uri: str | None) -> None:
        self._sources[camera_id] = uri
        logger.info("Camera registered: %s", camera_id)

    def unregister(self, camera_id: str) -> bool:
        if camera_id not in self._sources:
            return False
        del self._sources[camera_id]
        logger.info("Camera unregistered: %s", camera_id)
        return True

    def camera_ids(self) -> list[str]:
        return list(self._sources)

    def resolve_stream_source(self, camera_id: str) -> str | None:
        return self._sources.get(camera_id)

    def __contains__(self, camera_id: object) -> bool:
        return camera_id in self._sources
