"""Playback queue: pending tracks plus the currently playing track."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Iterable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Track:
    """A playable track. ``id`` is the key used to re-resolve a stream URL."""

    id: str
    title: str = ""
    author: str = ""
    thumbnail_url: str = ""
    duration: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class PlaybackQueue:
    """FIFO of pending tracks and a single ``current`` slot.

    No I/O and no awaits, so every method is atomic with respect to the event
    loop. ``current`` is whatever was last requested for casting; it is not
    rolled back when a cast fails.
    """

    def __init__(self):
        self._pending: deque[Track] = deque()
        self._current: Track | None = None

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def current(self) -> Track | None:
        return self._current

    def enqueue(self, track: Track) -> None:
        self._pending.append(track)
        logger.info(f"Queue: added '{track.title}' ({len(self._pending)} in queue)")

    def enqueue_many(self, tracks: Iterable[Track]) -> None:
        tracks = list(tracks)
        self._pending.extend(tracks)
        logger.info(
            f"Queue: added {len(tracks)} tracks ({len(self._pending)} total in queue)"
        )

    def peek_next(self) -> Track | None:
        return self._pending[0] if self._pending else None

    def pop_next(self) -> Track | None:
        """Remove the head and make it current. Empty queue clears current."""
        if not self._pending:
            self._current = None
            return None

        self._current = self._pending.popleft()
        logger.info(
            f"Queue: now playing '{self._current.title}' ({len(self._pending)} remaining)"
        )
        return self._current

    def remove_at(self, index: int) -> Track | None:
        if index < 0 or index >= len(self._pending):
            return None
        removed = self._pending[index]
        del self._pending[index]
        logger.info(f"Queue: removed '{removed.title}'")
        return removed

    def set_current(self, track: Track | None) -> None:
        self._current = track

    def clear(self) -> None:
        self._pending.clear()
        logger.info("Queue: cleared")

    def status(self) -> dict[str, Any]:
        """Snapshot of the queue as plain dicts (safe to hand to callers)."""
        return {
            "currentTrack": self._current.to_dict() if self._current else None,
            "queue": [track.to_dict() for track in self._pending],
            "queueLength": len(self._pending),
            "hasNext": bool(self._pending),
        }
