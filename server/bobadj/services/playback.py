"""Playback orchestration: device choice, stream lookup, casting, queue advance."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from .cast import CastSessionManager
from .devices import Receiver, ReceiverRegistry
from .errors import CastError, NoDeviceAvailable, PlaybackError, StreamResolutionError
from .queue import PlaybackQueue, Track

logger = logging.getLogger(__name__)


class StreamResolver(Protocol):
    async def resolve(self, track_id: str) -> Any: ...


class Describer(Protocol):
    async def describe(self, title: str, author: str = "") -> str: ...


class TrackFinder(Protocol):
    async def find_track(self, query: str) -> Track | None: ...


@dataclass
class BatchResult:
    """Outcome of a multi-song request."""

    played: Track | None = None
    play_success: bool | None = None
    queued: list[Track] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "played": self.played.to_dict() if self.played else None,
            "playSuccess": self.play_success,
            "queued": [track.to_dict() for track in self.queued],
            "notFound": list(self.not_found),
        }


class PlaybackOrchestrator:
    """Coordinates the registry, the cast session and the queue.

    The selected device is pinned on first use: later plays without an
    explicit device go to the same receiver without asking the registry.
    """

    def __init__(
        self,
        registry: ReceiverRegistry,
        session: CastSessionManager,
        resolver: StreamResolver,
        queue: PlaybackQueue | None = None,
        describer: Describer | None = None,
        finder: TrackFinder | None = None,
    ):
        self.registry = registry
        self.session = session
        self.resolver = resolver
        self.queue = queue if queue is not None else PlaybackQueue()
        self.describer = describer
        self.finder = finder

        self._selected: Receiver | None = None
        self._plays_in_flight = 0
        self._trivia: dict[str, str] = {}
        self.last_error: PlaybackError | None = None

        session.on_finished(self._on_track_finished)

    @property
    def selected_device(self) -> Receiver | None:
        return self._selected

    async def resolve_device(self, device_id: str | None = None) -> Receiver:
        """Explicit id, then the pinned device, then the first discovered one."""
        if device_id:
            await self.registry.snapshot()
            receiver = self.registry.get(device_id)
            if receiver is None:
                raise NoDeviceAvailable(f"Unknown device: {device_id}")
            return receiver

        if self._selected is not None:
            return self._selected

        receivers = await self.registry.snapshot()
        if not receivers:
            raise NoDeviceAvailable("No cast devices found on the network")
        return receivers[0]

    def is_idle(self) -> bool:
        """Nothing playing, loading, or about to be cast."""
        return (
            self._plays_in_flight == 0
            and not self.session.is_playing
            and not self.session.busy
        )

    async def play_track(self, track: Track, device_id: str | None = None) -> bool:
        """Cast ``track``. True only if the receiver accepted the load.

        ``queue.current`` is set before the stream lookup and is left in place
        if anything after that fails.
        """
        self._plays_in_flight += 1
        try:
            return await self._play_track(track, device_id)
        finally:
            self._plays_in_flight -= 1

    async def _play_track(self, track: Track, device_id: str | None) -> bool:
        self.last_error = None
        try:
            receiver = await self.resolve_device(device_id)
        except NoDeviceAvailable as e:
            logger.warning(f"Cannot play '{track.title}': {e}")
            self.last_error = e
            return False

        if self._selected != receiver:
            logger.info(f"Selected device: {receiver.name} ({receiver.host})")
        self._selected = receiver
        self.queue.set_current(track)

        try:
            stream = await self.resolver.resolve(track.id)
        except StreamResolutionError as e:
            logger.error(f"Stream lookup failed for '{track.title}': {e}")
            self.last_error = e
            return False
        except Exception as e:
            logger.error(
                f"Stream lookup failed unexpectedly for '{track.title}': {e}", exc_info=True
            )
            self.last_error = StreamResolutionError(f"Failed to get stream URL: {e}")
            return False

        metadata = {
            "title": track.title,
            "author": track.author,
            "thumbnail": track.thumbnail_url,
            "track_id": track.id,
        }
        cast_result, _ = await asyncio.gather(
            self.session.cast(stream.stream_url, stream.content_type, receiver, metadata),
            self._describe(track),
            return_exceptions=True,
        )

        if isinstance(cast_result, asyncio.CancelledError):
            raise cast_result
        if isinstance(cast_result, CastError):
            logger.error(f"Cast failed ({cast_result.category}): {cast_result}")
            self.last_error = cast_result
            return False
        if isinstance(cast_result, Exception):
            logger.error(f"Cast failed unexpectedly: {cast_result}", exc_info=cast_result)
            self.last_error = CastError(str(cast_result))
            return False

        return True

    async def _describe(self, track: Track) -> str:
        if self.describer is None:
            return ""
        try:
            blurb = await self.describer.describe(track.title, track.author)
        except Exception as e:
            logger.warning(f"Trivia lookup failed for '{track.title}': {e}")
            blurb = ""
        if blurb:
            self._trivia = {track.id: blurb}
        return blurb

    async def advance(self) -> bool:
        """Pop the next queued track and play it on the pinned device.

        Shared by manual skip and natural end of a track. On failure the
        queue and session are left idle; nothing is retried.
        """
        next_track = self.queue.pop_next()
        if next_track is None:
            logger.info("Queue empty, playback idle")
            return False

        success = await self.play_track(next_track)
        if not success:
            category = self.last_error.category if self.last_error else "unknown"
            logger.error(f"Could not advance to '{next_track.title}' ({category})")
        return success

    async def _on_track_finished(self) -> None:
        logger.info("Track finished, advancing queue")
        try:
            await self.advance()
        except Exception as e:
            logger.error(f"Auto-advance failed: {e}", exc_info=True)

    async def skip(self) -> dict[str, Any]:
        success = await self.advance()
        return {"success": success, "nowPlaying": self.now_playing()}

    async def queue_songs(self, queries: Iterable[str]) -> BatchResult:
        """Look up each query; play the first hit if idle, queue the rest."""
        result = BatchResult()
        resolved: list[Track] = []
        for query in queries:
            track = None
            if self.finder is not None:
                try:
                    track = await self.finder.find_track(query)
                except Exception as e:
                    logger.error(f"Search failed for '{query}': {e}")
            if track is None:
                result.not_found.append(query)
                continue
            resolved.append(track)

        if not resolved:
            return result

        # Decide and mutate without yielding to the loop
        if self.is_idle():
            result.played = resolved[0]
            result.queued = resolved[1:]
        else:
            result.queued = resolved

        if result.queued:
            self.queue.enqueue_many(result.queued)
        if result.played is not None:
            result.play_success = await self.play_track(result.played)

        logger.info(
            f"Batch: played={result.played.title if result.played else None}, "
            f"queued={len(result.queued)}, not found={len(result.not_found)}"
        )
        return result

    def enqueue(self, track: Track) -> dict[str, Any]:
        self.queue.enqueue(track)
        return self.queue.status()

    def clear_queue(self) -> None:
        self.queue.clear()

    def remove_at(self, index: int) -> Track | None:
        return self.queue.remove_at(index)

    def status(self) -> dict[str, Any]:
        return self.queue.status()

    def now_playing(self) -> dict[str, Any]:
        info = self.session.get_now_playing()
        if info.get("isPlaying"):
            trivia = self._trivia.get(info.get("trackId") or "")
            if trivia:
                info["trivia"] = trivia
        return info

    async def list_devices(self) -> list[Receiver]:
        return await self.registry.snapshot()

    async def refresh_devices(self) -> list[Receiver]:
        return await self.registry.refresh()

    async def select_device(self, device_id: str) -> Receiver | None:
        await self.registry.snapshot()
        receiver = self.registry.get(device_id)
        if receiver is None:
            logger.warning(f"Cannot select unknown device: {device_id}")
            return None
        self._selected = receiver
        logger.info(f"Selected device: {receiver.name} ({receiver.host})")
        return receiver

    async def stop(self) -> None:
        await self.session.stop()
