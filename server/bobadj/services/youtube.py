"""YouTube track search and stream URL resolution via the yt-dlp CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass

from .errors import StreamResolutionError, StreamResolutionTimeout
from .queue import Track

logger = logging.getLogger(__name__)

# YouTube video IDs are 11 characters, alphanumeric with - and _
VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{10,12}$")

# Tried in order: a muxed MP4 the receiver can play, then audio only
STREAM_FORMATS = [
    ("best[ext=mp4]/best", "video/mp4"),
    ("bestaudio[ext=m4a]/bestaudio", "audio/mp4"),
]


@dataclass(frozen=True)
class StreamInfo:
    """A direct, time-limited media URL. Never cached."""

    stream_url: str
    content_type: str


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def _thumbnail_for(entry: dict) -> str:
    if entry.get("thumbnail"):
        return entry["thumbnail"]
    thumbnails = entry.get("thumbnails") or []
    if thumbnails and thumbnails[-1].get("url"):
        return thumbnails[-1]["url"]
    return f"https://i.ytimg.com/vi/{entry['id']}/hqdefault.jpg"


def parse_search_line(line: str) -> Track | None:
    """Parse one ``--dump-json`` line into a Track (None if unusable)."""
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(entry, dict) or not entry.get("id"):
        return None
    return Track(
        id=entry["id"],
        title=entry.get("title") or "",
        author=entry.get("channel") or entry.get("uploader") or "Unknown",
        thumbnail_url=_thumbnail_for(entry),
        duration=entry.get("duration"),
    )


class YouTubeClient:
    """Thin async wrapper around yt-dlp for search and stream lookup."""

    def __init__(
        self,
        ytdlp_path: str = "yt-dlp",
        timeout: float = 15.0,
        search_limit: int = 5,
    ):
        self.ytdlp_path = ytdlp_path
        self.timeout = timeout
        self.search_limit = search_limit

    async def _run(self, *args: str) -> str:
        """Run yt-dlp and return stdout. Raises StreamResolutionError."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.ytdlp_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StreamResolutionError(f"Could not run {self.ytdlp_path}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise StreamResolutionTimeout(
                f"yt-dlp timed out after {self.timeout}s"
            ) from e

        if process.returncode != 0:
            stderr_text = stderr.decode(errors="replace").strip() if stderr else "Unknown error"
            raise StreamResolutionError(f"yt-dlp failed: {stderr_text}")
        return stdout.decode(errors="replace")

    async def resolve(self, track_id: str) -> StreamInfo:
        """Get a direct stream URL for a video, falling back to audio only."""
        if not track_id or not VIDEO_ID_RE.match(track_id):
            raise StreamResolutionError(f"Invalid video ID: {track_id}")

        last_error: StreamResolutionError | None = None
        for format_spec, content_type in STREAM_FORMATS:
            try:
                stdout = await self._run(
                    "-f", format_spec, "--get-url", "--no-playlist", watch_url(track_id)
                )
            except StreamResolutionError as e:
                logger.warning(f"yt-dlp ({format_spec}) failed for {track_id}: {e}")
                last_error = e
                continue

            urls = [line for line in stdout.splitlines() if line.strip()]
            if not urls:
                last_error = StreamResolutionError(f"yt-dlp returned no URL for {track_id}")
                continue

            logger.info(f"Got {content_type} stream URL for {track_id}")
            return StreamInfo(stream_url=urls[0].strip(), content_type=content_type)

        if isinstance(last_error, StreamResolutionTimeout):
            raise last_error
        raise StreamResolutionError(f"Failed to get stream URL for {track_id}") from last_error

    async def search(self, query: str, limit: int | None = None) -> list[Track]:
        """Search YouTube. Returns an empty list on any failure."""
        limit = limit or self.search_limit
        try:
            stdout = await self._run(
                f"ytsearch{limit}:{query}",
                "--flat-playlist",
                "--dump-json",
                "--no-warnings",
            )
        except StreamResolutionError as e:
            logger.error(f"YouTube search failed for '{query}': {e}")
            return []

        results = []
        for line in stdout.splitlines():
            track = parse_search_line(line) if line.strip() else None
            if track:
                results.append(track)

        logger.info(f"YouTube: found {len(results)} results for '{query}'")
        return results

    async def find_track(self, query: str) -> Track | None:
        """Best match for a query, or None."""
        results = await self.search(query, limit=1)
        return results[0] if results else None
