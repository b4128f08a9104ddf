"""Tests for the yt-dlp backed search and stream resolution."""

import asyncio
import json

import pytest

from bobadj.services.errors import StreamResolutionError, StreamResolutionTimeout
from bobadj.services.youtube import YouTubeClient, parse_search_line

VIDEO_ID = "dQw4w9WgXcQ"


class ScriptedClient(YouTubeClient):
    """YouTubeClient whose yt-dlp runs return scripted results in order."""

    def __init__(self, results):
        super().__init__(ytdlp_path="yt-dlp", timeout=1)
        self.results = list(results)
        self.calls = []

    async def _run(self, *args):
        self.calls.append(args)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def test_resolve_prefers_video_format():
    client = ScriptedClient(["https://cdn.example/video.mp4\n"])

    info = asyncio.run(client.resolve(VIDEO_ID))

    assert info.stream_url == "https://cdn.example/video.mp4"
    assert info.content_type == "video/mp4"
    assert client.calls[0][:2] == ("-f", "best[ext=mp4]/best")
    assert client.calls[0][-1] == f"https://www.youtube.com/watch?v={VIDEO_ID}"


def test_resolve_falls_back_to_audio():
    client = ScriptedClient(
        [StreamResolutionError("format not available"), "https://cdn.example/a.m4a\n"]
    )

    info = asyncio.run(client.resolve(VIDEO_ID))

    assert info.content_type == "audio/mp4"
    assert info.stream_url == "https://cdn.example/a.m4a"
    assert client.calls[1][:2] == ("-f", "bestaudio[ext=m4a]/bestaudio")


def test_resolve_fails_after_both_formats():
    client = ScriptedClient([StreamResolutionError("nope"), ""])

    with pytest.raises(StreamResolutionError) as excinfo:
        asyncio.run(client.resolve(VIDEO_ID))
    assert not isinstance(excinfo.value, StreamResolutionTimeout)


def test_resolve_timeout_is_distinct():
    client = ScriptedClient(
        [StreamResolutionTimeout("slow"), StreamResolutionTimeout("slow")]
    )

    with pytest.raises(StreamResolutionTimeout):
        asyncio.run(client.resolve(VIDEO_ID))


@pytest.mark.parametrize("bad_id", ["", "short", "x" * 20, "abc; rm -rf /", "abc def ghi"])
def test_resolve_rejects_invalid_ids(bad_id):
    client = ScriptedClient([])

    with pytest.raises(StreamResolutionError):
        asyncio.run(client.resolve(bad_id))
    assert client.calls == []


def test_search_parses_results():
    lines = [
        json.dumps(
            {
                "id": VIDEO_ID,
                "title": "Never Gonna Give You Up",
                "channel": "Rick Astley",
                "duration": 213.0,
                "thumbnails": [{"url": "https://i.ytimg.com/small.jpg"}],
            }
        ),
        "not json",
        json.dumps({"title": "no id"}),
    ]
    client = ScriptedClient(["\n".join(lines)])

    results = asyncio.run(client.search("rick astley", limit=3))

    assert len(results) == 1
    track = results[0]
    assert track.id == VIDEO_ID
    assert track.author == "Rick Astley"
    assert track.thumbnail_url == "https://i.ytimg.com/small.jpg"
    assert client.calls[0][0] == "ytsearch3:rick astley"


def test_search_failure_returns_empty():
    client = ScriptedClient([StreamResolutionError("network down")])

    assert asyncio.run(client.search("anything")) == []


def test_find_track_returns_first_hit_or_none():
    hit = json.dumps({"id": VIDEO_ID, "title": "Song", "uploader": "Someone"})
    client = ScriptedClient([hit, ""])

    assert asyncio.run(client.find_track("song")).author == "Someone"
    assert asyncio.run(client.find_track("nothing")) is None


def test_parse_search_line_default_thumbnail():
    track = parse_search_line(json.dumps({"id": VIDEO_ID, "title": "T"}))
    assert track.thumbnail_url == f"https://i.ytimg.com/vi/{VIDEO_ID}/hqdefault.jpg"
    assert track.author == "Unknown"


class FakeProcess:
    def __init__(self, stdout=b"", stderr=b"", returncode=0):
        self._output = (stdout, stderr)
        self.returncode = returncode

    async def communicate(self):
        return self._output


def fake_exec(process):
    async def create_subprocess_exec(*args, **kwargs):
        return process

    return create_subprocess_exec


def test_unrunnable_binary_is_a_resolution_error(monkeypatch):
    async def not_executable(*args, **kwargs):
        raise PermissionError("permission denied")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", not_executable)
    client = YouTubeClient(ytdlp_path="yt-dlp", timeout=1)

    with pytest.raises(StreamResolutionError):
        asyncio.run(client.resolve(VIDEO_ID))


def test_non_utf8_output_is_tolerated(monkeypatch):
    process = FakeProcess(stdout=b"https://cdn.example/\xff.mp4\n")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec(process))
    client = YouTubeClient(ytdlp_path="yt-dlp", timeout=1)

    info = asyncio.run(client.resolve(VIDEO_ID))

    assert info.stream_url.startswith("https://cdn.example/")
    assert info.content_type == "video/mp4"


def test_non_utf8_error_output_is_a_resolution_error(monkeypatch):
    process = FakeProcess(stderr=b"ERROR: \xfe\xff", returncode=1)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec(process))
    client = YouTubeClient(ytdlp_path="yt-dlp", timeout=1)

    with pytest.raises(StreamResolutionError) as excinfo:
        asyncio.run(client.resolve(VIDEO_ID))
    assert not isinstance(excinfo.value, StreamResolutionTimeout)


def test_missing_binary_is_a_resolution_error():
    client = YouTubeClient(ytdlp_path="/nonexistent/yt-dlp-binary", timeout=1)

    with pytest.raises(StreamResolutionError):
        asyncio.run(client.resolve(VIDEO_ID))
