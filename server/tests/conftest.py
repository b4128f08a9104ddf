"""
Shared fakes and fixtures for the playback service tests.

Nothing here touches the network: discovery gets a fake browse function, the
cast session a fake connector returning fake Chromecast objects, and the
orchestrator fake resolver / describer / finder collaborators.
"""

import asyncio
import threading
from types import SimpleNamespace

import pytest

from bobadj.services.cast import CastSessionManager
from bobadj.services.devices import ReceiverRegistry
from bobadj.services.errors import StreamResolutionError
from bobadj.services.playback import PlaybackOrchestrator
from bobadj.services.queue import PlaybackQueue, Track
from bobadj.services.youtube import StreamInfo


def cast_info(host, name="Living Room", uuid=None, port=8009, model="Chromecast"):
    """Stand-in for pychromecast's CastInfo record."""
    return SimpleNamespace(
        host=host, friendly_name=name, uuid=uuid, port=port, model_name=model
    )


class FakeBrowse:
    """Browse function returning canned advertisements."""

    def __init__(self, infos=None, error=None):
        self.infos = list(infos or [])
        self.error = error
        self.calls = []

    def __call__(self, timeout):
        self.calls.append(timeout)
        if self.error:
            raise self.error
        return list(self.infos)


class FakeMediaController:
    def __init__(self, cast, fail_load=False, ack_load=True):
        self._cast = cast
        self.fail_load = fail_load
        self.ack_load = ack_load
        self.listeners = []
        self.loaded = []
        self.stopped = False
        self.status = SimpleNamespace(media_session_id=None, player_state="UNKNOWN")

    def register_status_listener(self, listener):
        self.listeners.append(listener)

    def play_media(self, url, content_type, **kwargs):
        if self.fail_load:
            raise RuntimeError("LOAD_FAILED")
        self.loaded.append((url, content_type, kwargs))
        if self.ack_load:
            self.status = SimpleNamespace(media_session_id=1, player_state="PLAYING")

    def block_until_active(self, timeout=None):
        pass

    def stop(self):
        self.stopped = True

    def emit(self, player_state, idle_reason=None):
        """Push a media status to listeners the way pychromecast does."""
        status = SimpleNamespace(player_state=player_state, idle_reason=idle_reason)
        for listener in self.listeners:
            listener.new_media_status(status)


class FakeCast:
    def __init__(self, receiver, events, fail_launch=False, fail_load=False, ack_load=True):
        self.receiver = receiver
        self.events = events
        self.fail_launch = fail_launch
        self.launched = []
        self.disconnected = False
        self.media_controller = FakeMediaController(
            self, fail_load=fail_load, ack_load=ack_load
        )

    def start_app(self, app_id):
        if self.fail_launch:
            raise RuntimeError("LAUNCH_ERROR")
        self.launched.append(app_id)

    def disconnect(self, timeout=None):
        self.disconnected = True
        self.events.append(("disconnect", self.receiver.id))


class FakeConnector:
    """Connector creating FakeCast objects; records connect/disconnect order."""

    def __init__(self):
        self.events = []
        self.casts = []
        self.fail_connect = False
        self.fail_launch = False
        self.fail_load = False
        self.ack_load = True
        self._lock = threading.Lock()

    def __call__(self, receiver, timeout):
        with self._lock:
            if self.fail_connect:
                raise OSError("connection refused")
            self.events.append(("connect", receiver.id))
            cast = FakeCast(
                receiver,
                self.events,
                fail_launch=self.fail_launch,
                fail_load=self.fail_load,
                ack_load=self.ack_load,
            )
            self.casts.append(cast)
            return cast

    @property
    def last_cast(self):
        return self.casts[-1] if self.casts else None


class FakeResolver:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def resolve(self, track_id):
        self.calls.append(track_id)
        if track_id in self.failing:
            raise StreamResolutionError(f"no stream for {track_id}")
        return StreamInfo(
            stream_url=f"https://media.example/{track_id}.mp4",
            content_type="video/mp4",
        )


class FakeDescriber:
    def __init__(self, delay=0.0, fail=False):
        self.delay = delay
        self.fail = fail
        self.calls = []

    async def describe(self, title, author=""):
        self.calls.append((title, author))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("ollama down")
        return f"Fun fact about {title}"


class FakeFinder:
    def __init__(self, tracks):
        self.tracks = dict(tracks)
        self.queries = []

    async def find_track(self, query):
        self.queries.append(query)
        return self.tracks.get(query)


def make_track(track_id, title=None, author="Some Artist"):
    return Track(
        id=track_id,
        title=title or f"Song {track_id}",
        author=author,
        thumbnail_url=f"https://img.example/{track_id}.jpg",
    )


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def session(connector):
    return CastSessionManager(connector=connector, connect_timeout=1, load_timeout=1)


@pytest.fixture
def browse():
    return FakeBrowse([cast_info("10.0.0.5", "Living Room", uuid="uuid-r1")])


@pytest.fixture
def registry(browse):
    return ReceiverRegistry(browse=browse, timeout=0.01)


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def describer():
    return FakeDescriber()


@pytest.fixture
def orchestrator(registry, session, resolver, describer):
    return PlaybackOrchestrator(
        registry=registry,
        session=session,
        resolver=resolver,
        queue=PlaybackQueue(),
        describer=describer,
    )
