"""Cast session management for Google Cast receivers.

One live control connection at a time. Every ``cast`` tears down the previous
connection (close errors ignored) and then runs connect -> launch -> load
against the new receiver. Media status updates from pychromecast arrive on its
socket thread and are marshalled onto the event loop before they touch any
session state.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable

from .devices import Receiver
from .errors import CastConnectionError, CastLaunchError, CastLoadError

logger = logging.getLogger(__name__)

# Default Media Receiver app id (pychromecast.config.APP_MEDIA_RECEIVER)
APP_MEDIA_RECEIVER = "CC1AD845"

# Receiver-reported player states and idle reasons
PLAYER_STATE_PLAYING = "PLAYING"
PLAYER_STATE_BUFFERING = "BUFFERING"
PLAYER_STATE_PAUSED = "PAUSED"
PLAYER_STATE_IDLE = "IDLE"

IDLE_REASON_FINISHED = "FINISHED"
IDLE_REASON_CANCELLED = "CANCELLED"
IDLE_REASON_INTERRUPTED = "INTERRUPTED"
IDLE_REASON_ERROR = "ERROR"

ACTIVE_PLAYER_STATES = (PLAYER_STATE_PLAYING, PLAYER_STATE_BUFFERING)

FinishedCallback = Callable[[], "Awaitable[Any] | None"]
Connector = Callable[[Receiver, float], Any]


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LAUNCHING = "launching"
    LOADING = "loading"
    PLAYING = "playing"
    BUFFERING = "buffering"
    FINISHED = "finished"
    ERROR = "error"


# States in which receiver media events are meaningful
_MONITORED_STATES = (SessionState.LOADING, SessionState.PLAYING, SessionState.BUFFERING)


def is_natural_finish(player_state: str | None, idle_reason: str | None) -> bool:
    """True only when the media ran to its end (not stopped, not errored)."""
    return player_state == PLAYER_STATE_IDLE and idle_reason == IDLE_REASON_FINISHED


def next_state(
    state: SessionState, player_state: str | None, idle_reason: str | None = None
) -> SessionState:
    """Apply one receiver media status event to the session state.

    Events are only acted on once a load has been issued; terminal states
    (FINISHED, ERROR, IDLE) stay put until the next ``cast``.
    """
    if state not in _MONITORED_STATES:
        return state

    if player_state == PLAYER_STATE_PLAYING:
        return SessionState.PLAYING
    if player_state == PLAYER_STATE_BUFFERING:
        return SessionState.BUFFERING
    if player_state == PLAYER_STATE_IDLE:
        if idle_reason == IDLE_REASON_ERROR:
            return SessionState.ERROR
        if state is SessionState.LOADING:
            # IDLE while the load is pending describes the previous media
            return state
        if is_natural_finish(player_state, idle_reason):
            return SessionState.FINISHED
        return SessionState.IDLE
    return state


def connect_chromecast(receiver: Receiver, timeout: float) -> Any:
    """Open a control connection to ``receiver`` and wait until it is ready."""
    import pychromecast

    try:
        cast_uuid = uuid.UUID(receiver.id)
    except ValueError:
        cast_uuid = None

    cast = pychromecast.get_chromecast_from_host(
        (receiver.host, receiver.port, cast_uuid, receiver.kind, receiver.name),
        tries=1,
        timeout=timeout,
    )
    cast.wait(timeout=timeout)
    if cast.status is None:
        cast.disconnect(timeout=1)
        raise TimeoutError(f"no receiver status within {timeout}s")
    return cast


class _MediaStatusListener:
    """pychromecast media status listener bound to one session generation."""

    def __init__(
        self,
        manager: "CastSessionManager",
        loop: asyncio.AbstractEventLoop,
        generation: int,
    ):
        self._manager = manager
        self._loop = loop
        self._generation = generation

    def new_media_status(self, status: Any) -> None:
        self._dispatch(
            self._manager.handle_media_status,
            getattr(status, "player_state", None),
            getattr(status, "idle_reason", None),
            self._generation,
        )

    def load_media_failed(self, queue_item_id: int, error_code: int) -> None:
        self._dispatch(self._manager.handle_load_failed, error_code, self._generation)

    def _dispatch(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(fn, *args)
        except RuntimeError as e:
            # Event loop already closed (shutdown)
            logger.debug(f"Dropping media status event: {e}")


class CastSessionManager:
    """Owns the single cast session of the process."""

    def __init__(
        self,
        connector: Connector | None = None,
        connect_timeout: float = 10.0,
        load_timeout: float = 10.0,
    ):
        self._connector = connector or connect_chromecast
        self.connect_timeout = connect_timeout
        self.load_timeout = load_timeout

        self._lock = asyncio.Lock()
        self._cast: Any | None = None
        self._player: Any | None = None
        self._generation = 0
        self._on_finished: FinishedCallback | None = None
        self._tasks: set[asyncio.Task] = set()

        self.state = SessionState.IDLE
        self.target_receiver_id: str | None = None
        self.is_playing = False
        self.current_media: dict[str, Any] | None = None

    @property
    def connected(self) -> bool:
        return self._cast is not None

    @property
    def busy(self) -> bool:
        """A cast is between connect and load acknowledgement."""
        return self.state in (
            SessionState.CONNECTING,
            SessionState.LAUNCHING,
            SessionState.LOADING,
        )

    def on_finished(self, callback: FinishedCallback | None) -> None:
        """Register the single natural-end callback (replaces any previous one)."""
        self._on_finished = callback

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug(f"Cast session: {self.state.value} -> {state.value}")
        self.state = state

    async def cast(
        self,
        stream_url: str,
        content_type: str,
        receiver: Receiver,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Play ``stream_url`` on ``receiver``, replacing any current session.

        Returns once the receiver acknowledged the load. Raises
        CastConnectionError, CastLaunchError or CastLoadError; never retries.
        """
        metadata = metadata or {}
        async with self._lock:
            loop = asyncio.get_running_loop()

            await self._close_connection()
            self._generation += 1
            generation = self._generation
            self.target_receiver_id = receiver.id
            self.is_playing = False
            self.current_media = None

            self._set_state(SessionState.CONNECTING)
            logger.info(f"Connecting to {receiver.name} ({receiver.host})...")
            try:
                cast = await loop.run_in_executor(
                    None, self._connector, receiver, self.connect_timeout
                )
            except Exception as e:
                self._set_state(SessionState.ERROR)
                raise CastConnectionError(
                    f"Could not connect to {receiver.name} ({receiver.host}): {e}"
                ) from e
            self._cast = cast

            self._set_state(SessionState.LAUNCHING)
            try:
                await loop.run_in_executor(None, cast.start_app, APP_MEDIA_RECEIVER)
            except Exception as e:
                self._set_state(SessionState.ERROR)
                await self._close_connection()
                raise CastLaunchError(
                    f"Could not launch media receiver on {receiver.name}: {e}"
                ) from e

            self._set_state(SessionState.LOADING)
            player = cast.media_controller
            self._player = player
            title = metadata.get("title") or "Unknown track"
            author = metadata.get("author") or ""
            thumbnail = metadata.get("thumbnail") or None

            def do_load():
                player.register_status_listener(
                    _MediaStatusListener(self, loop, generation)
                )
                player.play_media(
                    stream_url,
                    content_type,
                    title=title,
                    thumb=thumbnail,
                    autoplay=True,
                    stream_type="BUFFERED",
                    metadata={"metadataType": 0, "subtitle": author},
                )
                player.block_until_active(timeout=self.load_timeout)
                status = player.status
                if status is None or status.media_session_id is None:
                    raise TimeoutError(
                        f"load not acknowledged within {self.load_timeout}s"
                    )

            try:
                await loop.run_in_executor(None, do_load)
            except Exception as e:
                self._set_state(SessionState.ERROR)
                await self._close_connection()
                raise CastLoadError(f"Could not load media on {receiver.name}: {e}") from e

            if self.state is SessionState.LOADING:
                self._set_state(SessionState.PLAYING)
            self.is_playing = self.state in (
                SessionState.PLAYING,
                SessionState.BUFFERING,
            )
            self.current_media = {
                "title": title,
                "author": author,
                "thumbnail": thumbnail,
                "trackId": metadata.get("track_id"),
            }
            logger.info(f"Now playing on {receiver.name}: {title}")

    def handle_media_status(
        self,
        player_state: str | None,
        idle_reason: str | None = None,
        generation: int | None = None,
    ) -> None:
        """Feed one receiver media status event into the session.

        Events tagged with an older generation belong to a replaced session
        and are dropped.
        """
        if generation is not None and generation != self._generation:
            return

        previous = self.state
        self._set_state(next_state(previous, player_state, idle_reason))
        if previous in _MONITORED_STATES:
            self.is_playing = player_state in ACTIVE_PLAYER_STATES

        if self.state is SessionState.FINISHED and previous is not SessionState.FINISHED:
            logger.info("Cast session: track finished")
            self._fire_finished()
        elif player_state == PLAYER_STATE_IDLE and previous in _MONITORED_STATES:
            logger.info(f"Cast session idle (reason: {idle_reason})")

    def handle_load_failed(self, error_code: int, generation: int | None = None) -> None:
        if generation is not None and generation != self._generation:
            return
        logger.error(f"Receiver failed to load media (error code {error_code})")
        self.is_playing = False
        self._set_state(SessionState.ERROR)

    def _fire_finished(self) -> None:
        callback = self._on_finished
        if callback is None:
            return
        try:
            result = callback()
        except Exception as e:
            logger.error(f"Finished callback failed: {e}", exc_info=True)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.get_running_loop().create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Finished callback failed: {task.exception()}")

    def get_now_playing(self) -> dict[str, Any]:
        if self.is_playing and self.current_media:
            return {"isPlaying": True, **self.current_media}
        return {"isPlaying": False}

    async def stop(self) -> None:
        """Stop playback and drop the connection. State is cleared either way.

        Waits for an in-flight ``cast`` to finish, then stops what it started.
        """
        async with self._lock:
            player = self._player
            if player is not None:
                loop = asyncio.get_running_loop()
                try:
                    await loop.run_in_executor(None, player.stop)
                except Exception as e:
                    logger.warning(f"Failed to stop media: {e}")

            await self._close_connection()
            # Late events from the stopped session are ignored
            self._generation += 1
            self.is_playing = False
            self.current_media = None
            self._set_state(SessionState.IDLE)
            logger.info("Cast session stopped")

    async def close(self) -> None:
        """Shutdown: stop the session and cancel pending finished callbacks."""
        await self.stop()
        for task in list(self._tasks):
            task.cancel()

    async def _close_connection(self) -> None:
        cast = self._cast
        self._cast = None
        self._player = None
        if cast is None:
            return

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, cast.disconnect)
        except Exception as e:
            logger.debug(f"Ignoring error closing cast connection: {e}")
