"""Cast receiver discovery over mDNS (``_googlecast._tcp``)."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, List

logger = logging.getLogger(__name__)

DEFAULT_CAST_PORT = 8009

BrowseFn = Callable[[float], List[Any]]


@dataclass(frozen=True)
class Receiver:
    """A discovered cast receiver. Read-only once created."""

    id: str
    name: str
    host: str
    port: int = DEFAULT_CAST_PORT
    kind: str = "Chromecast"

    def to_dict(self) -> dict:
        return asdict(self)


def browse_googlecast(timeout: float) -> list[Any]:
    """Browse the network for cast receivers for ``timeout`` seconds.

    Blocking; returns whatever ``CastInfo`` records were collected when the
    timeout elapsed.
    """
    import pychromecast
    import zeroconf

    from .errors import DiscoveryError

    try:
        zconf = zeroconf.Zeroconf()
    except Exception as e:
        raise DiscoveryError(f"Could not open mDNS socket: {e}") from e

    browser = pychromecast.discovery.CastBrowser(
        pychromecast.discovery.SimpleCastListener(), zconf
    )
    try:
        browser.start_discovery()
        time.sleep(timeout)
        return list(browser.devices.values())
    except Exception as e:
        raise DiscoveryError(f"mDNS browse failed: {e}") from e
    finally:
        try:
            browser.stop_discovery()
        except Exception as e:
            logger.debug(f"Error stopping cast browser: {e}")
        zconf.close()


def parse_cast_info(info: Any) -> Receiver | None:
    """Turn one advertisement into a Receiver.

    Advertisements without a host or a friendly name are dropped rather than
    given a placeholder name.
    """
    host = getattr(info, "host", None)
    name = (getattr(info, "friendly_name", None) or "").strip()
    if not host or not name:
        return None

    uuid = getattr(info, "uuid", None)
    port = getattr(info, "port", None) or DEFAULT_CAST_PORT
    kind = getattr(info, "model_name", None) or getattr(info, "cast_type", None)
    return Receiver(
        id=str(uuid) if uuid else str(host),
        name=name,
        host=str(host),
        port=int(port),
        kind=kind or "Chromecast",
    )


class ReceiverRegistry:
    """Holds the result of the last completed discovery.

    Each discovery replaces the previous result wholesale. Scans are
    serialized: a second ``discover`` waits for the running one and then
    starts its own scan.
    """

    def __init__(self, browse: BrowseFn | None = None, timeout: float = 5.0):
        self._browse = browse or browse_googlecast
        self.timeout = timeout
        self._receivers: list[Receiver] | None = None
        self._lock = asyncio.Lock()

    def get_cached(self) -> list[Receiver]:
        """Last discovery result without scanning (empty if none yet)."""
        return list(self._receivers or [])

    async def discover(self, timeout: float | None = None) -> list[Receiver]:
        """Scan for receivers. Never raises; a failed scan yields no devices."""
        if timeout is None:
            timeout = self.timeout

        async with self._lock:
            logger.info(f"Scanning for cast receivers ({timeout}s)...")
            loop = asyncio.get_running_loop()
            try:
                infos = await loop.run_in_executor(None, self._browse, timeout)
            except Exception as e:
                logger.error(f"Receiver discovery failed: {e}")
                infos = []

            receivers: list[Receiver] = []
            seen: set[str] = set()
            for info in infos or []:
                try:
                    receiver = parse_cast_info(info)
                except Exception as e:
                    logger.debug(f"Dropping malformed advertisement {info!r}: {e}")
                    continue
                if receiver is None:
                    logger.debug(f"Dropping unnamed advertisement {info!r}")
                    continue
                if receiver.host in seen or receiver.id in seen:
                    continue
                seen.update((receiver.host, receiver.id))
                receivers.append(receiver)
                logger.info(f"Found receiver: {receiver.name} ({receiver.host})")

            self._receivers = receivers
            logger.info(f"Discovery complete: {len(receivers)} receivers")
            return list(receivers)

    async def snapshot(self) -> list[Receiver]:
        """Last discovery result, scanning first if there is nothing cached."""
        if not self._receivers:
            return await self.discover()
        return list(self._receivers)

    async def refresh(self, timeout: float | None = None) -> list[Receiver]:
        self._receivers = None
        return await self.discover(timeout)

    def get(self, receiver_id: str) -> Receiver | None:
        """Look up a cached receiver by id or host."""
        for receiver in self._receivers or []:
            if receiver.id == receiver_id or receiver.host == receiver_id:
                return receiver
        return None
