"""Playback error taxonomy.

Every error carries a short ``category`` string so the HTTP layer can tell the
user what went wrong (no device, stream lookup, connection, launch, load)
without matching on exception types.
"""


class PlaybackError(RuntimeError):
    """Base class for recoverable playback failures."""

    category = "playback"


class DiscoveryError(PlaybackError):
    """Raised when the network browse itself fails (degrades to no devices)."""

    category = "discovery"


class NoDeviceAvailable(PlaybackError):
    """Raised when no receiver could be resolved for a play request."""

    category = "no_device"


class StreamResolutionError(PlaybackError):
    """Raised when no playable stream URL could be produced for a track."""

    category = "stream"


class StreamResolutionTimeout(StreamResolutionError):
    """Raised when the stream lookup did not finish in time."""

    category = "stream_timeout"


class CastError(PlaybackError):
    """Base class for failures talking to a receiver."""

    category = "cast"


class CastConnectionError(CastError):
    category = "connection"


class CastLaunchError(CastError):
    category = "launch"


class CastLoadError(CastError):
    category = "load"
