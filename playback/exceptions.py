"""
Errors raised by the playback engine and its commands.
"""


class PlaybackError(Exception):
    """Base class for every playback failure."""


class InvalidTripLogError(PlaybackError):
    """A trip's event log is missing, not a list, or empty."""


class InvalidSpeedError(PlaybackError, ValueError):
    pass


class UnknownTripError(PlaybackError, KeyError):
    pass
