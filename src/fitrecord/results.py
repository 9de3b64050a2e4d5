"""
Result codes returned across component boundaries.

Failures in the recording core are reported as values and never raised.
"""

from enum import Enum, auto


class DecodeError(Enum):
    """Why a notification payload could not be decoded."""

    TRUNCATED = auto()
    UNSUPPORTED = auto()


class NegotiationResult(Enum):
    """Outcome of connecting to a device and subscribing to a service."""

    SUCCESS = auto()
    DEVICE_NOT_FOUND = auto()
    CONNECTION_FAILED = auto()
    SERVICE_UNAVAILABLE = auto()
    NO_COMPATIBLE_SERVICE = auto()


class RecorderResult(Enum):
    """Outcome of a session recorder transition."""

    SUCCESS = auto()
    ALREADY_ENDED = auto()
    INVALID_TRANSITION = auto()
    NO_DEVICE = auto()
    PERSISTENCE_FAILURE = auto()


class PersistenceError(Exception):
    """Raised by a session store when a session cannot be saved or loaded."""
