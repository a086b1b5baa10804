"""Error taxonomy for the gain bridge.

Everything the bridge raises on purpose derives from :class:`BridgeError` so
the UI adapter can catch one type and report the failure back to the knob
surface instead of dropping it on the floor.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for bridge failures surfaced to callers."""

    kind = "bridge"


class InvalidIdentifierError(BridgeError):
    """A knob identifier failed shape or vocabulary checks.

    ``component`` names the piece that failed: ``length``, ``group``,
    ``axis``, ``term`` or ``type``.
    """

    kind = "invalid_identifier"

    def __init__(self, identifier, component: str, message: str):
        super().__init__(message)
        self.identifier = identifier
        self.component = component


class EncodeError(BridgeError):
    """A knob value could not be turned into a wire payload."""

    kind = "encode"


class DecodeError(BridgeError):
    """An inbound gain broadcast did not look like a gain vector."""

    kind = "decode"


class TransportError(BridgeError):
    """The bus refused a publish or never confirmed a flush."""

    kind = "transport"


class StartupError(BridgeError):
    """The broker, client connection or subscriptions never came up."""

    kind = "startup"
