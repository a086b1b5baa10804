"""PID gain bridge between an OSC tuning surface and a control process."""

from .bridge import GainBridge
from .config_validation import BridgeSettings, BusSettings, UiSettings, ValidationError
from .errors import (
    BridgeError,
    DecodeError,
    EncodeError,
    InvalidIdentifierError,
    StartupError,
    TransportError,
)
from .gains import GainCache, GainVector
from .publisher import KnobUpdate
from .topics import AxisGroup, GainTerm, resolve

__all__ = [
    "AxisGroup",
    "BridgeError",
    "BridgeSettings",
    "BusSettings",
    "DecodeError",
    "EncodeError",
    "GainBridge",
    "GainCache",
    "GainTerm",
    "GainVector",
    "InvalidIdentifierError",
    "KnobUpdate",
    "StartupError",
    "TransportError",
    "UiSettings",
    "ValidationError",
    "resolve",
]
