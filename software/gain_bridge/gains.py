"""Gain vectors and the cache the inbound relay keeps them in."""

from __future__ import annotations

import json
import math
import struct
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Tuple

from .errors import DecodeError
from .topics import SPATIAL_AXES, AxisGroup, GainTerm

Triple = Tuple[float, float, float]


def to_float32(value: float) -> float:
    """Round ``value`` to the nearest 32-bit float the control side stores.

    Raises ``OverflowError`` when the value does not fit in a float32.
    """

    return struct.unpack("<f", struct.pack("<f", value))[0]


def _coerce_triple(raw, key: str) -> Triple:
    if not isinstance(raw, list):
        raise DecodeError(f"'{key}' must be an array of {len(SPATIAL_AXES)} numbers")
    if len(raw) != len(SPATIAL_AXES):
        raise DecodeError(
            f"'{key}' must hold exactly {len(SPATIAL_AXES)} values, got {len(raw)}"
        )
    values = []
    for idx, item in enumerate(raw):
        # bool is an int subclass; a `true` gain is a sender bug, not 1.0
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            raise DecodeError(f"'{key}[{idx}]' must be a number")
        try:
            number = float(item)
            if not math.isfinite(number):
                raise DecodeError(f"'{key}[{idx}]' must be finite")
            values.append(to_float32(number))
        except OverflowError as exc:
            raise DecodeError(f"'{key}[{idx}]' overflows a 32-bit float") from exc
    return tuple(values)


@dataclass(frozen=True)
class GainVector:
    """Proportional, integral and derivative gains for the X/Y/Z axes."""

    kp: Triple = (0.0, 0.0, 0.0)
    ki: Triple = (0.0, 0.0, 0.0)
    kd: Triple = (0.0, 0.0, 0.0)

    @classmethod
    def zero(cls) -> "GainVector":
        return cls()

    @classmethod
    def from_mapping(cls, data: Mapping) -> "GainVector":
        """Build a vector from ``{"kp": [...], "ki": [...], "kd": [...]}``.

        Every term is required and must carry exactly three finite numbers.
        Unknown keys are ignored so the control side can add metadata.
        """

        if not isinstance(data, Mapping):
            raise DecodeError("gain payload must be a JSON object")
        terms = {}
        for term in GainTerm:
            key = term.payload_key
            if key not in data:
                raise DecodeError(f"gain payload missing required array '{key}'")
            terms[key] = _coerce_triple(data[key], key)
        return cls(**terms)

    @classmethod
    def decode(cls, payload: bytes) -> "GainVector":
        """Decode a raw broadcast payload (UTF-8 JSON)."""

        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, ValueError) as exc:
            raise DecodeError(f"gain payload is not valid JSON: {exc}") from exc
        except RecursionError as exc:
            raise DecodeError("gain payload is nested too deeply") from exc
        return cls.from_mapping(data)

    def term(self, term: GainTerm) -> Triple:
        return getattr(self, term.payload_key)

    def as_dict(self) -> Dict[str, list]:
        return {"kp": list(self.kp), "ki": list(self.ki), "kd": list(self.kd)}

    def encode(self) -> bytes:
        return json.dumps(self.as_dict()).encode("utf-8")

    def flatten(self) -> list:
        """``kp + ki + kd`` as one flat list, the OSC update argument order."""

        return [*self.kp, *self.ki, *self.kd]


class GainCache:
    """Latest gain vector per axis group.

    Each group's slot has its own lock, so a writer on the attitude slot
    never waits on a reader of the position slot.  Slots are only ever
    replaced wholesale; vectors are immutable so readers get a consistent
    snapshot without copying.
    """

    def __init__(self) -> None:
        self._slots: Dict[AxisGroup, GainVector] = {
            group: GainVector.zero() for group in AxisGroup
        }
        self._locks: Dict[AxisGroup, threading.Lock] = {
            group: threading.Lock() for group in AxisGroup
        }

    def update(self, group: AxisGroup, gains: GainVector) -> None:
        if not isinstance(gains, GainVector):
            raise TypeError("GainCache only stores GainVector instances")
        with self._locks[group]:
            self._slots[group] = gains

    def get(self, group: AxisGroup) -> GainVector:
        with self._locks[group]:
            return self._slots[group]

    def snapshot(self) -> Dict[AxisGroup, GainVector]:
        return {group: self.get(group) for group in AxisGroup}
