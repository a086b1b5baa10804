"""Knob identifier → bus topic routing.

Knob identifiers are five characters, read left to right:

* ``pos`` / ``att``: which loop (position or attitude) the knob tunes,
* ``x`` / ``y`` / ``z``: which spatial axis,
* ``p`` / ``i`` / ``d``: which PID term.

So ``posxp`` is the position loop's X-axis proportional gain and routes to
``pid.gains.pos.p.x``.  Matching is case-insensitive; topics are always lower
case.  The flat four-letter aliases some older surfaces sent (``posp``) are
not accepted.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import List

from .errors import InvalidIdentifierError

TOPIC_ROOT = "pid.gains"
IDENTIFIER_LENGTH = 5


class AxisGroup(enum.Enum):
    POSITION = "pos"
    ATTITUDE = "att"

    @property
    def channel(self) -> str:
        """UI event channel for this group, e.g. ``update:pos``."""

        return f"update:{self.value}"


class GainTerm(enum.Enum):
    PROPORTIONAL = "p"
    INTEGRAL = "i"
    DERIVATIVE = "d"

    @property
    def payload_key(self) -> str:
        return f"k{self.value}"


SPATIAL_AXES = ("x", "y", "z")

_GROUPS = {group.value: group for group in AxisGroup}
_TERMS = {term.value: term for term in GainTerm}


@dataclass(frozen=True)
class KnobAddress:
    """A validated (group, axis, term) triple."""

    group: AxisGroup
    axis: str
    term: GainTerm

    @property
    def axis_index(self) -> int:
        return SPATIAL_AXES.index(self.axis)

    @property
    def topic(self) -> str:
        return f"{TOPIC_ROOT}.{self.group.value}.{self.term.value}.{self.axis}"


def parse(identifier) -> KnobAddress:
    """Split ``identifier`` into a :class:`KnobAddress` or raise."""

    if not isinstance(identifier, str):
        raise InvalidIdentifierError(
            identifier,
            "type",
            f"knob identifier must be a string, got {type(identifier).__name__}",
        )
    if len(identifier) != IDENTIFIER_LENGTH:
        raise InvalidIdentifierError(
            identifier,
            "length",
            f"invalid knob identifier format '{identifier}': expected "
            f"{IDENTIFIER_LENGTH} characters, got {len(identifier)}",
        )

    token = identifier.lower()
    group, axis, term = token[:3], token[3:4], token[4:5]

    if group not in _GROUPS:
        raise InvalidIdentifierError(
            identifier, "group", f"unknown group '{group}' in knob identifier '{identifier}'"
        )
    if axis not in SPATIAL_AXES:
        raise InvalidIdentifierError(
            identifier, "axis", f"unknown axis '{axis}' in knob identifier '{identifier}'"
        )
    if term not in _TERMS:
        raise InvalidIdentifierError(
            identifier, "term", f"unknown gain '{term}' in knob identifier '{identifier}'"
        )
    return KnobAddress(group=_GROUPS[group], axis=axis, term=_TERMS[term])


def resolve(identifier) -> str:
    """Map a knob identifier onto its canonical bus topic."""

    return parse(identifier).topic


def broadcast_topic(group: AxisGroup) -> str:
    """Topic the control process uses to broadcast a full gain vector."""

    return f"{TOPIC_ROOT}.{group.value}"


def knob_identifiers() -> List[str]:
    """Every valid identifier in canonical (lower case) form."""

    return [
        f"{group.value}{axis}{term.value}"
        for group in AxisGroup
        for axis in SPATIAL_AXES
        for term in GainTerm
    ]
