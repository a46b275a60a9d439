#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
SwitchState -- the on/off/load-sensing status of a switch, and parsing of the
BinaryState values that carry it on the wire.
"""

from __future__ import annotations

import re
from enum import Enum

from .internal_types import *
from .exceptions import ParsingError
from .util import find_tag_value

MAX_STATE_CODE = 65535

_digits_re = re.compile(r'[0-9]+')

class SwitchStateKind(Enum):
    OFF = "off"
    ON = "on"
    ON_WITHOUT_LOAD = "on without load"
    UNKNOWN = "unknown"

_KIND_BY_CODE: Dict[int, SwitchStateKind] = {
    0: SwitchStateKind.OFF,
    1: SwitchStateKind.ON,
    8: SwitchStateKind.ON_WITHOUT_LOAD,  # Insight switches
}

class SwitchState:
    """The state of a switch, identified by its numeric wire code.

    Codes 0, 1 and 8 are Off, On and OnWithoutLoad; every other code in
    [0, 65535] is Unknown(code). Instances are immutable and compare by code.
    """

    OFF: ClassVar[SwitchState]
    ON: ClassVar[SwitchState]
    ON_WITHOUT_LOAD: ClassVar[SwitchState]

    __slots__ = ('_code',)

    _code: int

    def __init__(self, code: int):
        if not isinstance(code, int) or isinstance(code, bool):
            raise ParsingError(f"State code must be an int: {code!r}")
        if code < 0 or code > MAX_STATE_CODE:
            raise ParsingError(f"State code out of range [0, {MAX_STATE_CODE}]: {code}")
        self._code = code

    @classmethod
    def from_code(cls, code: int) -> SwitchState:
        """Returns the state for a wire code. Raises ParsingError if it is outside [0, 65535]."""
        return cls(code)

    @classmethod
    def unknown(cls, code: int) -> SwitchState:
        """Returns Unknown(code). Raises ValueError if code maps to a known state."""
        if code in _KIND_BY_CODE:
            raise ValueError(f"State code {code} is not an unknown state")
        return cls(code)

    @property
    def code(self) -> int:
        return self._code

    @property
    def kind(self) -> SwitchStateKind:
        return _KIND_BY_CODE.get(self._code, SwitchStateKind.UNKNOWN)

    def is_on(self) -> bool:
        """Whether the device is on. Only On and OnWithoutLoad count as on."""
        return self.kind in (SwitchStateKind.ON, SwitchStateKind.ON_WITHOUT_LOAD)

    def is_known(self) -> bool:
        return self.kind != SwitchStateKind.UNKNOWN

    @property
    def description(self) -> str:
        """A textual state useful for printing."""
        if self.kind == SwitchStateKind.UNKNOWN:
            return f"unknown state (code {self._code})"
        return self.kind.value

    def inverted(self) -> SwitchState:
        """The state to write to flip this one: Off -> On; On/OnWithoutLoad -> Off.

        Raises ValueError for Unknown states.
        """
        if self.kind == SwitchStateKind.OFF:
            return SwitchState.ON
        if self.is_on():
            return SwitchState.OFF
        raise ValueError(f"Cannot invert {self}")

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, SwitchState):
            return NotImplemented
        return self._code == other._code

    def __hash__(self) -> int:
        return hash(self._code)

    def __str__(self) -> str:
        return self.description

    def __repr__(self) -> str:
        if self.kind == SwitchStateKind.UNKNOWN:
            return f"SwitchState.Unknown({self._code})"
        return f"SwitchState.{self.kind.name}"

SwitchState.OFF = SwitchState(0)
SwitchState.ON = SwitchState(1)
SwitchState.ON_WITHOUT_LOAD = SwitchState(8)

def parse_binary_state_value(value: str) -> SwitchState:
    """Parse the text of a BinaryState element into a SwitchState.

    Insight switches append pipe-delimited telemetry fields ("8|1234567890|..."); only the
    leading field is authoritative. Raises ParsingError if the leading field is not an integer
    in [0, 65535].
    """
    leading = value.split('|', 1)[0].strip()
    if _digits_re.fullmatch(leading) is None:
        raise ParsingError(f"BinaryState is not an integer: {value!r}")
    code = int(leading)
    return SwitchState.from_code(code)

def parse_binary_state(text: str) -> SwitchState:
    """Find the <BinaryState> element in an XML-ish document and parse it.

    Raises ParsingError if there is no BinaryState element or its value is invalid.
    """
    value = find_tag_value("BinaryState", text)
    if value is None:
        raise ParsingError("No BinaryState element found")
    return parse_binary_state_value(value)

def has_binary_state(text: str) -> bool:
    """Whether text contains a BinaryState marker at all."""
    return find_tag_value("BinaryState", text) is not None
