from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


class ParameterError(ValueError):
    """Raised when a command parameter does not validate."""


class ResponseShape(enum.Enum):
    PRESSURE = "pressure"
    TARE_PRESSURE = "tare_pressure"
    PRESSURE_ELAPSED = "pressure_elapsed"
    PRESSURE_TRANSDUCER = "pressure_transducer"
    RATE = "rate"
    INTEGER = "integer"
    DECIMAL = "decimal"
    USER_UNIT = "user_unit"

    @property
    def carries_pressure(self) -> bool:
        return self in _PRESSURE_SHAPES

    @property
    def field_count(self) -> int:
        return _FIELD_COUNTS[self]


_PRESSURE_SHAPES = frozenset(
    {
        ResponseShape.PRESSURE,
        ResponseShape.TARE_PRESSURE,
        ResponseShape.PRESSURE_ELAPSED,
        ResponseShape.PRESSURE_TRANSDUCER,
    }
)

_FIELD_COUNTS: Dict[ResponseShape, int] = {
    ResponseShape.PRESSURE: 1,
    ResponseShape.TARE_PRESSURE: 1,
    ResponseShape.PRESSURE_ELAPSED: 2,
    ResponseShape.PRESSURE_TRANSDUCER: 4,
    ResponseShape.RATE: 1,
    ResponseShape.INTEGER: 1,
    ResponseShape.DECIMAL: 1,
    ResponseShape.USER_UNIT: 3,
}


@dataclass(frozen=True)
class IntParameter:
    """Integer parameter, optionally restricted to an inclusive range."""

    minimum: Optional[int] = None
    maximum: Optional[int] = None

    def check_value(self, value: object) -> bool:
        try:
            self.normalize(value)
        except ParameterError:
            return False
        return True

    def normalize(self, value: object) -> int:
        if isinstance(value, bool):
            raise ParameterError(f"Expected an integer, got {value!r}")
        try:
            number = int(str(value).strip())
        except ValueError as exc:
            raise ParameterError(f"Expected an integer, got {value!r}") from exc
        if self.minimum is not None and number < self.minimum:
            raise ParameterError(f"{number} is below the minimum {self.minimum}")
        if self.maximum is not None and number > self.maximum:
            raise ParameterError(f"{number} is above the maximum {self.maximum}")
        return number


@dataclass(frozen=True)
class Command:
    id: str
    name: str
    description: str
    shape: ResponseShape
    parameters: Tuple[IntParameter, ...] = ()
    response_ids: Tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        if not self.response_ids:
            object.__setattr__(self, "response_ids", (self.id,))

    @property
    def display_name(self) -> str:
        return f"{self.id} - {self.name}"

    def accepts(self, response_id: str) -> bool:
        return response_id in self.response_ids

    def request(self, *values: object) -> "CommandRequest":
        if len(values) != len(self.parameters):
            raise ParameterError(
                f"{self.id} takes {len(self.parameters)} parameter(s), got {len(values)}"
            )
        normalized = tuple(param.normalize(value) for param, value in zip(self.parameters, values))
        return CommandRequest(command=self, parameters=normalized)


@dataclass(frozen=True)
class CommandRequest:
    command: Command
    parameters: Tuple[int, ...] = ()

    @property
    def message(self) -> str:
        return ",".join([self.command.id, *(str(value) for value in self.parameters)])

    def encode(self, terminator: bytes = b"\r") -> bytes:
        return self.message.encode("ascii") + terminator


def _cmd(
    cmd_id: str,
    name: str,
    description: str,
    shape: ResponseShape,
    parameters: Sequence[IntParameter] = (),
    response_ids: Sequence[str] = (),
) -> Command:
    return Command(
        id=cmd_id,
        name=name,
        description=description,
        shape=shape,
        parameters=tuple(parameters),
        response_ids=tuple(response_ids),
    )


# Read-only commands of the Ruska PPG, in manual order (pressure, rate, units, misc).
PA = _cmd(
    "PA",
    "Pressure (absolute)",
    "Current pressure in current units, as displayed on the front panel. Not affected by tare mode.",
    ResponseShape.PRESSURE,
)
PB = _cmd(
    "PB",
    "Pressure and elapsed time",
    "Current pressure as with PA and the elapsed time in tenths of seconds.",
    ResponseShape.PRESSURE_ELAPSED,
)
PF = _cmd(
    "PF",
    "Pressure and transducer data",
    "Pressure and elapsed time as with PB, the transducer frequency and the diode voltage.",
    ResponseShape.PRESSURE_TRANSDUCER,
)
PT = _cmd(
    "PT",
    "Pressure (tare)",
    "Current pressure less the tare pressure. Returns 'PT,?' if tare mode was never entered.",
    ResponseShape.TARE_PRESSURE,
)
PS = _cmd(
    "PS",
    "Pressure (display)",
    "Current pressure as displayed, less the tare if the upper display is in tare mode.",
    ResponseShape.PRESSURE,
)
PC = _cmd(
    "PC",
    "Continuous pressure state",
    "1 if continuous pressure transmission is enabled, 0 if disabled.",
    ResponseShape.INTEGER,
)
PI = _cmd(
    "PI",
    "Pressure interval",
    "Continuous pressure transmission interval in tenths of seconds.",
    ResponseShape.INTEGER,
)
RS = _cmd(
    "RS",
    "Rate",
    "Latest rate value. Answered as 'RS,x' per second or 'RM,x' per minute.",
    ResponseShape.RATE,
    response_ids=("RS", "RM"),
)
RC = _cmd(
    "RC",
    "Continuous rate state",
    "1 if continuous rate transmission is enabled, 0 if disabled.",
    ResponseShape.INTEGER,
)
RI = _cmd(
    "RI",
    "Rate interval",
    "Continuous rate transmission interval in tenths of seconds.",
    ResponseShape.INTEGER,
)
RP = _cmd("RP", "Rate period", "Rate period: 0 = seconds, 1 = minutes.", ResponseShape.INTEGER)
RO = _cmd("RO", "Rate display", "1 if the rate display is on, 0 if off.", ResponseShape.INTEGER)
UN = _cmd(
    "UN",
    "Units",
    "Current units code (0=inHg, 1=psi, 2=mbar, 3=kPa, ...).",
    ResponseShape.INTEGER,
)
UD = _cmd(
    "UD",
    "User-defined unit",
    "User defined unit 1-4: conversion constant (multiplied by kPa) and 4 character abbreviation.",
    ResponseShape.USER_UNIT,
    parameters=(IntParameter(1, 4),),
)
ET = _cmd(
    "ET",
    "Elapsed time",
    "Elapsed time in tenths of seconds. Wraps to 0 after 24 hours (864000).",
    ResponseShape.INTEGER,
)
TM = _cmd(
    "TM",
    "Tare mode",
    "Tare mode: 0 = off, 1 = upper display in tare mode, 2 = lower display in tare mode.",
    ResponseShape.INTEGER,
)
ER = _cmd("ER", "Error code", "Next error code from the error code buffer.", ResponseShape.INTEGER)
ST = _cmd(
    "ST",
    "Self-test",
    "Performs a self test and returns the first result. Use ER to read further results.",
    ResponseShape.INTEGER,
)
XB = _cmd("XB", "Battery voltage", "Battery voltage.", ResponseShape.DECIMAL)
V1 = _cmd("V1", "Main board version", "Main board software version.", ResponseShape.DECIMAL)
V2 = _cmd(
    "V2",
    "Front panel version",
    "Front panel software version, 0.00 if there is no front panel.",
    ResponseShape.DECIMAL,
)
ECHO = _cmd("ECHO", "Echo mode", "1 if echo mode is on, 0 if off.", ResponseShape.INTEGER)
MD = _cmd("MD", "Pressure medium", "Pressure medium: N2 = 1, Air = 0.", ResponseShape.INTEGER)

RUSKA_READ_COMMANDS: Tuple[Command, ...] = (
    PA, PB, PF, PT, PS, PC, PI, RS, RC, RI, RP, RO, UN, UD, ET, TM, ER, ST, XB, V1, V2, ECHO, MD,
)

_BY_ID: Dict[str, Command] = {command.id: command for command in RUSKA_READ_COMMANDS}

# Pressure unit codes reported by UN.
UNIT_CODES: Dict[int, str] = {
    0: "inHg",
    1: "psi",
    2: "mbar",
    3: "kPa",
}


def get_command(cmd_id: str) -> Command:
    try:
        return _BY_ID[cmd_id.strip().upper()]
    except KeyError as exc:
        raise ParameterError(f"Unknown Ruska command '{cmd_id}'. Expected one of {list(_BY_ID)}") from exc


def list_commands(ids: Optional[Iterable[str]] = None) -> List[Command]:
    if ids is None:
        return list(RUSKA_READ_COMMANDS)
    return [get_command(cmd_id) for cmd_id in ids]
