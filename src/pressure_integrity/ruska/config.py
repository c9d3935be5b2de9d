from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .commands import get_command
from .frames import Checksum, FrameDecoder, FramingMode


def _unescape(value: str) -> bytes:
    # JSON configs spell control characters as "\\r"; accept both forms
    return value.encode("ascii").decode("unicode_escape").encode("latin-1")


@dataclass
class FramingConfig:
    mode: str = "line"
    terminator: str = "\r"
    command_terminator: str = "\r"
    checksum: str = "none"
    header: str = "55AA"
    payload_length: int = 0
    max_frame_bytes: int = 256

    @property
    def mode_enum(self) -> FramingMode:
        try:
            return FramingMode(self.mode.lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported framing.mode '{self.mode}'") from exc

    @property
    def checksum_enum(self) -> Checksum:
        try:
            return Checksum(self.checksum.lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported framing.checksum '{self.checksum}'") from exc

    @property
    def terminator_bytes(self) -> bytes:
        return _unescape(self.terminator)

    @property
    def command_terminator_bytes(self) -> bytes:
        return _unescape(self.command_terminator)

    @property
    def header_bytes(self) -> bytes:
        try:
            return bytes.fromhex(self.header)
        except ValueError as exc:
            raise ValueError(f"framing.header must be hex, got '{self.header}'") from exc

    def build_decoder(self) -> FrameDecoder:
        return FrameDecoder(
            self.mode_enum,
            terminator=self.terminator_bytes,
            checksum=self.checksum_enum,
            header=self.header_bytes,
            payload_length=self.payload_length,
            max_frame_bytes=self.max_frame_bytes,
        )


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    timeout_sec: float = 1.0
    backoff_sec: float = 0.0
    poll_interval_sec: float = 0.01

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("retry.max_attempts must be at least 1")
        if self.timeout_sec <= 0:
            raise ValueError("retry.timeout_sec must be positive")
        if self.backoff_sec < 0:
            raise ValueError("retry.backoff_sec may not be negative")
        if self.poll_interval_sec <= 0:
            raise ValueError("retry.poll_interval_sec must be positive")


@dataclass
class InstrumentRange:
    min_pressure: float = 0.0
    max_pressure: float = 20000.0
    unit: str = "kPa"

    def contains(self, pressure: float) -> bool:
        return math.isfinite(pressure) and self.min_pressure <= pressure <= self.max_pressure


@dataclass
class DiodeCalibration:
    """Linear temperature proxy from the PF diode voltage: T = (v - v0) / slope."""

    v0: Optional[float] = None
    slope: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self.v0 is not None and self.slope is not None

    def temperature(self, diode_voltage: float) -> Optional[float]:
        if not self.enabled:
            return None
        assert self.v0 is not None and self.slope is not None
        return (diode_voltage - self.v0) / self.slope


@dataclass(frozen=True)
class ToleranceConfig:
    max_leak_rate: float
    max_residual: float
    residual_ceiling: Optional[float] = None
    min_samples: int = 5

    def __post_init__(self) -> None:
        if not self.max_leak_rate >= 0:
            raise ValueError("tolerance.max_leak_rate must be non-negative")
        if not self.max_residual >= 0:
            raise ValueError("tolerance.max_residual must be non-negative")
        if self.residual_ceiling is not None and not self.residual_ceiling >= self.max_residual:
            raise ValueError("tolerance.residual_ceiling must be at least max_residual")
        if self.min_samples < 2:
            raise ValueError("tolerance.min_samples must be at least 2")

    @property
    def effective_residual_ceiling(self) -> float:
        if self.residual_ceiling is not None:
            return self.residual_ceiling
        return self.max_residual * 4.0


@dataclass
class AcquisitionConfig:
    command: str = "PA"
    sample_interval_sec: float = 1.0
    window: int = 0  # 0 = whole session
    estimate_every: int = 10
    stats_log_interval: float = 60.0
    output_csv: Path | None = None


@dataclass
class RigConfig:
    framing: FramingConfig = field(default_factory=FramingConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    instrument: InstrumentRange = field(default_factory=InstrumentRange)
    diode: DiodeCalibration = field(default_factory=DiodeCalibration)
    tolerance: ToleranceConfig = field(
        default_factory=lambda: ToleranceConfig(max_leak_rate=0.001, max_residual=0.0001)
    )
    acquisition: AcquisitionConfig = field(default_factory=AcquisitionConfig)

    def validate(self) -> "RigConfig":
        self.framing.build_decoder()
        if not self.framing.command_terminator_bytes:
            raise ValueError("framing.command_terminator may not be empty")
        self.retry.validate()
        if not self.instrument.min_pressure < self.instrument.max_pressure:
            raise ValueError("instrument.min_pressure must be below instrument.max_pressure")
        if self.diode.slope == 0:
            raise ValueError("diode.slope may not be zero")
        if self.acquisition.sample_interval_sec <= 0:
            raise ValueError("acquisition.sample_interval_sec must be positive")
        if self.acquisition.window < 0:
            raise ValueError("acquisition.window may not be negative")
        # unknown ids raise ParameterError
        command = get_command(self.acquisition.command)
        if not command.shape.carries_pressure:
            raise ValueError(f"acquisition.command {command.id} does not report a pressure")
        return self


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def config_from_mapping(data: Dict[str, Any]) -> RigConfig:
    framing = data.get("framing") or {}
    retry = data.get("retry") or {}
    instrument = data.get("instrument") or {}
    diode = data.get("diode") or {}
    tolerance = data.get("tolerance") or {}
    acquisition = data.get("acquisition") or {}
    ceiling = tolerance.get("residual_ceiling")
    v0 = diode.get("v0")
    slope = diode.get("slope")
    config = RigConfig(
        framing=FramingConfig(
            mode=str(framing.get("mode", "line")),
            terminator=str(framing.get("terminator", "\r")),
            command_terminator=str(framing.get("command_terminator", "\r")),
            checksum=str(framing.get("checksum", "none")),
            header=str(framing.get("header", "55AA")),
            payload_length=int(framing.get("payload_length", 0)),
            max_frame_bytes=int(framing.get("max_frame_bytes", 256)),
        ),
        retry=RetryPolicy(
            max_attempts=int(retry.get("max_attempts", 3)),
            timeout_sec=float(retry.get("timeout_sec", 1.0)),
            backoff_sec=float(retry.get("backoff_sec", 0.0)),
            poll_interval_sec=float(retry.get("poll_interval_sec", 0.01)),
        ),
        instrument=InstrumentRange(
            min_pressure=float(instrument.get("min_pressure", 0.0)),
            max_pressure=float(instrument.get("max_pressure", 20000.0)),
            unit=str(instrument.get("unit", "kPa")),
        ),
        diode=DiodeCalibration(
            v0=float(v0) if v0 is not None else None,
            slope=float(slope) if slope is not None else None,
        ),
        tolerance=ToleranceConfig(
            max_leak_rate=float(tolerance.get("max_leak_rate", 0.001)),
            max_residual=float(tolerance.get("max_residual", 0.0001)),
            residual_ceiling=float(ceiling) if ceiling is not None else None,
            min_samples=int(tolerance.get("min_samples", 5)),
        ),
        acquisition=AcquisitionConfig(
            command=str(acquisition.get("command", "PA")).upper(),
            sample_interval_sec=float(acquisition.get("sample_interval_sec", 1.0)),
            window=int(acquisition.get("window", 0)),
            estimate_every=int(acquisition.get("estimate_every", 10)),
            stats_log_interval=float(acquisition.get("stats_log_interval", 60.0)),
            output_csv=Path(acquisition["output_csv"]) if acquisition.get("output_csv") else None,
        ),
    )
    return config.validate()


def load_config(path: Path | str | None, overrides: Sequence[str] | None = None) -> RigConfig:
    """
    Load a rig configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["retry.max_attempts=5", "tolerance.max_leak_rate=0.002"]
    A *path* of None starts from the built-in defaults.
    """
    data = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    return config_from_mapping(_merge(data, override_data))


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    if raw.lower() in {"null", "none"}:
        return None
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
