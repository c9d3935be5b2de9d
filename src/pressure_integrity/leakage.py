"""Leak-rate estimation from a window of pressure samples."""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .ruska.config import ToleranceConfig
from .stream import MeasurementSample, MeasurementVectorStream

SECONDS_PER_DAY = 86400.0


class Verdict(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True)
class DecayFit:
    """Straight-line fit of pressure against time elapsed since the first sample."""

    slope: float
    intercept: float
    residual_metric: float
    duration_sec: float


@dataclass(frozen=True)
class LeakRateResult:
    slope: float
    intercept: float
    residual_metric: float
    sample_count: int
    verdict: Verdict
    duration_sec: float = float("nan")

    @property
    def leak_rate_percent_per_day(self) -> float:
        """Pressure loss relative to the initial pressure, in %/day. Not temperature compensated."""
        if not (math.isfinite(self.slope) and math.isfinite(self.intercept)) or self.intercept == 0:
            return float("nan")
        return -self.slope / self.intercept * SECONDS_PER_DAY * 100.0

    def as_dict(self) -> dict[str, object]:
        return {
            "slope": self.slope,
            "intercept": self.intercept,
            "residual_metric": self.residual_metric,
            "sample_count": self.sample_count,
            "verdict": self.verdict.value,
            "duration_sec": self.duration_sec,
            "leak_rate_percent_per_day": self.leak_rate_percent_per_day,
        }


def fit_pressure_decay(times: np.ndarray, pressures: np.ndarray) -> DecayFit:
    """Ordinary least squares fit of *pressures* against *times*.

    Both series are shifted by their first element before fitting, which keeps
    the sums small for long sessions near atmospheric pressure and makes a
    constant series fit to an exact zero slope. The residual metric is the sum
    of squared residuals divided by the sample count.

    Raises
    ------
    ValueError
        If the series differ in length, hold fewer than two points, or all
        timestamps are identical.
    """

    t = np.asarray(times, dtype=np.float64)
    p = np.asarray(pressures, dtype=np.float64)
    if t.ndim != 1 or t.shape != p.shape:
        raise ValueError("times and pressures must be 1-D arrays of equal length")
    n = t.size
    if n < 2:
        raise ValueError("At least two samples are required for a fit")

    t_rel = t - t[0]
    p_rel = p - p[0]
    dt = t_rel - t_rel.mean()
    dp = p_rel - p_rel.mean()
    sxx = float(np.dot(dt, dt))
    if sxx == 0.0:
        raise ValueError("Samples have no time spread")

    slope = float(np.dot(dt, dp)) / sxx
    intercept_rel = float(p_rel.mean()) - slope * float(t_rel.mean())
    residuals = p_rel - (intercept_rel + slope * t_rel)
    residual_metric = float(np.dot(residuals, residuals)) / n

    return DecayFit(
        slope=slope,
        intercept=float(p[0]) + intercept_rel,
        residual_metric=residual_metric,
        duration_sec=float(t_rel.max() - t_rel.min()),
    )


def classify(fit: DecayFit, tolerance: ToleranceConfig) -> Verdict:
    if fit.residual_metric > tolerance.effective_residual_ceiling:
        return Verdict.INCONCLUSIVE
    if abs(fit.slope) > tolerance.max_leak_rate:
        return Verdict.FAIL
    if fit.residual_metric <= tolerance.max_residual:
        return Verdict.PASS
    return Verdict.INCONCLUSIVE


def _inconclusive(sample_count: int, duration_sec: float = float("nan")) -> LeakRateResult:
    nan = float("nan")
    return LeakRateResult(
        slope=nan,
        intercept=nan,
        residual_metric=nan,
        sample_count=sample_count,
        verdict=Verdict.INCONCLUSIVE,
        duration_sec=duration_sec,
    )


def estimate_leak_rate(
    samples: Sequence[MeasurementSample], tolerance: ToleranceConfig
) -> LeakRateResult:
    """Fit the decay of *samples* and judge it against *tolerance*.

    Too few samples, a window without time spread, or a non-finite fit give an
    INCONCLUSIVE result rather than an error. The computation is a pure
    function of its inputs.
    """

    count = len(samples)
    if count < tolerance.min_samples:
        return _inconclusive(count)
    times = np.fromiter((sample.timestamp for sample in samples), dtype=np.float64, count=count)
    pressures = np.fromiter((sample.pressure for sample in samples), dtype=np.float64, count=count)
    try:
        fit = fit_pressure_decay(times, pressures)
    except ValueError:
        return _inconclusive(count, 0.0)
    if not (math.isfinite(fit.slope) and math.isfinite(fit.residual_metric)):
        return _inconclusive(count, fit.duration_sec)

    return LeakRateResult(
        slope=fit.slope,
        intercept=fit.intercept,
        residual_metric=fit.residual_metric,
        sample_count=count,
        verdict=classify(fit, tolerance),
        duration_sec=fit.duration_sec,
    )


class LeakRateEstimator:
    """Estimator bound to a tolerance and an optional trailing window size."""

    def __init__(self, tolerance: ToleranceConfig, window: int = 0) -> None:
        if window < 0:
            raise ValueError("window may not be negative")
        self.tolerance = tolerance
        self.window = window

    def estimate(
        self,
        samples: Sequence[MeasurementSample],
        tolerance: Optional[ToleranceConfig] = None,
    ) -> LeakRateResult:
        return estimate_leak_rate(samples, tolerance or self.tolerance)

    def estimate_stream(self, stream: MeasurementVectorStream) -> LeakRateResult:
        samples = stream.latest(self.window) if self.window > 0 else stream.snapshot()
        return self.estimate(samples)
