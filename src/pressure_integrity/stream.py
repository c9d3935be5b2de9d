"""Append-only measurement vector stream shared by acquisition and its readers."""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .ruska.frames import RawFrame
from .ruska.protocol import DecodedReading


class StreamError(ValueError):
    """A reading could not be appended (missing or non-finite pressure)."""


@dataclass(frozen=True)
class MeasurementSample:
    sequence_number: int
    timestamp: float
    pressure: float
    temperature: Optional[float] = None
    source_frame: Optional[RawFrame] = field(default=None, compare=False, repr=False)


class MeasurementVectorStream:
    """
    Ordered, append-only sequence of MeasurementSample values.

    A single acquisition thread appends; any number of readers call
    ``snapshot()`` or ``latest()``. The backing list only ever grows, so the
    lock guards just the sequence/timestamp assignment and the capture of a
    (list, length) pair. Copies are made outside the lock, so a reader never
    holds up an append and vice versa. ``reset()`` swaps in a new list, which
    leaves earlier snapshots untouched.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: List[MeasurementSample] = []
        self._next_sequence = 0
        self._last_timestamp: Optional[float] = None
        self._generation = 0

    def append(self, reading: DecodedReading) -> MeasurementSample:
        pressure = reading.pressure
        if pressure is None:
            raise StreamError(f"{reading.command_id} reading carries no pressure")
        if not math.isfinite(pressure):
            raise StreamError(f"Non-finite pressure {pressure!r} rejected")
        temperature = reading.temperature
        if temperature is not None and not math.isfinite(temperature):
            raise StreamError(f"Non-finite temperature {temperature!r} rejected")
        with self._lock:
            timestamp = self._clock()
            if self._last_timestamp is not None and timestamp <= self._last_timestamp:
                # keep timestamps strictly increasing on coarse clocks
                timestamp = math.nextafter(self._last_timestamp, math.inf)
            sample = MeasurementSample(
                sequence_number=self._next_sequence,
                timestamp=timestamp,
                pressure=float(pressure),
                temperature=temperature,
                source_frame=reading.source_frame,
            )
            self._samples.append(sample)
            self._next_sequence += 1
            self._last_timestamp = timestamp
        return sample

    def _capture(self) -> Tuple[List[MeasurementSample], int]:
        with self._lock:
            return self._samples, len(self._samples)

    def snapshot(self) -> Tuple[MeasurementSample, ...]:
        samples, count = self._capture()
        return tuple(samples[:count])

    def latest(self, n: int) -> Tuple[MeasurementSample, ...]:
        if n <= 0:
            return ()
        samples, count = self._capture()
        return tuple(samples[max(count - n, 0) : count])

    def reset(self) -> None:
        """Start a new session: drop all samples and restart numbering at zero."""
        with self._lock:
            self._samples = []
            self._next_sequence = 0
            self._last_timestamp = None
            self._generation += 1

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def version(self) -> int:
        """Number of samples appended in the current generation; cheap change detection."""
        with self._lock:
            return self._next_sequence

    def __len__(self) -> int:
        return self.version
