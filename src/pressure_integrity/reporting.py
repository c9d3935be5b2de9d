"""Sample log persistence: incremental CSV logging and reload for re-analysis."""
from __future__ import annotations

import csv
import math
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, TextIO

import pandas as pd

from .leakage import LeakRateResult
from .stream import MeasurementSample

FIELDNAMES = ["sequence_number", "timestamp", "pressure", "temperature", "frame"]
REQUIRED_COLUMNS = {"sequence_number", "timestamp", "pressure"}


def _sample_row(sample: MeasurementSample) -> Dict[str, object]:
    frame = sample.source_frame.payload.decode("ascii", errors="replace") if sample.source_frame else ""
    return {
        "sequence_number": sample.sequence_number,
        "timestamp": repr(sample.timestamp),
        "pressure": repr(sample.pressure),
        "temperature": "" if sample.temperature is None else repr(sample.temperature),
        "frame": frame,
    }


class SampleLogger:
    """
    Session sample log. The file is opened on the first sample; metadata set
    before then is written as ``# key=value`` lines ahead of the header row.
    """

    def __init__(self, path: Path):
        self.path = path
        self._handle: Optional[csv.DictWriter[str]] = None
        self._file_handle: Optional[TextIO] = None
        self._pending_metadata: List[str] = []

    def append(self, sample: MeasurementSample) -> None:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = self.path.open("w", newline="", encoding="utf-8")
            for line in self._pending_metadata:
                self._file_handle.write(line + "\n")
            self._pending_metadata.clear()
            self._handle = csv.DictWriter(self._file_handle, fieldnames=FIELDNAMES)
            self._handle.writeheader()
        assert self._handle is not None
        self._handle.writerow(_sample_row(sample))
        if self._file_handle is not None:
            self._file_handle.flush()

    def set_metadata(self, metadata: Dict[str, str]) -> None:
        if not metadata:
            return
        line = "# " + " ".join(f"{key}={value}" for key, value in metadata.items())
        if self._file_handle is None:
            self._pending_metadata.append(line)
            return
        self._file_handle.write(line + "\n")
        self._file_handle.flush()

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._handle = None


def samples_to_dataframe(samples: Sequence[MeasurementSample]) -> pd.DataFrame:
    """Tabulate samples for display or export, with time elapsed since the first sample."""

    df = pd.DataFrame(
        {
            "sequence_number": [s.sequence_number for s in samples],
            "timestamp": [s.timestamp for s in samples],
            "pressure": [s.pressure for s in samples],
            "temperature": [
                float("nan") if s.temperature is None else s.temperature for s in samples
            ],
        }
    )
    df["elapsed_sec"] = df["timestamp"] - df["timestamp"].iloc[0] if len(df) else []
    return df


def write_samples_csv(samples: Iterable[MeasurementSample], path: Path) -> None:
    logger = SampleLogger(path)
    try:
        for sample in samples:
            logger.append(sample)
    finally:
        logger.close()


def load_samples_csv(path: str | Path) -> List[MeasurementSample]:
    """Load a sample log written by SampleLogger.

    Comment lines (``#``) carry session metadata and are skipped. Rows are
    returned in sequence order; the raw frame text is not restored.
    """

    path = Path(path)
    df = pd.read_csv(path, comment="#")
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")
    df = df.sort_values("sequence_number", kind="mergesort").reset_index(drop=True)
    temps = df["temperature"] if "temperature" in df.columns else pd.Series([float("nan")] * len(df))
    samples: List[MeasurementSample] = []
    for seq, ts, pressure, temp in zip(
        df["sequence_number"].to_numpy(dtype=int),
        df["timestamp"].to_numpy(dtype=float),
        df["pressure"].to_numpy(dtype=float),
        temps.to_numpy(dtype=float),
    ):
        samples.append(
            MeasurementSample(
                sequence_number=int(seq),
                timestamp=float(ts),
                pressure=float(pressure),
                temperature=None if math.isnan(temp) else float(temp),
            )
        )
    return samples


def result_metadata(result: LeakRateResult) -> Dict[str, str]:
    return {
        "verdict": result.verdict.value,
        "samples": str(result.sample_count),
        "slope": f"{result.slope:.6g}",
        "residual": f"{result.residual_metric:.6g}",
    }
