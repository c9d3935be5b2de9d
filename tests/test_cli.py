from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from pressure_integrity.cli import app
from pressure_integrity.reporting import write_samples_csv
from pressure_integrity.stream import MeasurementSample

runner = CliRunner()


def _write_session(path: Path, slope: float) -> None:
    samples = [
        MeasurementSample(sequence_number=i, timestamp=float(i * 10), pressure=100.0 + slope * i * 10)
        for i in range(6)
    ]
    write_samples_csv(samples, path)


def test_estimate_reports_fail(tmp_path: Path) -> None:
    path = tmp_path / "session.csv"
    _write_session(path, slope=-0.1)
    result = runner.invoke(app, ["estimate", "--in", str(path), "--set", "tolerance.max_leak_rate=0.05"])
    assert result.exit_code == 0, result.output
    assert "Verdict: FAIL" in result.output
    assert "Samples: 6" in result.output


def test_estimate_json_and_window(tmp_path: Path) -> None:
    path = tmp_path / "session.csv"
    _write_session(path, slope=0.0)
    result = runner.invoke(app, ["estimate", "--in", str(path), "--window", "5", "--json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["verdict"] == "pass"
    assert payload["sample_count"] == 5


def test_estimate_missing_file(tmp_path: Path) -> None:
    result = runner.invoke(app, ["estimate", "--in", str(tmp_path / "nope.csv")])
    assert result.exit_code != 0


def test_ruska_commands_listing() -> None:
    result = runner.invoke(app, ["ruska", "commands"])
    assert result.exit_code == 0
    assert "PA" in result.output
    assert "UD - User-defined unit <1 param>:" in result.output


def test_ruska_query_demo() -> None:
    result = runner.invoke(app, ["ruska", "query", "UD", "2", "--port", "demo"])
    assert result.exit_code == 0, result.output
    assert "UD: 2, 1.000000, USR2" in result.output

    result = runner.invoke(app, ["ruska", "query", "PA", "--port", "demo"])
    assert result.exit_code == 0, result.output
    assert "Pressure: 350." in result.output


def test_ruska_query_bad_parameter() -> None:
    result = runner.invoke(app, ["ruska", "query", "UD", "9", "--port", "demo"])
    assert result.exit_code != 0


def test_ruska_query_units_name() -> None:
    result = runner.invoke(app, ["ruska", "query", "UN", "--port", "demo"])
    assert result.exit_code == 0, result.output
    assert "Units: kPa" in result.output


def test_ruska_run_rejects_non_pressure_command(tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        [
            "ruska",
            "run",
            "--port",
            "demo",
            "--config",
            str(tmp_path / "missing.json"),
            "--set",
            "acquisition.command=UN",
        ],
    )
    assert result.exit_code == 2
    assert not isinstance(result.exception, ValueError)


def test_estimate_rejects_bad_override(tmp_path: Path) -> None:
    path = tmp_path / "session.csv"
    _write_session(path, slope=0.0)
    result = runner.invoke(app, ["estimate", "--in", str(path), "--set", "tolerance.min_samples=1"])
    assert result.exit_code == 2


def test_ruska_run_demo(tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        [
            "--log-level",
            "WARNING",
            "ruska",
            "run",
            "--port",
            "demo",
            "--config",
            str(tmp_path / "missing.json"),
            "--max-samples",
            "6",
            "--set",
            "acquisition.sample_interval_sec=0.001",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Verdict:" in result.output
    assert "samples=6" in result.output
