from __future__ import annotations

import logging
import time
from pathlib import Path

import pytest

from pressure_integrity.leakage import Verdict
from pressure_integrity.reporting import load_samples_csv
from pressure_integrity.ruska.config import load_config
from pressure_integrity.ruska.protocol import CommandFailed, ProtocolEngine
from pressure_integrity.ruska.runner import AcquisitionRunner, RigHost, open_transport
from pressure_integrity.ruska.transport import DemoGauge, LoopbackTransport
from pressure_integrity.stream import MeasurementVectorStream


def _fast_config(*extra: str):
    return load_config(
        None,
        [
            "acquisition.sample_interval_sec=0.001",
            "acquisition.estimate_every=5",
            "retry.timeout_sec=0.05",
            "retry.max_attempts=2",
            *extra,
        ],
    )


def test_host_acquires_and_estimates(tmp_path: Path, caplog) -> None:
    out = tmp_path / "session.csv"
    cfg = _fast_config(f"acquisition.output_csv={out}")
    gauge = DemoGauge(time.monotonic, leak_rate=0.0, terminator=b"\r")
    host = RigHost(LoopbackTransport(gauge), cfg)

    with caplog.at_level(logging.INFO, logger="pressure_integrity.ruska.runner"):
        result = host.run(max_samples=12)

    assert result is not None
    assert result.sample_count == 12
    assert result.verdict is Verdict.PASS
    assert result.slope == 0.0
    assert len(host.stream) == 12
    assert host.transport.closed
    assert "Final stats: processed=12" in caplog.text

    samples = load_samples_csv(out)
    assert [s.sequence_number for s in samples] == list(range(12))
    assert all(s.pressure == pytest.approx(350.0) for s in samples)
    assert "# verdict=pass samples=12" in out.read_text(encoding="utf-8")


def test_runner_reports_periodic_estimates() -> None:
    cfg = _fast_config()
    transport = LoopbackTransport(DemoGauge(time.monotonic, leak_rate=0.0, terminator=b"\r"))
    engine = ProtocolEngine.from_config(transport, cfg)
    results = []
    runner = AcquisitionRunner(
        engine, MeasurementVectorStream(), cfg, on_result=results.append, max_samples=10
    )
    runner.start()
    runner.join(timeout=5.0)
    assert not runner.is_alive()
    assert runner.processed == 10
    # two periodic estimates plus the final one
    assert [r.sample_count for r in results] == [5, 10, 10]
    assert runner.last_exception is None


def test_runner_halts_when_gauge_is_silent() -> None:
    cfg = _fast_config()
    host = RigHost(LoopbackTransport(), cfg)
    with pytest.raises(CommandFailed):
        host.run(max_samples=5)
    assert len(host.stream) == 0


def test_stop_cancels_in_flight_command() -> None:
    cfg = _fast_config("retry.timeout_sec=5.0")
    engine = ProtocolEngine.from_config(LoopbackTransport(), cfg)
    runner = AcquisitionRunner(engine, MeasurementVectorStream(), cfg)
    runner.start()
    time.sleep(0.05)
    runner.stop()
    runner.join(timeout=2.0)
    assert not runner.is_alive()
    assert runner.last_exception is None
    assert runner.last_result is None


def test_rejects_command_without_pressure() -> None:
    cfg = _fast_config()
    cfg.acquisition.command = "UN"
    engine = ProtocolEngine.from_config(LoopbackTransport(), cfg)
    with pytest.raises(ValueError):
        AcquisitionRunner(engine, MeasurementVectorStream(), cfg)


def test_host_closes_transport_when_runner_cannot_start(tmp_path: Path) -> None:
    cfg = _fast_config(f"acquisition.output_csv={tmp_path / 'session.csv'}")
    cfg.acquisition.command = "UN"
    transport = LoopbackTransport(DemoGauge(time.monotonic, terminator=b"\r"))
    host = RigHost(transport, cfg)
    with pytest.raises(ValueError):
        host.run(max_samples=3)
    assert transport.closed
    assert not (tmp_path / "session.csv").exists()


def test_open_transport_demo_port() -> None:
    transport = open_transport("demo", 9600, 0.05, load_config(None))
    assert isinstance(transport, LoopbackTransport)
    transport.write(b"PA\r")
    assert transport.read_available().startswith(b"PA,350.")
