from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import typer

from ..leakage import LeakRateEstimator, LeakRateResult
from ..reporting import SampleLogger, result_metadata
from ..stream import MeasurementVectorStream, StreamError
from .commands import RUSKA_READ_COMMANDS, UN, UNIT_CODES, Command, ParameterError, get_command
from .config import RigConfig, load_config
from .protocol import Cancelled, CommandFailed, ProtocolEngine, ProtocolError, TransportError
from .transport import DemoGauge, LoopbackTransport, SerialSettings, SerialTransport, Transport

logger = logging.getLogger(__name__)

DEMO_PORT = "demo"


class AcquisitionRunner(threading.Thread):
    """
    Single producer of the measurement stream.

    Polls the gauge with the configured pressure command, appends each reading
    and periodically re-estimates the leak rate. Acquisition halts on the first
    CommandFailed/transport error; ``stop()`` cancels an in-flight command.
    """

    def __init__(
        self,
        engine: ProtocolEngine,
        stream: MeasurementVectorStream,
        config: RigConfig,
        *,
        sample_logger: Optional[SampleLogger] = None,
        on_result: Optional[Callable[[LeakRateResult], None]] = None,
        max_samples: int = 0,
    ) -> None:
        super().__init__(daemon=True)
        self.engine = engine
        self.stream = stream
        self.config = config
        self.command: Command = get_command(config.acquisition.command)
        if not self.command.shape.carries_pressure:
            raise ValueError(f"Acquisition command {self.command.id} does not report a pressure")
        self.estimator = LeakRateEstimator(config.tolerance, config.acquisition.window)
        self.sample_logger = sample_logger
        self.on_result = on_result
        self.max_samples = max_samples
        self.last_exception: Optional[Exception] = None
        self.last_result: Optional[LeakRateResult] = None
        self._processed = 0
        self._stop_event = threading.Event()

    @property
    def processed(self) -> int:
        return self._processed

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        interval = self.config.acquisition.sample_interval_sec
        every = max(self.config.acquisition.estimate_every, 0)
        stats_interval = max(float(self.config.acquisition.stats_log_interval), 1.0)
        next_log = time.monotonic() + stats_interval
        logger.info("Acquisition started (command=%s, interval=%.2fs)", self.command.id, interval)
        try:
            while not self._stop_event.is_set():
                started = time.monotonic()
                try:
                    reading = self.engine.send(self.command, cancel=self._stop_event)
                except Cancelled:
                    break
                except CommandFailed as exc:
                    self.last_exception = exc
                    logger.error(
                        "Acquisition halted, check the instrument: %s (%s)",
                        exc,
                        self.engine.last_failure_detail or "no detail",
                    )
                    break
                except TransportError as exc:
                    self.last_exception = exc
                    logger.error("Acquisition halted on transport error: %s", exc)
                    break
                try:
                    sample = self.stream.append(reading)
                except StreamError as exc:
                    self.last_exception = exc
                    logger.error("Rejected reading %r: %s", reading.source_frame.raw, exc)
                    break
                self._processed += 1
                if self.sample_logger is not None:
                    self.sample_logger.append(sample)
                if every and self._processed % every == 0:
                    self._estimate()
                if self.max_samples and self._processed >= self.max_samples:
                    break
                if time.monotonic() >= next_log:
                    self._log_stats("Stats")
                    next_log = time.monotonic() + stats_interval
                remaining = interval - (time.monotonic() - started)
                if remaining > 0:
                    self._stop_event.wait(remaining)
        finally:
            if self._processed:
                self._estimate()
            self._log_stats("Final stats")

    def _estimate(self) -> LeakRateResult:
        result = self.estimator.estimate_stream(self.stream)
        self.last_result = result
        logger.info(
            "Leak estimate: verdict=%s samples=%d slope=%.6g intercept=%.6g residual=%.3g",
            result.verdict.value,
            result.sample_count,
            result.slope,
            result.intercept,
            result.residual_metric,
        )
        if self.on_result is not None:
            self.on_result(result)
        return result

    def _log_stats(self, label: str) -> None:
        stats = self.engine.stats()
        logger.info(
            "%s: processed=%d frames=%d corrupt=%d oversize=%d retries=%d failures=%d",
            label,
            self._processed,
            stats.get("frames", 0),
            stats.get("corrupt_frames", 0),
            stats.get("oversize_frames", 0),
            stats.get("retries", 0),
            stats.get("failures", 0),
        )


def open_transport(port: str, baudrate: int, timeout: float, config: RigConfig) -> Transport:
    if port == DEMO_PORT:
        gauge = DemoGauge(
            time.monotonic,
            checksum=config.framing.checksum_enum,
            terminator=config.framing.terminator_bytes,
        )
        return LoopbackTransport(gauge)
    return SerialTransport(SerialSettings(port=port, baudrate=baudrate, timeout=timeout))


class RigHost:
    """Host-side orchestrator: transport, protocol engine, stream and acquisition thread."""

    def __init__(self, transport: Transport, config: RigConfig):
        self.transport = transport
        self.config = config
        self.engine = ProtocolEngine.from_config(transport, config)
        self.stream = MeasurementVectorStream()
        output_csv = config.acquisition.output_csv
        self.sample_logger = SampleLogger(output_csv) if output_csv else None

    def run(self, duration_sec: float = 0.0, max_samples: int = 0) -> Optional[LeakRateResult]:
        """Acquire until *duration_sec* elapses (0 = until Ctrl+C) and return the final estimate."""
        try:
            runner = AcquisitionRunner(
                self.engine,
                self.stream,
                self.config,
                sample_logger=self.sample_logger,
                max_samples=max_samples,
            )
        except ValueError:
            self.close()
            raise
        if self.sample_logger is not None:
            self.sample_logger.set_metadata(
                {
                    "command": self.config.acquisition.command,
                    "unit": self.config.instrument.unit,
                    "max_leak_rate": str(self.config.tolerance.max_leak_rate),
                }
            )
        runner.start()
        try:
            runner.join(timeout=duration_sec if duration_sec > 0 else None)
        except KeyboardInterrupt:
            logger.info("Stopping acquisition (Ctrl+C)")
        finally:
            runner.stop()
            runner.join(timeout=self.config.retry.timeout_sec * self.config.retry.max_attempts + 5)
            if self.sample_logger is not None and runner.last_result is not None:
                self.sample_logger.set_metadata(result_metadata(runner.last_result))
            self.close()
        if runner.last_exception is not None:
            raise runner.last_exception
        return runner.last_result

    def close(self) -> None:
        if self.sample_logger is not None:
            self.sample_logger.close()
        self.transport.close()


app = typer.Typer(add_completion=False, help="Ruska gauge acquisition utilities.")


def _load_cli_config(config_path: Optional[Path], override: Optional[List[str]]) -> RigConfig:
    try:
        return load_config(config_path, override or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config/--set") from exc


def _open_cli_transport(port: str, baudrate: int, timeout: float, cfg: RigConfig) -> Transport:
    try:
        return open_transport(port, baudrate, timeout, cfg)
    except OSError as exc:
        typer.echo(f"Cannot open {port}: {exc}")
        raise typer.Exit(code=1) from exc


@app.command("commands")
def list_commands_cmd() -> None:
    """List the supported Ruska read commands."""

    for command in RUSKA_READ_COMMANDS:
        params = f" <{len(command.parameters)} param>" if command.parameters else ""
        typer.echo(f"{command.display_name}{params}: {command.description}")


@app.command()
def query(
    command_id: str = typer.Argument(..., help="Ruska command id, e.g. PA or UD."),
    params: Optional[List[str]] = typer.Argument(None, help="Command parameters."),
    port: str = typer.Option("/dev/ttyUSB0", "--port", "-p", help=f"Serial device, or '{DEMO_PORT}'."),
    baudrate: int = typer.Option(9600, "--baud", help="Serial baudrate."),
    timeout: float = typer.Option(0.05, "--timeout", help="Serial read timeout (seconds)."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to rig config."),
    override: Optional[List[str]] = typer.Option(None, "--set", help="Override config keys."),
) -> None:
    """Send one read command and print the decoded response."""

    cfg = _load_cli_config(config_path, override)
    try:
        command = get_command(command_id)
        request = command.request(*(params or []))
    except ParameterError as exc:
        raise typer.BadParameter(str(exc)) from exc
    transport = _open_cli_transport(port, baudrate, timeout, cfg)
    engine = ProtocolEngine.from_config(transport, cfg)
    try:
        reading = engine.send(request)
    except ProtocolError as exc:
        typer.echo(f"Error: {exc}")
        if engine.last_failure_detail:
            typer.echo(f"Last failure: {engine.last_failure_detail}")
        raise typer.Exit(code=1) from exc
    finally:
        transport.close()
    typer.echo(f"{reading.response_id}: {', '.join(reading.values)}")
    if reading.pressure is not None:
        typer.echo(f"Pressure: {reading.pressure} {cfg.instrument.unit}")
    if reading.temperature is not None:
        typer.echo(f"Temperature: {reading.temperature:.3f}")
    if command is UN:
        unit = UNIT_CODES.get(int(reading.values[0]), "user/other")
        typer.echo(f"Units: {unit}")


@app.command()
def run(
    port: str = typer.Option("/dev/ttyUSB0", "--port", "-p", help=f"Serial device, or '{DEMO_PORT}'."),
    baudrate: int = typer.Option(9600, "--baud", help="Serial baudrate."),
    timeout: float = typer.Option(0.05, "--timeout", help="Serial read timeout (seconds)."),
    config_path: Optional[Path] = typer.Option(
        Path("rig/config.json"), "--config", "-c", help="Path to rig config."
    ),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set retry.max_attempts=5 --set acquisition.window=60",
    ),
    duration: float = typer.Option(0.0, "--duration", help="Stop after N seconds (0 = until Ctrl+C)."),
    max_samples: int = typer.Option(0, "--max-samples", help="Stop after N samples (0 = unlimited)."),
) -> None:
    """Acquire pressure samples, estimate the leak rate and print the verdict."""

    cfg_file = config_path if config_path is not None and config_path.exists() else None
    if config_path is not None and cfg_file is None:
        logger.warning("Config %s not found, using defaults", config_path)
    cfg = _load_cli_config(cfg_file, override)
    transport = _open_cli_transport(port, baudrate, timeout, cfg)
    host = RigHost(transport, cfg)
    try:
        result = host.run(duration_sec=duration, max_samples=max_samples)
    except (ProtocolError, StreamError) as exc:
        typer.echo(f"Acquisition halted: {exc}")
        raise typer.Exit(code=1) from exc
    if result is None:
        typer.echo("No samples acquired")
        raise typer.Exit(code=1)
    typer.echo(
        f"Verdict: {result.verdict.value.upper()} "
        f"(slope={result.slope:.6g} {cfg.instrument.unit}/s, samples={result.sample_count}, "
        f"residual={result.residual_metric:.3g})"
    )
