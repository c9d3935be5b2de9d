"""Command line interface for the pressure_integrity package."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .leakage import estimate_leak_rate
from .reporting import load_samples_csv
from .ruska.config import load_config
from .ruska.runner import app as ruska_app

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})
app.add_typer(ruska_app, name="ruska")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)."),
) -> None:
    """Pressure-integrity leak test rig for Ruska gauges."""

    level = log_level.upper()
    if level not in _LOG_LEVELS:
        raise typer.BadParameter(f"Choose one of {', '.join(_LOG_LEVELS)}", param_hint="--log-level")
    _configure_logging(level)


@app.command()
def estimate(
    input_path: Path = typer.Option(..., "--in", help="Sample CSV written by 'ruska run'."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Rig config with tolerances."),
    override: Optional[List[str]] = typer.Option(
        None, "--set", help="Override config keys, e.g. --set tolerance.max_leak_rate=0.002"
    ),
    window: int = typer.Option(0, "--window", help="Use only the last N samples (0 = all)."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
) -> None:
    """Re-estimate the leak rate of a recorded session."""

    try:
        cfg = load_config(config_path, override or None)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--config/--set") from exc
    try:
        samples = load_samples_csv(input_path)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--in") from exc
    if window < 0:
        raise typer.BadParameter("window may not be negative", param_hint="--window")
    if window:
        samples = samples[-window:]

    result = estimate_leak_rate(samples, cfg.tolerance)
    if as_json:
        typer.echo(json.dumps(result.as_dict(), indent=2))
        return
    typer.echo(f"Samples: {result.sample_count}")
    typer.echo(f"Slope: {result.slope:.6g} {cfg.instrument.unit}/s")
    typer.echo(f"Intercept: {result.intercept:.6g} {cfg.instrument.unit}")
    typer.echo(f"Residual: {result.residual_metric:.6g}")
    typer.echo(f"Leak rate: {result.leak_rate_percent_per_day:.4g} %/day")
    typer.echo(f"Verdict: {result.verdict.value.upper()}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
