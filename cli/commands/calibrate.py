"""
Calibrate Command - Estimate sensor biases and noise with EM.

Usage:
    cfuse calibrate --input readings.json
    cfuse calibrate --input readings.yaml --learning-rate 0.5 --format json

The input document holds "measurement_sets", a list of sensor id ->
reading mappings (one per instant), and optionally "trust", a sensor
id -> trust mapping.
"""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

from chronofuse.exceptions import FusionError
from chronofuse.fusion.calibration import CalibrationResult, EMCalibrator
from cli.commands.inputs import load_document, output_json

logger = logging.getLogger("cfuse.calibrate")


@click.command("calibrate")
@click.option(
    "--input",
    "-i",
    "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Readings file (JSON or YAML) with measurement_sets.",
)
@click.option(
    "--learning-rate",
    type=float,
    default=None,
    help="Moving-average rate of the M-step (default: from configuration).",
)
@click.option(
    "--max-iterations",
    type=int,
    default=None,
    help="Iteration cap (default: from configuration).",
)
@click.option(
    "--output",
    "-o",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the JSON calibration to this file.",
)
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    help="Output format (default: text).",
)
@click.pass_obj
def calibrate(
    ctx,
    input_path: Path,
    learning_rate: Optional[float],
    max_iterations: Optional[int],
    output_path: Optional[Path],
    output_format: str,
):
    """
    Estimate per-sensor bias, noise variance and residual correlation.

    \b
    Examples:
        # Calibrate with configured settings
        cfuse calibrate --input readings.json

        # Faster adaptation, JSON output
        cfuse calibrate --input readings.json --learning-rate 0.5 --format json
    """
    data = load_document(input_path)
    measurement_sets = data.get("measurement_sets")
    if not isinstance(measurement_sets, list):
        raise click.BadParameter(f"{input_path} must contain a measurement_sets list")

    config = ctx.config.calibration_config()
    try:
        if learning_rate is not None:
            config = replace(config, learning_rate=learning_rate)
        if max_iterations is not None:
            config = replace(config, max_iterations=max_iterations)
    except ValueError as e:
        raise click.BadParameter(str(e))

    try:
        result = EMCalibrator(config).calibrate(measurement_sets, data.get("trust"))
    except FusionError as e:
        raise click.ClickException(str(e))

    if output_path is not None or output_format == "json":
        output_json(result.to_dict(), output_path)
    if output_format == "text":
        print_calibration(result, len(measurement_sets))
        if output_path:
            click.echo(f"  Result: {output_path}")


def print_calibration(result: CalibrationResult, set_count: int) -> None:
    """Print a human-readable calibration summary."""
    click.echo("\n=== Calibration Result ===")
    click.echo(f"  Sensors: {len(result.sensor_ids)}")
    click.echo(f"  Measurement sets: {set_count}")
    click.echo(f"  Converged: {result.converged} ({result.iterations} iterations)")
    click.echo(f"  Log-likelihood: {result.log_likelihood:.6g}")

    click.echo("\n  Sensor        Bias          Noise variance")
    click.echo("  " + "-" * 44)
    for sensor_id in result.sensor_ids:
        click.echo(
            f"  {sensor_id:<12}  {result.biases[sensor_id]:<12.6g}  "
            f"{result.noise_variances[sensor_id]:.6g}"
        )
