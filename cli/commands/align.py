"""
Align Command - Align one sensor stream to another with DTW.

Usage:
    cfuse align --input bundle.json --reference gps-1 --target station-2
    cfuse align --input bundle.json --reference gps-1 --target station-2 --radius 3 --format json
"""

import logging
from pathlib import Path
from typing import Optional

import click

from chronofuse.alignment.dtw import DTWAligner, DTWConstraints, StepPattern
from chronofuse.exceptions import FusionError
from cli.commands.inputs import load_bundle, output_json

logger = logging.getLogger("cfuse.align")


@click.command("align")
@click.option(
    "--input",
    "-i",
    "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Bundle file (JSON or YAML).",
)
@click.option(
    "--reference",
    "-r",
    required=True,
    help="Reference sensor id.",
)
@click.option(
    "--target",
    "-t",
    required=True,
    help="Target sensor id.",
)
@click.option(
    "--step-pattern",
    type=click.Choice([p.value for p in StepPattern], case_sensitive=False),
    default=None,
    help="DTW step pattern (default: from configuration).",
)
@click.option(
    "--radius",
    type=int,
    default=None,
    help="Sakoe-Chiba band radius.",
)
@click.option(
    "--itakura",
    is_flag=True,
    default=False,
    help="Restrict the path to the Itakura parallelogram.",
)
@click.option(
    "--max-offset",
    type=float,
    default=None,
    help="Maximum time offset of an aligned pair in seconds.",
)
@click.option(
    "--output",
    "-o",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the JSON alignment to this file.",
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
def align(
    ctx,
    input_path: Path,
    reference: str,
    target: str,
    step_pattern: Optional[str],
    radius: Optional[int],
    itakura: bool,
    max_offset: Optional[float],
    output_path: Optional[Path],
    output_format: str,
):
    """
    Align one sensor stream to another with dynamic time warping.

    Uses the valid readings of both streams as recorded; no delay
    correction is applied.

    \b
    Examples:
        # Unconstrained alignment
        cfuse align --input bundle.json --reference gps-1 --target station-2

        # Banded alignment with the symmetric2 step pattern
        cfuse align -i bundle.json -r gps-1 -t station-2 --radius 2 --step-pattern symmetric2
    """
    config = ctx.config
    bundle, _ = load_bundle(input_path)
    streams = bundle.valid_streams()
    for sensor_id in (reference, target):
        if sensor_id not in streams:
            raise click.BadParameter(
                f"Sensor '{sensor_id}' has no valid measurements in {input_path}"
            )

    try:
        constraints = DTWConstraints(
            step_pattern=StepPattern(step_pattern) if step_pattern else config.step_pattern,
            sakoe_chiba_radius=radius if radius is not None else config.sakoe_chiba_radius,
            itakura=itakura or config.use_itakura,
            max_time_offset=max_offset,
        )
    except ValueError as e:
        raise click.BadParameter(str(e))

    aligner = DTWAligner(constraints)
    try:
        result = aligner.align(streams[reference].measurements, streams[target].measurements)
    except FusionError as e:
        raise click.ClickException(str(e))

    payload = result.to_dict()
    payload["constraints"] = constraints.to_dict()

    if output_path is not None or output_format == "json":
        output_json(payload, output_path)
    if output_format == "text":
        click.echo("\n=== Alignment Result ===")
        click.echo(f"  Reference: {reference} ({len(streams[reference])} readings)")
        click.echo(f"  Target: {target} ({len(streams[target])} readings)")
        click.echo(f"  Step pattern: {constraints.step_pattern.value}")
        click.echo(f"  Cost: {result.cost:.6g}")
        click.echo(f"  Normalized cost: {result.normalized_cost:.6g}")
        click.echo(f"  Quality: {result.quality_score:.3f}")
        click.echo(f"  Path length: {result.path_length}")
        if result.degenerate:
            click.echo("  Degenerate single-point alignment")
        if output_path:
            click.echo(f"  Result: {output_path}")
