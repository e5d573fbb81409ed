"""
Fuse Command - Fuse a measurement bundle into one state estimate.

Usage:
    cfuse fuse --input bundle.json
    cfuse fuse --input bundle.yaml --algorithm em_calibration --store ./calib/
"""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

from chronofuse.config import AlgorithmKind
from chronofuse.engine import FusionEngine, FusionResult
from chronofuse.exceptions import FusionError
from cli.commands.inputs import load_bundle, open_store, output_json

logger = logging.getLogger("cfuse.fuse")


@click.command("fuse")
@click.option(
    "--input",
    "-i",
    "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Bundle file (JSON or YAML) with optional delay profiles.",
)
@click.option(
    "--algorithm",
    "-a",
    type=click.Choice([a.value for a in AlgorithmKind], case_sensitive=False),
    default=None,
    help="Refinement algorithm (default: from configuration).",
)
@click.option(
    "--store",
    "-s",
    "store_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Calibration store directory for profiles and trust history.",
)
@click.option(
    "--reference",
    "-r",
    type=str,
    default=None,
    help="Reference sensor id (default: longest stream).",
)
@click.option(
    "--default-profiles",
    is_flag=True,
    default=False,
    help="Use factory delay profiles for sensors without a stored profile.",
)
@click.option(
    "--output",
    "-o",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the JSON result to this file.",
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
def fuse(
    ctx,
    input_path: Path,
    algorithm: Optional[str],
    store_dir: Optional[Path],
    reference: Optional[str],
    default_profiles: bool,
    output_path: Optional[Path],
    output_format: str,
):
    """
    Fuse a measurement bundle into one state estimate.

    Corrects timestamp delays with each sensor's profile, aligns every
    stream to the reference timeline, runs fault detection and trust-weighted
    consensus, then refines the estimate with the selected algorithm.

    \b
    Examples:
        # Fuse with the configured algorithm
        cfuse fuse --input bundle.json

        # Consensus only, JSON result to a file
        cfuse fuse --input bundle.json --algorithm byzantine --output result.json
    """
    config = ctx.config
    if reference or default_profiles:
        config = replace(
            config,
            reference_sensor=reference or config.reference_sensor,
            use_default_profiles=default_profiles or config.use_default_profiles,
        )

    bundle, profiles = load_bundle(input_path)
    store = open_store(store_dir, profiles)
    engine = FusionEngine(config, store=store)

    try:
        result = engine.fuse(bundle, algorithm=algorithm)
    except FusionError as e:
        raise click.ClickException(str(e))

    if output_path is not None or output_format == "json":
        output_json(result.to_dict(), output_path)
    if output_format == "text":
        print_summary(result)
        if output_path:
            click.echo(f"  Result: {output_path}")


def print_summary(result: FusionResult) -> None:
    """Print a human-readable fusion summary."""
    click.echo("\n=== Fusion Result ===")
    click.echo(f"  Bundle: {result.bundle_id}")
    click.echo(f"  Algorithm: {result.algorithm_used.value}")
    if result.fallback_reason:
        click.echo(f"  Fallback: {result.fallback_reason}")
    click.echo(f"  Reference sensor: {result.reference_sensor}")
    click.echo(f"  Converged: {result.converged} ({result.iterations} iterations)")
    click.echo(f"  Consensus confidence: {result.consensus_confidence:.3f}")

    click.echo("\n  Estimate:")
    for k, (value, sigma) in enumerate(zip(result.estimate, result.uncertainty)):
        click.echo(f"    [{k}] {value:.6g} +/- {sigma:.3g}")

    click.echo("\n  Contributions:")
    for sensor_id, weight in sorted(result.per_sensor_contribution.items()):
        trust = result.trust_scores.get(sensor_id)
        trust_text = f", trust {trust:.3f}" if trust is not None else ""
        click.echo(f"    {sensor_id}: {weight:.3f}{trust_text}")

    if result.excluded_sensors:
        click.echo("\n  Excluded:")
        for sensor_id, info in sorted(result.excluded_sensors.items()):
            click.echo(f"    {sensor_id} ({info['stage']}): {info['reason']}")

    if result.fault_events:
        click.echo(f"\n  Faults recorded: {len(result.fault_events)}")
