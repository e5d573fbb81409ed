"""
Trust Command - Show persisted trust scores and history.

Usage:
    cfuse trust --store ./calib/
    cfuse trust --store ./calib/ --sensor station-2 --limit 20
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click

from chronofuse.storage import LocalCalibrationStore
from cli.commands.inputs import output_json

logger = logging.getLogger("cfuse.trust")


@click.command("trust")
@click.option(
    "--store",
    "-s",
    "store_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
    help="Calibration store directory.",
)
@click.option(
    "--sensor",
    type=str,
    default=None,
    help="Show the history of one sensor only.",
)
@click.option(
    "--limit",
    "-n",
    type=int,
    default=10,
    help="History entries per sensor (default: 10, 0 for all).",
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
def trust(
    ctx,
    store_dir: Path,
    sensor: Optional[str],
    limit: int,
    output_format: str,
):
    """
    Show persisted trust scores and their history.

    \b
    Examples:
        # Latest trust of every sensor
        cfuse trust --store ./calib/

        # Full history of one sensor as JSON
        cfuse trust --store ./calib/ --sensor station-2 --limit 0 --format json
    """
    store = LocalCalibrationStore(store_dir)
    sensor_ids = [sensor] if sensor else store.list_trust_sensors()

    report = {}
    for sensor_id in sensor_ids:
        history = store.trust_history(sensor_id, limit=limit or None)
        report[sensor_id] = {
            "trust": store.load_trust(sensor_id),
            "history": [{"timestamp": t, "score": s} for t, s in history],
        }

    if output_format == "json":
        output_json({"store": str(store_dir), "sensors": report}, None)
        return

    click.echo(f"\n=== Trust Scores ({store_dir}) ===")
    if not report:
        click.echo("  No trust history recorded")
        return
    for sensor_id, entry in report.items():
        if entry["trust"] is None:
            click.echo(f"\n  {sensor_id}: no trust history")
            continue
        click.echo(f"\n  {sensor_id}: {entry['trust']:.3f}")
        for item in entry["history"]:
            when = datetime.fromtimestamp(item["timestamp"], tz=timezone.utc)
            click.echo(f"    {when.isoformat()}  {item['score']:.3f}")
