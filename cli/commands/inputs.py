"""
Input and output helpers shared by the cfuse commands.

Bundle files are JSON or YAML documents in the SensorMeasurementBundle
format, optionally carrying a "profiles" entry with delay profiles
(a list of profile dicts, or a mapping of sensor id to profile dict).
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml

from chronofuse.alignment.delay import DelayProfile
from chronofuse.measurement import SensorMeasurementBundle
from chronofuse.storage import CalibrationStore, InMemoryCalibrationStore, LocalCalibrationStore

logger = logging.getLogger("cfuse.inputs")


def load_document(path: Path) -> Dict[str, Any]:
    """Load a JSON or YAML document, chosen by file extension."""
    with open(path) as f:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must contain a mapping at the top level")
    return data


def parse_profiles(raw: Any) -> List[DelayProfile]:
    """Delay profiles from a list of dicts or a sensor id -> dict mapping."""
    if not raw:
        return []
    if isinstance(raw, dict):
        raw = [dict(profile, sensor_id=sensor_id) for sensor_id, profile in raw.items()]
    return [DelayProfile.from_dict(profile) for profile in raw]


def load_bundle(path: Path) -> Tuple[SensorMeasurementBundle, List[DelayProfile]]:
    """
    Load a bundle file.

    Returns:
        The bundle and any delay profiles embedded in the file
    """
    data = load_document(path)
    try:
        profiles = parse_profiles(data.pop("profiles", None))
        bundle = SensorMeasurementBundle.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise click.BadParameter(f"Invalid bundle file {path}: {e}")
    logger.debug(
        f"Loaded bundle {bundle.bundle_id} with {len(bundle.streams)} streams "
        f"and {len(profiles)} profiles"
    )
    return bundle, profiles


def open_store(store_dir: Optional[Path], profiles: List[DelayProfile]) -> CalibrationStore:
    """
    Local store when a directory is given, in-memory otherwise.

    Embedded profiles are saved into the store.
    """
    store: CalibrationStore
    if store_dir is not None:
        store = LocalCalibrationStore(store_dir)
    else:
        store = InMemoryCalibrationStore()
    for profile in profiles:
        store.save_profile(profile)
    return store


def output_json(payload: Dict[str, Any], output_path: Optional[Path]) -> None:
    """Write payload as JSON to a file or stdout."""
    json_str = json.dumps(payload, indent=2)

    if output_path:
        with open(output_path, "w") as f:
            f.write(json_str)
    else:
        click.echo(json_str)
