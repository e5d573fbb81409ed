"""
Pytest configuration and fixtures for chronofuse tests.

Markers:
    @pytest.mark.alignment - Delay model, similarity and DTW tests
    @pytest.mark.fusion - Trust tracking and consensus tests
    @pytest.mark.optimizer - Factor and Levenberg-Marquardt tests
    @pytest.mark.calibration - EM calibration tests
    @pytest.mark.engine - Fusion engine pipeline tests
    @pytest.mark.cli - cfuse command-line tests
    @pytest.mark.slow - Tests that take longer to run

Usage:
    pytest -m alignment           # Run only alignment tests
    pytest -m "not slow"          # Skip slow tests
    pytest -m "engine and not slow"  # Fast engine tests only
"""

import pytest
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "alignment: Delay model, similarity and DTW tests")
    config.addinivalue_line("markers", "fusion: Trust tracking and consensus tests")
    config.addinivalue_line("markers", "optimizer: Factor and Levenberg-Marquardt tests")
    config.addinivalue_line("markers", "calibration: EM calibration tests")
    config.addinivalue_line("markers", "engine: Fusion engine pipeline tests")
    config.addinivalue_line("markers", "cli: cfuse command-line tests")
    config.addinivalue_line("markers", "slow: Slow-running tests")


FILE_MARKERS = {
    "test_delay": "alignment",
    "test_similarity": "alignment",
    "test_dtw": "alignment",
    "test_trust": "fusion",
    "test_consensus": "fusion",
    "test_optimizer": "optimizer",
    "test_calibration": "calibration",
    "test_engine": "engine",
    "test_cli": "cli",
}


def pytest_collection_modifyitems(config, items):
    """Auto-apply markers based on test file names and test names."""
    for item in items:
        basename = item.fspath.basename
        for prefix, marker in FILE_MARKERS.items():
            if basename.startswith(prefix):
                item.add_marker(getattr(pytest.mark, marker))

        test_name = item.name.lower()
        if "large" in test_name or "stress" in test_name or "concurrent" in test_name:
            item.add_marker(pytest.mark.slow)


@pytest.fixture
def make_measurement():
    """Factory for scalar measurements."""
    from chronofuse.measurement import Measurement, MeasurementValue

    def _make(sensor_id, timestamp, value, uncertainty=0.0, **kwargs):
        if not hasattr(value, "kind"):
            value = MeasurementValue.scalar(value)
        return Measurement(timestamp, value, sensor_id, uncertainty=uncertainty, **kwargs)

    return _make


@pytest.fixture
def make_stream(make_measurement):
    """Factory for streams of scalar readings at given timestamps."""
    from chronofuse.measurement import SensorStream, SensorType

    def _make(sensor_id, timestamps, values, sensor_type=SensorType.WEATHER_STATION, **kwargs):
        if not isinstance(values, (list, tuple)):
            values = [values] * len(timestamps)
        measurements = [
            make_measurement(sensor_id, t, v, **kwargs) for t, v in zip(timestamps, values)
        ]
        return SensorStream(sensor_id, sensor_type, measurements)

    return _make


@pytest.fixture
def outlier_bundle(make_stream):
    """Three weather stations at the same instants; station c reads 50.0."""
    from chronofuse.measurement import SensorMeasurementBundle

    times = [0.0, 1.0, 2.0]
    bundle = SensorMeasurementBundle(bundle_id="outlier-bundle")
    bundle.add_stream(make_stream("a", times, 10.0))
    bundle.add_stream(make_stream("b", times, 10.2))
    bundle.add_stream(make_stream("c", times, 50.0))
    return bundle


@pytest.fixture
def zero_profiles():
    """Factory for zero-delay profiles."""
    from chronofuse.alignment.delay import DelayProfile

    def _make(*sensor_ids):
        return {sid: DelayProfile(sensor_id=sid) for sid in sensor_ids}

    return _make


@pytest.fixture
def memory_store(zero_profiles):
    """In-memory store holding zero-delay profiles for sensors a-e."""
    from chronofuse.storage import InMemoryCalibrationStore

    return InMemoryCalibrationStore(zero_profiles("a", "b", "c", "d", "e"))
