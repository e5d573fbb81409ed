"""
Tests for calibration storage.

Tests profile persistence, trust history ordering and limits, and the
filesystem layout of the local store.
"""

import pytest

from chronofuse.alignment.delay import DelayProfile
from chronofuse.exceptions import MissingCalibrationError
from chronofuse.storage import InMemoryCalibrationStore, LocalCalibrationStore


@pytest.fixture(params=["memory", "local"])
def store(request, tmp_path):
    """Each store implementation, empty."""
    if request.param == "memory":
        return InMemoryCalibrationStore()
    return LocalCalibrationStore(tmp_path / "calib")


def sample_profile(sensor_id="gps-1"):
    return DelayProfile(
        sensor_id=sensor_id,
        cable_delay_ns=12.5,
        processing_delay_ns=3.0,
        temperature_coefficient=0.02,
        drift_coefficients=[0.1, 0.01],
    )


# ============================================================================
# Shared contract
# ============================================================================

class TestProfiles:
    """Test delay profile persistence."""

    def test_save_and_load(self, store):
        store.save_profile(sample_profile())
        loaded = store.load_profile("gps-1")
        assert loaded.sensor_id == "gps-1"
        assert loaded.cable_delay_ns == 12.5
        assert loaded.drift_coefficients == [0.1, 0.01]

    def test_missing_profile(self, store):
        with pytest.raises(MissingCalibrationError) as exc_info:
            store.load_profile("nope")
        assert exc_info.value.sensor_id == "nope"

    def test_overwrite(self, store):
        store.save_profile(sample_profile())
        store.save_profile(DelayProfile(sensor_id="gps-1", cable_delay_ns=1.0))
        assert store.load_profile("gps-1").cable_delay_ns == 1.0

    def test_list_and_has(self, store):
        store.save_profile(sample_profile("b"))
        store.save_profile(sample_profile("a"))
        assert store.list_profiles() == ["a", "b"]
        assert store.has_profile("a")
        assert not store.has_profile("c")


class TestTrustHistory:
    """Test trust score persistence."""

    def test_load_trust_absent(self, store):
        assert store.load_trust("s1") is None
        assert store.trust_history("s1") == []

    def test_latest_score(self, store):
        store.save_trust("s1", 1.0, timestamp=10.0)
        store.save_trust("s1", 0.6, timestamp=20.0)
        assert store.load_trust("s1") == pytest.approx(0.6)

    def test_history_oldest_first(self, store):
        for k, score in enumerate([1.0, 0.8, 0.7]):
            store.save_trust("s1", score, timestamp=float(k))
        assert store.trust_history("s1") == [(0.0, 1.0), (1.0, 0.8), (2.0, 0.7)]

    def test_history_limit_keeps_newest(self, store):
        for k in range(5):
            store.save_trust("s1", 1.0 - 0.1 * k, timestamp=float(k))
        history = store.trust_history("s1", limit=2)
        assert [t for t, _ in history] == [3.0, 4.0]

    def test_default_timestamp(self, store):
        store.save_trust("s1", 0.9)
        (timestamp, score), = store.trust_history("s1")
        assert timestamp > 0
        assert score == pytest.approx(0.9)

    def test_list_trust_sensors(self, store):
        store.save_trust("b", 1.0, timestamp=0.0)
        store.save_trust("a", 1.0, timestamp=0.0)
        store.save_trust("a", 0.9, timestamp=1.0)
        assert store.list_trust_sensors() == ["a", "b"]


# ============================================================================
# Local store specifics
# ============================================================================

class TestLocalCalibrationStore:
    """Test the filesystem layout."""

    def test_layout(self, tmp_path):
        store = LocalCalibrationStore(tmp_path / "calib")
        store.save_profile(sample_profile())
        assert (tmp_path / "calib" / "profiles" / "gps-1.json").exists()
        assert (tmp_path / "calib" / "trust.db").exists()

    def test_no_temp_files_left(self, tmp_path):
        store = LocalCalibrationStore(tmp_path)
        store.save_profile(sample_profile())
        assert list((tmp_path / "profiles").glob("*.tmp")) == []

    def test_non_atomic_writes(self, tmp_path):
        store = LocalCalibrationStore(tmp_path, use_atomic_writes=False)
        store.save_profile(sample_profile())
        assert store.load_profile("gps-1").processing_delay_ns == 3.0

    def test_unsafe_sensor_id(self, tmp_path):
        store = LocalCalibrationStore(tmp_path)
        store.save_profile(sample_profile("site/a b"))
        assert (tmp_path / "profiles" / "site_a_b.json").exists()
        assert store.load_profile("site/a b").sensor_id == "site/a b"
        assert store.list_profiles() == ["site/a b"]

    def test_sanitized_name_collision(self, tmp_path):
        store = LocalCalibrationStore(tmp_path)
        store.save_profile(sample_profile("a/b"))
        with pytest.raises(MissingCalibrationError):
            store.load_profile("a_b")
        assert not store.has_profile("a_b")

    def test_persists_across_instances(self, tmp_path):
        LocalCalibrationStore(tmp_path).save_trust("s1", 0.4, timestamp=5.0)
        assert LocalCalibrationStore(tmp_path).load_trust("s1") == pytest.approx(0.4)


class TestInMemoryCalibrationStore:
    """Test construction from a profile mapping."""

    def test_initial_profiles(self):
        store = InMemoryCalibrationStore({"a": DelayProfile(sensor_id="a")})
        assert store.has_profile("a")
        assert store.load_profile("a").cable_delay_ns == 0.0
