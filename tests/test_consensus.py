"""
Tests for Byzantine-tolerant consensus.

Tests trust filtering, priority weighting, confidence and agreement,
dimension handling and the combined detect-and-fuse pass.
"""

import numpy as np
import pytest

from chronofuse.exceptions import EmptyInputError, NoTrustedSensorsError
from chronofuse.fusion.consensus import (
    ConsensusConfig,
    ConsensusEngine,
    SensorEvidence,
    build_consensus,
)
from chronofuse.fusion.trust import TrustTracker
from chronofuse.measurement import MeasurementValue, SensorType


def scalar_evidence(sensor_id, value, sensor_type=SensorType.WEATHER_STATION, uncertainty=0.0):
    return SensorEvidence.from_value(
        sensor_id, sensor_type, MeasurementValue.scalar(value), uncertainty=uncertainty
    )


# ============================================================================
# Configuration and priorities
# ============================================================================

class TestConsensusConfig:
    """Test priority resolution and validation."""

    def test_domain_priorities(self):
        config = ConsensusConfig()
        assert config.priority_for(SensorType.SOIL_SENSOR) == 0.9
        assert config.priority_for(SensorType.GPS) == 0.6
        assert config.priority_for(SensorType.LYSIMETER) == 0.5

    def test_sensor_priority_override(self):
        config = ConsensusConfig(sensor_priorities={"gps": 0.2})
        assert config.priority_for(SensorType.GPS) == 0.2

    def test_context_override(self):
        config = ConsensusConfig(
            sensor_priorities={"gps": 0.2},
            context_priorities={"rice": {"gps": 0.95}},
        )
        assert config.priority_for(SensorType.GPS, "rice") == 0.95
        assert config.priority_for(SensorType.GPS, "wheat") == 0.2

    def test_threshold_bounds(self):
        with pytest.raises(ValueError):
            ConsensusConfig(trust_threshold=1.0)

    def test_non_positive_priority_rejected(self):
        with pytest.raises(ValueError):
            ConsensusConfig(context_priorities={"rice": {"gps": 0.0}})


# ============================================================================
# Consensus computation
# ============================================================================

class TestConsensusCompute:
    """Test weighted consensus."""

    def test_identical_readings(self):
        evidence = [
            scalar_evidence("soil", 5.0, SensorType.SOIL_SENSOR),
            scalar_evidence("ws", 5.0, SensorType.WEATHER_STATION),
        ]
        result = ConsensusEngine().compute(evidence, {"soil": 1.0, "ws": 1.0})

        np.testing.assert_allclose(result.estimate, [5.0])
        assert result.consensus_confidence == pytest.approx(1.0)
        assert result.agreement == pytest.approx(1.0)
        assert result.weights["soil"] == pytest.approx(0.9 / 1.7)
        assert result.weights["ws"] == pytest.approx(0.8 / 1.7)
        np.testing.assert_allclose(result.covariance, [[0.0]])

    def test_weights_proportional_to_trust(self):
        evidence = [scalar_evidence("a", 10.0), scalar_evidence("b", 20.0)]
        result = ConsensusEngine().compute(evidence, {"a": 1.0, "b": 0.6})
        assert result.weights["a"] == pytest.approx(0.625)
        assert result.weights["b"] == pytest.approx(0.375)
        np.testing.assert_allclose(result.estimate, [0.625 * 10.0 + 0.375 * 20.0])
        assert 0.0 < result.agreement < 1.0

    def test_weights_sum_to_one(self):
        evidence = [
            scalar_evidence("a", 1.0, SensorType.GPS),
            scalar_evidence("b", 1.1, SensorType.SOIL_SENSOR),
            scalar_evidence("c", 0.9, SensorType.PHENOCAM),
        ]
        result = ConsensusEngine().compute(evidence, {"a": 0.7, "b": 0.9, "c": 1.0})
        assert sum(result.weights.values()) == pytest.approx(1.0)

    def test_untrusted_excluded(self):
        evidence = [scalar_evidence("a", 10.0), scalar_evidence("b", 99.0)]
        result = ConsensusEngine().compute(evidence, {"a": 1.0, "b": 0.4})

        assert result.untrusted_sensors == ["b"]
        assert list(result.weights) == ["a"]
        np.testing.assert_allclose(result.estimate, [10.0])
        assert result.consensus_confidence == pytest.approx(1.0)
        assert result.trusted_share == pytest.approx(0.8 / (0.8 + 0.4 * 0.8))

    def test_low_trust_agreeing_sensor_keeps_full_confidence(self):
        evidence = [
            scalar_evidence("a", 10.0),
            scalar_evidence("b", 10.0),
            scalar_evidence("c", 10.0),
        ]
        result = ConsensusEngine().compute(evidence, {"a": 1.0, "b": 1.0, "c": 0.3})
        assert result.untrusted_sensors == ["c"]
        assert result.consensus_confidence == pytest.approx(1.0)
        assert result.agreement == pytest.approx(1.0)

    def test_threshold_is_strict(self):
        evidence = [scalar_evidence("a", 10.0), scalar_evidence("b", 10.0)]
        result = ConsensusEngine().compute(evidence, {"a": 1.0, "b": 0.5})
        assert result.untrusted_sensors == ["b"]

    def test_no_trusted_sensors(self):
        evidence = [scalar_evidence("a", 10.0), scalar_evidence("b", 11.0)]
        with pytest.raises(NoTrustedSensorsError) as exc_info:
            ConsensusEngine().compute(evidence, {"a": 0.3, "b": 0.2})
        assert exc_info.value.threshold == 0.5
        assert exc_info.value.trust_scores == {"a": 0.3, "b": 0.2}

    def test_missing_trust_counts_as_full(self):
        result = ConsensusEngine().compute([scalar_evidence("a", 3.0)], {})
        assert result.trust_scores == {"a": 1.0}

    def test_empty_evidence(self):
        empty = SensorEvidence("a", SensorType.GPS, [None, None])
        with pytest.raises(EmptyInputError):
            ConsensusEngine().compute([empty], {})

    def test_dimension_mismatch(self):
        evidence = [
            scalar_evidence("a", 10.0),
            scalar_evidence("b", 10.5),
            SensorEvidence.from_value("v", SensorType.GPS, MeasurementValue.vector([1.0, 2.0])),
        ]
        result = ConsensusEngine().compute(evidence, {})
        assert result.dimension_mismatch == ["v"]
        assert sorted(result.weights) == ["a", "b"]

    def test_measurement_uncertainty_in_covariance(self):
        evidence = [
            scalar_evidence("a", 4.0, uncertainty=0.3),
            scalar_evidence("b", 4.0, uncertainty=0.4),
        ]
        result = ConsensusEngine().compute(evidence, {})
        np.testing.assert_allclose(result.covariance, [[0.5 * 0.09 + 0.5 * 0.16]])

    def test_context_key_changes_weights(self):
        config = ConsensusConfig(context_priorities={"orchard": {"gps": 2.4}})
        evidence = [
            scalar_evidence("g", 1.0, SensorType.GPS),
            scalar_evidence("w", 3.0, SensorType.WEATHER_STATION),
        ]
        result = ConsensusEngine(config).compute(evidence, {}, context_key="orchard")
        assert result.weights["g"] == pytest.approx(0.75)


# ============================================================================
# Detect and fuse
# ============================================================================

class TestDetectAndFuse:
    """Test the combined fault-detection and consensus pass."""

    def test_outlier_removed(self):
        result = build_consensus({"a": 10.0, "b": 10.2, "c": 50.0})

        assert result.untrusted_sensors == ["c"]
        np.testing.assert_allclose(result.estimate, [10.1])
        assert result.weights == pytest.approx({"a": 0.5, "b": 0.5})
        assert {e.sensor_id for e in result.fault_events} == {"c"}
        assert result.trust_scores["c"] < 0.5
        # Confidence reflects the two remaining sensors
        assert result.consensus_confidence == pytest.approx(10.1 / 10.2)

    def test_tracker_updated(self):
        tracker = TrustTracker()
        build_consensus({"a": 10.0, "b": 10.2, "c": 50.0}, tracker=tracker)
        assert tracker.get_trust("c") < 0.5
        assert tracker.get_trust("a") == 1.0

    def test_repeated_outlier_reaches_floor(self):
        tracker = TrustTracker()
        for _ in range(10):
            build_consensus({"a": 10.0, "b": 10.2, "c": 50.0}, tracker=tracker)
        assert tracker.get_trust("c") == pytest.approx(0.1)

    def test_no_trusted_sensors_propagates(self):
        tracker = TrustTracker()
        tracker.set_trust("a", 0.2)
        tracker.set_trust("b", 0.2)
        with pytest.raises(NoTrustedSensorsError):
            build_consensus({"a": 10.0, "b": 10.0}, tracker=tracker)

    def test_to_dict(self):
        data = build_consensus({"a": 1.0, "b": 1.0}).to_dict()
        assert data["estimate"] == [1.0]
        assert data["fault_count"] == 0
        assert data["consensus_confidence"] == pytest.approx(1.0)
