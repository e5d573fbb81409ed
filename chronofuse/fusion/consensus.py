"""
Byzantine-Tolerant Consensus for Multi-Sensor Fusion.

Combines the aligned evidence of several sensors into one robust estimate:
- Trust filtering of reporting sensors
- Domain-priority weighting (optionally overridden per context key)
- Consensus confidence and agreement metrics
- One-call fault detection followed by weighted fusion

Key Concepts:
- weight = trust * domain_priority, normalized over trusted sensors
- agreement is the inverse of the weighted residual spread
- confidence scales agreement by the share of reporting weight that is trusted
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from chronofuse.exceptions import EmptyInputError, NoTrustedSensorsError
from chronofuse.fusion.trust import FaultEvent, TrustTracker
from chronofuse.measurement import Measurement, MeasurementValue, SensorType

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 0.5

DOMAIN_PRIORITIES: Dict[SensorType, float] = {
    SensorType.SOIL_SENSOR: 0.9,
    SensorType.WEATHER_STATION: 0.8,
    SensorType.SATELLITE_IMAGERY: 0.7,
    SensorType.GPS: 0.6,
}


@dataclass
class SensorEvidence:
    """
    Aligned readings of one sensor on the common timeline.

    Attributes:
        sensor_id: Sensor identifier
        sensor_type: Sensor family (drives domain priority)
        series: One slot per reference timeline position, None where absent
    """
    sensor_id: str
    sensor_type: SensorType
    series: List[Optional[Measurement]] = field(default_factory=list)

    @classmethod
    def from_value(
        cls,
        sensor_id: str,
        sensor_type: SensorType,
        value: MeasurementValue,
        uncertainty: float = 0.0,
        timestamp: float = 0.0,
    ) -> "SensorEvidence":
        """Evidence consisting of a single reading."""
        measurement = Measurement(timestamp, value, sensor_id, uncertainty=uncertainty)
        return cls(sensor_id, sensor_type, [measurement])

    @property
    def present(self) -> List[Measurement]:
        return [m for m in self.series if m is not None]

    def values(self) -> List[Optional[MeasurementValue]]:
        return [m.value if m is not None else None for m in self.series]

    def mean_vector(self) -> Optional[np.ndarray]:
        """Mean of the present values, None when nothing is present."""
        arrays = [m.value.as_array() for m in self.present]
        if not arrays:
            return None
        dimension = len(arrays[0])
        arrays = [a for a in arrays if len(a) == dimension]
        return np.mean(np.vstack(arrays), axis=0)

    def mean_uncertainty(self) -> float:
        present = self.present
        if not present:
            return 0.0
        return float(np.mean([m.uncertainty for m in present]))


@dataclass
class ConsensusConfig:
    """
    Configuration for consensus computation.

    Attributes:
        trust_threshold: Sensors need trust strictly above this to contribute
        sensor_priorities: Priority overrides keyed by sensor type value
        context_priorities: Priority overrides keyed by opaque context key,
            then by sensor type value
        default_priority: Priority of sensor types without an entry
    """
    trust_threshold: float = 0.5
    sensor_priorities: Dict[str, float] = field(default_factory=dict)
    context_priorities: Dict[str, Dict[str, float]] = field(default_factory=dict)
    default_priority: float = DEFAULT_PRIORITY

    def __post_init__(self):
        """Validate configuration."""
        if not 0.0 <= self.trust_threshold < 1.0:
            raise ValueError(f"trust_threshold must be in [0, 1), got {self.trust_threshold}")
        overrides = list(self.sensor_priorities.values()) + [self.default_priority]
        for mapping in self.context_priorities.values():
            overrides.extend(mapping.values())
        for priority in overrides:
            if not priority > 0:
                raise ValueError(f"Priorities must be positive, got {priority}")

    def priority_for(self, sensor_type: SensorType, context_key: Optional[str] = None) -> float:
        """Domain priority of a sensor type, honouring context overrides."""
        if context_key is not None:
            context = self.context_priorities.get(context_key, {})
            if sensor_type.value in context:
                return float(context[sensor_type.value])
        if sensor_type.value in self.sensor_priorities:
            return float(self.sensor_priorities[sensor_type.value])
        return DOMAIN_PRIORITIES.get(sensor_type, self.default_priority)


@dataclass
class ConsensusResult:
    """
    Trust-weighted consensus estimate.

    Attributes:
        estimate: Consensus state vector
        covariance: Diagonal covariance of the estimate
        weights: Normalized contribution weight per trusted sensor
        trust_scores: Trust used for each reporting sensor
        untrusted_sensors: Reporting sensors at or below the trust threshold
        dimension_mismatch: Sensors whose value dimension differed from the majority
        consensus_confidence: Agreement among the trusted sensors, in (0, 1]
        agreement: Inverse of the weighted residual spread, in (0, 1]
        total_weight: Sum of raw trusted weights
        reporting_weight: Sum of raw weights over every reporting sensor
        trusted_share: Fraction of reporting weight held by trusted sensors
        residuals: Distance of each trusted sensor from the estimate
        fault_events: Faults recorded by the detection pass, if one ran
    """
    estimate: np.ndarray
    covariance: np.ndarray
    weights: Dict[str, float]
    trust_scores: Dict[str, float]
    untrusted_sensors: List[str] = field(default_factory=list)
    dimension_mismatch: List[str] = field(default_factory=list)
    consensus_confidence: float = 0.0
    agreement: float = 0.0
    total_weight: float = 0.0
    reporting_weight: float = 0.0
    trusted_share: float = 1.0
    residuals: Dict[str, float] = field(default_factory=dict)
    fault_events: List[FaultEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimate": self.estimate.tolist(),
            "uncertainty": np.sqrt(np.diag(self.covariance)).tolist(),
            "weights": self.weights,
            "trust_scores": self.trust_scores,
            "untrusted_sensors": self.untrusted_sensors,
            "dimension_mismatch": self.dimension_mismatch,
            "consensus_confidence": self.consensus_confidence,
            "agreement": self.agreement,
            "total_weight": self.total_weight,
            "trusted_share": self.trusted_share,
            "fault_count": len(self.fault_events),
        }


class ConsensusEngine:
    """
    Computes trust-weighted consensus over sensor evidence.
    """

    def __init__(self, config: Optional[ConsensusConfig] = None):
        """
        Initialize consensus engine.

        Args:
            config: Consensus configuration
        """
        self.config = config or ConsensusConfig()

    def compute(
        self,
        evidence: Sequence[SensorEvidence],
        trust: Mapping[str, float],
        context_key: Optional[str] = None,
    ) -> ConsensusResult:
        """
        Weighted consensus of trusted sensors.

        Args:
            evidence: Aligned evidence per sensor
            trust: Trust score per sensor id (missing sensors count as 1.0)
            context_key: Opaque key selecting priority overrides

        Returns:
            ConsensusResult

        Raises:
            EmptyInputError: If no evidence carries a value
            NoTrustedSensorsError: If no sensor is above the trust threshold
        """
        vectors: Dict[str, np.ndarray] = {}
        for item in evidence:
            vector = item.mean_vector()
            if vector is not None:
                vectors[item.sensor_id] = vector
        if not vectors:
            raise EmptyInputError("consensus", reason="no sensor evidence carries a value")

        # Majority dimension, ties resolved toward the smaller dimension
        dimension_counts: Dict[int, int] = {}
        for vector in vectors.values():
            dimension_counts[len(vector)] = dimension_counts.get(len(vector), 0) + 1
        dimension = min(dimension_counts, key=lambda d: (-dimension_counts[d], d))

        by_id = {item.sensor_id: item for item in evidence}
        reporting: List[str] = []
        mismatched: List[str] = []
        for sensor_id in vectors:
            if len(vectors[sensor_id]) == dimension:
                reporting.append(sensor_id)
            else:
                mismatched.append(sensor_id)
        if mismatched:
            logger.warning(
                f"Excluding sensors with value dimension other than {dimension}: {sorted(mismatched)}"
            )

        trust_used = {sid: float(trust.get(sid, 1.0)) for sid in reporting}
        raw_weights = {
            sid: trust_used[sid] * self.config.priority_for(by_id[sid].sensor_type, context_key)
            for sid in reporting
        }
        trusted = [sid for sid in reporting if trust_used[sid] > self.config.trust_threshold]
        untrusted = [sid for sid in reporting if sid not in trusted]
        if not trusted:
            raise NoTrustedSensorsError(self.config.trust_threshold, trust_used)

        reporting_weight = sum(raw_weights[sid] for sid in reporting)
        total_weight = sum(raw_weights[sid] for sid in trusted)
        weights = {sid: raw_weights[sid] / total_weight for sid in trusted}

        stacked = np.vstack([vectors[sid] for sid in trusted])
        w = np.array([weights[sid] for sid in trusted])
        estimate = (w[:, None] * stacked).sum(axis=0) / w.sum()

        deviations = stacked - estimate
        residuals = {sid: float(np.linalg.norm(deviations[k])) for k, sid in enumerate(trusted)}
        spread = math.sqrt(float(np.sum(w * np.sum(deviations ** 2, axis=1))))
        scale = max(float(np.linalg.norm(estimate)), 1.0)
        agreement = 1.0 / (1.0 + spread / scale)
        # Confidence covers the trusted set only
        confidence = agreement

        measurement_var = np.array([by_id[sid].mean_uncertainty() ** 2 for sid in trusted])
        variance = (w[:, None] * deviations ** 2).sum(axis=0) + float(np.sum(w * measurement_var))
        covariance = np.diag(variance)

        logger.info(
            f"Consensus over {len(trusted)}/{len(reporting)} trusted sensors: "
            f"confidence {confidence:.3f}, trusted share {total_weight / reporting_weight:.3f}"
        )
        if untrusted:
            logger.info(f"Untrusted sensors excluded from consensus: {sorted(untrusted)}")

        return ConsensusResult(
            estimate=estimate,
            covariance=covariance,
            weights=weights,
            trust_scores=trust_used,
            untrusted_sensors=untrusted,
            dimension_mismatch=mismatched,
            consensus_confidence=confidence,
            agreement=agreement,
            total_weight=total_weight,
            reporting_weight=reporting_weight,
            trusted_share=total_weight / reporting_weight,
            residuals=residuals,
        )

    def detect_and_fuse(
        self,
        evidence: Sequence[SensorEvidence],
        tracker: TrustTracker,
        timestamp: Optional[float] = None,
        context_key: Optional[str] = None,
        prior_faults: Sequence[FaultEvent] = (),
    ) -> ConsensusResult:
        """
        One fault-detection pass followed by weighted consensus.

        Trust is read once, after the pass, so the consensus never sees a
        partially updated set of scores. The tracker's cycle is closed
        afterwards so that clean sensors can recover.

        Args:
            evidence: Aligned evidence per sensor
            tracker: Trust owner to update
            timestamp: Detection time recorded on fault events
            context_key: Opaque key selecting priority overrides
            prior_faults: Faults already recorded in this cycle (e.g. from quality flags)

        Returns:
            ConsensusResult with the recorded fault events
        """
        series = {item.sensor_id: item.values() for item in evidence}
        faults = tracker.update_from_consistency(series, timestamp)
        trust = tracker.snapshot(series.keys())
        try:
            result = self.compute(evidence, trust, context_key)
        finally:
            faulted = {e.sensor_id for e in faults} | {e.sensor_id for e in prior_faults}
            tracker.end_cycle(series.keys(), faulted)
        result.fault_events = faults
        return result


# Convenience functions

def build_consensus(
    values: Mapping[str, float],
    sensor_types: Optional[Mapping[str, SensorType]] = None,
    tracker: Optional[TrustTracker] = None,
    config: Optional[ConsensusConfig] = None,
) -> ConsensusResult:
    """
    Fault-detect and fuse single scalar readings.

    Args:
        values: Scalar reading per sensor id
        sensor_types: Sensor family per id (agricultural IoT if missing)
        tracker: Trust tracker (a fresh one if None)
        config: Consensus configuration

    Returns:
        ConsensusResult
    """
    sensor_types = sensor_types or {}
    evidence = [
        SensorEvidence.from_value(
            sensor_id,
            sensor_types.get(sensor_id, SensorType.AGRICULTURAL_IOT),
            MeasurementValue.scalar(value),
        )
        for sensor_id, value in values.items()
    ]
    return ConsensusEngine(config).detect_and_fuse(evidence, tracker or TrustTracker())
