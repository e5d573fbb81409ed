"""
Sensor Trust Tracking for Byzantine-Tolerant Fusion.

Maintains a reliability score per sensor from observed cross-sensor
consistency:
- Pairwise consistency scoring of aligned series
- Fault events with multiplicative trust decay
- Floor above zero so faulty sensors can recover
- Slow recovery after fault-free cycles
- Bounded fault history per sensor

Key Concepts:
- The tracker is the single owner of trust state; every read and write
  goes through one lock so a fusion cycle never sees half-updated scores
- Blame for an inconsistent pair goes to the sensor that agrees least
  with the rest of the group
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence

from chronofuse.alignment.similarity import series_consistency
from chronofuse.measurement import MeasurementValue, QualityFlags

logger = logging.getLogger(__name__)


class FaultType(Enum):
    """Kinds of sensor faults."""
    INCONSISTENT_READING = "inconsistent_reading"
    OUT_OF_RANGE = "out_of_range"
    COMMUNICATION_FAILURE = "communication_failure"
    CALIBRATION_DRIFT = "calibration_drift"
    MALICIOUS_DATA = "malicious_data"
    ENVIRONMENTAL_INTERFERENCE = "environmental_interference"
    CONTEXT_MISMATCH = "context_mismatch"


@dataclass(frozen=True)
class FaultEvent:
    """
    A detected sensor fault.

    Attributes:
        sensor_id: Sensor blamed for the fault
        severity: Fault severity in [0, 1]
        timestamp: Time of detection (s since epoch)
        fault_type: Kind of fault
        peer_id: Sensor it disagreed with, for consistency faults
        consistency: Observed consistency score, for consistency faults
    """
    sensor_id: str
    severity: float
    timestamp: float
    fault_type: FaultType = FaultType.INCONSISTENT_READING
    peer_id: Optional[str] = None
    consistency: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sensor_id": self.sensor_id,
            "severity": self.severity,
            "timestamp": self.timestamp,
            "fault_type": self.fault_type.value,
            "peer_id": self.peer_id,
            "consistency": self.consistency,
        }


@dataclass
class TrustConfig:
    """
    Configuration for trust tracking.

    Attributes:
        initial_trust: Trust assigned to a sensor seen for the first time
        consistency_threshold: Pairwise consistency below which a fault is recorded
        learning_rate: Fraction of a fault's severity removed from trust
        minimum_trust: Trust floor, strictly above zero
        recovery_rate: Fraction of the gap to 1.0 recovered per clean cycle
        recovery_window: Consecutive fault-free cycles before recovery starts
        max_history: Fault events kept per sensor
        quality_fault_severity: Severity of faults raised from producer quality flags
    """
    initial_trust: float = 1.0
    consistency_threshold: float = 0.3
    learning_rate: float = 0.5
    minimum_trust: float = 0.1
    recovery_rate: float = 0.05
    recovery_window: int = 3
    max_history: int = 1000
    quality_fault_severity: float = 0.2

    def __post_init__(self):
        """Validate configuration."""
        if not 0.0 < self.minimum_trust <= 1.0:
            raise ValueError(f"minimum_trust must be in (0, 1], got {self.minimum_trust}")
        if not self.minimum_trust <= self.initial_trust <= 1.0:
            raise ValueError(
                f"initial_trust must be in [minimum_trust, 1], got {self.initial_trust}"
            )
        if not 0.0 <= self.consistency_threshold <= 1.0:
            raise ValueError(
                f"consistency_threshold must be in [0, 1], got {self.consistency_threshold}"
            )
        if not 0.0 < self.learning_rate <= 1.0:
            raise ValueError(f"learning_rate must be in (0, 1], got {self.learning_rate}")
        if not 0.0 <= self.recovery_rate <= 1.0:
            raise ValueError(f"recovery_rate must be in [0, 1], got {self.recovery_rate}")
        if self.recovery_window < 0:
            raise ValueError(f"recovery_window must be >= 0, got {self.recovery_window}")
        if self.max_history < 1:
            raise ValueError(f"max_history must be >= 1, got {self.max_history}")


class TrustTracker:
    """
    Thread-safe owner of per-sensor trust scores.

    Trust always stays in [minimum_trust, 1.0].
    """

    def __init__(self, config: Optional[TrustConfig] = None):
        """
        Initialize trust tracker.

        Args:
            config: Trust configuration
        """
        self.config = config or TrustConfig()
        self._trust: Dict[str, float] = {}
        self._clean_cycles: Dict[str, int] = {}
        self._history: Dict[str, Deque[FaultEvent]] = {}
        self._lock = threading.Lock()

    def _clamp(self, score: float) -> float:
        return min(max(score, self.config.minimum_trust), 1.0)

    def _get(self, sensor_id: str) -> float:
        # Caller holds the lock
        return self._trust.setdefault(sensor_id, self.config.initial_trust)

    def knows(self, sensor_id: str) -> bool:
        with self._lock:
            return sensor_id in self._trust

    def get_trust(self, sensor_id: str) -> float:
        with self._lock:
            return self._get(sensor_id)

    def snapshot(self, sensor_ids: Optional[Iterable[str]] = None) -> Dict[str, float]:
        """Consistent copy of trust scores, optionally restricted to some sensors."""
        with self._lock:
            if sensor_ids is None:
                return dict(self._trust)
            return {sid: self._get(sid) for sid in sensor_ids}

    def set_trust(self, sensor_id: str, score: float) -> float:
        """Set a sensor's trust (clamped), e.g. when restoring persisted state."""
        with self._lock:
            self._trust[sensor_id] = self._clamp(float(score))
            return self._trust[sensor_id]

    def _apply_fault(self, event: FaultEvent) -> float:
        # Caller holds the lock
        current = self._get(event.sensor_id)
        decayed = current * (1.0 - event.severity * self.config.learning_rate)
        updated = self._clamp(decayed)
        self._trust[event.sensor_id] = updated
        self._clean_cycles[event.sensor_id] = 0
        history = self._history.setdefault(
            event.sensor_id, deque(maxlen=self.config.max_history)
        )
        history.append(event)
        return updated

    def record_fault(self, event: FaultEvent) -> float:
        """
        Record a fault and decay the sensor's trust.

        Args:
            event: Fault to record; severity is clipped to [0, 1]

        Returns:
            The sensor's new trust
        """
        severity = min(max(event.severity, 0.0), 1.0)
        if severity != event.severity:
            event = FaultEvent(
                event.sensor_id, severity, event.timestamp,
                event.fault_type, event.peer_id, event.consistency,
            )
        with self._lock:
            updated = self._apply_fault(event)
        logger.info(
            f"Fault {event.fault_type.value} on {event.sensor_id} "
            f"(severity {event.severity:.3f}), trust now {updated:.3f}"
        )
        return updated

    def update_from_consistency(
        self,
        series: Mapping[str, Sequence[Optional[MeasurementValue]]],
        timestamp: Optional[float] = None,
    ) -> List[FaultEvent]:
        """
        Run one fault-detection pass over aligned series.

        For every ordered pair of sensors, consistency is the mean similarity
        over common timeline slots. A pair below the threshold faults its
        first sensor when that sensor's mean consistency with its peers is
        not higher than the second's.

        Args:
            series: Values on a common timeline keyed by sensor id (None where absent)
            timestamp: Detection time (now if None)

        Returns:
            Fault events recorded in this pass
        """
        timestamp = time.time() if timestamp is None else timestamp
        sensor_ids = sorted(series)

        pair_scores: Dict[tuple, float] = {}
        for index, a in enumerate(sensor_ids):
            for b in sensor_ids[index + 1:]:
                score = series_consistency(series[a], series[b])
                if score is not None:
                    pair_scores[(a, b)] = score
                    pair_scores[(b, a)] = score

        mean_scores: Dict[str, float] = {}
        for sensor_id in sensor_ids:
            scores = [s for (a, _), s in pair_scores.items() if a == sensor_id]
            if scores:
                mean_scores[sensor_id] = sum(scores) / len(scores)

        events = []
        for (a, b), score in sorted(pair_scores.items()):
            if score >= self.config.consistency_threshold:
                continue
            if mean_scores[a] > mean_scores[b]:
                continue
            events.append(FaultEvent(
                sensor_id=a,
                severity=1.0 - score,
                timestamp=timestamp,
                fault_type=FaultType.INCONSISTENT_READING,
                peer_id=b,
                consistency=score,
            ))

        with self._lock:
            for sensor_id in sensor_ids:
                self._get(sensor_id)
            for event in events:
                self._apply_fault(event)

        if events:
            logger.info(
                f"Consistency pass over {len(sensor_ids)} sensors recorded "
                f"{len(events)} faults: {sorted({e.sensor_id for e in events})}"
            )
        return events

    def record_quality_faults(
        self,
        sensor_id: str,
        flags: Iterable[QualityFlags],
        timestamp: Optional[float] = None,
    ) -> List[FaultEvent]:
        """
        Turn producer quality flags into fault events.

        Each fault type is recorded at most once per call.
        """
        timestamp = time.time() if timestamp is None else timestamp
        seen = set()
        for flag in flags:
            if flag.communication_error:
                seen.add(FaultType.COMMUNICATION_FAILURE)
            if flag.sensor_malfunction or flag.outlier_detected:
                seen.add(FaultType.OUT_OF_RANGE)
            if flag.drift_detected:
                seen.add(FaultType.CALIBRATION_DRIFT)
            if flag.environmental_impact:
                seen.add(FaultType.ENVIRONMENTAL_INTERFERENCE)

        events = [
            FaultEvent(sensor_id, self.config.quality_fault_severity, timestamp, fault_type)
            for fault_type in sorted(seen, key=lambda f: f.value)
        ]
        for event in events:
            self.record_fault(event)
        return events

    def end_cycle(
        self,
        reporting: Iterable[str],
        faulted: Iterable[str] = (),
    ) -> Dict[str, float]:
        """
        Close a fusion cycle and apply recovery.

        Sensors that reported without faults accumulate clean cycles; once
        recovery_window is reached their trust moves toward 1.0. Only the
        sensors passed as faulted are held back, so cycles running
        concurrently on one tracker stay independent.

        Args:
            reporting: Sensors that reported in this cycle
            faulted: Sensors faulted during this cycle

        Returns:
            Trust of the reporting sensors after recovery
        """
        faulted = set(faulted)
        with self._lock:
            result = {}
            for sensor_id in reporting:
                current = self._get(sensor_id)
                if sensor_id not in faulted:
                    clean = self._clean_cycles.get(sensor_id, 0) + 1
                    self._clean_cycles[sensor_id] = clean
                    if clean >= self.config.recovery_window:
                        current = self._clamp(
                            current + self.config.recovery_rate * (1.0 - current)
                        )
                        self._trust[sensor_id] = current
                result[sensor_id] = current
            return result

    def fault_history(self, sensor_id: Optional[str] = None) -> List[FaultEvent]:
        """Recorded faults for one sensor, or all sensors ordered by time."""
        with self._lock:
            if sensor_id is not None:
                return list(self._history.get(sensor_id, ()))
            events = [e for history in self._history.values() for e in history]
        return sorted(events, key=lambda e: e.timestamp)

    def reset(self, sensor_id: Optional[str] = None) -> None:
        with self._lock:
            if sensor_id is None:
                self._trust.clear()
                self._clean_cycles.clear()
                self._history.clear()
            else:
                self._trust.pop(sensor_id, None)
                self._clean_cycles.pop(sensor_id, None)
                self._history.pop(sensor_id, None)
