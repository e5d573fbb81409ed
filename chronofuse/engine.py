"""
Fusion Engine for Multi-Sensor Measurement Bundles.

Runs the staged fusion pipeline over one SensorMeasurementBundle:
- Delay correction of every stream with its stored delay profile
- DTW alignment of every stream onto a reference timeline
- Fault detection and trust-weighted Byzantine consensus
- Refinement by Levenberg-Marquardt, EM calibration or consensus only
- Provenance of every exclusion, fallback and fault

Key Concepts:
- Per-sensor and per-pair failures exclude that sensor and are recorded
  with the stage and reason; only an empty bundle, no trusted sensors or
  cancellation abort a call
- Cancellation is checked between stages, never inside an iteration
- The trust tracker is the only state shared between calls
"""

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from chronofuse.alignment.delay import DelayCorrector, DelayProfile
from chronofuse.alignment.dtw import AlignmentResult, DTWAligner
from chronofuse.config import AlgorithmKind, FusionConfig
from chronofuse.exceptions import (
    EmptyInputError,
    FusionCancelledError,
    FusionError,
    MissingCalibrationError,
    SingularSystemError,
)
from chronofuse.fusion.calibration import CalibrationResult, EMCalibrator
from chronofuse.fusion.consensus import ConsensusEngine, ConsensusResult, SensorEvidence
from chronofuse.fusion.factors import AtomicClockFactor, Factor, FactorGraph, GPSFactor, PriorFactor
from chronofuse.fusion.optimizer import LevenbergMarquardtOptimizer
from chronofuse.fusion.trust import FaultEvent, TrustTracker
from chronofuse.measurement import SensorMeasurementBundle, SensorStream, SensorType
from chronofuse.storage import CalibrationStore, InMemoryCalibrationStore

logger = logging.getLogger(__name__)


class FusionStage(Enum):
    """Pipeline stages, in execution order."""
    DELAY_CORRECTION = "delay_correction"
    ALIGNMENT = "alignment"
    CONSENSUS = "consensus"
    OPTIMIZATION = "optimization"


class CancellationToken:
    """
    Cooperative cancellation flag shared with a running fusion call.

    The engine checks the token before each stage; a call already inside
    a stage finishes that stage first.
    """

    def __init__(self):
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()
        logger.info("Fusion cancellation requested")

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def raise_if_cancelled(self, stage: FusionStage) -> None:
        if self._cancelled.is_set():
            raise FusionCancelledError(stage.value)


@dataclass
class FusionResult:
    """
    Fused state estimate with provenance.

    Attributes:
        estimate: Fused state vector
        covariance: Covariance of the estimate
        algorithm_used: Algorithm that produced the estimate (after any fallback)
        per_sensor_contribution: Normalized contribution weight per sensor
        converged: Whether the refinement converged
        iterations: Refinement iterations performed
        consensus_confidence: Confidence of the consensus stage
        agreement: Agreement of the consensus stage
        reference_sensor: Sensor whose timeline the evidence was aligned to
        bundle_id: Identifier of the fused bundle
        trust_scores: Trust of every reporting sensor after the consensus stage
        fault_events: Faults recorded during this call
        excluded_sensors: Sensor id -> {"stage", "reason"} for every exclusion
        alignments: Alignment of each target sensor to the reference
        calibration: EM calibration per state component (EM only)
        fallback_reason: Why the requested algorithm was replaced, if it was
        requested_algorithm: Algorithm requested for this call
        duration_seconds: Wall-clock duration of the call
    """
    estimate: np.ndarray
    covariance: np.ndarray
    algorithm_used: AlgorithmKind
    per_sensor_contribution: Dict[str, float]
    converged: bool
    iterations: int
    consensus_confidence: float = 0.0
    agreement: float = 0.0
    reference_sensor: Optional[str] = None
    bundle_id: Optional[str] = None
    trust_scores: Dict[str, float] = field(default_factory=dict)
    fault_events: List[FaultEvent] = field(default_factory=list)
    excluded_sensors: Dict[str, Dict[str, str]] = field(default_factory=dict)
    alignments: Dict[str, AlignmentResult] = field(default_factory=dict)
    calibration: List[CalibrationResult] = field(default_factory=list)
    fallback_reason: Optional[str] = None
    requested_algorithm: Optional[AlgorithmKind] = None
    duration_seconds: float = 0.0

    @property
    def uncertainty(self) -> np.ndarray:
        """One-sigma uncertainty per state component."""
        return np.sqrt(np.abs(np.diag(self.covariance)))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "bundle_id": self.bundle_id,
            "estimate": self.estimate.tolist(),
            "uncertainty": self.uncertainty.tolist(),
            "covariance": self.covariance.tolist(),
            "algorithm_used": self.algorithm_used.value,
            "requested_algorithm": (
                self.requested_algorithm.value if self.requested_algorithm else None
            ),
            "fallback_reason": self.fallback_reason,
            "converged": self.converged,
            "iterations": self.iterations,
            "per_sensor_contribution": self.per_sensor_contribution,
            "consensus_confidence": self.consensus_confidence,
            "agreement": self.agreement,
            "reference_sensor": self.reference_sensor,
            "trust_scores": self.trust_scores,
            "fault_events": [e.to_dict() for e in self.fault_events],
            "excluded_sensors": self.excluded_sensors,
            "alignments": {sid: a.to_dict() for sid, a in self.alignments.items()},
            "calibration": [c.to_dict() for c in self.calibration],
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class _Refinement:
    """Outcome of the refinement stage."""
    estimate: np.ndarray
    covariance: np.ndarray
    algorithm: AlgorithmKind
    contributions: Dict[str, float]
    converged: bool
    iterations: int
    calibration: List[CalibrationResult] = field(default_factory=list)
    fallback_reason: Optional[str] = None


class FusionEngine:
    """
    Fuses multi-sensor bundles into one state estimate.

    Features:
    - Store-backed delay profiles and trust history
    - Concurrent pair alignments
    - Selectable refinement algorithm per call
    - Cooperative cancellation between stages
    """

    def __init__(
        self,
        config: Optional[FusionConfig] = None,
        store: Optional[CalibrationStore] = None,
        trust_tracker: Optional[TrustTracker] = None,
    ):
        """
        Initialize the fusion engine.

        Args:
            config: Fusion configuration
            store: Delay profile and trust history store (in-memory if None)
            trust_tracker: Shared trust owner (a fresh one if None)
        """
        self.config = config or FusionConfig()
        self.store = store or InMemoryCalibrationStore()
        self.trust_tracker = trust_tracker or TrustTracker(self.config.trust_config())
        self.aligner = DTWAligner(self.config.dtw_constraints())
        self.consensus = ConsensusEngine(self.config.consensus_config())
        self.optimizer = LevenbergMarquardtOptimizer(self.config.optimizer_config())
        self.calibrator = EMCalibrator(self.config.calibration_config())
        self._seed_lock = threading.Lock()

    def fuse(
        self,
        bundle: SensorMeasurementBundle,
        cancel_token: Optional[CancellationToken] = None,
        algorithm: Optional[Union[AlgorithmKind, str]] = None,
    ) -> FusionResult:
        """
        Fuse one bundle.

        Args:
            bundle: Measurements grouped by sensor
            cancel_token: Token checked before every stage
            algorithm: Refinement algorithm (config default if None)

        Returns:
            FusionResult

        Raises:
            EmptyInputError: If no sensor has a usable measurement
            NoTrustedSensorsError: If no sensor is above the trust threshold
            FusionCancelledError: If the token was cancelled
        """
        start = time.monotonic()
        token = cancel_token or CancellationToken()
        algorithm = AlgorithmKind(algorithm) if algorithm is not None else self.config.algorithm
        excluded: Dict[str, Dict[str, str]] = {}

        streams = bundle.valid_streams()
        for sensor_id in sorted(set(bundle.streams) - set(streams)):
            self._exclude(excluded, sensor_id, "input", "no valid measurements")
        if not streams:
            raise EmptyInputError("input", reason="bundle has no valid measurements")

        logger.info(
            f"Fusing bundle {bundle.bundle_id}: {len(streams)} sensors, "
            f"algorithm {algorithm.value}"
        )

        token.raise_if_cancelled(FusionStage.DELAY_CORRECTION)
        corrected = self._correct_delays(streams, excluded)
        if not corrected:
            raise EmptyInputError(
                FusionStage.DELAY_CORRECTION.value,
                reason="no sensor has a delay profile",
            )

        token.raise_if_cancelled(FusionStage.ALIGNMENT)
        reference_id, evidence, alignments = self._align(corrected, excluded)

        token.raise_if_cancelled(FusionStage.CONSENSUS)
        consensus, quality_faults, timestamp = self._run_consensus(
            bundle, streams, evidence, corrected[reference_id]
        )
        for sensor_id in consensus.dimension_mismatch:
            self._exclude(excluded, sensor_id, FusionStage.CONSENSUS.value, "value dimension mismatch")
        for sensor_id in consensus.untrusted_sensors:
            self._exclude(
                excluded, sensor_id, FusionStage.CONSENSUS.value,
                f"trust {consensus.trust_scores[sensor_id]:.3f} at or below threshold "
                f"{self.config.trust_threshold}",
            )
        trust_scores = self._persist_trust(consensus.trust_scores, timestamp)

        token.raise_if_cancelled(FusionStage.OPTIMIZATION)
        refinement = self._refine(algorithm, consensus, evidence)

        result = FusionResult(
            estimate=refinement.estimate,
            covariance=refinement.covariance,
            algorithm_used=refinement.algorithm,
            per_sensor_contribution=refinement.contributions,
            converged=refinement.converged,
            iterations=refinement.iterations,
            consensus_confidence=consensus.consensus_confidence,
            agreement=consensus.agreement,
            reference_sensor=reference_id,
            bundle_id=bundle.bundle_id,
            trust_scores=trust_scores,
            fault_events=quality_faults + consensus.fault_events,
            excluded_sensors=excluded,
            alignments=alignments,
            calibration=refinement.calibration,
            fallback_reason=refinement.fallback_reason,
            requested_algorithm=algorithm,
            duration_seconds=time.monotonic() - start,
        )
        logger.info(
            f"Fused bundle {bundle.bundle_id} with {result.algorithm_used.value}: "
            f"{len(result.per_sensor_contribution)} contributing sensors, "
            f"{len(excluded)} excluded, converged={result.converged}"
        )
        return result

    def fuse_many(
        self,
        bundles: Sequence[SensorMeasurementBundle],
        algorithm: Optional[Union[AlgorithmKind, str]] = None,
        max_workers: Optional[int] = None,
    ) -> List[Union[FusionResult, FusionError]]:
        """
        Fuse several bundles concurrently.

        Args:
            bundles: Bundles to fuse
            algorithm: Refinement algorithm for every bundle
            max_workers: Thread pool size (config max_workers if None)

        Returns:
            FusionResult or the FusionError raised, in bundle order
        """
        results: List[Union[FusionResult, FusionError]] = [None] * len(bundles)  # type: ignore
        workers = max_workers or self.config.max_workers
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.fuse, bundle, None, algorithm): k
                for k, bundle in enumerate(bundles)
            }
            for future in concurrent.futures.as_completed(futures):
                k = futures[future]
                try:
                    results[k] = future.result()
                except FusionError as e:
                    logger.error(f"Fusion of bundle {bundles[k].bundle_id} failed: {e}")
                    results[k] = e
        return results

    @staticmethod
    def _exclude(
        excluded: Dict[str, Dict[str, str]],
        sensor_id: str,
        stage: str,
        reason: str,
    ) -> None:
        logger.warning(f"Excluding sensor {sensor_id} at {stage}: {reason}")
        excluded[sensor_id] = {"stage": stage, "reason": reason}

    # Delay correction

    def _load_profile(self, stream: SensorStream) -> DelayProfile:
        try:
            return self.store.load_profile(stream.sensor_id)
        except MissingCalibrationError:
            if not self.config.use_default_profiles:
                raise
        profile = DelayProfile.for_sensor_type(stream.sensor_id, stream.sensor_type)
        logger.info(
            f"Using default {stream.sensor_type.value} delay profile for {stream.sensor_id}"
        )
        return profile

    def _correct_delays(
        self,
        streams: Dict[str, SensorStream],
        excluded: Dict[str, Dict[str, str]],
    ) -> Dict[str, SensorStream]:
        corrector = DelayCorrector()
        corrected: Dict[str, SensorStream] = {}
        for sensor_id in sorted(streams):
            stream = streams[sensor_id]
            try:
                corrector.register_profile(self._load_profile(stream))
            except MissingCalibrationError as e:
                self._exclude(excluded, sensor_id, FusionStage.DELAY_CORRECTION.value, str(e))
                continue
            corrected[sensor_id] = corrector.correct_stream(stream)
        logger.info(f"Delay-corrected {len(corrected)}/{len(streams)} streams")
        return corrected

    # Alignment

    def _select_reference(self, streams: Dict[str, SensorStream]) -> str:
        preferred = self.config.reference_sensor
        if preferred is not None:
            if preferred in streams:
                return preferred
            logger.warning(
                f"Configured reference sensor {preferred} is not available, "
                f"using the longest stream"
            )
        # Longest stream, ties to the smallest sensor id
        return min(streams, key=lambda sid: (-len(streams[sid]), sid))

    def _align(
        self,
        corrected: Dict[str, SensorStream],
        excluded: Dict[str, Dict[str, str]],
    ) -> Tuple[str, List[SensorEvidence], Dict[str, AlignmentResult]]:
        reference_id = self._select_reference(corrected)
        reference = corrected[reference_id].sorted()
        evidence = [SensorEvidence(reference_id, reference.sensor_type, list(reference.measurements))]

        targets = {
            sid: stream.measurements for sid, stream in corrected.items() if sid != reference_id
        }
        outcomes = self.aligner.align_many(
            reference.measurements, targets, max_workers=self.config.max_workers
        )

        alignments: Dict[str, AlignmentResult] = {}
        for sensor_id in sorted(outcomes):
            outcome = outcomes[sensor_id]
            if isinstance(outcome, FusionError):
                self._exclude(excluded, sensor_id, FusionStage.ALIGNMENT.value, str(outcome))
                continue
            slots = self.aligner.project(
                reference.measurements,
                targets[sensor_id],
                outcome,
                max_time_offset=self.config.max_time_offset,
            )
            if all(slot is None for slot in slots):
                self._exclude(
                    excluded, sensor_id, FusionStage.ALIGNMENT.value,
                    f"no aligned reading within {self.config.max_temporal_window_ms} ms",
                )
                continue
            alignments[sensor_id] = outcome
            evidence.append(SensorEvidence(sensor_id, corrected[sensor_id].sensor_type, slots))

        logger.info(
            f"Aligned {len(alignments)}/{len(targets)} streams to reference {reference_id}"
        )
        return reference_id, evidence, alignments

    # Consensus

    def _seed_trust(self, sensor_ids: Sequence[str]) -> None:
        with self._seed_lock:
            for sensor_id in sensor_ids:
                if self.trust_tracker.knows(sensor_id):
                    continue
                stored = self.store.load_trust(sensor_id)
                if stored is not None:
                    self.trust_tracker.set_trust(sensor_id, stored)
                    logger.debug(f"Seeded trust of {sensor_id} from store: {stored:.3f}")

    def _run_consensus(
        self,
        bundle: SensorMeasurementBundle,
        streams: Dict[str, SensorStream],
        evidence: List[SensorEvidence],
        reference: SensorStream,
    ) -> Tuple[ConsensusResult, List[FaultEvent], float]:
        sensor_ids = [item.sensor_id for item in evidence]
        self._seed_trust(sensor_ids)

        timestamp = float(reference.timestamps().max())
        quality_faults: List[FaultEvent] = []
        for sensor_id in sensor_ids:
            flags = [m.quality_flags for m in streams[sensor_id].measurements]
            quality_faults.extend(
                self.trust_tracker.record_quality_faults(sensor_id, flags, timestamp)
            )

        consensus = self.consensus.detect_and_fuse(
            evidence, self.trust_tracker, timestamp, bundle.context_key,
            prior_faults=quality_faults,
        )
        return consensus, quality_faults, timestamp

    def _persist_trust(self, reporting: Dict[str, float], timestamp: float) -> Dict[str, float]:
        """Save post-consensus trust of every reporting sensor."""
        scores = self.trust_tracker.snapshot(reporting.keys())
        for sensor_id in sorted(scores):
            self.store.save_trust(sensor_id, scores[sensor_id], timestamp)
        return scores

    # Refinement

    def _refine(
        self,
        algorithm: AlgorithmKind,
        consensus: ConsensusResult,
        evidence: List[SensorEvidence],
    ) -> _Refinement:
        trusted = [item for item in evidence if item.sensor_id in consensus.weights]

        if algorithm == AlgorithmKind.LEVENBERG_MARQUARDT:
            try:
                return self._refine_least_squares(consensus, trusted)
            except SingularSystemError as e:
                logger.warning(f"Levenberg-Marquardt failed, using consensus estimate: {e}")
                return self._consensus_refinement(consensus, fallback_reason=str(e))

        if algorithm == AlgorithmKind.EM_CALIBRATION:
            try:
                return self._refine_calibration(consensus, trusted)
            except EmptyInputError as e:
                logger.warning(f"EM calibration failed, using consensus estimate: {e}")
                return self._consensus_refinement(consensus, fallback_reason=str(e))

        return self._consensus_refinement(consensus)

    @staticmethod
    def _consensus_refinement(
        consensus: ConsensusResult,
        fallback_reason: Optional[str] = None,
    ) -> _Refinement:
        return _Refinement(
            estimate=consensus.estimate.copy(),
            covariance=consensus.covariance.copy(),
            algorithm=AlgorithmKind.BYZANTINE,
            contributions=dict(consensus.weights),
            converged=True,
            iterations=1,
            fallback_reason=fallback_reason,
        )

    def _factor_for(self, item: SensorEvidence, weight: float, dimension: int) -> Factor:
        """Factor of one trusted sensor; information is weight / sigma^2 for every type."""
        vector = item.mean_vector()
        sigma = max(item.mean_uncertainty(), self.config.min_factor_sigma)
        scaled_sigma = sigma / np.sqrt(weight)
        if item.sensor_type == SensorType.GPS:
            return GPSFactor(vector, hdop=scaled_sigma, sensor_id=item.sensor_id)
        if item.sensor_type == SensorType.ATOMIC_CLOCK and dimension == 1:
            return AtomicClockFactor(
                float(vector[0]), bias_index=0, precision=scaled_sigma, sensor_id=item.sensor_id
            )
        return PriorFactor(vector, sigma=sigma, sensor_id=item.sensor_id, weight=weight)

    def _refine_least_squares(
        self,
        consensus: ConsensusResult,
        trusted: List[SensorEvidence],
    ) -> _Refinement:
        dimension = len(consensus.estimate)
        # Consensus weights sum to one; rescale so the mean weight is one
        scale = len(trusted)
        graph = FactorGraph(
            self._factor_for(item, consensus.weights[item.sensor_id] * scale, dimension)
            for item in trusted
        )
        result = self.optimizer.optimize_factors(graph, consensus.estimate)

        information = {
            factor.sensor_id: float(np.trace(factor.information_matrix()))
            for factor in graph.factors
        }
        total = sum(information.values())
        contributions = {sid: value / total for sid, value in information.items()}

        logger.info(
            f"Levenberg-Marquardt over {len(graph)} factors: cost {result.cost:.6g}, "
            f"{result.iterations} iterations"
        )
        return _Refinement(
            estimate=result.params,
            covariance=result.covariance,
            algorithm=AlgorithmKind.LEVENBERG_MARQUARDT,
            contributions=contributions,
            converged=result.converged,
            iterations=result.iterations,
        )

    def _refine_calibration(
        self,
        consensus: ConsensusResult,
        trusted: List[SensorEvidence],
    ) -> _Refinement:
        dimension = len(consensus.estimate)
        slot_count = max(len(item.series) for item in trusted)

        calibrations: List[CalibrationResult] = []
        for component in range(dimension):
            measurement_sets = []
            for slot in range(slot_count):
                readings = {}
                for item in trusted:
                    if slot >= len(item.series) or item.series[slot] is None:
                        continue
                    values = item.series[slot].value.as_array()
                    if len(values) == dimension:
                        readings[item.sensor_id] = float(values[component])
                measurement_sets.append(readings)
            calibrations.append(self.calibrator.calibrate(measurement_sets, consensus.trust_scores))

        estimate = np.array([float(np.mean(c.posterior_means)) for c in calibrations])
        variance = np.array([
            float(np.mean(c.posterior_variances)) / len(c.posterior_variances)
            for c in calibrations
        ])

        precision: Dict[str, float] = {}
        for calibration in calibrations:
            for sensor_id, noise in calibration.noise_variances.items():
                trust = consensus.trust_scores.get(sensor_id, 1.0)
                precision[sensor_id] = precision.get(sensor_id, 0.0) + trust / noise
        total = sum(precision.values())
        contributions = {sid: value / total for sid, value in precision.items()}

        return _Refinement(
            estimate=estimate,
            covariance=np.diag(variance),
            algorithm=AlgorithmKind.EM_CALIBRATION,
            contributions=contributions,
            converged=all(c.converged for c in calibrations),
            iterations=max(c.iterations for c in calibrations),
            calibration=calibrations,
        )


# Convenience functions

def fuse_bundle(
    bundle: SensorMeasurementBundle,
    config: Optional[FusionConfig] = None,
    profiles: Optional[Sequence[DelayProfile]] = None,
    algorithm: Optional[Union[AlgorithmKind, str]] = None,
) -> FusionResult:
    """
    Fuse a bundle with an in-memory store.

    Args:
        bundle: Measurements grouped by sensor
        config: Fusion configuration
        profiles: Delay profiles of the bundle's sensors
        algorithm: Refinement algorithm (config default if None)

    Returns:
        FusionResult
    """
    store = InMemoryCalibrationStore({p.sensor_id: p for p in profiles or []})
    return FusionEngine(config, store=store).fuse(bundle, algorithm=algorithm)
