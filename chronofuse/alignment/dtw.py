"""
Dynamic Time Warping for Multi-Sensor Temporal Alignment.

Aligns sensor streams with different sampling rates and timing onto a
common (reference) timeline:
- Cost matrix combining time offset and type-aware value dissimilarity
- Sakoe-Chiba band, Itakura parallelogram and time-offset constraints
- Selectable step patterns with a fixed tie-break order
- Warping application with interpolation and alignment uncertainty
- Concurrent alignment of several targets against one reference

Key Concepts:
- Warped pairs refer to positions in the timestamp-sorted streams
- Excluded cells are +inf; the cost matrix never holds NaN
- Ties between predecessor cells are resolved in step-list order
  (diagonal, reference-advance, target-advance for the built-in patterns)
"""

import concurrent.futures
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from chronofuse.alignment.similarity import value_similarity
from chronofuse.exceptions import EmptyInputError, FusionError, NoFeasibleAlignmentError
from chronofuse.measurement import Measurement

logger = logging.getLogger(__name__)

# Scale converting alignment uncertainty to seconds
ALIGNMENT_UNCERTAINTY_SCALE_S = 1e-6


class StepPattern(Enum):
    """
    Step patterns for the DTW recursion.

    Every symmetric2 step changes i - j by 0 or 2, so the pattern only reaches
    end cells with the same parity as the start. Series whose lengths differ
    by an odd count have no symmetric2 path and raise NoFeasibleAlignmentError.
    """
    SYMMETRIC1 = "symmetric1"    # Unit diagonal, horizontal and vertical steps
    SYMMETRIC2 = "symmetric2"    # Diagonal plus double-weighted skip steps
    ASYMMETRIC = "asymmetric"    # Reference always advances
    CUSTOM = "custom"            # User-supplied weighted steps


@dataclass(frozen=True)
class Step:
    """
    One admissible move of the warping path.

    Attributes:
        di: Reference index advance
        dj: Target index advance
        weight: Multiplier on the local cost of the destination cell
    """
    di: int
    dj: int
    weight: float = 1.0


BUILTIN_STEPS: Dict[StepPattern, Tuple[Step, ...]] = {
    StepPattern.SYMMETRIC1: (Step(1, 1, 1.0), Step(1, 0, 1.0), Step(0, 1, 1.0)),
    StepPattern.SYMMETRIC2: (Step(1, 1, 1.0), Step(2, 0, 2.0), Step(0, 2, 2.0)),
    StepPattern.ASYMMETRIC: (Step(1, 1, 1.0), Step(1, 0, 1.0)),
}


@dataclass
class DTWConstraints:
    """
    Constraints and strategy for one alignment.

    Attributes:
        step_pattern: Step pattern for the recursion
        custom_steps: (di, dj, weight) steps, required for CUSTOM, in tie-break order
        sakoe_chiba_radius: Maximum index distance from the diagonal, None disables
        itakura: Enable the Itakura parallelogram
        itakura_slope_bounds: (min, max) local slope of the parallelogram
        max_time_offset: Maximum |timestamp difference| (s) of a matched pair, None disables
    """
    step_pattern: StepPattern = StepPattern.SYMMETRIC1
    custom_steps: Optional[List[Tuple[int, int, float]]] = None
    sakoe_chiba_radius: Optional[int] = None
    itakura: bool = False
    itakura_slope_bounds: Tuple[float, float] = (0.5, 2.0)
    max_time_offset: Optional[float] = None

    def __post_init__(self):
        """Validate constraint parameters."""
        if isinstance(self.step_pattern, str):
            self.step_pattern = StepPattern(self.step_pattern)
        if self.sakoe_chiba_radius is not None and self.sakoe_chiba_radius < 0:
            raise ValueError(
                f"sakoe_chiba_radius must be >= 0, got {self.sakoe_chiba_radius}"
            )
        low, high = self.itakura_slope_bounds
        if not 0 < low <= 1 <= high:
            raise ValueError(
                f"itakura_slope_bounds must satisfy 0 < min <= 1 <= max, got {self.itakura_slope_bounds}"
            )
        if self.max_time_offset is not None and self.max_time_offset < 0:
            raise ValueError(f"max_time_offset must be >= 0, got {self.max_time_offset}")
        if self.step_pattern == StepPattern.CUSTOM:
            if not self.custom_steps:
                raise ValueError("custom_steps are required for the custom step pattern")
            for di, dj, weight in self.custom_steps:
                if di < 0 or dj < 0 or (di == 0 and dj == 0):
                    raise ValueError(f"Invalid custom step ({di}, {dj})")
                if not (math.isfinite(weight) and weight > 0):
                    raise ValueError(f"Custom step weight must be positive, got {weight}")
        elif self.custom_steps:
            raise ValueError("custom_steps given without the custom step pattern")

    @property
    def steps(self) -> Tuple[Step, ...]:
        if self.step_pattern == StepPattern.CUSTOM:
            return tuple(Step(int(di), int(dj), float(w)) for di, dj, w in self.custom_steps)
        return BUILTIN_STEPS[self.step_pattern]

    def allows(self, i: int, j: int, n: int, m: int) -> bool:
        """Whether cell (i, j) of an n x m matrix lies inside the band constraints."""
        if self.sakoe_chiba_radius is not None:
            diagonal = i * (m - 1) / (n - 1) if n > 1 else 0.0
            if abs(j - diagonal) > self.sakoe_chiba_radius + 1e-9:
                return False

        if self.itakura and n > 1 and m > 1:
            low, high = self.itakura_slope_bounds
            x = i / (n - 1)
            y = j / (m - 1)
            eps = 1e-9
            # Slope measured from the start cell
            if y < low * x - eps or y > high * x + eps:
                return False
            # Slope measured back from the end cell
            if (1 - y) < low * (1 - x) - eps or (1 - y) > high * (1 - x) + eps:
                return False

        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_pattern": self.step_pattern.value,
            "custom_steps": [list(s) for s in self.custom_steps] if self.custom_steps else None,
            "sakoe_chiba_radius": self.sakoe_chiba_radius,
            "itakura": self.itakura,
            "itakura_slope_bounds": list(self.itakura_slope_bounds),
            "max_time_offset": self.max_time_offset,
        }


@dataclass(frozen=True)
class AlignmentResult:
    """
    Result of aligning one target stream to a reference stream.

    Attributes:
        warped_pairs: (reference_index, target_index) along the path, in sorted order
        cost: Accumulated path cost
        quality_score: 1 / (1 + cost / path_length), in [0, 1]
        normalized_cost: cost / path_length
        compression_ratio: Path length relative to the straight diagonal
        reference_id: Reference sensor id
        target_id: Target sensor id
        reference_order: Input index of each sorted reference position
        target_order: Input index of each sorted target position
        degenerate: True for single-point alignments that bypass the DP
    """
    warped_pairs: Tuple[Tuple[int, int], ...]
    cost: float
    quality_score: float
    normalized_cost: float = 0.0
    compression_ratio: float = 1.0
    reference_id: Optional[str] = None
    target_id: Optional[str] = None
    reference_order: Tuple[int, ...] = ()
    target_order: Tuple[int, ...] = ()
    degenerate: bool = False

    @property
    def path_length(self) -> int:
        return len(self.warped_pairs)

    def input_pairs(self) -> List[Tuple[int, int]]:
        """Warped pairs expressed as indices into the unsorted inputs."""
        return [(self.reference_order[i], self.target_order[j]) for i, j in self.warped_pairs]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference_id": self.reference_id,
            "target_id": self.target_id,
            "warped_pairs": [list(p) for p in self.warped_pairs],
            "cost": self.cost,
            "normalized_cost": self.normalized_cost,
            "quality_score": self.quality_score,
            "compression_ratio": self.compression_ratio,
            "path_length": self.path_length,
            "degenerate": self.degenerate,
        }


def _sort_with_order(measurements: Sequence[Measurement]) -> Tuple[List[Measurement], Tuple[int, ...]]:
    order = sorted(range(len(measurements)), key=lambda k: measurements[k].timestamp)
    return [measurements[k] for k in order], tuple(order)


def _stream_id(measurements: Sequence[Measurement]) -> Optional[str]:
    return measurements[0].sensor_id if measurements else None


class DTWAligner:
    """
    Pairwise stream aligner based on Dynamic Time Warping.

    The DP for a single pair is deterministic and single-threaded;
    align_many spreads independent pairs over a thread pool.
    """

    def __init__(self, constraints: Optional[DTWConstraints] = None):
        """
        Initialize aligner.

        Args:
            constraints: Default constraints for calls that do not pass their own
        """
        self.constraints = constraints or DTWConstraints()

    def cost_matrix(
        self,
        reference: Sequence[Measurement],
        target: Sequence[Measurement],
        constraints: Optional[DTWConstraints] = None,
    ) -> np.ndarray:
        """
        Local cost of matching each reference point with each target point.

        Args:
            reference: Reference measurements, sorted by timestamp
            target: Target measurements, sorted by timestamp
            constraints: Band and offset constraints

        Returns:
            n x m array of finite costs or +inf for excluded cells
        """
        constraints = constraints or self.constraints
        n, m = len(reference), len(target)
        ref_times = np.array([r.timestamp for r in reference], dtype=float)
        tgt_times = np.array([t.timestamp for t in target], dtype=float)
        time_diff = np.abs(ref_times[:, None] - tgt_times[None, :])

        cost = np.full((n, m), np.inf)
        for i in range(n):
            for j in range(m):
                if not constraints.allows(i, j, n, m):
                    continue
                if constraints.max_time_offset is not None and time_diff[i, j] > constraints.max_time_offset:
                    continue
                local = time_diff[i, j] + (1.0 - value_similarity(reference[i].value, target[j].value))
                if math.isfinite(local):
                    cost[i, j] = local
        return cost

    def align(
        self,
        reference: Sequence[Measurement],
        target: Sequence[Measurement],
        constraints: Optional[DTWConstraints] = None,
    ) -> AlignmentResult:
        """
        Align a target stream to a reference stream.

        Args:
            reference: Reference measurements (any order)
            target: Target measurements (any order)
            constraints: Constraints for this pair (aligner defaults if None)

        Returns:
            AlignmentResult over the timestamp-sorted streams

        Raises:
            EmptyInputError: If either stream is empty
            NoFeasibleAlignmentError: If the constraints admit no path
        """
        constraints = constraints or self.constraints
        reference_id = _stream_id(reference)
        target_id = _stream_id(target)
        if not reference:
            raise EmptyInputError("alignment", sensor_id=reference_id, reason="reference stream is empty")
        if not target:
            raise EmptyInputError("alignment", sensor_id=target_id, reason="target stream is empty")

        ref_sorted, ref_order = _sort_with_order(reference)
        tgt_sorted, tgt_order = _sort_with_order(target)
        n, m = len(ref_sorted), len(tgt_sorted)

        if n == 1 or m == 1:
            return self._degenerate_alignment(
                ref_sorted, tgt_sorted, ref_order, tgt_order, constraints, reference_id, target_id
            )

        cost = self.cost_matrix(ref_sorted, tgt_sorted, constraints)
        for i in range(n):
            if not np.isfinite(cost[i]).any():
                raise NoFeasibleAlignmentError(
                    reference_id, target_id, row=i,
                    reason="constraints exclude every cell of a reference row",
                )

        dp, back = self._accumulate(cost, constraints.steps)
        if not math.isfinite(dp[n - 1, m - 1]):
            raise NoFeasibleAlignmentError(
                reference_id, target_id,
                reason=f"end cell unreachable with step pattern {constraints.step_pattern.value}",
            )

        path = self._backtrack(back, constraints.steps, n, m)
        total_cost = float(dp[n - 1, m - 1])
        normalized = total_cost / len(path)
        result = AlignmentResult(
            warped_pairs=tuple(path),
            cost=total_cost,
            quality_score=1.0 / (1.0 + normalized),
            normalized_cost=normalized,
            compression_ratio=len(path) / max(math.hypot(n - 1, m - 1), 1.0),
            reference_id=reference_id,
            target_id=target_id,
            reference_order=ref_order,
            target_order=tgt_order,
        )
        logger.debug(
            f"Aligned {target_id} to {reference_id}: {n}x{m}, path {len(path)}, "
            f"cost {total_cost:.4f}, quality {result.quality_score:.3f}"
        )
        return result

    def _degenerate_alignment(
        self,
        reference: List[Measurement],
        target: List[Measurement],
        ref_order: Tuple[int, ...],
        tgt_order: Tuple[int, ...],
        constraints: DTWConstraints,
        reference_id: Optional[str],
        target_id: Optional[str],
    ) -> AlignmentResult:
        """Single-point alignment: the lowest-cost admissible pair, no DP."""
        # Bands are meaningless against a single point; only the time offset applies
        unbanded = DTWConstraints(max_time_offset=constraints.max_time_offset)
        cost = self.cost_matrix(reference, target, unbanded)
        if not np.isfinite(cost).any():
            raise NoFeasibleAlignmentError(
                reference_id, target_id, row=0,
                reason="no pair within the time offset limit",
            )
        flat_index = int(np.argmin(cost))
        i, j = divmod(flat_index, cost.shape[1])
        pair_cost = float(cost[i, j])
        return AlignmentResult(
            warped_pairs=((i, j),),
            cost=pair_cost,
            quality_score=1.0 / (1.0 + pair_cost),
            normalized_cost=pair_cost,
            compression_ratio=1.0,
            reference_id=reference_id,
            target_id=target_id,
            reference_order=ref_order,
            target_order=tgt_order,
            degenerate=True,
        )

    @staticmethod
    def _accumulate(cost: np.ndarray, steps: Sequence[Step]) -> Tuple[np.ndarray, np.ndarray]:
        """
        Fill the accumulated-cost table.

        Returns:
            (dp, back) where back[i, j] is the index of the chosen step, -1 if none
        """
        n, m = cost.shape
        dp = np.full((n, m), np.inf)
        back = np.full((n, m), -1, dtype=int)
        dp[0, 0] = cost[0, 0]

        for i in range(n):
            for j in range(m):
                if i == 0 and j == 0:
                    continue
                local = cost[i, j]
                if not math.isfinite(local):
                    continue
                best = math.inf
                best_step = -1
                for k, step in enumerate(steps):
                    pi, pj = i - step.di, j - step.dj
                    if pi < 0 or pj < 0:
                        continue
                    previous = dp[pi, pj]
                    if not math.isfinite(previous):
                        continue
                    candidate = previous + step.weight * local
                    # Strict comparison keeps the earlier step on ties
                    if candidate < best:
                        best = candidate
                        best_step = k
                if best_step >= 0:
                    dp[i, j] = best
                    back[i, j] = best_step
        return dp, back

    @staticmethod
    def _backtrack(
        back: np.ndarray, steps: Sequence[Step], n: int, m: int
    ) -> List[Tuple[int, int]]:
        path = [(n - 1, m - 1)]
        i, j = n - 1, m - 1
        while (i, j) != (0, 0):
            k = back[i, j]
            if k < 0:
                # Unreachable when dp[n-1, m-1] is finite
                raise NoFeasibleAlignmentError(reason=f"broken predecessor chain at ({i}, {j})")
            i, j = i - steps[k].di, j - steps[k].dj
            path.append((i, j))
        path.reverse()
        return path

    def warp(
        self,
        reference: Sequence[Measurement],
        target: Sequence[Measurement],
        result: AlignmentResult,
    ) -> List[Measurement]:
        """
        Re-timestamp target measurements onto the reference timeline.

        One measurement is produced per warped pair. Interior target points
        are linearly interpolated between their neighbours at the reference
        time; each output carries an alignment uncertainty that grows with
        the pair's distance from the ideal diagonal.

        Args:
            reference: Reference measurements as passed to align
            target: Target measurements as passed to align
            result: Alignment of target to reference

        Returns:
            Warped target measurements in path order
        """
        ref_sorted = [reference[k] for k in result.reference_order]
        tgt_sorted = [target[k] for k in result.target_order]
        n, m = len(ref_sorted), len(tgt_sorted)

        warped = []
        for i, j in result.warped_pairs:
            ref_time = ref_sorted[i].timestamp
            value = tgt_sorted[j].value
            if 0 < j < m - 1:
                prev, nxt = tgt_sorted[j - 1], tgt_sorted[j + 1]
                # Incompatible neighbours keep the matched value
                if prev.value.compatible_with(nxt.value):
                    span = nxt.timestamp - prev.timestamp
                    if span > 0:
                        alpha = min(max((ref_time - prev.timestamp) / span, 0.0), 1.0)
                    else:
                        alpha = 0.5
                    value = prev.value.interpolate(nxt.value, alpha)

            ref_position = i / (n - 1) if n > 1 else 0.0
            tgt_position = j / (m - 1) if m > 1 else 0.0
            deviation = abs(ref_position - tgt_position)
            uncertainty = (1.0 - result.quality_score + 0.1 * deviation) * ALIGNMENT_UNCERTAINTY_SCALE_S

            warped.append(
                tgt_sorted[j].with_timestamp(
                    ref_time, value=value, alignment_uncertainty=uncertainty
                )
            )
        return warped

    def project(
        self,
        reference: Sequence[Measurement],
        target: Sequence[Measurement],
        result: AlignmentResult,
        max_time_offset: Optional[float] = None,
    ) -> List[Optional[Measurement]]:
        """
        Warped target values indexed by sorted reference position.

        Slots the path never visits are None; a slot matched several times
        keeps its first match along the path.

        Args:
            reference: Reference measurements as passed to align
            target: Target measurements as passed to align
            result: Alignment of target to reference
            max_time_offset: Pairs whose original timestamps differ by more
                than this (s) leave their slot empty

        Returns:
            One Optional[Measurement] per sorted reference position
        """
        ref_sorted = [reference[k] for k in result.reference_order]
        tgt_sorted = [target[k] for k in result.target_order]
        slots: List[Optional[Measurement]] = [None] * len(reference)
        for (i, j), measurement in zip(result.warped_pairs, self.warp(reference, target, result)):
            if slots[i] is not None:
                continue
            if max_time_offset is not None:
                if abs(ref_sorted[i].timestamp - tgt_sorted[j].timestamp) > max_time_offset:
                    continue
            slots[i] = measurement
        return slots

    def align_many(
        self,
        reference: Sequence[Measurement],
        targets: Dict[str, Sequence[Measurement]],
        constraints: Optional[DTWConstraints] = None,
        max_workers: int = 4,
    ) -> Dict[str, Union[AlignmentResult, FusionError]]:
        """
        Align several targets to one reference concurrently.

        Per-pair failures are returned in place of a result so callers can
        drop that pair and continue.

        Args:
            reference: Reference measurements
            targets: Target measurements keyed by sensor id
            constraints: Constraints shared by every pair
            max_workers: Thread pool size

        Returns:
            AlignmentResult or the FusionError raised, keyed by sensor id
        """
        results: Dict[str, Union[AlignmentResult, FusionError]] = {}
        if not targets:
            return results

        with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            futures = {
                executor.submit(self.align, reference, target, constraints): sensor_id
                for sensor_id, target in targets.items()
            }
            for future in concurrent.futures.as_completed(futures):
                sensor_id = futures[future]
                try:
                    results[sensor_id] = future.result()
                except (EmptyInputError, NoFeasibleAlignmentError) as e:
                    logger.warning(f"Alignment of {sensor_id} failed: {e}")
                    results[sensor_id] = e
        return results


# Convenience functions

def align_streams(
    reference: Sequence[Measurement],
    target: Sequence[Measurement],
    step_pattern: Union[StepPattern, str] = StepPattern.SYMMETRIC1,
    sakoe_chiba_radius: Optional[int] = None,
    itakura: bool = False,
) -> AlignmentResult:
    """
    Align two measurement sequences with default settings.

    Args:
        reference: Reference measurements
        target: Target measurements
        step_pattern: Step pattern name or enum
        sakoe_chiba_radius: Optional band radius
        itakura: Enable the Itakura parallelogram

    Returns:
        AlignmentResult
    """
    constraints = DTWConstraints(
        step_pattern=StepPattern(step_pattern),
        sakoe_chiba_radius=sakoe_chiba_radius,
        itakura=itakura,
    )
    return DTWAligner(constraints).align(reference, target)
