"""
Custom Exceptions for Temporal Alignment and Fusion.

Provides a hierarchy of fusion exceptions for the different failure modes
of the pipeline. Per-sensor and per-pair failures are caught by the engine
and recorded as exclusions; engine-level failures propagate to the caller.
"""

from typing import Dict, Optional


class FusionError(Exception):
    """
    Base exception for fusion pipeline failures.

    All fusion-specific exceptions inherit from this class,
    allowing for broad exception handling when needed.

    Attributes:
        message: Human-readable error description
        details: Additional context about the failure (sensor id, stage, ...)
    """

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class MissingCalibrationError(FusionError):
    """
    No delay profile exists for a sensor.

    Fatal for that sensor only: the engine excludes it and keeps fusing
    the remaining streams.

    Attributes:
        sensor_id: Sensor without a profile
    """

    def __init__(self, sensor_id: str):
        message = f"No delay profile registered for sensor '{sensor_id}'"
        super().__init__(message, {"sensor_id": sensor_id, "stage": "delay_correction"})
        self.sensor_id = sensor_id


class EmptyInputError(FusionError):
    """
    A stage received no usable measurements.

    Attributes:
        stage: Pipeline stage that received the empty input
        sensor_id: Sensor whose data was empty, if known
    """

    def __init__(self, stage: str, sensor_id: Optional[str] = None, reason: str = None):
        message = f"Empty input for stage '{stage}'"
        if reason:
            message = f"{message}: {reason}"
        details = {"stage": stage}
        if sensor_id is not None:
            details["sensor_id"] = sensor_id
        super().__init__(message, details)
        self.stage = stage
        self.sensor_id = sensor_id


class NoFeasibleAlignmentError(FusionError):
    """
    Alignment constraints leave no admissible warping path.

    Raised when a constrained band excludes every cell of some row, or when
    the end cell cannot be reached with the chosen step pattern.

    Attributes:
        reference_id: Reference stream identifier
        target_id: Target stream identifier
        row: First reference row without a feasible cell, if applicable
        reason: Explanation of why no path exists
    """

    def __init__(
        self,
        reference_id: Optional[str] = None,
        target_id: Optional[str] = None,
        row: Optional[int] = None,
        reason: str = None,
    ):
        message = "No feasible alignment path"
        if reason:
            message = f"{message}: {reason}"
        details = {
            "stage": "alignment",
            "reference_id": reference_id,
            "target_id": target_id,
        }
        if row is not None:
            details["row"] = row
        super().__init__(message, details)
        self.reference_id = reference_id
        self.target_id = target_id
        self.row = row
        self.reason = reason


class NoTrustedSensorsError(FusionError):
    """
    Every reporting sensor fell below the trust threshold.

    Fatal for the whole fusion call: there is no meaningful estimate to
    return.

    Attributes:
        threshold: Trust threshold that was applied
        trust_scores: Trust of each reporting sensor at the time of failure
    """

    def __init__(self, threshold: float, trust_scores: Dict[str, float] = None):
        message = f"No sensors with trust above {threshold}"
        details = {
            "stage": "consensus",
            "threshold": threshold,
            "trust_scores": trust_scores or {},
        }
        super().__init__(message, details)
        self.threshold = threshold
        self.trust_scores = trust_scores or {}


class SingularSystemError(FusionError):
    """
    The damped normal equations stayed singular after the retry cap.

    Attributes:
        retries: Number of damping increases attempted
        damping: Damping value at the last attempt
    """

    def __init__(self, retries: int, damping: float):
        message = "Damped normal equations are singular"
        details = {"stage": "optimization", "retries": retries, "damping": damping}
        super().__init__(message, details)
        self.retries = retries
        self.damping = damping


class FusionCancelledError(FusionError):
    """
    The caller cancelled a fusion call between pipeline stages.

    Attributes:
        stage: Stage that was about to start when cancellation was observed
    """

    def __init__(self, stage: str):
        message = f"Fusion cancelled before stage '{stage}'"
        super().__init__(message, {"stage": stage})
        self.stage = stage
