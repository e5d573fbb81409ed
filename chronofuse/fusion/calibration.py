"""
EM Joint Calibration of Sensor Biases and Noise.

Estimates, from repeated co-located measurements of one quantity:
- Per-sensor additive bias
- Per-sensor noise variance
- Cross-sensor residual correlation

Key Concepts:
- E-step: Gaussian posterior of the true value per measurement set,
  precision-weighted over bias-corrected readings (precision = trust / variance)
- M-step: exponential-moving-average updates of bias, variance and
  correlation toward their empirical values
- Convergence on the change of the Gaussian log-likelihood
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from chronofuse.exceptions import EmptyInputError

logger = logging.getLogger(__name__)

LOG_2PI = math.log(2.0 * math.pi)


@dataclass
class CalibrationConfig:
    """
    Configuration for EM calibration.

    Attributes:
        max_iterations: Maximum EM iterations
        convergence_threshold: Log-likelihood change that ends the loop
        learning_rate: Blend factor of the moving-average M-step updates
        initial_variance: Starting noise variance of every sensor
        min_variance: Floor on noise variances
        min_trust: Floor applied to trust before it weights a sensor
    """
    max_iterations: int = 100
    convergence_threshold: float = 1e-6
    learning_rate: float = 0.2
    initial_variance: float = 1.0
    min_variance: float = 1e-9
    min_trust: float = 1e-6

    def __post_init__(self):
        """Validate configuration."""
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not 0.0 < self.learning_rate <= 1.0:
            raise ValueError(f"learning_rate must be in (0, 1], got {self.learning_rate}")
        if not self.min_variance > 0:
            raise ValueError(f"min_variance must be > 0, got {self.min_variance}")
        if not self.initial_variance >= self.min_variance:
            raise ValueError(
                f"initial_variance must be >= min_variance, got {self.initial_variance}"
            )


@dataclass
class CalibrationResult:
    """
    Result of EM calibration.

    Attributes:
        sensor_ids: Sensor order of the correlation matrix
        biases: Additive bias per sensor
        noise_variances: Noise variance per sensor
        correlation_matrix: Residual correlation between sensors
        converged: Whether the log-likelihood change fell below the threshold
        iterations: EM iterations performed
        log_likelihood: Final log-likelihood
        log_likelihood_history: Log-likelihood after each iteration
        posterior_means: Posterior mean of the true value per measurement set
        posterior_variances: Posterior variance per measurement set
    """
    sensor_ids: List[str]
    biases: Dict[str, float]
    noise_variances: Dict[str, float]
    correlation_matrix: np.ndarray
    converged: bool
    iterations: int
    log_likelihood: float
    log_likelihood_history: List[float] = field(default_factory=list)
    posterior_means: np.ndarray = field(default_factory=lambda: np.zeros(0))
    posterior_variances: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def correlation(self, sensor_a: str, sensor_b: str) -> float:
        i = self.sensor_ids.index(sensor_a)
        j = self.sensor_ids.index(sensor_b)
        return float(self.correlation_matrix[i, j])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sensor_ids": self.sensor_ids,
            "biases": self.biases,
            "noise_variances": self.noise_variances,
            "correlation_matrix": self.correlation_matrix.tolist(),
            "converged": self.converged,
            "iterations": self.iterations,
            "log_likelihood": self.log_likelihood,
        }


class EMCalibrator:
    """
    Expectation-Maximization calibrator over co-located measurement sets.

    Works on private arrays per call; instances hold configuration only.
    """

    def __init__(self, config: Optional[CalibrationConfig] = None):
        """
        Initialize calibrator.

        Args:
            config: Calibration configuration
        """
        self.config = config or CalibrationConfig()

    def calibrate(
        self,
        measurement_sets: Sequence[Mapping[str, float]],
        trust: Optional[Mapping[str, float]] = None,
    ) -> CalibrationResult:
        """
        Jointly estimate biases, noise variances and correlation.

        Args:
            measurement_sets: One mapping of sensor id -> reading per instant;
                sensors may be missing from some sets
            trust: Trust per sensor (1.0 if missing)

        Returns:
            CalibrationResult

        Raises:
            EmptyInputError: If no set holds a finite reading
        """
        cfg = self.config
        trust = trust or {}

        sensor_ids = sorted({sid for s in measurement_sets for sid in s})
        sets = [
            {sid: float(v) for sid, v in s.items() if v is not None and math.isfinite(float(v))}
            for s in measurement_sets
        ]
        sets = [s for s in sets if s]
        if not sensor_ids or not sets:
            raise EmptyInputError("calibration", reason="no finite readings")

        index = {sid: k for k, sid in enumerate(sensor_ids)}
        S, T = len(sensor_ids), len(sets)
        X = np.zeros((S, T))
        mask = np.zeros((S, T), dtype=bool)
        for t, readings in enumerate(sets):
            for sid, value in readings.items():
                X[index[sid], t] = value
                mask[index[sid], t] = True
        counts = mask.sum(axis=1)

        trust_vec = np.array(
            [max(float(trust.get(sid, 1.0)), cfg.min_trust) for sid in sensor_ids]
        )
        biases = np.zeros(S)
        variances = np.full(S, cfg.initial_variance)
        correlation = np.eye(S)
        alpha = cfg.learning_rate

        history: List[float] = []
        converged = False
        iterations = 0

        for iterations in range(1, cfg.max_iterations + 1):
            mu, _ = self._e_step(X, mask, biases, variances, trust_vec)

            # M-step: bias toward the mean residual from the posterior
            residual = np.where(mask, X - mu[None, :], 0.0)
            has_data = counts > 0
            mean_residual = np.zeros(S)
            mean_residual[has_data] = residual[has_data].sum(axis=1) / counts[has_data]
            biases = np.where(has_data, (1 - alpha) * biases + alpha * mean_residual, biases)

            errors = np.where(mask, X - biases[:, None] - mu[None, :], 0.0)
            target_var = variances.copy()
            enough = counts > 1
            target_var[enough] = (errors[enough] ** 2).sum(axis=1) / (counts[enough] - 1)
            variances = np.maximum((1 - alpha) * variances + alpha * target_var, cfg.min_variance)

            if T >= 2:
                correlation = (1 - alpha) * correlation + alpha * self._empirical_correlation(errors, mask)

            log_likelihood = self._log_likelihood(errors, mask, variances)
            history.append(log_likelihood)
            logger.debug(f"EM iteration {iterations}: log-likelihood {log_likelihood:.6f}")

            if len(history) > 1 and abs(history[-1] - history[-2]) < cfg.convergence_threshold:
                converged = True
                break

        mu, posterior_var = self._e_step(X, mask, biases, variances, trust_vec)
        logger.info(
            f"EM calibration of {S} sensors over {T} sets: "
            f"{iterations} iterations, converged={converged}"
        )
        return CalibrationResult(
            sensor_ids=sensor_ids,
            biases={sid: float(biases[k]) for sid, k in index.items()},
            noise_variances={sid: float(variances[k]) for sid, k in index.items()},
            correlation_matrix=correlation,
            converged=converged,
            iterations=iterations,
            log_likelihood=history[-1],
            log_likelihood_history=history,
            posterior_means=mu,
            posterior_variances=posterior_var,
        )

    @staticmethod
    def _e_step(
        X: np.ndarray,
        mask: np.ndarray,
        biases: np.ndarray,
        variances: np.ndarray,
        trust: np.ndarray,
    ):
        """Posterior mean and variance of the true value per set."""
        precision = np.where(mask, (trust / variances)[:, None], 0.0)
        total = precision.sum(axis=0)
        corrected = np.where(mask, X - biases[:, None], 0.0)
        mu = (precision * corrected).sum(axis=0) / total
        return mu, 1.0 / total

    @staticmethod
    def _empirical_correlation(errors: np.ndarray, mask: np.ndarray) -> np.ndarray:
        counts = np.maximum(mask.sum(axis=1), 1)
        centered = np.where(mask, errors - (errors.sum(axis=1) / counts)[:, None], 0.0)
        covariance = centered @ centered.T
        norms = np.sqrt(np.diag(covariance))
        denom = np.outer(norms, norms)
        with np.errstate(divide="ignore", invalid="ignore"):
            corr = np.where(denom > 0, covariance / denom, 0.0)
        corr = np.clip(corr, -1.0, 1.0)
        np.fill_diagonal(corr, 1.0)
        return corr

    @staticmethod
    def _log_likelihood(errors: np.ndarray, mask: np.ndarray, variances: np.ndarray) -> float:
        terms = -0.5 * (LOG_2PI + np.log(variances)[:, None] + errors ** 2 / variances[:, None])
        return float(np.sum(np.where(mask, terms, 0.0)))


# Convenience functions

def calibrate_sensors(
    measurement_sets: Sequence[Mapping[str, float]],
    trust: Optional[Mapping[str, float]] = None,
    max_iterations: int = 100,
    convergence_threshold: float = 1e-6,
) -> CalibrationResult:
    """
    Run EM calibration with default learning settings.

    Args:
        measurement_sets: Readings per instant keyed by sensor id
        trust: Optional trust per sensor
        max_iterations: Iteration cap
        convergence_threshold: Log-likelihood convergence threshold

    Returns:
        CalibrationResult
    """
    config = CalibrationConfig(
        max_iterations=max_iterations,
        convergence_threshold=convergence_threshold,
    )
    return EMCalibrator(config).calibrate(measurement_sets, trust)
