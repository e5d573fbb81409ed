"""
Levenberg-Marquardt Optimization over Sensor Factors.

Refines a fused state by weighted nonlinear least squares:
- Damped Gauss-Newton steps solved by LU decomposition
- Monotone descent: only cost-decreasing steps are accepted
- Singular-system recovery by increasing damping, with a hard cap
- Convergence on cost change or step size
- Parameter covariance from the final Hessian

Key Concepts:
- cost = r^T W r with W the block-diagonal information matrix
- (J^T W J + lambda I) delta = -J^T W r
- lambda shrinks after accepted steps and grows after rejected ones
- Each call works on a private copy of the parameters
"""

import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np
from scipy import linalg

from chronofuse.exceptions import EmptyInputError, SingularSystemError
from chronofuse.fusion.factors import Factor, FactorGraph

logger = logging.getLogger(__name__)

ResidualFn = Callable[[np.ndarray], np.ndarray]
JacobianFn = Callable[[np.ndarray], np.ndarray]


@dataclass
class OptimizerConfig:
    """
    Configuration for Levenberg-Marquardt.

    Attributes:
        max_iterations: Maximum outer iterations
        convergence_threshold: Accepted cost decrease below which the solve converges
        step_tolerance: Relative step norm below which the solve converges
        initial_lambda: Starting damping
        lambda_increase: Damping multiplier after a rejected step or singular solve
        lambda_decrease: Damping divisor after an accepted step
        min_lambda: Lower bound on damping after decreases
        max_lambda: Damping above which the solve stops without converging
        max_singular_retries: Singular solves tolerated per iteration
    """
    max_iterations: int = 50
    convergence_threshold: float = 1e-6
    step_tolerance: float = 1e-10
    initial_lambda: float = 1e-3
    lambda_increase: float = 10.0
    lambda_decrease: float = 3.0
    min_lambda: float = 1e-12
    max_lambda: float = 1e12
    max_singular_retries: int = 10

    def __post_init__(self):
        """Validate configuration."""
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.convergence_threshold < 0:
            raise ValueError(
                f"convergence_threshold must be >= 0, got {self.convergence_threshold}"
            )
        if self.initial_lambda <= 0:
            # Zero damping never grows under multiplicative retries
            raise ValueError(f"initial_lambda must be > 0, got {self.initial_lambda}")
        if self.lambda_increase <= 1 or self.lambda_decrease <= 1:
            raise ValueError("lambda_increase and lambda_decrease must be > 1")
        if self.max_singular_retries < 0:
            raise ValueError(
                f"max_singular_retries must be >= 0, got {self.max_singular_retries}"
            )


@dataclass
class OptimizationResult:
    """
    Result of one optimization.

    Attributes:
        params: Final parameter vector
        cost: Final weighted cost
        iterations: Outer iterations performed
        converged: Whether a convergence criterion was met
        damping: Final lambda
        cost_history: Initial cost followed by every accepted cost
        covariance: Inverse Hessian at the solution
        accepted_steps: Number of accepted steps
        rejected_steps: Number of rejected steps
    """
    params: np.ndarray
    cost: float
    iterations: int
    converged: bool
    damping: float
    cost_history: List[float] = field(default_factory=list)
    covariance: Optional[np.ndarray] = None
    accepted_steps: int = 0
    rejected_steps: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "params": self.params.tolist(),
            "cost": self.cost,
            "iterations": self.iterations,
            "converged": self.converged,
            "damping": self.damping,
            "accepted_steps": self.accepted_steps,
            "rejected_steps": self.rejected_steps,
            "uncertainty": (
                np.sqrt(np.abs(np.diag(self.covariance))).tolist()
                if self.covariance is not None else None
            ),
        }


def _solve_damped(H: np.ndarray, g: np.ndarray, damping: float) -> np.ndarray:
    """
    Solve (H + damping*I) delta = -g by LU decomposition.

    Raises:
        numpy.linalg.LinAlgError: If the damped system is singular
    """
    A = H + damping * np.eye(H.shape[0])
    with warnings.catch_warnings():
        warnings.simplefilter("error", linalg.LinAlgWarning)
        try:
            lu, piv = linalg.lu_factor(A)
        except linalg.LinAlgWarning as e:
            raise np.linalg.LinAlgError(str(e))
    if np.any(np.diag(lu) == 0):
        raise np.linalg.LinAlgError("zero pivot in LU factorization")
    delta = linalg.lu_solve((lu, piv), -g)
    if not np.all(np.isfinite(delta)):
        raise np.linalg.LinAlgError("non-finite solution of damped system")
    return delta


class LevenbergMarquardtOptimizer:
    """
    Levenberg-Marquardt solver with pluggable residual providers.
    """

    def __init__(self, config: Optional[OptimizerConfig] = None):
        """
        Initialize optimizer.

        Args:
            config: Optimizer configuration
        """
        self.config = config or OptimizerConfig()

    @staticmethod
    def _weighted_cost(r: np.ndarray, W: np.ndarray) -> float:
        return float(r @ W @ r)

    def optimize(
        self,
        initial_params: Union[Sequence[float], np.ndarray],
        residual_fn: ResidualFn,
        jacobian_fn: JacobianFn,
        information: Optional[np.ndarray] = None,
    ) -> OptimizationResult:
        """
        Minimize r(x)^T W r(x).

        Args:
            initial_params: Starting parameters (copied, never modified)
            residual_fn: Residual vector at x
            jacobian_fn: Jacobian of the residual at x
            information: Weight matrix W (identity if None)

        Returns:
            OptimizationResult

        Raises:
            EmptyInputError: If there are no parameters
            SingularSystemError: If damping cannot make the system solvable
        """
        cfg = self.config
        x = np.array(initial_params, dtype=float).ravel()
        if x.size == 0:
            raise EmptyInputError("optimization", reason="no parameters to optimize")

        r = np.atleast_1d(np.asarray(residual_fn(x), dtype=float))
        W = np.eye(r.size) if information is None else np.asarray(information, dtype=float)
        if W.shape != (r.size, r.size):
            raise ValueError(f"information must be {r.size}x{r.size}, got {W.shape}")

        cost = self._weighted_cost(r, W)
        if not math.isfinite(cost):
            raise ValueError(f"Initial cost is not finite: {cost}")

        damping = cfg.initial_lambda
        history = [cost]
        converged = False
        accepted = rejected = 0
        iterations = 0

        while iterations < cfg.max_iterations:
            iterations += 1
            J = np.atleast_2d(np.asarray(jacobian_fn(x), dtype=float))
            H = J.T @ W @ J
            g = J.T @ W @ r

            retries = 0
            while True:
                try:
                    delta = _solve_damped(H, g, damping)
                    break
                except np.linalg.LinAlgError:
                    retries += 1
                    if retries > cfg.max_singular_retries:
                        raise SingularSystemError(retries - 1, damping)
                    damping *= cfg.lambda_increase
                    logger.debug(f"Singular damped system, damping raised to {damping:.3e}")

            step_norm = float(np.linalg.norm(delta))
            if step_norm <= cfg.step_tolerance * (float(np.linalg.norm(x)) + cfg.step_tolerance):
                converged = True
                break

            candidate = x + delta
            r_candidate = np.atleast_1d(np.asarray(residual_fn(candidate), dtype=float))
            candidate_cost = self._weighted_cost(r_candidate, W)

            if math.isfinite(candidate_cost) and candidate_cost < cost:
                decrease = cost - candidate_cost
                x, r, cost = candidate, r_candidate, candidate_cost
                history.append(cost)
                accepted += 1
                damping = max(damping / cfg.lambda_decrease, cfg.min_lambda)
                logger.debug(
                    f"LM iteration {iterations}: accepted, cost {cost:.6e}, damping {damping:.3e}"
                )
                if decrease < cfg.convergence_threshold:
                    converged = True
                    break
            else:
                rejected += 1
                damping *= cfg.lambda_increase
                logger.debug(
                    f"LM iteration {iterations}: rejected, damping {damping:.3e}"
                )
                if damping > cfg.max_lambda:
                    logger.warning(f"LM damping exceeded {cfg.max_lambda:.1e}, stopping")
                    break

        covariance = self._covariance(jacobian_fn, x, W)
        logger.info(
            f"LM finished after {iterations} iterations: cost {cost:.6e}, converged={converged}"
        )
        return OptimizationResult(
            params=x,
            cost=cost,
            iterations=iterations,
            converged=converged,
            damping=damping,
            cost_history=history,
            covariance=covariance,
            accepted_steps=accepted,
            rejected_steps=rejected,
        )

    @staticmethod
    def _covariance(jacobian_fn: JacobianFn, x: np.ndarray, W: np.ndarray) -> np.ndarray:
        J = np.atleast_2d(np.asarray(jacobian_fn(x), dtype=float))
        H = J.T @ W @ J
        try:
            return linalg.inv(H)
        except (linalg.LinAlgError, ValueError):
            logger.debug("Hessian is singular, using pseudo-inverse for covariance")
            return np.linalg.pinv(H)

    def optimize_factors(
        self,
        factors: Union[FactorGraph, Sequence[Factor]],
        initial_params: Union[Sequence[float], np.ndarray],
    ) -> OptimizationResult:
        """
        Jointly optimize the state constrained by a set of factors.

        Args:
            factors: FactorGraph or list of factors
            initial_params: Starting state

        Returns:
            OptimizationResult
        """
        graph = factors if isinstance(factors, FactorGraph) else FactorGraph(factors)
        if len(graph) == 0:
            raise EmptyInputError("optimization", reason="no factors")
        return self.optimize(
            initial_params,
            graph.residual,
            graph.jacobian,
            information=graph.information(),
        )


# Convenience functions

def optimize_factors(
    factors: Sequence[Factor],
    initial_params: Union[Sequence[float], np.ndarray],
    max_iterations: int = 50,
    convergence_threshold: float = 1e-6,
) -> OptimizationResult:
    """
    Run Levenberg-Marquardt over factors with default damping settings.

    Args:
        factors: Factors constraining the state
        initial_params: Starting state
        max_iterations: Iteration cap
        convergence_threshold: Cost-change convergence threshold

    Returns:
        OptimizationResult
    """
    config = OptimizerConfig(
        max_iterations=max_iterations,
        convergence_threshold=convergence_threshold,
    )
    return LevenbergMarquardtOptimizer(config).optimize_factors(factors, initial_params)
