"""
Factors for Joint Nonlinear Least-Squares Fusion.

A factor contributes one block of residuals to the joint optimization:
- error(params): residual vector
- jacobian(params): derivative of the residual w.r.t. all parameters
- information_matrix(): inverse measurement covariance of the residual

Key Concepts:
- Any sensor type can constrain the shared state by providing a factor
- FactorGraph stacks factors into one residual, Jacobian and
  block-diagonal information matrix for the optimizer
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.linalg import block_diag

logger = logging.getLogger(__name__)

ArrayLike = Union[float, Sequence[float], np.ndarray]


def _as_vector(value: ArrayLike) -> np.ndarray:
    return np.atleast_1d(np.asarray(value, dtype=float))


class Factor(ABC):
    """Residual and Jacobian provider over a shared parameter vector."""

    sensor_id: Optional[str] = None

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Number of residual rows."""
        pass

    @abstractmethod
    def error(self, params: np.ndarray) -> np.ndarray:
        """Residual vector at params."""
        pass

    @abstractmethod
    def jacobian(self, params: np.ndarray) -> np.ndarray:
        """dimension x len(params) Jacobian of the residual."""
        pass

    @abstractmethod
    def information_matrix(self) -> np.ndarray:
        """dimension x dimension information (inverse covariance) matrix."""
        pass

    def cost(self, params: np.ndarray) -> float:
        r = self.error(params)
        return float(r @ self.information_matrix() @ r)


class PriorFactor(Factor):
    """
    Direct observation of some state components.

    Residual is measurement - params[indices], so the Jacobian is -1 on
    the observed components.
    """

    def __init__(
        self,
        measurement: ArrayLike,
        sigma: ArrayLike = 1.0,
        indices: Optional[Sequence[int]] = None,
        sensor_id: Optional[str] = None,
        weight: float = 1.0,
    ):
        """
        Initialize prior factor.

        Args:
            measurement: Observed values
            sigma: Standard deviation per component (scalar broadcasts)
            indices: State components observed (first len(measurement) if None)
            sensor_id: Contributing sensor
            weight: Extra multiplier on the information (e.g. trust weight)
        """
        self.measurement = _as_vector(measurement)
        size = len(self.measurement)
        self.indices = list(indices) if indices is not None else list(range(size))
        if len(self.indices) != size:
            raise ValueError(
                f"indices length {len(self.indices)} does not match measurement length {size}"
            )
        sigma = np.broadcast_to(_as_vector(sigma), (size,)).astype(float)
        if np.any(sigma <= 0) or not np.all(np.isfinite(sigma)):
            raise ValueError(f"sigma must be positive and finite, got {sigma}")
        if not weight > 0:
            raise ValueError(f"weight must be positive, got {weight}")
        self.sigma = sigma
        self.weight = float(weight)
        self.sensor_id = sensor_id

    @property
    def dimension(self) -> int:
        return len(self.measurement)

    def error(self, params: np.ndarray) -> np.ndarray:
        return self.measurement - np.asarray(params, dtype=float)[self.indices]

    def jacobian(self, params: np.ndarray) -> np.ndarray:
        J = np.zeros((self.dimension, len(params)))
        for row, column in enumerate(self.indices):
            J[row, column] = -1.0
        return J

    def information_matrix(self) -> np.ndarray:
        return np.diag(self.weight / self.sigma ** 2)


class GPSFactor(PriorFactor):
    """
    GPS position fix.

    Information is 1/hdop^2 on every observed component.
    """

    def __init__(
        self,
        position: ArrayLike,
        hdop: float = 1.0,
        indices: Optional[Sequence[int]] = None,
        sensor_id: Optional[str] = None,
    ):
        if not hdop > 0:
            raise ValueError(f"hdop must be positive, got {hdop}")
        super().__init__(position, sigma=hdop, indices=indices, sensor_id=sensor_id)
        self.hdop = float(hdop)


class AtomicClockFactor(Factor):
    """
    Clock-bias observation against an atomic time reference.

    Residual is time_reference - params[bias_index].
    """

    def __init__(
        self,
        time_reference: float,
        bias_index: int = 0,
        precision: float = 1e-9,
        sensor_id: Optional[str] = None,
    ):
        """
        Initialize clock factor.

        Args:
            time_reference: Reference clock offset (s)
            bias_index: State component holding the clock bias
            precision: Reference standard deviation (s), 1 ns by default
            sensor_id: Contributing sensor
        """
        if not precision > 0:
            raise ValueError(f"precision must be positive, got {precision}")
        self.time_reference = float(time_reference)
        self.bias_index = int(bias_index)
        self.precision = float(precision)
        self.sensor_id = sensor_id

    @property
    def dimension(self) -> int:
        return 1

    def error(self, params: np.ndarray) -> np.ndarray:
        return np.array([self.time_reference - float(params[self.bias_index])])

    def jacobian(self, params: np.ndarray) -> np.ndarray:
        J = np.zeros((1, len(params)))
        J[0, self.bias_index] = -1.0
        return J

    def information_matrix(self) -> np.ndarray:
        return np.array([[1.0 / self.precision ** 2]])


class FunctionFactor(Factor):
    """
    Factor backed by caller-supplied residual and Jacobian functions.
    """

    def __init__(
        self,
        error_fn: Callable[[np.ndarray], ArrayLike],
        jacobian_fn: Callable[[np.ndarray], ArrayLike],
        information: Union[float, np.ndarray],
        dimension: int,
        sensor_id: Optional[str] = None,
    ):
        self.error_fn = error_fn
        self.jacobian_fn = jacobian_fn
        self._dimension = int(dimension)
        info = np.asarray(information, dtype=float)
        if info.ndim == 0:
            info = np.eye(self._dimension) * float(info)
        if info.shape != (self._dimension, self._dimension):
            raise ValueError(
                f"information must be {self._dimension}x{self._dimension}, got {info.shape}"
            )
        self._information = info
        self.sensor_id = sensor_id

    @property
    def dimension(self) -> int:
        return self._dimension

    def error(self, params: np.ndarray) -> np.ndarray:
        return _as_vector(self.error_fn(params))

    def jacobian(self, params: np.ndarray) -> np.ndarray:
        return np.atleast_2d(np.asarray(self.jacobian_fn(params), dtype=float)).reshape(
            self._dimension, len(params)
        )

    def information_matrix(self) -> np.ndarray:
        return self._information


class FactorGraph:
    """
    Collection of factors over one shared parameter vector.
    """

    def __init__(self, factors: Optional[Sequence[Factor]] = None):
        self.factors: List[Factor] = list(factors or [])

    def __len__(self) -> int:
        return len(self.factors)

    def add(self, factor: Factor) -> None:
        self.factors.append(factor)

    @property
    def dimension(self) -> int:
        return sum(f.dimension for f in self.factors)

    def residual(self, params: np.ndarray) -> np.ndarray:
        if not self.factors:
            return np.zeros(0)
        return np.concatenate([f.error(params) for f in self.factors])

    def jacobian(self, params: np.ndarray) -> np.ndarray:
        if not self.factors:
            return np.zeros((0, len(params)))
        return np.vstack([f.jacobian(params) for f in self.factors])

    def information(self) -> np.ndarray:
        if not self.factors:
            return np.zeros((0, 0))
        return block_diag(*[f.information_matrix() for f in self.factors])

    def cost(self, params: np.ndarray) -> float:
        return sum(f.cost(params) for f in self.factors)

    def contributions(self, params: np.ndarray) -> List[Tuple[Optional[str], float]]:
        """Cost contributed by each factor, tagged with its sensor."""
        return [(f.sensor_id, f.cost(params)) for f in self.factors]
