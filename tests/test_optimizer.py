"""
Tests for sensor factors and Levenberg-Marquardt optimization.

Tests factor residuals and information, factor graphs, convergence of
linear and nonlinear problems, monotone cost descent and singular
system handling.
"""

import numpy as np
import pytest

from chronofuse.exceptions import EmptyInputError, SingularSystemError
from chronofuse.fusion import optimizer as optimizer_module
from chronofuse.fusion.factors import (
    AtomicClockFactor,
    FactorGraph,
    FunctionFactor,
    GPSFactor,
    PriorFactor,
)
from chronofuse.fusion.optimizer import (
    LevenbergMarquardtOptimizer,
    OptimizerConfig,
    optimize_factors,
)


# ============================================================================
# Factors
# ============================================================================

class TestPriorFactor:
    """Test direct observation factors."""

    def test_error_and_jacobian(self):
        factor = PriorFactor([1.0, 2.0], sigma=0.5, indices=[2, 0])
        params = np.array([10.0, 20.0, 30.0])
        np.testing.assert_allclose(factor.error(params), [-29.0, -8.0])
        np.testing.assert_allclose(
            factor.jacobian(params),
            [[0.0, 0.0, -1.0], [-1.0, 0.0, 0.0]],
        )
        np.testing.assert_allclose(factor.information_matrix(), np.diag([4.0, 4.0]))

    def test_weight_scales_information(self):
        factor = PriorFactor(1.0, sigma=2.0, weight=3.0)
        np.testing.assert_allclose(factor.information_matrix(), [[0.75]])

    def test_cost(self):
        factor = PriorFactor(1.0, sigma=0.5)
        assert factor.cost(np.array([2.0])) == pytest.approx(4.0)

    def test_invalid_sigma(self):
        with pytest.raises(ValueError):
            PriorFactor(1.0, sigma=0.0)

    def test_indices_length_mismatch(self):
        with pytest.raises(ValueError):
            PriorFactor([1.0, 2.0], indices=[0])

    def test_invalid_weight(self):
        with pytest.raises(ValueError):
            PriorFactor(1.0, weight=0.0)


class TestSensorFactors:
    """Test GPS and atomic clock factors."""

    def test_gps_information_from_hdop(self):
        factor = GPSFactor([45.0, 7.0, 300.0], hdop=2.0, sensor_id="gps-1")
        assert factor.dimension == 3
        np.testing.assert_allclose(factor.information_matrix(), np.eye(3) * 0.25)
        assert factor.sensor_id == "gps-1"

    def test_gps_invalid_hdop(self):
        with pytest.raises(ValueError):
            GPSFactor([1.0], hdop=0.0)

    def test_atomic_clock(self):
        factor = AtomicClockFactor(2.5e-6, bias_index=1, precision=1e-9)
        params = np.array([0.0, 1.5e-6])
        np.testing.assert_allclose(factor.error(params), [1e-6])
        np.testing.assert_allclose(factor.jacobian(params), [[0.0, -1.0]])
        assert factor.information_matrix()[0, 0] == pytest.approx(1e18)

    def test_function_factor_scalar_information(self):
        factor = FunctionFactor(
            lambda x: [x[0] - x[1]],
            lambda x: [[1.0, -1.0]],
            information=2.0,
            dimension=1,
        )
        np.testing.assert_allclose(factor.information_matrix(), [[2.0]])
        np.testing.assert_allclose(factor.jacobian(np.array([1.0, 1.0])), [[1.0, -1.0]])

    def test_function_factor_bad_information(self):
        with pytest.raises(ValueError):
            FunctionFactor(lambda x: x, lambda x: np.eye(2), np.eye(3), dimension=2)


class TestFactorGraph:
    """Test stacking of factors."""

    def test_stacks_blocks(self):
        graph = FactorGraph([
            PriorFactor(1.0, sigma=1.0, sensor_id="a"),
            GPSFactor([2.0, 3.0], hdop=2.0, indices=[0, 1], sensor_id="b"),
        ])
        params = np.array([0.0, 0.0])
        assert graph.dimension == 3
        np.testing.assert_allclose(graph.residual(params), [1.0, 2.0, 3.0])
        assert graph.jacobian(params).shape == (3, 2)
        np.testing.assert_allclose(graph.information(), np.diag([1.0, 0.25, 0.25]))
        assert graph.cost(params) == pytest.approx(1.0 + 0.25 * 4 + 0.25 * 9)

    def test_contributions_tagged(self):
        graph = FactorGraph()
        graph.add(PriorFactor(1.0, sensor_id="a"))
        graph.add(PriorFactor(3.0, sensor_id="b"))
        assert graph.contributions(np.array([2.0])) == [("a", 1.0), ("b", 1.0)]

    def test_empty_graph(self):
        graph = FactorGraph()
        assert len(graph) == 0
        assert graph.residual(np.zeros(2)).shape == (0,)


# ============================================================================
# Levenberg-Marquardt
# ============================================================================

class TestLevenbergMarquardt:
    """Test optimizer convergence and bookkeeping."""

    def test_two_priors_converge_to_mean(self):
        factors = [PriorFactor(9.0, sensor_id="a"), PriorFactor(11.0, sensor_id="b")]
        result = optimize_factors(factors, [0.0])

        assert result.converged
        assert result.params[0] == pytest.approx(10.0, abs=1e-4)
        assert result.cost == pytest.approx(2.0, abs=1e-6)
        assert result.covariance[0, 0] == pytest.approx(0.5)

    def test_cost_history_monotone(self):
        factors = [GPSFactor([1.0, 2.0], hdop=1.0), GPSFactor([3.0, -2.0], hdop=0.5)]
        result = optimize_factors(factors, [100.0, -50.0])
        history = result.cost_history
        assert len(history) == result.accepted_steps + 1
        assert all(b < a for a, b in zip(history, history[1:]))

    def test_weighted_mean(self):
        factors = [GPSFactor([9.0], hdop=1.0), GPSFactor([11.0], hdop=2.0)]
        result = optimize_factors(factors, [0.0])
        assert result.params[0] == pytest.approx((9.0 + 11.0 * 0.25) / 1.25, abs=1e-4)

    def test_nonlinear_range(self):
        factor = FunctionFactor(
            lambda x: [4.0 - x[0] ** 2],
            lambda x: [[-2.0 * x[0]]],
            information=1.0,
            dimension=1,
        )
        result = optimize_factors([factor], [1.0])
        assert result.params[0] == pytest.approx(2.0, abs=1e-3)

    def test_already_optimal(self):
        result = optimize_factors([PriorFactor(5.0)], [5.0])
        assert result.converged
        assert result.params[0] == 5.0
        assert result.cost == 0.0

    def test_initial_params_not_modified(self):
        initial = np.array([0.0])
        optimize_factors([PriorFactor(3.0)], initial)
        assert initial[0] == 0.0

    def test_iteration_cap(self):
        factor = FunctionFactor(
            lambda x: [4.0 - x[0] ** 2],
            lambda x: [[-2.0 * x[0]]],
            information=1.0,
            dimension=1,
        )
        result = optimize_factors([factor], [1.0], max_iterations=1)
        assert result.iterations == 1
        assert not result.converged

    def test_singular_system(self, monkeypatch):
        def always_singular(H, g, damping):
            raise np.linalg.LinAlgError("singular")

        monkeypatch.setattr(optimizer_module, "_solve_damped", always_singular)
        config = OptimizerConfig(initial_lambda=1e-3, max_singular_retries=3)
        optimizer = LevenbergMarquardtOptimizer(config)
        with pytest.raises(SingularSystemError) as exc_info:
            optimizer.optimize_factors([PriorFactor(1.0, indices=[0])], [0.0])
        assert exc_info.value.retries == 3
        # Damping grew on every retry
        assert exc_info.value.damping == pytest.approx(1.0)

    @pytest.mark.parametrize("initial_lambda", [0.0, -1e-3])
    def test_non_positive_initial_lambda_rejected(self, initial_lambda):
        with pytest.raises(ValueError):
            OptimizerConfig(initial_lambda=initial_lambda)

    def test_damping_handles_unobserved_parameter(self):
        factors = [PriorFactor(1.0, indices=[0])]
        result = optimize_factors(factors, [0.0, 7.0])
        assert result.params[0] == pytest.approx(1.0, abs=1e-4)
        assert result.params[1] == pytest.approx(7.0)

    def test_no_factors(self):
        with pytest.raises(EmptyInputError):
            optimize_factors([], [0.0])

    def test_no_parameters(self):
        optimizer = LevenbergMarquardtOptimizer()
        with pytest.raises(EmptyInputError):
            optimizer.optimize([], lambda x: x, lambda x: np.eye(0))

    def test_information_shape_checked(self):
        optimizer = LevenbergMarquardtOptimizer()
        with pytest.raises(ValueError):
            optimizer.optimize([0.0], lambda x: x, lambda x: np.eye(1), information=np.eye(2))

    def test_config_validation(self):
        with pytest.raises(ValueError):
            OptimizerConfig(lambda_increase=1.0)
        with pytest.raises(ValueError):
            OptimizerConfig(max_iterations=0)

    def test_to_dict(self):
        result = optimize_factors([PriorFactor(2.0, sigma=0.5)], [0.0])
        data = result.to_dict()
        assert data["params"] == pytest.approx([2.0], abs=1e-4)
        assert data["uncertainty"] == pytest.approx([0.5])
