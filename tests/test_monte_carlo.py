"""
Tests for Monte Carlo Simulation
================================

Path simulation, binary-contract pricing with variance reduction, and
path-derived risk metrics.
"""

import math
import threading

import numpy as np
import pytest

from quantcore.exceptions import SimulationCancelledError
from quantcore.monte_carlo import (
    GBMParams,
    JumpDiffusionParams,
    MonteCarloSimulator,
    PathSet,
    black_scholes_digital,
    calculate_risk_metrics,
    calculate_var_cvar,
    create_monte_carlo_simulator,
    max_drawdown,
)
from quantcore.parallel import ExecutionOptions


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def simulator():
    """Seeded simulator."""
    return MonteCarloSimulator(seed=42)


@pytest.fixture
def benchmark_contract():
    """Out-of-the-money one-month digital."""
    return {"s0": 100.0, "k": 105.0, "mu": 0.05, "sigma": 0.20, "t": 30 / 365}


# ============================================================================
# PARAMETER TESTS
# ============================================================================

class TestParams:
    """Tests for parameter validation."""

    def test_dt(self):
        """Test step size."""
        assert GBMParams(100, 0.05, 0.2, 1.0, n_steps=4).dt == 0.25

    @pytest.mark.parametrize("kwargs", [
        {"s0": 0.0},
        {"sigma": -0.1},
        {"t": 0.0},
        {"n_steps": 0},
    ])
    def test_invalid_gbm(self, kwargs):
        """Test rejected GBM parameters."""
        base = {"s0": 100.0, "mu": 0.05, "sigma": 0.2, "t": 1.0}
        base.update(kwargs)
        with pytest.raises(ValueError):
            GBMParams(**base)

    def test_jump_compensation(self):
        """Test lambda * (exp(mu_J + sigma_J^2 / 2) - 1)."""
        params = JumpDiffusionParams(100, 0.05, 0.2, 1.0, jump_intensity=2.0, jump_mean=-0.05, jump_std=0.1)
        assert params.jump_compensation == pytest.approx(2.0 * (math.exp(-0.05 + 0.005) - 1))

    def test_negative_intensity(self):
        """Test rejected jump intensity."""
        with pytest.raises(ValueError, match="intensity"):
            JumpDiffusionParams(100, 0.05, 0.2, 1.0, jump_intensity=-1.0)


# ============================================================================
# PATH SIMULATION TESTS
# ============================================================================

class TestPathSimulation:
    """Tests for GBM and jump-diffusion paths."""

    def test_gbm_shape(self, simulator):
        """Test path array shape and starting value."""
        result = simulator.simulate_gbm(GBMParams(100, 0.05, 0.2, 1.0, n_steps=10, n_paths=500))
        assert result.paths.shape == (500, 11)
        assert np.all(result.paths[:, 0] == 100)
        assert result.n_paths == 500
        np.testing.assert_array_equal(result.paths[:, -1], result.terminal_values)

    def test_gbm_mean_terminal_value(self, simulator):
        """Test mean terminal value within 2% of S0 * exp(mu * T)."""
        params = GBMParams(s0=100, mu=0.05, sigma=0.20, t=1.0, n_steps=252, n_paths=50_000)
        result = simulator.simulate_gbm(params, keep_paths=False)
        assert result.paths is None
        assert result.mean == pytest.approx(100 * math.exp(0.05), rel=0.02)

    def test_percentiles_ordered(self, simulator):
        """Test percentiles are non-decreasing and use floor(n * q)."""
        result = simulator.simulate_gbm(GBMParams(100, 0.05, 0.2, 1.0, n_steps=5, n_paths=1000))
        levels = sorted(result.percentiles)
        values = [result.percentiles[level] for level in levels]
        assert values == sorted(values)
        assert result.percentiles[50] == np.sort(result.terminal_values)[500]

    def test_paths_read_only(self, simulator):
        """Test PathSet arrays cannot be mutated."""
        result = simulator.simulate_gbm(GBMParams(100, 0.05, 0.2, 1.0, n_steps=5, n_paths=10))
        with pytest.raises(ValueError):
            result.terminal_values[0] = 0.0

    def test_antithetic_symmetry(self, simulator):
        """Test mirrored pairs make the mean log-return exact."""
        params = GBMParams(100, 0.05, 0.2, 1.0, n_steps=20, n_paths=1000)
        result = simulator.simulate_gbm_antithetic(params)
        log_returns = np.log(result.terminal_values / 100)
        assert log_returns.mean() == pytest.approx((0.05 - 0.02) * 1.0, abs=1e-10)

    def test_antithetic_odd_count(self, simulator):
        """Test an odd path count is honored."""
        result = simulator.simulate_gbm_antithetic(GBMParams(100, 0.0, 0.2, 1.0, n_steps=3, n_paths=7))
        assert result.n_paths == 7

    def test_jump_diffusion_compensated_mean(self, simulator):
        """Test compensated drift keeps E[S_T] = S0 * exp(mu * T)."""
        params = JumpDiffusionParams(
            100, 0.05, 0.2, 1.0, n_steps=50, n_paths=20_000,
            jump_intensity=1.0, jump_mean=-0.05, jump_std=0.1,
        )
        result = simulator.simulate_jump_diffusion(params, keep_paths=False)
        assert result.mean == pytest.approx(100 * math.exp(0.05), rel=0.015)

    def test_jump_diffusion_fatter_tails(self):
        """Test jumps widen the terminal distribution."""
        base = dict(s0=100, mu=0.05, sigma=0.2, t=1.0, n_steps=50, n_paths=20_000)
        gbm = MonteCarloSimulator(seed=1).simulate_gbm(GBMParams(**base), keep_paths=False)
        jumps = MonteCarloSimulator(seed=1).simulate_jump_diffusion(
            JumpDiffusionParams(**base, jump_intensity=3.0, jump_mean=-0.1, jump_std=0.15),
            keep_paths=False,
        )
        assert jumps.std > gbm.std

    def test_reproducible(self):
        """Test equal seeds give equal paths."""
        params = GBMParams(100, 0.05, 0.2, 1.0, n_steps=5, n_paths=100)
        a = MonteCarloSimulator(seed=9).simulate_gbm(params)
        b = MonteCarloSimulator(seed=9).simulate_gbm(params)
        np.testing.assert_array_equal(a.paths, b.paths)

    def test_to_dict(self, simulator):
        """Test serialization."""
        data = simulator.simulate_gbm(GBMParams(100, 0.05, 0.2, 1.0, n_steps=5, n_paths=100)).to_dict()
        assert data["n_paths"] == 100
        assert set(data["percentiles"]) == {1, 5, 25, 50, 75, 95, 99}


# ============================================================================
# BINARY PRICING TESTS
# ============================================================================

class TestBinaryPricing:
    """Tests for binary contract estimators."""

    def test_black_scholes_reference(self, benchmark_contract):
        """Test the closed-form benchmark value."""
        assert black_scholes_digital(**benchmark_contract) == pytest.approx(0.2096, abs=5e-4)

    def test_black_scholes_zero_volatility(self):
        """Test the deterministic limit."""
        assert black_scholes_digital(100, 95, 0.0, 0.0, 1.0) == 1.0
        assert black_scholes_digital(100, 105, 0.0, 0.0, 1.0) == 0.0

    def test_crude_matches_closed_form(self, simulator, benchmark_contract):
        """Test crude estimate against N(d2)."""
        result = simulator.price_binary_contract(**benchmark_contract, n_paths=100_000)
        reference = black_scholes_digital(**benchmark_contract)
        assert abs(result.estimate - reference) < 0.01
        assert result.ci95[0] <= result.estimate <= result.ci95[1]
        assert result.variance_reduction_factor == 1.0

    def test_antithetic_matches_closed_form(self, simulator, benchmark_contract):
        """Test antithetic estimate against N(d2)."""
        result = simulator.price_binary_antithetic(**benchmark_contract, n_paths=100_000)
        assert abs(result.estimate - black_scholes_digital(**benchmark_contract)) < 0.01
        assert result.sample_count == 100_000

    def test_stratified_matches_closed_form(self, simulator, benchmark_contract):
        """Test stratified estimate against N(d2)."""
        result = simulator.price_binary_stratified(**benchmark_contract, n_strata=10, n_paths=100_000)
        assert abs(result.estimate - black_scholes_digital(**benchmark_contract)) < 0.005

    def test_variance_ordering(self, simulator, benchmark_contract):
        """Test antithetic and stratified standard errors do not exceed crude."""
        n = 100_000
        crude = simulator.price_binary_contract(**benchmark_contract, n_paths=n)
        antithetic = simulator.price_binary_antithetic(**benchmark_contract, n_paths=n)
        stratified = simulator.price_binary_stratified(**benchmark_contract, n_strata=10, n_paths=n)

        assert antithetic.standard_error <= crude.standard_error
        assert stratified.standard_error <= crude.standard_error
        assert antithetic.variance_reduction_factor > 1.0
        assert stratified.variance_reduction_factor > 1.0

    def test_at_the_money_converges(self, simulator):
        """Test S0 = K = 100, sigma 0.2, T = 1 prices near 0.46."""
        result = simulator.price_binary_stratified(100, 100, 0.0, 0.20, 1.0, n_strata=10, n_paths=100_000)
        assert 0.455 <= result.estimate <= 0.50
        assert result.estimate == pytest.approx(black_scholes_digital(100, 100, 0.0, 0.20, 1.0), abs=0.005)

    def test_stratified_needs_two_paths_per_stratum(self, simulator):
        """Test stratum size validation."""
        with pytest.raises(ValueError, match="2 paths per stratum"):
            simulator.price_binary_stratified(100, 100, 0.0, 0.2, 1.0, n_strata=10, n_paths=15)

    def test_invalid_contract(self, simulator):
        """Test strike validation."""
        with pytest.raises(ValueError, match="strike must be positive"):
            simulator.price_binary_contract(100, 0, 0.0, 0.2, 1.0)

    def test_worker_count_invariance(self, benchmark_contract):
        """Test identical results for one or many workers."""
        single = MonteCarloSimulator(seed=5, execution=ExecutionOptions(n_workers=1, chunk_size=10_000))
        multi = MonteCarloSimulator(seed=5, execution=ExecutionOptions(n_workers=4, chunk_size=10_000))
        a = single.price_binary_contract(**benchmark_contract, n_paths=50_000)
        b = multi.price_binary_contract(**benchmark_contract, n_paths=50_000)
        assert a.estimate == b.estimate

    def test_cancellation(self, simulator, benchmark_contract):
        """Test a set cancel event aborts pricing."""
        event = threading.Event()
        event.set()
        with pytest.raises(SimulationCancelledError):
            simulator.price_binary_contract(**benchmark_contract, n_paths=1000, cancel_event=event)

    def test_stratified_cancellation(self, simulator, benchmark_contract):
        """Test a set cancel event stops stratified pricing before the first stratum."""
        event = threading.Event()
        event.set()
        with pytest.raises(SimulationCancelledError) as exc_info:
            simulator.price_binary_stratified(**benchmark_contract, n_strata=10, n_paths=1000, cancel_event=event)
        assert exc_info.value.operation == "price_binary_stratified"
        assert exc_info.value.completed_chunks == 0
        assert exc_info.value.total_chunks == 10

    def test_stratified_deadline_not_reached(self, benchmark_contract):
        """Test a generous deadline leaves the stratified estimate unchanged."""
        plain = MonteCarloSimulator(seed=9).price_binary_stratified(**benchmark_contract, n_paths=2000)
        timed = MonteCarloSimulator(seed=9).price_binary_stratified(**benchmark_contract, n_paths=2000, deadline=60.0)
        assert plain.estimate == timed.estimate


# ============================================================================
# RISK METRIC TESTS
# ============================================================================

class TestRiskMetrics:
    """Tests for VaR, CVaR and drawdown."""

    def test_var_cvar_index(self):
        """Test index floor(n * (1 - confidence))."""
        returns = np.linspace(-0.10, 0.09, 20)
        var, cvar = calculate_var_cvar(returns, 0.95)
        assert var == pytest.approx(-returns[1])
        assert cvar == pytest.approx(-returns[:2].mean())
        assert cvar >= var

    def test_var_cvar_validation(self):
        """Test invalid confidence."""
        with pytest.raises(ValueError, match="Confidence"):
            calculate_var_cvar([0.1, 0.2], 1.5)

    def test_max_drawdown(self):
        """Test the largest peak-to-trough drop."""
        paths = np.array([[100.0, 120.0, 90.0, 110.0], [100.0, 95.0, 100.0, 105.0]])
        assert max_drawdown(paths) == pytest.approx(0.25)

    def test_metrics_from_array(self):
        """Test metrics from a raw path array."""
        paths = np.array([[100.0, 120.0, 90.0, 110.0], [100.0, 95.0, 100.0, 105.0]])
        metrics = calculate_risk_metrics(paths)
        assert metrics.max_drawdown == pytest.approx(0.25)
        assert metrics.mean_return == pytest.approx(0.075)
        assert metrics.volatility == pytest.approx(np.std([0.10, 0.05], ddof=1))

    def test_metrics_from_path_set(self, simulator):
        """Test metrics from simulated paths."""
        result = simulator.simulate_gbm(GBMParams(100, 0.05, 0.2, 1.0, n_steps=50, n_paths=5000))
        metrics = simulator.calculate_risk_metrics(result)
        assert metrics.var99 >= metrics.var95
        assert metrics.cvar99 >= metrics.var99
        assert 0 < metrics.max_drawdown < 1
        assert metrics.volatility == pytest.approx(0.2, rel=0.1)

    def test_metrics_need_paths(self, simulator):
        """Test terminal-only PathSets are rejected."""
        result = simulator.simulate_gbm(GBMParams(100, 0.05, 0.2, 1.0, n_steps=5, n_paths=10), keep_paths=False)
        with pytest.raises(ValueError, match="keep_paths"):
            calculate_risk_metrics(result)


class TestFactory:
    """Tests for the simulator factory."""

    def test_create_from_config(self):
        """Test execution options from a config mapping."""
        simulator = create_monte_carlo_simulator({"n_workers": 3, "chunk_size": 1000}, seed=1)
        assert simulator.execution.n_workers == 3
        assert simulator.execution.chunk_size == 1000

    def test_reset_reseeds(self):
        """Test reset with a seed reproduces draws."""
        simulator = MonteCarloSimulator(seed=4)
        params = GBMParams(100, 0.05, 0.2, 1.0, n_steps=3, n_paths=10)
        first = simulator.simulate_gbm(params).terminal_values
        simulator.reset(seed=4)
        np.testing.assert_array_equal(simulator.simulate_gbm(params).terminal_values, first)
