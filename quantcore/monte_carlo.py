"""
Monte Carlo Path Simulation Module
==================================

Path simulation, binary-contract pricing and path-derived risk metrics.

Features:
- Geometric Brownian motion (plain and antithetic)
- Merton jump diffusion with compensated drift
- Binary contract pricing: crude, antithetic, stratified
- Closed-form Black-Scholes digital benchmark
- VaR/CVaR, max drawdown, volatility, Sharpe/Sortino from a PathSet
- Chunked multi-worker execution with deadline and cancellation

Theory:
    GBM step:        S_{t+1} = S_t exp((mu - sigma^2/2) dt + sigma sqrt(dt) Z)
    Jump diffusion:  adds sum of N ~ Poisson(lambda dt) log-jumps J ~ N(mu_J, sigma_J^2)
                     with drift compensated by lambda (exp(mu_J + sigma_J^2/2) - 1)
    Digital price:   P(S_T > K) = N(d2)
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, replace
from typing import Any

import numpy as np
from scipy.stats import norm

from quantcore.logging_config import get_performance_logger
from quantcore.numeric import EstimateResult
from quantcore.parallel import ExecutionOptions, RunGuard, run_partitioned
from quantcore.random_variates import VariateGenerator

logger = logging.getLogger(__name__)
perf_logger = get_performance_logger(__name__)

PERCENTILE_LEVELS = (1, 5, 25, 50, 75, 95, 99)


# ============================================================================
# PARAMETERS
# ============================================================================

@dataclass(frozen=True)
class GBMParams:
    """Geometric Brownian motion parameters (annualized)."""
    s0: float
    mu: float
    sigma: float
    t: float  # Horizon in years
    n_steps: int = 252
    n_paths: int = 10_000

    def __post_init__(self):
        if self.s0 <= 0:
            raise ValueError(f"Initial value must be positive, got {self.s0}")
        if self.sigma < 0:
            raise ValueError(f"Volatility must be non-negative, got {self.sigma}")
        if self.t <= 0:
            raise ValueError(f"Horizon must be positive, got {self.t}")
        if self.n_steps < 1 or self.n_paths < 1:
            raise ValueError("Need at least 1 step and 1 path")

    @property
    def dt(self) -> float:
        return self.t / self.n_steps


@dataclass(frozen=True)
class JumpDiffusionParams(GBMParams):
    """Merton jump diffusion: GBM plus compound Poisson log-normal jumps."""
    jump_intensity: float = 1.0  # Expected jumps per year (lambda)
    jump_mean: float = -0.05  # Mean log-jump
    jump_std: float = 0.1  # Log-jump std

    def __post_init__(self):
        super().__post_init__()
        if self.jump_intensity < 0:
            raise ValueError(f"Jump intensity must be non-negative, got {self.jump_intensity}")
        if self.jump_std < 0:
            raise ValueError(f"Jump std must be non-negative, got {self.jump_std}")

    @property
    def jump_compensation(self) -> float:
        """lambda * E[e^J - 1], subtracted from the drift."""
        return self.jump_intensity * (math.exp(self.jump_mean + 0.5 * self.jump_std ** 2) - 1)


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True, eq=False)
class PathSet:
    """Simulated paths with terminal-value statistics."""
    paths: np.ndarray | None  # [n_paths, n_steps + 1]; None when not retained
    terminal_values: np.ndarray
    mean: float
    std: float
    percentiles: dict[int, float]

    @classmethod
    def from_paths(cls, paths: np.ndarray | None, terminal_values: np.ndarray) -> "PathSet":
        terminal_values = np.asarray(terminal_values, dtype=float)
        n = terminal_values.size
        sorted_values = np.sort(terminal_values)
        percentiles = {
            level: float(sorted_values[min(int(math.floor(n * level / 100)), n - 1)])
            for level in PERCENTILE_LEVELS
        }
        if paths is not None:
            paths.setflags(write=False)
        terminal_values.setflags(write=False)
        return cls(
            paths=paths,
            terminal_values=terminal_values,
            mean=float(terminal_values.mean()),
            std=float(terminal_values.std()),
            percentiles=percentiles,
        )

    @property
    def n_paths(self) -> int:
        return int(self.terminal_values.size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "n_paths": self.n_paths,
            "mean": self.mean,
            "std": self.std,
            "percentiles": dict(self.percentiles),
        }


@dataclass(frozen=True)
class RiskMetrics:
    """Risk metrics derived from simulated paths."""
    var95: float
    var99: float
    cvar95: float
    cvar99: float
    max_drawdown: float
    volatility: float
    mean_return: float
    sharpe: float
    sortino: float

    def to_dict(self) -> dict[str, float]:
        return {
            "var95": self.var95,
            "var99": self.var99,
            "cvar95": self.cvar95,
            "cvar99": self.cvar99,
            "max_drawdown": self.max_drawdown,
            "volatility": self.volatility,
            "mean_return": self.mean_return,
            "sharpe": self.sharpe,
            "sortino": self.sortino,
        }


# ============================================================================
# STANDALONE RISK FUNCTIONS
# ============================================================================

def calculate_var_cvar(returns, confidence: float = 0.95) -> tuple[float, float]:
    """
    Historical VaR and CVaR of a return sample, as positive losses.

    VaR is the negated return at sorted index floor(n * (1 - confidence));
    CVaR is the negated mean of every return up to and including that index.
    """
    if not 0 < confidence < 1:
        raise ValueError(f"Confidence must be in (0, 1), got {confidence}")
    sorted_returns = np.sort(np.asarray(returns, dtype=float))
    n = sorted_returns.size
    if n == 0:
        raise ValueError("Need at least 1 return for VaR")

    idx = min(int(math.floor(n * (1 - confidence))), n - 1)
    var = -float(sorted_returns[idx])
    cvar = -float(sorted_returns[:idx + 1].mean())
    return var, cvar


def max_drawdown(paths: np.ndarray) -> float:
    """Largest peak-to-trough fractional drop within any single path."""
    paths = np.atleast_2d(np.asarray(paths, dtype=float))
    running_peak = np.maximum.accumulate(paths, axis=1)
    drawdowns = (running_peak - paths) / running_peak
    return float(drawdowns.max())


def calculate_risk_metrics(path_set: PathSet | np.ndarray) -> RiskMetrics:
    """Compute risk metrics from a PathSet or a raw [n_paths, n_steps + 1] array."""
    paths = path_set.paths if isinstance(path_set, PathSet) else np.asarray(path_set, dtype=float)
    if paths is None:
        raise ValueError("PathSet was simulated with keep_paths=False; drawdown needs full paths")
    paths = np.atleast_2d(paths)

    returns = (paths[:, -1] - paths[:, 0]) / paths[:, 0]
    var95, cvar95 = calculate_var_cvar(returns, 0.95)
    var99, cvar99 = calculate_var_cvar(returns, 0.99)

    mean_return = float(returns.mean())
    volatility = float(returns.std(ddof=1)) if returns.size > 1 else 0.0
    downside = float(np.sqrt(np.mean(np.minimum(returns, 0.0) ** 2)))

    return RiskMetrics(
        var95=var95,
        var99=var99,
        cvar95=cvar95,
        cvar99=cvar99,
        max_drawdown=max_drawdown(paths),
        volatility=volatility,
        mean_return=mean_return,
        sharpe=mean_return / volatility if volatility > 0 else 0.0,
        sortino=mean_return / downside if downside > 0 else 0.0,
    )


def black_scholes_digital(s0: float, k: float, mu: float, sigma: float, t: float) -> float:
    """Closed-form P(S_T > K) under GBM: N(d2)."""
    if sigma <= 0 or t <= 0:
        drift_value = s0 * math.exp(mu * t)
        return 1.0 if drift_value > k else 0.0
    d2 = (math.log(s0 / k) + (mu - 0.5 * sigma ** 2) * t) / (sigma * math.sqrt(t))
    return float(norm.cdf(d2))


# ============================================================================
# SIMULATOR
# ============================================================================

class MonteCarloSimulator:
    """
    Monte Carlo path simulator and binary-contract pricer.

    Every draw comes from the injected VariateGenerator. Large path counts
    are split into chunks (see quantcore.parallel); results depend on the
    seed and chunk size but not on the number of workers.
    """

    def __init__(
        self,
        variates: VariateGenerator | None = None,
        seed: int | None = None,
        execution: ExecutionOptions | None = None,
    ):
        self.variates = variates or VariateGenerator(seed)
        self.execution = execution or ExecutionOptions()

    def _options(
        self,
        deadline: float | None,
        cancel_event: threading.Event | None,
    ) -> ExecutionOptions:
        if deadline is None and cancel_event is None:
            return self.execution
        return replace(
            self.execution,
            deadline=deadline if deadline is not None else self.execution.deadline,
            cancel_event=cancel_event if cancel_event is not None else self.execution.cancel_event,
        )

    # =========================================================================
    # PATH SIMULATION
    # =========================================================================

    @staticmethod
    def _paths_from_increments(s0: float, log_increments: np.ndarray, keep_paths: bool):
        if not keep_paths:
            return None, s0 * np.exp(log_increments.sum(axis=1))
        log_paths = np.cumsum(log_increments, axis=1)
        paths = np.empty((log_increments.shape[0], log_increments.shape[1] + 1))
        paths[:, 0] = s0
        paths[:, 1:] = s0 * np.exp(log_paths)
        return paths, paths[:, -1].copy()

    def _collect(self, chunks: list[tuple[np.ndarray | None, np.ndarray]], keep_paths: bool) -> PathSet:
        terminal = np.concatenate([c[1] for c in chunks])
        paths = np.vstack([c[0] for c in chunks]) if keep_paths else None
        return PathSet.from_paths(paths, terminal)

    def simulate_gbm(
        self,
        params: GBMParams,
        keep_paths: bool = True,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PathSet:
        """Simulate GBM paths."""
        drift = (params.mu - 0.5 * params.sigma ** 2) * params.dt
        vol = params.sigma * math.sqrt(params.dt)

        def chunk(gen: VariateGenerator, n: int):
            z = gen.standard_normal((n, params.n_steps))
            return self._paths_from_increments(params.s0, drift + vol * z, keep_paths)

        with perf_logger.measure("simulate_gbm", n_paths=params.n_paths, n_steps=params.n_steps):
            chunks = run_partitioned(
                chunk, params.n_paths, self.variates,
                self._options(deadline, cancel_event), "simulate_gbm",
            )
            return self._collect(chunks, keep_paths)

    def simulate_gbm_antithetic(
        self,
        params: GBMParams,
        keep_paths: bool = True,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PathSet:
        """
        Simulate GBM with antithetic pairs.

        Paths are interleaved: row 2i uses Z, row 2i + 1 uses -Z. An odd
        path count drops the final mirrored path.
        """
        drift = (params.mu - 0.5 * params.sigma ** 2) * params.dt
        vol = params.sigma * math.sqrt(params.dt)

        def chunk(gen: VariateGenerator, n: int):
            n_pairs = (n + 1) // 2
            z = gen.standard_normal((n_pairs, params.n_steps))
            paired = np.empty((2 * n_pairs, params.n_steps))
            paired[0::2] = z
            paired[1::2] = -z
            return self._paths_from_increments(params.s0, drift + vol * paired[:n], keep_paths)

        with perf_logger.measure("simulate_gbm_antithetic", n_paths=params.n_paths):
            chunks = run_partitioned(
                chunk, params.n_paths, self.variates,
                self._options(deadline, cancel_event), "simulate_gbm_antithetic",
            )
            return self._collect(chunks, keep_paths)

    def simulate_jump_diffusion(
        self,
        params: JumpDiffusionParams,
        keep_paths: bool = True,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PathSet:
        """
        Simulate Merton jump-diffusion paths.

        The sum of N normal log-jumps is drawn directly as
        N(N mu_J, N sigma_J^2) given the Poisson count N.
        """
        dt = params.dt
        drift = (params.mu - params.jump_compensation - 0.5 * params.sigma ** 2) * dt
        vol = params.sigma * math.sqrt(dt)
        jump_rate = params.jump_intensity * dt

        def chunk(gen: VariateGenerator, n: int):
            shape = (n, params.n_steps)
            diffusion = drift + vol * gen.standard_normal(shape)
            n_jumps = gen.poisson(jump_rate, shape)
            jumps = (
                n_jumps * params.jump_mean
                + np.sqrt(n_jumps) * params.jump_std * gen.standard_normal(shape)
            )
            return self._paths_from_increments(params.s0, diffusion + jumps, keep_paths)

        with perf_logger.measure("simulate_jump_diffusion", n_paths=params.n_paths):
            chunks = run_partitioned(
                chunk, params.n_paths, self.variates,
                self._options(deadline, cancel_event), "simulate_jump_diffusion",
            )
            return self._collect(chunks, keep_paths)

    # =========================================================================
    # BINARY CONTRACT PRICING
    # =========================================================================

    @staticmethod
    def _terminal(s0: float, mu: float, sigma: float, t: float, z: np.ndarray) -> np.ndarray:
        return s0 * np.exp((mu - 0.5 * sigma ** 2) * t + sigma * math.sqrt(t) * z)

    @staticmethod
    def _validate_contract(s0: float, k: float, sigma: float, t: float, n_paths: int) -> None:
        if s0 <= 0 or k <= 0:
            raise ValueError("Initial value and strike must be positive")
        if sigma < 0 or t <= 0:
            raise ValueError("Volatility must be non-negative and horizon positive")
        if n_paths < 2:
            raise ValueError(f"Need at least 2 paths, got {n_paths}")

    def price_binary_contract(
        self,
        s0: float,
        k: float,
        mu: float,
        sigma: float,
        t: float,
        n_paths: int = 100_000,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> EstimateResult:
        """Crude Monte Carlo estimate of P(S_T > K)."""
        self._validate_contract(s0, k, sigma, t, n_paths)

        def chunk(gen: VariateGenerator, n: int):
            hits = self._terminal(s0, mu, sigma, t, gen.standard_normal(n)) > k
            return int(hits.sum())

        with perf_logger.measure("price_binary_contract", n_paths=n_paths):
            hits = sum(run_partitioned(
                chunk, n_paths, self.variates,
                self._options(deadline, cancel_event), "price_binary_contract",
            ))

        estimate = hits / n_paths
        standard_error = math.sqrt(estimate * (1 - estimate) / n_paths)
        return EstimateResult.from_mean(estimate, standard_error, n_paths, variance_reduction_factor=1.0)

    def price_binary_antithetic(
        self,
        s0: float,
        k: float,
        mu: float,
        sigma: float,
        t: float,
        n_paths: int = 100_000,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> EstimateResult:
        """
        Antithetic estimate of P(S_T > K).

        Uses n_paths // 2 pairs (Z, -Z); the pair-averaged payoff is the
        sampling unit. The variance reduction factor compares the crude
        estimator variance at the same path count to this estimator's.
        """
        self._validate_contract(s0, k, sigma, t, n_paths)
        n_pairs = n_paths // 2

        def chunk(gen: VariateGenerator, n: int):
            z = gen.standard_normal(n)
            up = self._terminal(s0, mu, sigma, t, z) > k
            down = self._terminal(s0, mu, sigma, t, -z) > k
            averaged = (up.astype(float) + down.astype(float)) / 2
            return float(averaged.sum()), float((averaged ** 2).sum())

        with perf_logger.measure("price_binary_antithetic", n_paths=n_paths):
            sums = run_partitioned(
                chunk, n_pairs, self.variates,
                self._options(deadline, cancel_event), "price_binary_antithetic",
            )

        total = sum(s for s, _ in sums)
        total_sq = sum(sq for _, sq in sums)
        estimate = total / n_pairs
        pair_variance = max(total_sq / n_pairs - estimate ** 2, 0.0)
        standard_error = math.sqrt(pair_variance / n_pairs)

        return EstimateResult.from_mean(
            estimate, standard_error, 2 * n_pairs,
            variance_reduction_factor=self._variance_reduction(estimate, 2 * n_pairs, standard_error),
        )

    def price_binary_stratified(
        self,
        s0: float,
        k: float,
        mu: float,
        sigma: float,
        t: float,
        n_strata: int = 10,
        n_paths: int = 100_000,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> EstimateResult:
        """
        Stratified estimate of P(S_T > K).

        The unit interval is cut into n_strata equal-probability bins; each
        bin gets n_paths // n_strata uniforms mapped through the normal
        quantile. The estimate is the mean of stratum means and the
        standard error pools within-stratum variances:
        SE^2 = (1 / L^2) sum_h s_h^2 / n_h.

        Strata are drawn in order from one stream; the deadline and
        cancel_event are checked before each stratum.
        """
        self._validate_contract(s0, k, sigma, t, n_paths)
        if n_strata < 1:
            raise ValueError(f"Need at least 1 stratum, got {n_strata}")
        per_stratum = n_paths // n_strata
        if per_stratum < 2:
            raise ValueError(f"Need at least 2 paths per stratum, got {per_stratum}")

        guard = RunGuard("price_binary_stratified", n_strata, self._options(deadline, cancel_event))
        rows = []
        with perf_logger.measure("price_binary_stratified", n_paths=n_paths, n_strata=n_strata):
            for stratum in range(n_strata):
                guard.check()
                u = (stratum + self.variates.open_uniform(per_stratum)) / n_strata
                u = np.clip(u, 1e-12, 1 - 1e-12)
                rows.append((self._terminal(s0, mu, sigma, t, norm.ppf(u)) > k).astype(float))
                guard.mark_done()
        payoffs = np.vstack(rows)

        stratum_means = payoffs.mean(axis=1)
        stratum_vars = payoffs.var(axis=1, ddof=1)
        estimate = float(stratum_means.mean())
        standard_error = math.sqrt(float(stratum_vars.sum() / per_stratum) / n_strata ** 2)
        sample_count = per_stratum * n_strata

        return EstimateResult.from_mean(
            estimate, standard_error, sample_count,
            variance_reduction_factor=self._variance_reduction(estimate, sample_count, standard_error),
        )

    @staticmethod
    def _variance_reduction(estimate: float, n_paths: int, standard_error: float) -> float | None:
        crude_variance = estimate * (1 - estimate) / n_paths
        if standard_error <= 0:
            return None
        return crude_variance / standard_error ** 2

    def black_scholes_digital(self, s0: float, k: float, mu: float, sigma: float, t: float) -> float:
        return black_scholes_digital(s0, k, mu, sigma, t)

    # =========================================================================
    # RISK
    # =========================================================================

    def calculate_var_cvar(self, returns, confidence: float = 0.95) -> tuple[float, float]:
        return calculate_var_cvar(returns, confidence)

    def calculate_risk_metrics(self, path_set: PathSet | np.ndarray) -> RiskMetrics:
        metrics = calculate_risk_metrics(path_set)
        logger.debug(
            f"Risk metrics: VaR95={metrics.var95:.4f} CVaR95={metrics.cvar95:.4f} "
            f"maxDD={metrics.max_drawdown:.4f}"
        )
        return metrics

    def reset(self, seed: int | None = None) -> None:
        """Reseed the simulator's generator."""
        self.variates = VariateGenerator(seed)


def create_monte_carlo_simulator(config: dict | None = None, seed: int | None = None) -> MonteCarloSimulator:
    """
    Factory for a simulator from a config mapping.

    Recognized keys: n_workers, chunk_size, deadline.
    """
    config = config or {}
    execution = ExecutionOptions(
        n_workers=int(config.get("n_workers", 1)),
        chunk_size=int(config.get("chunk_size", 25_000)),
        deadline=config.get("deadline"),
    )
    return MonteCarloSimulator(seed=seed, execution=execution)
