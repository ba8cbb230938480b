"""
Regime Detection Module
=======================

Four-state Gaussian Hidden Markov Model over one-step returns.

Features:
- Online forward filtering (predict with the transition matrix, then
  reweight by emission likelihood) with arg-max regime and its duration
- Viterbi decoding of the most likely regime path over a closed window
- Simplified Baum-Welch re-estimation of emissions and transitions
- Rule-based baseline detector for short histories
- Regime to strategy-parameter lookup

Theory:
    Filter:   b_t(j) ∝ N(r_t; mu_j, sigma_j) * sum_i b_{t-1}(i) A_ij
    Viterbi:  max-product recursion in log space with back-pointers
    Training: gamma from forward-backward; mu_j, sigma_j as gamma-weighted
              moments (variance floor added); transitions from xi

By default xi_t(i, j) is approximated as gamma_t(i) * gamma_{t+1}(j),
row-normalized. That drops the transition and emission terms of the exact
forward-backward cross term, so it is not a true EM step; it is kept as
the default for continuity with existing calibrations and flagged for
review. xi_mode="exact" uses the full cross term.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

import numpy as np
from scipy.special import logsumexp

from quantcore.logging_config import timed
from quantcore.numeric import gaussian_logpdf

logger = logging.getLogger(__name__)

LOG_FLOOR = 1e-300
TRADING_DAYS_PER_YEAR = 252


class MarketRegime(str, Enum):
    """Hidden market regimes, in state-index order."""
    TRENDING_UP = "trending_up"
    TRENDING_DOWN = "trending_down"
    RANGING = "ranging"
    VOLATILE = "volatile"


REGIMES: list[MarketRegime] = list(MarketRegime)
N_REGIMES = len(REGIMES)


class XiMode(str, Enum):
    """How Baum-Welch estimates pairwise transition statistics."""
    APPROXIMATE = "approximate"  # gamma_t(i) * gamma_{t+1}(j)
    EXACT = "exact"  # alpha_t(i) A_ij b_j(r_{t+1}) beta_{t+1}(j)


def _default_transitions() -> np.ndarray:
    return np.array([
        # UP    DOWN   RANGE  VOL
        [0.90, 0.02, 0.05, 0.03],  # From TRENDING_UP
        [0.02, 0.90, 0.05, 0.03],  # From TRENDING_DOWN
        [0.10, 0.10, 0.75, 0.05],  # From RANGING
        [0.10, 0.10, 0.15, 0.65],  # From VOLATILE
    ])


@dataclass
class HMMParams:
    """Transition matrix and per-regime Gaussian emissions (daily returns)."""
    transition_matrix: np.ndarray = field(default_factory=_default_transitions)
    emission_means: np.ndarray = field(
        default_factory=lambda: np.array([0.002, -0.002, 0.0, 0.0])
    )
    emission_stds: np.ndarray = field(
        default_factory=lambda: np.array([0.01, 0.01, 0.008, 0.025])
    )
    initial_probs: np.ndarray = field(
        default_factory=lambda: np.full(N_REGIMES, 1.0 / N_REGIMES)
    )

    def __post_init__(self):
        self.transition_matrix = np.asarray(self.transition_matrix, dtype=float)
        self.emission_means = np.asarray(self.emission_means, dtype=float)
        self.emission_stds = np.asarray(self.emission_stds, dtype=float)
        self.initial_probs = np.asarray(self.initial_probs, dtype=float)
        self.validate()

    def validate(self) -> None:
        if self.transition_matrix.shape != (N_REGIMES, N_REGIMES):
            raise ValueError(f"Transition matrix must be {N_REGIMES}x{N_REGIMES}")
        if np.any(self.transition_matrix < 0) or not np.allclose(self.transition_matrix.sum(axis=1), 1.0):
            raise ValueError("Transition matrix rows must be non-negative and sum to 1")
        if self.emission_means.shape != (N_REGIMES,) or self.emission_stds.shape != (N_REGIMES,):
            raise ValueError(f"Need {N_REGIMES} emission means and stds")
        if np.any(self.emission_stds <= 0):
            raise ValueError("Emission stds must be positive")
        if self.initial_probs.shape != (N_REGIMES,) or not np.isclose(self.initial_probs.sum(), 1.0):
            raise ValueError("Initial probabilities must sum to 1")

    def copy(self) -> "HMMParams":
        return HMMParams(
            transition_matrix=self.transition_matrix.copy(),
            emission_means=self.emission_means.copy(),
            emission_stds=self.emission_stds.copy(),
            initial_probs=self.initial_probs.copy(),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "HMMParams":
        data = data or {}
        defaults = cls()
        return cls(
            transition_matrix=data.get("transition_matrix", defaults.transition_matrix),
            emission_means=data.get("emission_means", defaults.emission_means),
            emission_stds=data.get("emission_stds", defaults.emission_stds),
            initial_probs=data.get("initial_probs", defaults.initial_probs),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "transition_matrix": self.transition_matrix.tolist(),
            "emission_means": self.emission_means.tolist(),
            "emission_stds": self.emission_stds.tolist(),
            "initial_probs": self.initial_probs.tolist(),
        }


@dataclass(frozen=True)
class RegimeState:
    """Current regime belief."""
    regime: MarketRegime
    probability: float
    transition_probs: dict[MarketRegime, float]
    duration: int
    state_probs: dict[MarketRegime, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "regime": self.regime.value,
            "probability": self.probability,
            "transition_probs": {k.value: v for k, v in self.transition_probs.items()},
            "duration": self.duration,
            "state_probs": {k.value: v for k, v in self.state_probs.items()},
        }


@dataclass(frozen=True)
class TrainingResult:
    """Outcome of Baum-Welch re-estimation."""
    n_iterations: int
    xi_mode: XiMode
    log_likelihoods: list[float]

    @property
    def final_log_likelihood(self) -> float:
        return self.log_likelihoods[-1]


def _as_regime_dict(values: np.ndarray) -> dict[MarketRegime, float]:
    return {regime: float(v) for regime, v in zip(REGIMES, values)}


# ============================================================================
# HMM
# ============================================================================

class RegimeHMM:
    """
    Regime HMM with online filtering and offline decoding/training.

    update() never trains; train() mutates params in place and leaves the
    online belief untouched.
    """

    def __init__(self, params: HMMParams | None = None, variance_floor: float = 1e-4):
        self.params = params.copy() if params is not None else HMMParams()
        self.variance_floor = variance_floor
        self._belief = self.params.initial_probs.copy()
        self._history: list[MarketRegime] = []

    def _log_emissions(self, returns: np.ndarray) -> np.ndarray:
        """[T, N] log emission densities."""
        return gaussian_logpdf(
            np.asarray(returns, dtype=float)[:, None],
            self.params.emission_means[None, :],
            self.params.emission_stds[None, :],
        )

    def _log_transitions(self) -> np.ndarray:
        return np.log(self.params.transition_matrix + LOG_FLOOR)

    # =========================================================================
    # ONLINE FILTERING
    # =========================================================================

    def update(self, ret: float) -> RegimeState:
        """Predict through the transition matrix, reweight by the new return."""
        log_predicted = logsumexp(
            np.log(self._belief + LOG_FLOOR)[:, None] + self._log_transitions(), axis=0
        )
        log_posterior = log_predicted + self._log_emissions(np.array([ret]))[0]
        self._belief = np.exp(log_posterior - logsumexp(log_posterior))

        idx = int(np.argmax(self._belief))
        regime = REGIMES[idx]
        self._history.append(regime)

        duration = 0
        for past in reversed(self._history):
            if past is not regime:
                break
            duration += 1

        return RegimeState(
            regime=regime,
            probability=float(self._belief[idx]),
            transition_probs=_as_regime_dict(self.params.transition_matrix[idx]),
            duration=duration,
            state_probs=_as_regime_dict(self._belief),
        )

    def update_batch(self, returns: Sequence[float]) -> list[RegimeState]:
        return [self.update(r) for r in returns]

    def state_probabilities(self) -> dict[MarketRegime, float]:
        return _as_regime_dict(self._belief)

    @property
    def history(self) -> list[MarketRegime]:
        return list(self._history)

    def reset(self) -> None:
        """Restore the initial belief and clear filter history. Params are kept."""
        self._belief = self.params.initial_probs.copy()
        self._history = []

    # =========================================================================
    # OFFLINE INFERENCE
    # =========================================================================

    def viterbi(self, returns: Sequence[float]) -> list[MarketRegime]:
        """Most likely regime sequence; one label per return."""
        r = np.asarray(returns, dtype=float)
        if r.size == 0:
            return []

        log_emissions = self._log_emissions(r)
        log_trans = self._log_transitions()
        n = r.size

        scores = np.log(self.params.initial_probs + LOG_FLOOR) + log_emissions[0]
        backpointer = np.zeros((n, N_REGIMES), dtype=int)
        for t in range(1, n):
            candidates = scores[:, None] + log_trans
            backpointer[t] = np.argmax(candidates, axis=0)
            scores = candidates[backpointer[t], np.arange(N_REGIMES)] + log_emissions[t]

        path = np.zeros(n, dtype=int)
        path[-1] = int(np.argmax(scores))
        for t in range(n - 2, -1, -1):
            path[t] = backpointer[t + 1, path[t + 1]]

        return [REGIMES[i] for i in path]

    def _forward_backward(self, r: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray, float]:
        log_emissions = self._log_emissions(r)
        log_trans = self._log_transitions()
        n = r.size

        log_alpha = np.zeros((n, N_REGIMES))
        log_alpha[0] = np.log(self.params.initial_probs + LOG_FLOOR) + log_emissions[0]
        for t in range(1, n):
            log_alpha[t] = logsumexp(log_alpha[t - 1][:, None] + log_trans, axis=0) + log_emissions[t]

        log_beta = np.zeros((n, N_REGIMES))
        for t in range(n - 2, -1, -1):
            log_beta[t] = logsumexp(log_trans + log_emissions[t + 1] + log_beta[t + 1], axis=1)

        return log_alpha, log_beta, log_emissions, float(logsumexp(log_alpha[-1]))

    def forward_backward(self, returns: Sequence[float]) -> np.ndarray:
        """Smoothed state probabilities gamma, shape [T, 4]."""
        r = np.asarray(returns, dtype=float)
        if r.size == 0:
            raise ValueError("Need at least 1 return")
        log_alpha, log_beta, _, _ = self._forward_backward(r)
        log_gamma = log_alpha + log_beta
        log_gamma -= logsumexp(log_gamma, axis=1, keepdims=True)
        return np.exp(log_gamma)

    def log_likelihood(self, returns: Sequence[float]) -> float:
        r = np.asarray(returns, dtype=float)
        if r.size == 0:
            raise ValueError("Need at least 1 return")
        return self._forward_backward(r)[3]

    # =========================================================================
    # TRAINING
    # =========================================================================

    @timed(threshold_ms=2000.0)
    def train(
        self,
        returns: Sequence[float],
        n_iterations: int = 10,
        xi_mode: XiMode | str = XiMode.APPROXIMATE,
    ) -> TrainingResult:
        """
        Re-estimate emissions and transitions from a return window.

        Args:
            returns: Training returns
            n_iterations: Fixed number of re-estimation passes
            xi_mode: APPROXIMATE (adjacent-gamma product) or EXACT

        Returns:
            TrainingResult with the log-likelihood before each pass
        """
        xi_mode = XiMode(xi_mode)
        r = np.asarray(returns, dtype=float)
        if r.size < 2:
            raise ValueError(f"Need at least 2 returns to train, got {r.size}")
        if n_iterations < 1:
            raise ValueError(f"n_iterations must be at least 1, got {n_iterations}")

        log_likelihoods: list[float] = []
        for _ in range(n_iterations):
            log_alpha, log_beta, log_emissions, total = self._forward_backward(r)
            log_likelihoods.append(total)

            log_gamma = log_alpha + log_beta
            log_gamma -= logsumexp(log_gamma, axis=1, keepdims=True)
            gamma = np.exp(log_gamma)

            self._update_emissions(r, gamma)
            if xi_mode is XiMode.APPROXIMATE:
                self._update_transitions_approximate(gamma)
            else:
                self._update_transitions_exact(log_alpha, log_beta, log_emissions)

        logger.info(
            f"Regime HMM trained on {r.size} returns ({n_iterations} iterations, "
            f"xi={xi_mode.value}): log-likelihood {log_likelihoods[0]:.2f} -> "
            f"{self.log_likelihood(r):.2f}"
        )
        return TrainingResult(n_iterations=n_iterations, xi_mode=xi_mode, log_likelihoods=log_likelihoods)

    def _update_emissions(self, r: np.ndarray, gamma: np.ndarray) -> None:
        weights = gamma.sum(axis=0)
        safe = np.where(weights > 0, weights, 1.0)
        means = (gamma * r[:, None]).sum(axis=0) / safe
        variances = (gamma * (r[:, None] - means) ** 2).sum(axis=0) / safe

        empty = weights <= 0
        self.params.emission_means = np.where(empty, self.params.emission_means, means)
        self.params.emission_stds = np.where(
            empty, self.params.emission_stds, np.sqrt(variances + self.variance_floor)
        )

    def _normalize_rows(self, counts: np.ndarray) -> None:
        row_sums = counts.sum(axis=1, keepdims=True)
        self.params.transition_matrix = np.where(
            row_sums > 0, counts / np.where(row_sums > 0, row_sums, 1.0), self.params.transition_matrix
        )

    def _update_transitions_approximate(self, gamma: np.ndarray) -> None:
        self._normalize_rows(gamma[:-1].T @ gamma[1:])

    def _update_transitions_exact(
        self,
        log_alpha: np.ndarray,
        log_beta: np.ndarray,
        log_emissions: np.ndarray,
    ) -> None:
        log_xi = (
            log_alpha[:-1, :, None]
            + self._log_transitions()[None, :, :]
            + (log_emissions[1:] + log_beta[1:])[:, None, :]
        )
        log_xi -= logsumexp(log_xi, axis=(1, 2), keepdims=True)
        self._normalize_rows(np.exp(log_xi).sum(axis=0))


# ============================================================================
# RULE-BASED BASELINE
# ============================================================================

HEURISTIC_TRANSITIONS: dict[MarketRegime, dict[MarketRegime, float]] = {
    MarketRegime.TRENDING_UP: {
        MarketRegime.TRENDING_UP: 0.70, MarketRegime.TRENDING_DOWN: 0.05,
        MarketRegime.RANGING: 0.15, MarketRegime.VOLATILE: 0.10,
    },
    MarketRegime.TRENDING_DOWN: {
        MarketRegime.TRENDING_UP: 0.05, MarketRegime.TRENDING_DOWN: 0.70,
        MarketRegime.RANGING: 0.15, MarketRegime.VOLATILE: 0.10,
    },
    MarketRegime.RANGING: {
        MarketRegime.TRENDING_UP: 0.15, MarketRegime.TRENDING_DOWN: 0.15,
        MarketRegime.RANGING: 0.60, MarketRegime.VOLATILE: 0.10,
    },
    MarketRegime.VOLATILE: {
        MarketRegime.TRENDING_UP: 0.15, MarketRegime.TRENDING_DOWN: 0.15,
        MarketRegime.RANGING: 0.20, MarketRegime.VOLATILE: 0.50,
    },
}


def detect_regime_simple(
    returns: Sequence[float],
    window: int = 20,
    volatility_threshold: float = 0.4,
    trend_threshold: float = 0.3,
    consistency_threshold: float = 0.6,
) -> RegimeState:
    """
    Classify the last `window` returns without a model.

    Annualized volatility above the threshold is VOLATILE; otherwise a
    mean/std ratio beyond +-trend_threshold with enough same-sign returns
    is a trend; anything else is RANGING. Short histories report RANGING
    with duration 0.
    """
    r = np.asarray(returns, dtype=float)
    if r.size < window:
        uniform = {regime: 1.0 / N_REGIMES for regime in REGIMES}
        return RegimeState(MarketRegime.RANGING, 0.5, uniform, 0)

    recent = r[-window:]
    volatility = float(recent.std())
    trend_strength = float(recent.mean()) / (volatility + 1e-4)
    consistency = max(int(np.sum(recent > 0)), int(np.sum(recent < 0))) / window
    annualized = volatility * math.sqrt(TRADING_DAYS_PER_YEAR)

    if annualized > volatility_threshold:
        regime, probability = MarketRegime.VOLATILE, 0.5 + annualized
    elif trend_strength > trend_threshold and consistency > consistency_threshold:
        regime, probability = MarketRegime.TRENDING_UP, 0.5 + trend_strength * consistency
    elif trend_strength < -trend_threshold and consistency > consistency_threshold:
        regime, probability = MarketRegime.TRENDING_DOWN, 0.5 + abs(trend_strength) * consistency
    else:
        regime, probability = MarketRegime.RANGING, 0.5 + (1 - consistency)

    return RegimeState(regime, min(0.95, probability), dict(HEURISTIC_TRANSITIONS[regime]), 1)


# ============================================================================
# STRATEGY PARAMETERS
# ============================================================================

class StrategyStyle(str, Enum):
    TREND_FOLLOWING = "trend_following"
    MEAN_REVERSION = "mean_reversion"
    REDUCE_EXPOSURE = "reduce_exposure"


@dataclass(frozen=True)
class RegimeStrategyParams:
    """Trading parameters suited to a regime."""
    strategy: StrategyStyle
    position_size_multiplier: float
    stop_loss_multiplier: float
    take_profit_multiplier: float
    lookback_period: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "position_size_multiplier": self.position_size_multiplier,
            "stop_loss_multiplier": self.stop_loss_multiplier,
            "take_profit_multiplier": self.take_profit_multiplier,
            "lookback_period": self.lookback_period,
        }


REGIME_STRATEGY_PARAMS: dict[MarketRegime, RegimeStrategyParams] = {
    MarketRegime.TRENDING_UP: RegimeStrategyParams(StrategyStyle.TREND_FOLLOWING, 1.2, 1.5, 2.0, 10),
    MarketRegime.TRENDING_DOWN: RegimeStrategyParams(StrategyStyle.TREND_FOLLOWING, 0.8, 1.5, 2.0, 10),
    MarketRegime.RANGING: RegimeStrategyParams(StrategyStyle.MEAN_REVERSION, 1.0, 1.0, 1.0, 20),
    MarketRegime.VOLATILE: RegimeStrategyParams(StrategyStyle.REDUCE_EXPOSURE, 0.5, 2.0, 1.5, 5),
}


def get_regime_strategy_params(regime: MarketRegime | str) -> RegimeStrategyParams:
    return REGIME_STRATEGY_PARAMS[MarketRegime(regime)]


def create_regime_hmm(config: dict | None = None) -> RegimeHMM:
    """
    Factory for a RegimeHMM from a config mapping.

    Recognized keys: params (HMMParams fields), variance_floor.
    """
    config = config or {}
    return RegimeHMM(
        params=HMMParams.from_dict(config.get("params")),
        variance_floor=float(config.get("variance_floor", 1e-4)),
    )
