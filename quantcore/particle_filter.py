"""
Particle Filter Module
======================

Sequential importance resampling for a scalar probability tracked
over time from noisy observations.

Features:
- Logit-space particles so every state maps into (0, 1)
- Log-space reweighting with confidence-scaled observation noise
- Systematic resampling when the effective sample size collapses
- Weighted credible intervals and binned posterior density
- Explicit per-entity registry with LRU eviction
- Trend specialization turning signal metrics into pseudo-observations

Theory:
    Propagate:  x_i <- x_i + N(0, process_vol^2)
    Reweight:   w_i <- w_i * exp(-(y - sigmoid(x_i))^2 / (2 noise^2)), normalized
    Resample:   if 1 / sum(w_i^2) < threshold * N
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

import numpy as np

from quantcore.numeric import (
    clamp_probability,
    logit,
    normalize_log_weights,
    sigmoid,
    weighted_quantile,
)
from quantcore.random_variates import VariateGenerator
from quantcore.registry import EntityRegistry

logger = logging.getLogger(__name__)

INITIAL_SPREAD = 0.5  # Std of initial particles around logit(prior)


# ============================================================================
# TYPES
# ============================================================================

@dataclass
class ParticleFilterConfig:
    """Particle filter tuning."""
    n_particles: int = 5000
    process_vol: float = 0.05
    obs_noise: float = 0.03
    resample_threshold: float = 0.5  # Fraction of n_particles

    def __post_init__(self):
        if self.n_particles < 2:
            raise ValueError(f"Need at least 2 particles, got {self.n_particles}")
        if self.process_vol < 0 or self.obs_noise <= 0:
            raise ValueError("process_vol must be non-negative and obs_noise positive")
        if not 0 <= self.resample_threshold <= 1:
            raise ValueError(f"resample_threshold must be in [0, 1], got {self.resample_threshold}")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ParticleFilterConfig":
        data = data or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class Observation:
    """A noisy reading of the tracked probability."""
    value: float
    timestamp: float = field(default_factory=time.time)
    source: str | None = None
    confidence: float = 1.0  # Scales noise by 1 / sqrt(confidence)

    def __post_init__(self):
        if self.confidence <= 0:
            raise ValueError(f"Observation confidence must be positive, got {self.confidence}")


@dataclass(frozen=True)
class ParticleFilterState:
    """Snapshot of a filter."""
    estimate: float
    ci95: tuple[float, float]
    effective_sample_size: float
    n_particles: int
    n_updates: int
    resample_count: int
    history: list[float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "estimate": self.estimate,
            "ci95": list(self.ci95),
            "effective_sample_size": self.effective_sample_size,
            "n_particles": self.n_particles,
            "n_updates": self.n_updates,
            "resample_count": self.resample_count,
            "history": list(self.history),
        }


# ============================================================================
# RESAMPLING
# ============================================================================

def effective_sample_size(weights: np.ndarray) -> float:
    """1 / sum(w^2) for normalized weights."""
    weights = np.asarray(weights, dtype=float)
    return float(1.0 / np.sum(weights ** 2))


def systematic_resample(weights: np.ndarray, variates: VariateGenerator) -> np.ndarray:
    """
    Systematic resampling indices.

    One uniform offset u in [0, 1/N); draw points u + i/N are matched
    against the cumulative weights. Lower variance than multinomial.
    """
    weights = np.asarray(weights, dtype=float)
    n = weights.size
    positions = (variates.uniform() + np.arange(n)) / n
    cumulative = np.cumsum(weights)
    cumulative[-1] = 1.0
    indices = np.searchsorted(cumulative, positions, side="right")
    return np.minimum(indices, n - 1)


# ============================================================================
# PARTICLE FILTER
# ============================================================================

class ParticleFilter:
    """
    Bootstrap particle filter over a single probability.

    The swarm is replaced wholesale on resampling; weights are always
    normalized after an update.
    """

    def __init__(
        self,
        prior_probability: float = 0.5,
        config: ParticleFilterConfig | None = None,
        variates: VariateGenerator | None = None,
        seed: int | None = None,
    ):
        self.config = config or ParticleFilterConfig()
        self.variates = variates or VariateGenerator(seed)
        self._history: list[float] = []
        self._n_updates = 0
        self._resample_count = 0
        self._initialize(prior_probability)

    def _initialize(self, prior_probability: float) -> None:
        n = self.config.n_particles
        self.prior_probability = clamp_probability(prior_probability)
        self.states = logit(self.prior_probability) + INITIAL_SPREAD * self.variates.standard_normal(n)
        self.weights = np.full(n, 1.0 / n)

    # =========================================================================
    # UPDATE CYCLE
    # =========================================================================

    def update(self, observation: float | Observation) -> float:
        """
        Propagate, reweight and conditionally resample.

        Returns:
            Posterior mean probability after the update
        """
        if isinstance(observation, Observation):
            value, confidence = observation.value, observation.confidence
        else:
            value, confidence = float(observation), 1.0

        noise = self.config.obs_noise / math.sqrt(confidence)
        n = self.config.n_particles

        self.states = self.states + self.config.process_vol * self.variates.standard_normal(n)

        probabilities = sigmoid(self.states)
        log_weights = np.log(self.weights + 1e-300) - 0.5 * ((value - probabilities) / noise) ** 2
        self.weights = normalize_log_weights(log_weights)

        ess = effective_sample_size(self.weights)
        if ess < self.config.resample_threshold * n:
            logger.debug(f"ESS {ess:.1f} below {self.config.resample_threshold * n:.1f}, resampling")
            self.resample()

        self._n_updates += 1
        estimate = self.estimate()
        self._history.append(estimate)
        return estimate

    def update_batch(self, observations: Iterable[float | Observation]) -> float:
        """Apply observations in order; returns the final estimate."""
        estimate = self.estimate()
        for observation in observations:
            estimate = self.update(observation)
        return estimate

    def resample(self) -> None:
        """Replace the swarm by systematic resampling with uniform weights."""
        indices = systematic_resample(self.weights, self.variates)
        n = self.config.n_particles
        self.states = self.states[indices].copy()
        self.weights = np.full(n, 1.0 / n)
        self._resample_count += 1

    # =========================================================================
    # POSTERIOR SUMMARIES
    # =========================================================================

    def estimate(self) -> float:
        """Weighted mean of particle probabilities."""
        return float(np.dot(self.weights, sigmoid(self.states)))

    def credible_interval(self, alpha: float = 0.05) -> tuple[float, float]:
        """Equal-tailed weighted credible interval."""
        if not 0 < alpha < 1:
            raise ValueError(f"Alpha must be in (0, 1), got {alpha}")
        probabilities = sigmoid(self.states)
        return (
            weighted_quantile(probabilities, self.weights, alpha / 2),
            weighted_quantile(probabilities, self.weights, 1 - alpha / 2),
        )

    def effective_sample_size(self) -> float:
        return effective_sample_size(self.weights)

    def distribution(self, n_bins: int = 50) -> list[tuple[float, float]]:
        """Posterior density on [0, 1] as (bin center, density) pairs."""
        if n_bins < 1:
            raise ValueError(f"Need at least 1 bin, got {n_bins}")
        probabilities = sigmoid(self.states)
        bins = np.minimum((probabilities * n_bins).astype(int), n_bins - 1)
        mass = np.bincount(bins, weights=self.weights, minlength=n_bins)
        return [((i + 0.5) / n_bins, float(mass[i] * n_bins)) for i in range(n_bins)]

    @property
    def history(self) -> list[float]:
        return list(self._history)

    def get_state(self) -> ParticleFilterState:
        return ParticleFilterState(
            estimate=self.estimate(),
            ci95=self.credible_interval(0.05),
            effective_sample_size=self.effective_sample_size(),
            n_particles=self.config.n_particles,
            n_updates=self._n_updates,
            resample_count=self._resample_count,
            history=self.history,
        )

    def reset(self, prior_probability: float | None = None) -> None:
        """Reinitialize the swarm and clear history."""
        if prior_probability is None:
            prior_probability = self.prior_probability
        self._history = []
        self._n_updates = 0
        self._resample_count = 0
        self._initialize(prior_probability)


# ============================================================================
# REGISTRY
# ============================================================================

class ParticleFilterRegistry(EntityRegistry[ParticleFilter]):
    """
    Owns one particle filter per tracked entity.

    Each filter gets its own child generator, so entities never share
    random streams.
    """

    def __init__(
        self,
        config: ParticleFilterConfig | None = None,
        variates: VariateGenerator | None = None,
        max_entities: int | None = None,
        default_prior: float = 0.5,
    ):
        super().__init__(self._create, max_entities=max_entities, kind="particle filter")
        self.config = config or ParticleFilterConfig()
        self.variates = variates or VariateGenerator()
        self.default_prior = default_prior

    def _create(self, key: str, prior_probability: float | None = None) -> ParticleFilter:
        prior = self.default_prior if prior_probability is None else prior_probability
        return ParticleFilter(prior, self.config, self.variates.spawn(1)[0])

    def update(self, key: str, observation: float | Observation) -> float:
        return self.get_or_create(key).update(observation)

    def estimates(self) -> dict[str, float]:
        return {key: pf.estimate() for key, pf in self.items()}

    def states(self) -> dict[str, ParticleFilterState]:
        return {key: pf.get_state() for key, pf in self.items()}

    def reset_all(self) -> None:
        for _, pf in self.items():
            pf.reset()


# ============================================================================
# TREND SPECIALIZATION
# ============================================================================

class TrendDirection(str, Enum):
    """Short-term direction of the tracked probability."""
    RISING = "rising"
    STABLE = "stable"
    FALLING = "falling"


@dataclass(frozen=True)
class TrendPrediction:
    """Probability that a topic goes viral, with its recent direction."""
    probability: float
    ci95: tuple[float, float]
    trend: TrendDirection

    def to_dict(self) -> dict[str, Any]:
        return {"probability": self.probability, "ci95": list(self.ci95), "trend": self.trend.value}


TREND_FILTER_CONFIG = ParticleFilterConfig(n_particles=3000, process_vol=0.03, obs_noise=0.1)


class TrendProbabilityFilter(ParticleFilter):
    """
    Tracks the probability that a topic goes viral.

    Signal metrics are folded into one bounded pseudo-observation:
    velocity in [-2, 3] maps linearly to [0, 1], then cross-platform
    spread (+0.15), an early signal (+0.1) and mention volume
    (up to +0.2) push it upward, capped at 1.
    """

    TREND_WINDOW = 3
    TREND_THRESHOLD = 0.05

    def __init__(
        self,
        prior_probability: float = 0.1,
        config: ParticleFilterConfig | None = None,
        variates: VariateGenerator | None = None,
        seed: int | None = None,
    ):
        super().__init__(prior_probability, config or TREND_FILTER_CONFIG, variates, seed)
        self.velocity_history: list[float] = []
        self.mention_history: list[float] = []

    @staticmethod
    def metrics_to_observation(
        velocity: float,
        mentions: float,
        cross_platform: bool = False,
        early_signal: bool = False,
    ) -> Observation:
        value = (velocity + 2) / 5
        if cross_platform:
            value = min(1.0, value + 0.15)
        if early_signal:
            value = min(1.0, value + 0.1)
        value = min(1.0, value + min(0.2, math.log10(max(mentions, 0) + 1) / 20))
        return Observation(
            value=max(0.0, value),
            source="trend_metrics",
            confidence=1.2 if cross_platform else 1.0,
        )

    def update_with_metrics(
        self,
        velocity: float,
        mentions: float,
        cross_platform: bool = False,
        early_signal: bool = False,
    ) -> float:
        self.velocity_history.append(velocity)
        self.mention_history.append(mentions)
        return self.update(self.metrics_to_observation(velocity, mentions, cross_platform, early_signal))

    def trend(self) -> TrendDirection:
        if len(self._history) < self.TREND_WINDOW:
            return TrendDirection.STABLE
        change = self._history[-1] - self._history[-self.TREND_WINDOW]
        if change > self.TREND_THRESHOLD:
            return TrendDirection.RISING
        if change < -self.TREND_THRESHOLD:
            return TrendDirection.FALLING
        return TrendDirection.STABLE

    def viral_prediction(self) -> TrendPrediction:
        return TrendPrediction(
            probability=self.estimate(),
            ci95=self.credible_interval(0.05),
            trend=self.trend(),
        )

    def reset(self, prior_probability: float | None = None) -> None:
        super().reset(prior_probability)
        self.velocity_history = []
        self.mention_history = []
