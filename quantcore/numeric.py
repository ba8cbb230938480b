"""
Numeric Helpers
===============

Shared numeric idioms for the stochastic modules.

Features:
- Probability clamping before any logit/log transform
- Logit/sigmoid transforms (vectorized)
- Gaussian densities and log likelihood ratios
- Weighted quantiles for importance-weighted samples
- EstimateResult, the uniform output of Monte Carlo estimators
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import numpy as np
from scipy.special import expit, logsumexp

PROBABILITY_FLOOR = 1e-4
PROBABILITY_CEILING = 1.0 - 1e-4
Z_95 = 1.96
LOG_SQRT_2PI = 0.5 * math.log(2.0 * math.pi)


# ============================================================================
# PROBABILITY TRANSFORMS
# ============================================================================

def clamp_probability(p, floor: float = PROBABILITY_FLOOR, ceiling: float = PROBABILITY_CEILING):
    """Clamp probability (scalar or array) into the open interval [floor, ceiling]."""
    if np.ndim(p) == 0:
        return float(min(max(float(p), floor), ceiling))
    return np.clip(np.asarray(p, dtype=float), floor, ceiling)


def logit(p):
    """Log-odds of a probability, clamped first so the result is always finite."""
    p = clamp_probability(p)
    if np.ndim(p) == 0:
        return math.log(p / (1.0 - p))
    return np.log(p / (1.0 - p))


def sigmoid(x):
    """Inverse of logit."""
    if np.ndim(x) == 0:
        return float(expit(float(x)))
    return expit(np.asarray(x, dtype=float))


def log_sum_exp(values: np.ndarray) -> float:
    """Numerically stable log(sum(exp(values)))."""
    return float(logsumexp(values))


# ============================================================================
# GAUSSIAN DENSITIES
# ============================================================================

def gaussian_logpdf(x, mean, std):
    """Log density of N(mean, std^2); broadcasts over arrays."""
    z = (np.asarray(x, dtype=float) - mean) / std
    return -0.5 * z * z - np.log(std) - LOG_SQRT_2PI


def gaussian_pdf(x, mean, std):
    """Density of N(mean, std^2)."""
    return np.exp(gaussian_logpdf(x, mean, std))


def log_likelihood_ratio(x, mean_original, mean_tilted, std):
    """
    Log of p_original(x) / p_tilted(x) for two Gaussians sharing a std.

    Used as the importance weight when sampling under a shifted drift.
    """
    return gaussian_logpdf(x, mean_original, std) - gaussian_logpdf(x, mean_tilted, std)


# ============================================================================
# WEIGHTED STATISTICS
# ============================================================================

def normalize_log_weights(log_weights: np.ndarray) -> np.ndarray:
    """Normalize log weights into probabilities summing to one."""
    log_weights = np.asarray(log_weights, dtype=float)
    return np.exp(log_weights - logsumexp(log_weights))


def weighted_quantile(values: np.ndarray, weights: np.ndarray, q: float) -> float:
    """
    Quantile of a weighted sample.

    Sorts values ascending and accumulates normalized weights until the
    cumulative mass first reaches q.
    """
    values = np.asarray(values, dtype=float)
    weights = np.asarray(weights, dtype=float)
    if values.size == 0:
        raise ValueError("Need at least one value for a weighted quantile")

    total = weights.sum()
    if total <= 0:
        raise ValueError("Weights must have positive total mass")

    order = np.argsort(values, kind="stable")
    cumulative = np.cumsum(weights[order]) / total
    idx = int(np.searchsorted(cumulative, q, side="left"))
    return float(values[order][min(idx, values.size - 1)])


# ============================================================================
# ESTIMATE RESULT
# ============================================================================

@dataclass(frozen=True)
class EstimateResult:
    """Point estimate with standard error and 95% interval."""
    estimate: float
    standard_error: float
    ci95: tuple[float, float]
    sample_count: int
    variance_reduction_factor: float | None = None

    def __post_init__(self):
        lower, upper = self.ci95
        if not lower <= self.estimate <= upper:
            raise ValueError(
                f"Interval [{lower}, {upper}] does not contain estimate {self.estimate}"
            )

    @classmethod
    def from_mean(
        cls,
        estimate: float,
        standard_error: float,
        sample_count: int,
        variance_reduction_factor: float | None = None,
        bounds: tuple[float, float] | None = (0.0, 1.0),
    ) -> "EstimateResult":
        """Build a normal-approximation 95% interval, optionally clipped to bounds."""
        lower = estimate - Z_95 * standard_error
        upper = estimate + Z_95 * standard_error
        if bounds is not None:
            lower = max(bounds[0], lower)
            upper = min(bounds[1], upper)
            estimate = min(max(estimate, bounds[0]), bounds[1])
        return cls(
            estimate=float(estimate),
            standard_error=float(standard_error),
            ci95=(float(min(lower, estimate)), float(max(upper, estimate))),
            sample_count=int(sample_count),
            variance_reduction_factor=variance_reduction_factor,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "estimate": self.estimate,
            "standard_error": self.standard_error,
            "ci95": list(self.ci95),
            "sample_count": self.sample_count,
            "variance_reduction_factor": self.variance_reduction_factor,
        }
