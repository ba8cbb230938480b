"""
Variate Generator
=================

Seedable source of every random draw in the engine.

Features:
- Standard normal (numpy ziggurat or explicit Box-Muller)
- Poisson via product-of-uniforms acceptance
- Gamma via Marsaglia-Tsang squeeze (with the shape < 1 boost)
- Chi-square as scaled gamma (non-integer degrees of freedom allowed)
- Stable variates via Chambers-Mallows-Stuck
- Positive stable variates via Kanter's representation (Gumbel copula frailty)
- Independent child generators for parallel path chunks

Every stochastic operation in the engine takes a VariateGenerator, so a
fixed seed reproduces results exactly.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

# Above this intensity the product of uniforms underflows and needs
# too many draws; numpy's transformed rejection sampler is used instead.
PRODUCT_OF_UNIFORMS_MAX_LAMBDA = 30.0


def _to_shape(size: int | Sequence[int] | None) -> tuple[int, ...]:
    if size is None:
        return ()
    if isinstance(size, (int, np.integer)):
        return (int(size),)
    return tuple(int(s) for s in size)


def _maybe_scalar(values: np.ndarray, size):
    if size is None:
        return values.item()
    return values


class VariateGenerator:
    """
    Explicitly seeded random variate source.

    Wraps numpy's Generator seeded from a SeedSequence so child streams
    can be spawned deterministically for parallel work.
    """

    def __init__(
        self,
        seed: int | None = None,
        seed_sequence: np.random.SeedSequence | None = None,
    ):
        if seed_sequence is None:
            seed_sequence = np.random.SeedSequence(seed)
        self.seed = seed
        self._seed_sequence = seed_sequence
        self.rng = np.random.default_rng(seed_sequence)

    @classmethod
    def from_seed(cls, seed: int | None) -> "VariateGenerator":
        return cls(seed=seed)

    def spawn(self, n: int) -> list["VariateGenerator"]:
        """Create n statistically independent child generators."""
        return [VariateGenerator(seed_sequence=child) for child in self._seed_sequence.spawn(n)]

    # =========================================================================
    # UNIFORM / EXPONENTIAL
    # =========================================================================

    def uniform(self, size=None, low: float = 0.0, high: float = 1.0):
        """Uniform draws on [low, high)."""
        return _maybe_scalar(self.rng.uniform(low, high, _to_shape(size)), size)

    def open_uniform(self, size=None):
        """Uniform draws strictly inside (0, 1), safe for log transforms."""
        u = self.rng.random(_to_shape(size))
        u = np.clip(u, np.finfo(float).tiny, np.nextafter(1.0, 0.0))
        return _maybe_scalar(np.asarray(u), size)

    def exponential(self, size=None, scale: float = 1.0):
        """Exponential draws by inversion."""
        return _maybe_scalar(-scale * np.log(np.asarray(self.open_uniform(_to_shape(size)))), size)

    def integers(self, low: int, high: int, size=None):
        """Uniform integers on [low, high)."""
        return _maybe_scalar(self.rng.integers(low, high, _to_shape(size)), size)

    # =========================================================================
    # NORMAL
    # =========================================================================

    def standard_normal(self, size=None):
        """Standard normal draws."""
        return _maybe_scalar(self.rng.standard_normal(_to_shape(size)), size)

    def normal(self, mean: float = 0.0, std: float = 1.0, size=None):
        return _maybe_scalar(mean + std * self.rng.standard_normal(_to_shape(size)), size)

    def box_muller(self, size=None):
        """Standard normal draws by the Box-Muller transform."""
        shape = _to_shape(size)
        n = int(np.prod(shape)) if shape else 1
        half = (n + 1) // 2

        u1 = self.open_uniform(half)
        u2 = self.rng.random(half)
        radius = np.sqrt(-2.0 * np.log(u1))
        angle = 2.0 * math.pi * u2
        z = np.concatenate([radius * np.cos(angle), radius * np.sin(angle)])[:n]
        return _maybe_scalar(z.reshape(shape), size)

    # =========================================================================
    # POISSON
    # =========================================================================

    def poisson(self, lam: float, size=None):
        """
        Poisson draws by product-of-uniforms acceptance.

        Counts how many uniforms can be multiplied together before the
        running product falls below exp(-lam).
        """
        if lam < 0:
            raise ValueError(f"Poisson intensity must be non-negative, got {lam}")
        shape = _to_shape(size)
        if lam == 0:
            return _maybe_scalar(np.zeros(shape, dtype=np.int64), size)
        if lam > PRODUCT_OF_UNIFORMS_MAX_LAMBDA:
            return _maybe_scalar(self.rng.poisson(lam, shape), size)

        limit = math.exp(-lam)
        counts = np.zeros(shape, dtype=np.int64)
        product = np.ones(shape)
        active = np.ones(shape, dtype=bool)

        while active.any():
            product[active] *= self.rng.random(int(active.sum()))
            active = product > limit
            counts[active] += 1

        return _maybe_scalar(counts, size)

    # =========================================================================
    # GAMMA / CHI-SQUARE
    # =========================================================================

    def gamma(self, shape_param: float, scale: float = 1.0, size=None):
        """
        Gamma(shape, scale) draws by Marsaglia-Tsang.

        For shape < 1 a Gamma(shape + 1) draw is boosted by U^(1/shape).
        """
        if shape_param <= 0:
            raise ValueError(f"Gamma shape must be positive, got {shape_param}")
        shape = _to_shape(size)
        n = int(np.prod(shape)) if shape else 1

        if shape_param < 1.0:
            boosted = np.asarray(self.gamma(shape_param + 1.0, 1.0, n))
            u = np.asarray(self.open_uniform(n))
            draws = boosted * u ** (1.0 / shape_param)
        else:
            draws = self._marsaglia_tsang(shape_param, n)

        return _maybe_scalar((scale * draws).reshape(shape), size)

    def _marsaglia_tsang(self, shape_param: float, n: int) -> np.ndarray:
        d = shape_param - 1.0 / 3.0
        c = 1.0 / math.sqrt(9.0 * d)
        out = np.empty(n)
        filled = 0

        while filled < n:
            remaining = n - filled
            z = self.rng.standard_normal(remaining)
            v = (1.0 + c * z) ** 3
            u = np.asarray(self.open_uniform(remaining))
            positive = v > 0
            log_v = np.log(np.where(positive, v, 1.0))
            accept = positive & (np.log(u) < 0.5 * z * z + d - d * v + d * log_v)

            accepted = d * v[accept]
            out[filled:filled + accepted.size] = accepted
            filled += accepted.size

        return out

    def chi_square(self, df: float, size=None):
        """Chi-square draws as 2 * Gamma(df / 2)."""
        if df <= 0:
            raise ValueError(f"Degrees of freedom must be positive, got {df}")
        return self.gamma(df / 2.0, 2.0, size)

    # =========================================================================
    # STABLE
    # =========================================================================

    def stable(self, alpha: float, beta: float = 0.0, size=None):
        """
        Stable(alpha, beta, 1, 0) draws by Chambers-Mallows-Stuck.

        Args:
            alpha: Stability index in (0, 2]
            beta: Skewness in [-1, 1]
        """
        if not 0 < alpha <= 2:
            raise ValueError(f"Stability index must be in (0, 2], got {alpha}")
        if not -1 <= beta <= 1:
            raise ValueError(f"Skewness must be in [-1, 1], got {beta}")

        shape = _to_shape(size)
        v = self.rng.uniform(-math.pi / 2, math.pi / 2, shape)
        w = np.asarray(self.exponential(shape))

        if abs(alpha - 1.0) < 1e-12:
            half_pi_bv = math.pi / 2 + beta * v
            x = (2 / math.pi) * (
                half_pi_bv * np.tan(v)
                - beta * np.log((math.pi / 2) * w * np.cos(v) / half_pi_bv)
            )
        else:
            tan_term = beta * math.tan(math.pi * alpha / 2)
            b = math.atan(tan_term) / alpha
            s = (1 + tan_term ** 2) ** (1 / (2 * alpha))
            x = (
                s * np.sin(alpha * (v + b)) / np.cos(v) ** (1 / alpha)
                * (np.cos(v - alpha * (v + b)) / w) ** ((1 - alpha) / alpha)
            )

        return _maybe_scalar(np.asarray(x), size)

    def positive_stable(self, alpha: float, size=None):
        """
        Positive stable draws with Laplace transform exp(-s^alpha).

        Kanter's representation; alpha = 1 is the point mass at 1.
        """
        if not 0 < alpha <= 1:
            raise ValueError(f"Positive stable index must be in (0, 1], got {alpha}")

        shape = _to_shape(size)
        u = self.rng.uniform(0.0, math.pi, shape)
        u = np.clip(u, 1e-12, math.pi - 1e-12)
        e = np.asarray(self.exponential(shape))

        x = (
            np.sin(alpha * u) / np.sin(u) ** (1 / alpha)
            * (np.sin((1 - alpha) * u) / e) ** ((1 - alpha) / alpha)
        )
        return _maybe_scalar(np.asarray(x), size)

    # =========================================================================
    # DISCRETE
    # =========================================================================

    def logarithmic(self, p: float, size=None):
        """Logarithmic series draws (Frank copula frailty)."""
        if not 0 < p < 1:
            raise ValueError(f"Logarithmic series parameter must be in (0, 1), got {p}")
        return _maybe_scalar(np.asarray(self.rng.logseries(p, _to_shape(size))), size)
