"""
Anomaly Detection Module
========================

Outlier detection over bounded rolling histories.

Features:
- Z-score, IQR and MAD (modified z-score) detectors
- Simplified univariate isolation forest
- Mahalanobis distance for correlated multivariate observations
- Method selection by enum and strategy class, not strings
- Per-entity detector registry

Degenerate inputs never raise: a history shorter than a method's minimum
is "not anomalous" with score 0, and zero spread yields a sentinel score
when the tested value differs from the center. Only Mahalanobis with a
singular covariance raises, and the multivariate detector turns that into
a neutral result.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Sequence

import numpy as np

from quantcore.exceptions import SingularMatrixError
from quantcore.linalg import invert_matrix
from quantcore.random_variates import VariateGenerator
from quantcore.registry import EntityRegistry

logger = logging.getLogger(__name__)

SENTINEL_SCORE = 999.0
MAD_SCALE = 0.6745
EULER_GAMMA = 0.5772156649


class AnomalyMethod(str, Enum):
    """Anomaly scoring method."""
    ZSCORE = "zscore"
    IQR = "iqr"
    MAD = "mad"
    ISOLATION_FOREST = "isolation_forest"
    MAHALANOBIS = "mahalanobis"


@dataclass(frozen=True)
class AnomalyResult:
    """Outcome of scoring one value against a history."""
    is_anomaly: bool
    score: float
    threshold: float
    method: AnomalyMethod
    z_score: float | None = None
    degenerate: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_anomaly": self.is_anomaly,
            "score": self.score,
            "threshold": self.threshold,
            "method": self.method.value,
            "z_score": self.z_score,
            "degenerate": self.degenerate,
            "reason": self.reason,
        }


# ============================================================================
# STRATEGIES
# ============================================================================

class AnomalyStrategy(ABC):
    """Scores a value against a univariate history."""

    method: AnomalyMethod
    min_history: int
    default_threshold: float

    def __init__(self, variates: VariateGenerator | None = None):
        self.variates = variates

    def insufficient(self, threshold: float, n: int) -> AnomalyResult:
        return AnomalyResult(
            is_anomaly=False,
            score=0.0,
            threshold=threshold,
            method=self.method,
            degenerate=True,
            reason=f"history of {n} below minimum {self.min_history}",
        )

    def zero_spread(self, value: float, center: float, threshold: float) -> AnomalyResult:
        differs = value != center
        return AnomalyResult(
            is_anomaly=differs,
            score=SENTINEL_SCORE if differs else 0.0,
            threshold=threshold,
            method=self.method,
            z_score=SENTINEL_SCORE if differs else 0.0,
            degenerate=True,
            reason="zero spread in history",
        )

    def evaluate(self, value: float, history: np.ndarray, threshold: float | None = None) -> AnomalyResult:
        threshold = self.default_threshold if threshold is None else threshold
        history = np.asarray(history, dtype=float)
        if history.size < self.min_history:
            return self.insufficient(threshold, history.size)
        return self._score(float(value), history, threshold)

    @abstractmethod
    def _score(self, value: float, history: np.ndarray, threshold: float) -> AnomalyResult:
        ...


class ZScoreStrategy(AnomalyStrategy):
    """|x - mean| / std (population std) above threshold."""

    method = AnomalyMethod.ZSCORE
    min_history = 2
    default_threshold = 3.0

    def _score(self, value, history, threshold):
        mean = float(history.mean())
        std = float(history.std())
        if std == 0:
            return self.zero_spread(value, mean, threshold)
        z = (value - mean) / std
        return AnomalyResult(abs(z) > threshold, abs(z), threshold, self.method, z_score=z)


class IQRStrategy(AnomalyStrategy):
    """Tukey fences [Q1 - k IQR, Q3 + k IQR]; score is the distance outside in IQR units."""

    method = AnomalyMethod.IQR
    min_history = 4
    default_threshold = 1.5

    def _score(self, value, history, threshold):
        ordered = np.sort(history)
        n = ordered.size
        q1 = float(ordered[int(n * 0.25)])
        q3 = float(ordered[int(n * 0.75)])
        iqr = q3 - q1
        lower = q1 - threshold * iqr
        upper = q3 + threshold * iqr

        scale = iqr if iqr > 0 else 1.0
        if value < lower:
            score = (lower - value) / scale
        elif value > upper:
            score = (value - upper) / scale
        else:
            score = 0.0
        return AnomalyResult(value < lower or value > upper, score, threshold, self.method)


class MADStrategy(AnomalyStrategy):
    """Modified z-score 0.6745 (x - median) / MAD."""

    method = AnomalyMethod.MAD
    min_history = 3
    default_threshold = 3.5

    def _score(self, value, history, threshold):
        ordered = np.sort(history)
        median = float(ordered[ordered.size // 2])
        deviations = np.sort(np.abs(history - median))
        mad = float(deviations[deviations.size // 2])
        if mad == 0:
            return self.zero_spread(value, median, threshold)
        z = MAD_SCALE * (value - median) / mad
        return AnomalyResult(abs(z) > threshold, abs(z), threshold, self.method, z_score=z)


def average_path_length(n: int) -> float:
    """Expected path length of an unsuccessful BST search over n points."""
    if n <= 1:
        return 0.0
    if n == 2:
        return 1.0
    return 2 * (math.log(n - 1) + EULER_GAMMA) - 2 * (n - 1) / n


class IsolationForestStrategy(AnomalyStrategy):
    """
    Univariate isolation forest.

    Each tree subsamples the history and splits at uniform random points
    between the current min and max, following only the branch holding
    the tested value. Score is 2^(-E[h] / c(n)); values near 1 isolate
    quickly.
    """

    method = AnomalyMethod.ISOLATION_FOREST
    min_history = 10
    default_threshold = 0.6

    def __init__(
        self,
        variates: VariateGenerator | None = None,
        n_trees: int = 100,
        sample_size: int = 256,
    ):
        super().__init__(variates or VariateGenerator())
        self.n_trees = n_trees
        self.sample_size = sample_size

    def _path_length(self, value: float, data: np.ndarray, max_depth: int) -> float:
        depth = 0
        while data.size > 1 and depth < max_depth:
            low, high = data.min(), data.max()
            if low == high:
                break
            split = self.variates.uniform(low=low, high=high)
            data = data[data < split] if value < split else data[data >= split]
            depth += 1
        return depth + average_path_length(data.size)

    def score_value(self, value: float, history: np.ndarray) -> float:
        size = min(self.sample_size, history.size)
        max_depth = math.ceil(math.log2(size))
        total = 0.0
        for _ in range(self.n_trees):
            sample = self.variates.rng.choice(history, size=size, replace=False)
            total += self._path_length(value, sample, max_depth)
        return 2 ** (-(total / self.n_trees) / average_path_length(size))

    def _score(self, value, history, threshold):
        # Scores live in [0, 1], so a constant history flags a new value at 1.0
        if history.min() == history.max():
            differs = value != history[0]
            return AnomalyResult(
                is_anomaly=differs,
                score=1.0 if differs else 0.0,
                threshold=threshold,
                method=self.method,
                degenerate=True,
                reason="zero spread in history",
            )
        score = self.score_value(value, history)
        return AnomalyResult(score > threshold, score, threshold, self.method)


STRATEGIES: dict[AnomalyMethod, type[AnomalyStrategy]] = {
    AnomalyMethod.ZSCORE: ZScoreStrategy,
    AnomalyMethod.IQR: IQRStrategy,
    AnomalyMethod.MAD: MADStrategy,
    AnomalyMethod.ISOLATION_FOREST: IsolationForestStrategy,
}


def create_strategy(method: AnomalyMethod | str, variates: VariateGenerator | None = None) -> AnomalyStrategy:
    """Instantiate the strategy for a univariate method."""
    method = AnomalyMethod(method)
    if method not in STRATEGIES:
        raise ValueError(f"{method.value} is not a univariate method")
    return STRATEGIES[method](variates)


def rolling_zscore(values: Sequence[float], window: int = 20) -> np.ndarray:
    """
    Z-score of each value against the preceding `window` values.

    The first `window` entries and zero-spread windows score 0.
    """
    if window < 2:
        raise ValueError(f"Window must be at least 2, got {window}")
    arr = np.asarray(values, dtype=float)
    out = np.zeros(arr.size)
    for i in range(window, arr.size):
        past = arr[i - window:i]
        std = past.std()
        if std > 0:
            out[i] = (arr[i] - past.mean()) / std
    return out


# ============================================================================
# DETECTORS
# ============================================================================

@dataclass
class AnomalyDetectorConfig:
    """Univariate detector settings; threshold None means the method default."""
    method: AnomalyMethod = AnomalyMethod.MAD
    threshold: float | None = None
    window_size: int = 100

    def __post_init__(self):
        self.method = AnomalyMethod(self.method)
        if self.method not in STRATEGIES:
            raise ValueError(f"{self.method.value} is not a univariate method")
        if self.window_size < 1:
            raise ValueError(f"window_size must be at least 1, got {self.window_size}")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AnomalyDetectorConfig":
        data = data or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class AnomalyDetector:
    """
    Rolling-history anomaly detector for one series.

    check() scores a value against the history and then appends it;
    detect() scores without appending.
    """

    def __init__(
        self,
        config: AnomalyDetectorConfig | None = None,
        variates: VariateGenerator | None = None,
    ):
        self.config = config or AnomalyDetectorConfig()
        self.strategy = create_strategy(self.config.method, variates)
        self._history: deque[float] = deque(maxlen=self.config.window_size)

    @property
    def threshold(self) -> float:
        if self.config.threshold is None:
            return self.strategy.default_threshold
        return self.config.threshold

    def detect(self, value: float) -> AnomalyResult:
        return self.strategy.evaluate(value, np.fromiter(self._history, dtype=float), self.threshold)

    def check(self, value: float) -> AnomalyResult:
        result = self.detect(value)
        self._history.append(float(value))
        if result.is_anomaly:
            logger.debug(f"Anomaly ({result.method.value}): value={value} score={result.score:.3f}")
        return result

    def load_history(self, values: Iterable[float]) -> None:
        """Replace the history with the most recent window_size values."""
        self._history = deque((float(v) for v in values), maxlen=self.config.window_size)

    @property
    def history(self) -> list[float]:
        return list(self._history)

    def reset(self) -> None:
        self._history.clear()


def mahalanobis_distance(point: Sequence[float], data: Sequence[Sequence[float]]) -> float:
    """
    Mahalanobis distance of point from the rows of data.

    Returns 0 when there are fewer than d + 1 rows.

    Raises:
        SingularMatrixError: sample covariance cannot be inverted
    """
    x = np.asarray(point, dtype=float)
    rows = np.atleast_2d(np.asarray(data, dtype=float))
    d = x.size
    if rows.shape[0] < d + 1:
        return 0.0
    if rows.shape[1] != d:
        raise ValueError(f"Point has {d} dimensions but data has {rows.shape[1]}")

    mean = rows.mean(axis=0)
    centered = rows - mean
    covariance = centered.T @ centered / (rows.shape[0] - 1)
    inverse = invert_matrix(covariance)

    diff = x - mean
    return float(math.sqrt(max(float(diff @ inverse @ diff), 0.0)))


class MultivariateAnomalyDetector:
    """
    Rolling Mahalanobis detector for vector observations.

    A singular covariance is logged and reported as a neutral,
    degenerate result.
    """

    def __init__(self, threshold: float = 3.0, window_size: int = 100):
        self.threshold = threshold
        self._history: deque[np.ndarray] = deque(maxlen=window_size)

    def detect(self, point: Sequence[float]) -> AnomalyResult:
        x = np.asarray(point, dtype=float)
        if len(self._history) < x.size + 1:
            return AnomalyResult(
                False, 0.0, self.threshold, AnomalyMethod.MAHALANOBIS,
                degenerate=True, reason="insufficient history",
            )
        try:
            distance = mahalanobis_distance(x, np.vstack(self._history))
        except SingularMatrixError as e:
            logger.warning(f"Mahalanobis check skipped: {e}")
            return AnomalyResult(
                False, 0.0, self.threshold, AnomalyMethod.MAHALANOBIS,
                degenerate=True, reason="singular covariance",
            )
        return AnomalyResult(distance > self.threshold, distance, self.threshold, AnomalyMethod.MAHALANOBIS)

    def check(self, point: Sequence[float]) -> AnomalyResult:
        result = self.detect(point)
        self._history.append(np.asarray(point, dtype=float))
        return result

    @property
    def history(self) -> list[np.ndarray]:
        return list(self._history)

    def reset(self) -> None:
        self._history.clear()


class AnomalyDetectorRegistry(EntityRegistry[AnomalyDetector]):
    """One anomaly detector per tracked entity."""

    def __init__(
        self,
        config: AnomalyDetectorConfig | None = None,
        variates: VariateGenerator | None = None,
        max_entities: int | None = None,
    ):
        super().__init__(self._create, max_entities=max_entities, kind="anomaly detector")
        self.config = config or AnomalyDetectorConfig()
        self.variates = variates or VariateGenerator()

    def _create(self, key: str, config: AnomalyDetectorConfig | None = None) -> AnomalyDetector:
        return AnomalyDetector(config or self.config, self.variates.spawn(1)[0])

    def check(self, key: str, value: float) -> AnomalyResult:
        return self.get_or_create(key).check(value)

    def reset_all(self) -> None:
        for _, detector in self.items():
            detector.reset()
