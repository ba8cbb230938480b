"""
Time Series Analysis Module
===========================

Smoothing, forecasting, volatility and trend measures over plain
numeric sequences. Positions without enough history hold NaN.

Features:
- Simple, exponential and weighted moving averages
- Single, double (Holt) and triple (Holt-Winters) exponential smoothing
- Linear level+trend forecasts with horizon-widening 95% bands
- Historical, EWMA and Parkinson volatility (annualized)
- Trend direction/strength, velocity, momentum
- Autocorrelation and ACF
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import numpy as np

logger = logging.getLogger(__name__)

TRADING_DAYS_PER_YEAR = 252
PARKINSON_FACTOR = 1.0 / (4.0 * math.log(2.0))
FORECAST_WIDENING = 0.1  # Variance growth per extra step ahead


def _as_array(values: Sequence[float], minimum: int = 1, name: str = "values") -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 1:
        raise ValueError(f"{name} must be one-dimensional")
    if arr.size < minimum:
        raise ValueError(f"Need at least {minimum} {name}, got {arr.size}")
    return arr


def _check_window(window: int) -> None:
    if window < 1:
        raise ValueError(f"Window must be at least 1, got {window}")


# ============================================================================
# MOVING AVERAGES
# ============================================================================

def sma(values: Sequence[float], window: int) -> np.ndarray:
    """Simple moving average; the first window - 1 entries are NaN."""
    _check_window(window)
    arr = _as_array(values)
    out = np.full(arr.size, np.nan)
    if arr.size >= window:
        cumulative = np.concatenate([[0.0], np.cumsum(arr)])
        out[window - 1:] = (cumulative[window:] - cumulative[:-window]) / window
    return out


def ema(values: Sequence[float], window: int) -> np.ndarray:
    """Exponential moving average with k = 2 / (window + 1), seeded at the first value."""
    _check_window(window)
    arr = _as_array(values)
    k = 2.0 / (window + 1)
    out = np.empty(arr.size)
    out[0] = arr[0]
    for i in range(1, arr.size):
        out[i] = k * arr[i] + (1 - k) * out[i - 1]
    return out


def wma(values: Sequence[float], window: int) -> np.ndarray:
    """Linearly weighted moving average, newest value weighted `window`."""
    _check_window(window)
    arr = _as_array(values)
    out = np.full(arr.size, np.nan)
    weights = np.arange(1, window + 1, dtype=float)
    weights /= weights.sum()
    if arr.size >= window:
        out[window - 1:] = np.convolve(arr, weights[::-1], mode="valid")
    return out


# ============================================================================
# EXPONENTIAL SMOOTHING
# ============================================================================

@dataclass(frozen=True, eq=False)
class HoltResult:
    level: np.ndarray
    trend: np.ndarray
    fitted: np.ndarray  # One-step-ahead fit; fitted[0] is the first value


@dataclass(frozen=True, eq=False)
class HoltWintersResult:
    level: np.ndarray
    trend: np.ndarray
    seasonal: np.ndarray
    fitted: np.ndarray


def _check_smoothing(**constants: float) -> None:
    for name, value in constants.items():
        if not 0 <= value <= 1:
            raise ValueError(f"{name} must be in [0, 1], got {value}")


def simple_exponential_smoothing(values: Sequence[float], alpha: float = 0.3) -> np.ndarray:
    """Level-only smoothing: S_t = alpha Y_t + (1 - alpha) S_{t-1}."""
    _check_smoothing(alpha=alpha)
    arr = _as_array(values)
    out = np.empty(arr.size)
    out[0] = arr[0]
    for i in range(1, arr.size):
        out[i] = alpha * arr[i] + (1 - alpha) * out[i - 1]
    return out


def double_exponential_smoothing(
    values: Sequence[float],
    alpha: float = 0.3,
    beta: float = 0.1,
) -> HoltResult:
    """
    Holt's linear trend smoothing.

    L_t = alpha Y_t + (1 - alpha)(L_{t-1} + T_{t-1})
    T_t = beta (L_t - L_{t-1}) + (1 - beta) T_{t-1}

    Initial trend is Y_1 - Y_0.
    """
    _check_smoothing(alpha=alpha, beta=beta)
    arr = _as_array(values, minimum=2)
    n = arr.size
    level = np.empty(n)
    trend = np.empty(n)
    fitted = np.empty(n)
    level[0], trend[0], fitted[0] = arr[0], arr[1] - arr[0], arr[0]

    for i in range(1, n):
        fitted[i] = level[i - 1] + trend[i - 1]
        level[i] = alpha * arr[i] + (1 - alpha) * fitted[i]
        trend[i] = beta * (level[i] - level[i - 1]) + (1 - beta) * trend[i - 1]

    return HoltResult(level=level, trend=trend, fitted=fitted)


def triple_exponential_smoothing(
    values: Sequence[float],
    seasonal_period: int,
    alpha: float = 0.3,
    beta: float = 0.1,
    gamma: float = 0.1,
    multiplicative: bool = True,
) -> HoltWintersResult:
    """
    Holt-Winters smoothing with a seasonal factor.

    Initialized from the first period: level is its mean, seasonal factors
    are ratios (multiplicative) or offsets (additive) to that mean, and the
    trend is (Y_m - Y_0) / m. Level and trend arrays start at index m - 1.
    """
    _check_smoothing(alpha=alpha, beta=beta, gamma=gamma)
    if seasonal_period < 1:
        raise ValueError(f"Seasonal period must be at least 1, got {seasonal_period}")
    arr = _as_array(values, minimum=seasonal_period + 1)
    m = seasonal_period
    n = arr.size

    base = arr[:m].mean()
    if multiplicative and base == 0:
        raise ValueError("Multiplicative seasonality needs a non-zero first-period mean")

    seasonal = np.empty(n)
    seasonal[:m] = arr[:m] / base if multiplicative else arr[:m] - base
    level = [base]
    trend = [(arr[m] - arr[0]) / m]
    fitted = np.empty(n)
    fitted[:m] = base * seasonal[:m] if multiplicative else base + seasonal[:m]

    for i in range(m, n):
        prev_level, prev_trend, prev_season = level[-1], trend[-1], seasonal[i - m]
        if multiplicative:
            new_level = alpha * (arr[i] / prev_season) + (1 - alpha) * (prev_level + prev_trend)
            seasonal[i] = gamma * (arr[i] / new_level) + (1 - gamma) * prev_season
            fitted[i] = (prev_level + prev_trend) * prev_season
        else:
            new_level = alpha * (arr[i] - prev_season) + (1 - alpha) * (prev_level + prev_trend)
            seasonal[i] = gamma * (arr[i] - new_level) + (1 - gamma) * prev_season
            fitted[i] = prev_level + prev_trend + prev_season
        trend.append(beta * (new_level - prev_level) + (1 - beta) * prev_trend)
        level.append(new_level)

    return HoltWintersResult(
        level=np.array(level), trend=np.array(trend), seasonal=seasonal, fitted=fitted,
    )


# ============================================================================
# FORECASTING
# ============================================================================

@dataclass(frozen=True, eq=False)
class ForecastResult:
    """Point forecasts with widening 95% bands and in-sample error."""
    forecast: np.ndarray
    ci95_upper: np.ndarray
    ci95_lower: np.ndarray
    mse: float
    mae: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "forecast": self.forecast.tolist(),
            "ci95_upper": self.ci95_upper.tolist(),
            "ci95_lower": self.ci95_lower.tolist(),
            "mse": self.mse,
            "mae": self.mae,
        }


def forecast(
    values: Sequence[float],
    n_ahead: int,
    alpha: float = 0.3,
    beta: float = 0.1,
) -> ForecastResult:
    """
    Holt forecast h steps ahead: L_n + h T_n.

    Band half-width at horizon h is 1.96 * RMSE * sqrt(1 + 0.1 (h - 1)),
    RMSE taken from one-step-ahead in-sample residuals.
    """
    if n_ahead < 1:
        raise ValueError(f"n_ahead must be at least 1, got {n_ahead}")
    arr = _as_array(values, minimum=2)
    holt = double_exponential_smoothing(arr, alpha, beta)

    horizons = np.arange(1, n_ahead + 1)
    points = holt.level[-1] + horizons * holt.trend[-1]

    residuals = arr[1:] - holt.fitted[1:]
    mse = float(np.mean(residuals ** 2))
    mae = float(np.mean(np.abs(residuals)))
    se = math.sqrt(mse) * np.sqrt(1 + (horizons - 1) * FORECAST_WIDENING)

    return ForecastResult(
        forecast=points,
        ci95_upper=points + 1.96 * se,
        ci95_lower=points - 1.96 * se,
        mse=mse,
        mae=mae,
    )


# ============================================================================
# VOLATILITY
# ============================================================================

def log_returns(prices: Sequence[float]) -> np.ndarray:
    arr = _as_array(prices, minimum=2, name="prices")
    if np.any(arr <= 0):
        raise ValueError("Prices must be positive for log returns")
    return np.diff(np.log(arr))


def historical_volatility(
    prices: Sequence[float],
    window: int = 20,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> np.ndarray:
    """Rolling population std of log returns, annualized. Aligned to prices."""
    _check_window(window)
    returns = log_returns(prices)
    out = np.full(returns.size + 1, np.nan)
    for i in range(window - 1, returns.size):
        out[i + 1] = returns[i - window + 1:i + 1].std() * math.sqrt(periods_per_year)
    return out


def ewma_volatility(
    prices: Sequence[float],
    lam: float = 0.94,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> np.ndarray:
    """RiskMetrics EWMA: var_t = lam var_{t-1} + (1 - lam) r_t^2, seeded with r_1^2."""
    _check_smoothing(lam=lam)
    returns = log_returns(prices)
    variance = np.empty(returns.size)
    variance[0] = returns[0] ** 2
    for i in range(1, returns.size):
        variance[i] = lam * variance[i - 1] + (1 - lam) * returns[i] ** 2
    return np.concatenate([[np.nan], np.sqrt(variance * periods_per_year)])


def parkinson_volatility(
    highs: Sequence[float],
    lows: Sequence[float],
    window: int = 20,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> np.ndarray:
    """High-low range estimator: sqrt(mean(ln(H/L)^2) / (4 ln 2)), annualized."""
    _check_window(window)
    high = _as_array(highs, name="highs")
    low = _as_array(lows, name="lows")
    if high.size != low.size:
        raise ValueError("highs and lows must have the same length")
    if np.any(low <= 0) or np.any(high < low):
        raise ValueError("Need positive lows and highs >= lows")

    squared_range = np.log(high / low) ** 2
    mean_sq = sma(squared_range, window)
    return np.sqrt(PARKINSON_FACTOR * mean_sq * periods_per_year)


# ============================================================================
# TREND / MOMENTUM
# ============================================================================

class MovingAverageTrend(str, Enum):
    UP = "up"
    DOWN = "down"
    SIDEWAYS = "sideways"


@dataclass(frozen=True)
class TrendSignal:
    direction: MovingAverageTrend
    strength: float  # Share of recent moves agreeing with direction, 0-1
    short_ma: float
    long_ma: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction.value,
            "strength": self.strength,
            "short_ma": self.short_ma,
            "long_ma": self.long_ma,
        }


def detect_trend(
    values: Sequence[float],
    short_window: int = 10,
    long_window: int = 30,
    threshold: float = 0.02,
) -> TrendSignal:
    """
    Compare short and long moving averages.

    Direction is up/down when the short MA is more than `threshold`
    (relative) above/below the long MA. Strength counts consecutive
    moves within the short window that agree with the direction.
    """
    if short_window < 2 or long_window < short_window:
        raise ValueError("Need 2 <= short_window <= long_window")
    arr = _as_array(values)
    if arr.size < long_window:
        return TrendSignal(MovingAverageTrend.SIDEWAYS, 0.0, math.nan, math.nan)

    short_ma = float(arr[-short_window:].mean())
    long_ma = float(arr[-long_window:].mean())
    diff = (short_ma - long_ma) / abs(long_ma) if long_ma != 0 else 0.0

    if diff > threshold:
        direction = MovingAverageTrend.UP
    elif diff < -threshold:
        direction = MovingAverageTrend.DOWN
    else:
        return TrendSignal(MovingAverageTrend.SIDEWAYS, 0.0, short_ma, long_ma)

    moves = np.diff(arr[-short_window:])
    agreeing = np.sum(moves > 0) if direction is MovingAverageTrend.UP else np.sum(moves < 0)
    return TrendSignal(direction, float(agreeing) / (short_window - 1), short_ma, long_ma)


def velocity(values: Sequence[float], period: int = 5) -> np.ndarray:
    """Percent change over `period` steps."""
    _check_window(period)
    arr = _as_array(values)
    out = np.full(arr.size, np.nan)
    if arr.size > period:
        with np.errstate(divide="ignore", invalid="ignore"):
            out[period:] = (arr[period:] - arr[:-period]) / arr[:-period] * 100
    return out


def momentum(values: Sequence[float], period: int = 10) -> np.ndarray:
    """Ratio to the value `period` steps back, times 100."""
    _check_window(period)
    arr = _as_array(values)
    out = np.full(arr.size, np.nan)
    if arr.size > period:
        with np.errstate(divide="ignore", invalid="ignore"):
            out[period:] = arr[period:] / arr[:-period] * 100
    return out


# ============================================================================
# AUTOCORRELATION
# ============================================================================

def autocorrelation(values: Sequence[float], lag: int) -> float:
    """Lag-k autocorrelation normalized by the full-sample variance; 0 for constant series."""
    if lag < 0:
        raise ValueError(f"Lag must be non-negative, got {lag}")
    arr = _as_array(values, minimum=lag + 1)
    centered = arr - arr.mean()
    if lag == 0:
        return 1.0
    denominator = float(np.dot(centered, centered))
    if denominator == 0:
        return 0.0
    return float(np.dot(centered[lag:], centered[:-lag]) / denominator)


def acf(values: Sequence[float], max_lag: int = 20) -> np.ndarray:
    """Autocorrelations for lags 0..max_lag."""
    arr = _as_array(values, minimum=max_lag + 1)
    return np.array([autocorrelation(arr, k) for k in range(max_lag + 1)])
