"""
Logging Configuration Module
============================

Centralized logging for the simulation engine.

Features:
- Root format and level in one place
- Per-module level overrides (quiet the hot loops, keep training verbose)
- Timing of long simulations with slow-run warnings
- Entity-tagged messages for per-key registries
"""

from __future__ import annotations

import functools
import logging
import statistics
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator


# Particle filters and anomaly detectors update on every observation, so
# they default to WARNING; simulations and training report at INFO.
MODULE_LOG_LEVELS = {
    "quantcore.monte_carlo": logging.INFO,
    "quantcore.importance_sampling": logging.INFO,
    "quantcore.parallel": logging.INFO,
    "quantcore.copulas": logging.INFO,
    "quantcore.regime": logging.INFO,
    "quantcore.engine": logging.INFO,
    "quantcore.particle_filter": logging.WARNING,
    "quantcore.anomaly": logging.WARNING,
    "quantcore.time_series": logging.WARNING,
    "quantcore.linalg": logging.WARNING,
}

DEFAULT_SLOW_THRESHOLD_MS = 1000.0


def _parse_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


@dataclass
class LoggingConfig:
    """
    Logging configuration for the engine.

    Applies a single stream handler on the root logger and per-module levels.
    """
    root_level: int = logging.INFO
    format_string: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    module_levels: dict[str, int] = field(default_factory=lambda: MODULE_LOG_LEVELS.copy())
    slow_operation_threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        """Build from a config mapping; level names may be strings."""
        data = data or {}
        module_levels = MODULE_LOG_LEVELS.copy()
        for name, level in (data.get("module_levels") or {}).items():
            module_levels[name] = _parse_level(level)

        return cls(
            root_level=_parse_level(data.get("level", logging.INFO)),
            format_string=data.get("format", cls.format_string),
            date_format=data.get("date_format", cls.date_format),
            module_levels=module_levels,
            slow_operation_threshold_ms=float(
                data.get("slow_operation_threshold_ms", cls.slow_operation_threshold_ms)
            ),
        )

    def apply(self) -> None:
        """Install the handler and module levels."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.root_level)

        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        handler = logging.StreamHandler()
        handler.setLevel(self.root_level)
        handler.setFormatter(logging.Formatter(self.format_string, self.date_format))
        root_logger.addHandler(handler)

        for module_name, level in self.module_levels.items():
            logging.getLogger(module_name).setLevel(level)


def _configured_threshold_ms() -> float:
    config = get_logging_config()
    if config is None:
        return DEFAULT_SLOW_THRESHOLD_MS
    return config.slow_operation_threshold_ms


class PerformanceLogger:
    """
    Times simulation runs and warns about slow ones.

    Without an explicit threshold the slow-run limit is read from the
    applied LoggingConfig each time a block finishes, so module-level
    instances follow later configure_logging() calls.

    Durations are kept per operation name so long-running services can
    log a summary.
    """

    def __init__(self, logger: logging.Logger, slow_threshold_ms: float | None = None):
        self.logger = logger
        self._slow_threshold_ms = slow_threshold_ms
        self._stats: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    @property
    def slow_threshold_ms(self) -> float:
        if self._slow_threshold_ms is not None:
            return self._slow_threshold_ms
        return _configured_threshold_ms()

    @contextmanager
    def measure(self, operation_name: str, **context) -> Iterator[None]:
        """
        Context manager measuring the enclosed block.

        Example:
            with perf_logger.measure("simulate_gbm", n_paths=50000):
                paths = simulate()
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            with self._lock:
                self._stats[operation_name].append(duration_ms)

            suffix = ""
            if context:
                suffix = " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"

            threshold_ms = self.slow_threshold_ms
            if duration_ms > threshold_ms:
                self.logger.warning(
                    f"Slow operation: {operation_name} took {duration_ms:.2f}ms{suffix} "
                    f"(threshold: {threshold_ms}ms)"
                )
            else:
                self.logger.debug(f"{operation_name} completed in {duration_ms:.2f}ms{suffix}")

    def get_stats(self, operation_name: str) -> dict[str, float]:
        """Get timing statistics for an operation."""
        with self._lock:
            times = list(self._stats.get(operation_name, []))

        if not times:
            return {}

        return {
            "count": len(times),
            "mean_ms": statistics.mean(times),
            "median_ms": statistics.median(times),
            "min_ms": min(times),
            "max_ms": max(times),
        }

    def summary(self) -> dict[str, dict[str, float]]:
        """Timing statistics for every measured operation."""
        with self._lock:
            operations = list(self._stats.keys())

        result = {}
        for op in operations:
            stats = self.get_stats(op)
            if stats:
                result[op] = stats
        return result

    def log_summary(self) -> None:
        """Log a one-line summary per measured operation."""
        for op, stats in self.summary().items():
            self.logger.info(
                f"Timing for {op}: mean={stats['mean_ms']:.2f}ms, "
                f"max={stats['max_ms']:.2f}ms, count={stats['count']}"
            )


def timed(
    logger: logging.Logger | None = None,
    threshold_ms: float | None = None,
    operation_name: str | None = None,
):
    """
    Decorator timing a function call.

    threshold_ms defaults to the applied LoggingConfig's slow-run limit.

    Example:
        @timed(threshold_ms=500.0)
        def train(self, returns):
            ...
    """
    def decorator(func: Callable) -> Callable:
        name = operation_name or func.__qualname__
        log = logger or logging.getLogger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                limit_ms = threshold_ms if threshold_ms is not None else _configured_threshold_ms()
                if duration_ms > limit_ms:
                    log.warning(f"Slow operation: {name} took {duration_ms:.2f}ms")
                else:
                    log.debug(f"{name} completed in {duration_ms:.2f}ms")

        return wrapper
    return decorator


class ContextLogger:
    """
    Logger that prefixes every message with fixed context.

    Registries use it to tag messages with the tracked entity key.
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self.logger = logger
        self.context = context or {}

    def _format_message(self, message: str) -> str:
        if not self.context:
            return message
        context_str = " | ".join(f"{k}={v}" for k, v in self.context.items())
        return f"[{context_str}] {message}"

    def debug(self, message: str, *args, **kwargs):
        self.logger.debug(self._format_message(message), *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self.logger.info(self._format_message(message), *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self.logger.warning(self._format_message(message), *args, **kwargs)


_logging_config: LoggingConfig | None = None


def configure_logging(config: LoggingConfig | None = None) -> LoggingConfig:
    """
    Configure logging for the engine.

    Args:
        config: Optional custom configuration

    Returns:
        Applied configuration
    """
    global _logging_config

    if config is None:
        config = LoggingConfig()

    config.apply()
    _logging_config = config
    return config


def get_logging_config() -> LoggingConfig | None:
    """Currently applied configuration, if any."""
    return _logging_config


def get_performance_logger(name: str, slow_threshold_ms: float | None = None) -> PerformanceLogger:
    """
    Performance logger bound to the named module logger.

    Leave slow_threshold_ms as None to follow the applied LoggingConfig.
    """
    return PerformanceLogger(logging.getLogger(name), slow_threshold_ms=slow_threshold_ms)


def get_context_logger(name: str, **context) -> ContextLogger:
    """Context logger bound to the named module logger."""
    return ContextLogger(logging.getLogger(name), context)
