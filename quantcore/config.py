"""
Engine Configuration
====================

Loads the engine configuration from YAML into per-module dataclasses.

Each module owns its own settings dataclass (ParticleFilterConfig,
AnomalyDetectorConfig, HMMParams, LoggingConfig); this module composes
them, adds the simulation settings, and validates the result as a whole.
Validation collects every problem before raising, so one run reports all
of them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from quantcore.anomaly import AnomalyDetectorConfig
from quantcore.copulas import CopulaFamily
from quantcore.exceptions import ConfigValidationError
from quantcore.logging_config import LoggingConfig
from quantcore.parallel import DEFAULT_CHUNK_SIZE, ExecutionOptions
from quantcore.particle_filter import ParticleFilterConfig
from quantcore.regime import HMMParams, XiMode

logger = logging.getLogger(__name__)


@dataclass
class MonteCarloConfig:
    """Path simulation, binary pricing and importance sampling settings."""
    n_paths: int = 100_000
    n_strata: int = 10
    chunk_size: int = DEFAULT_CHUNK_SIZE
    n_workers: int = 1
    trading_days: int = 252
    deadline: float | None = None  # Seconds per simulation call

    def errors(self) -> list[str]:
        problems = []
        if self.n_paths < 2:
            problems.append(f"monte_carlo.n_paths must be at least 2, got {self.n_paths}")
        if self.n_strata < 1:
            problems.append(f"monte_carlo.n_strata must be at least 1, got {self.n_strata}")
        elif self.n_paths < self.n_strata * 2:
            problems.append("monte_carlo.n_paths must give every stratum at least 2 paths")
        if self.chunk_size < 1:
            problems.append(f"monte_carlo.chunk_size must be at least 1, got {self.chunk_size}")
        if self.n_workers < 1:
            problems.append(f"monte_carlo.n_workers must be at least 1, got {self.n_workers}")
        if self.trading_days < 1:
            problems.append(f"monte_carlo.trading_days must be at least 1, got {self.trading_days}")
        if self.deadline is not None and self.deadline <= 0:
            problems.append(f"monte_carlo.deadline must be positive, got {self.deadline}")
        return problems

    def execution_options(self) -> ExecutionOptions:
        return ExecutionOptions(
            n_workers=self.n_workers,
            chunk_size=self.chunk_size,
            deadline=self.deadline,
        )


@dataclass
class CopulaConfig:
    """Default copula family and parameters for joint-outcome simulation."""
    family: CopulaFamily = CopulaFamily.STUDENT_T
    nu: float = 4.0
    theta: float = 2.0
    n_samples: int = 100_000

    def __post_init__(self):
        self.family = CopulaFamily(self.family)

    def errors(self) -> list[str]:
        problems = []
        if self.nu <= 0:
            problems.append(f"copula.nu must be positive, got {self.nu}")
        if self.family in (CopulaFamily.CLAYTON, CopulaFamily.FRANK) and self.theta <= 0:
            problems.append(f"copula.theta must be positive for {self.family.value}, got {self.theta}")
        if self.family is CopulaFamily.GUMBEL and self.theta < 1:
            problems.append(f"copula.theta must be at least 1 for gumbel, got {self.theta}")
        if self.n_samples < 1:
            problems.append(f"copula.n_samples must be at least 1, got {self.n_samples}")
        return problems


@dataclass
class RegimeConfig:
    """Regime HMM parameters and training defaults."""
    params: HMMParams = field(default_factory=HMMParams)
    variance_floor: float = 1e-4
    n_iterations: int = 10
    xi_mode: XiMode = XiMode.APPROXIMATE
    simple_window: int = 20

    def __post_init__(self):
        self.xi_mode = XiMode(self.xi_mode)

    def errors(self) -> list[str]:
        problems = []
        if self.variance_floor < 0:
            problems.append(f"regime.variance_floor must be non-negative, got {self.variance_floor}")
        if self.n_iterations < 1:
            problems.append(f"regime.n_iterations must be at least 1, got {self.n_iterations}")
        if self.simple_window < 2:
            problems.append(f"regime.simple_window must be at least 2, got {self.simple_window}")
        return problems


@dataclass
class EngineConfig:
    """Complete engine configuration."""
    seed: int | None = None
    monte_carlo: MonteCarloConfig = field(default_factory=MonteCarloConfig)
    particle_filter: ParticleFilterConfig = field(default_factory=ParticleFilterConfig)
    anomaly: AnomalyDetectorConfig = field(default_factory=AnomalyDetectorConfig)
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    copula: CopulaConfig = field(default_factory=CopulaConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    max_entities: int | None = None  # Per registry; None means unbounded

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EngineConfig":
        """
        Build and validate a config from a plain mapping.

        Raises:
            ConfigValidationError: any section is malformed or out of range
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigValidationError(f"Config root must be a mapping, got {type(data).__name__}")

        errors: list[str] = []

        def section(name: str, build: Callable[[dict], Any], default: Callable[[], Any]) -> Any:
            raw = data.get(name) or {}
            if not isinstance(raw, dict):
                errors.append(f"{name} must be a mapping, got {type(raw).__name__}")
                return default()
            try:
                return build(raw)
            except (TypeError, ValueError) as e:
                errors.append(f"{name}: {e}")
                return default()

        def build_regime(raw: dict) -> RegimeConfig:
            options = {k: v for k, v in raw.items() if k in RegimeConfig.__dataclass_fields__ and k != "params"}
            return RegimeConfig(params=HMMParams.from_dict(raw.get("params")), **options)

        config = cls(
            seed=data.get("seed"),
            monte_carlo=section("monte_carlo", lambda raw: _build(MonteCarloConfig, raw), MonteCarloConfig),
            particle_filter=section("particle_filter", ParticleFilterConfig.from_dict, ParticleFilterConfig),
            anomaly=section("anomaly", AnomalyDetectorConfig.from_dict, AnomalyDetectorConfig),
            regime=section("regime", build_regime, RegimeConfig),
            copula=section("copula", lambda raw: _build(CopulaConfig, raw), CopulaConfig),
            logging=section("logging", LoggingConfig.from_dict, LoggingConfig),
            max_entities=data.get("max_entities"),
        )
        config.validate(errors)
        return config

    def validate(self, errors: list[str] | None = None) -> None:
        """
        Check cross-field constraints.

        Raises:
            ConfigValidationError: with every problem found
        """
        problems = list(errors or [])
        if self.seed is not None and (not isinstance(self.seed, int) or self.seed < 0):
            problems.append(f"seed must be a non-negative integer, got {self.seed!r}")
        if self.max_entities is not None and self.max_entities < 1:
            problems.append(f"max_entities must be at least 1, got {self.max_entities}")
        problems.extend(self.monte_carlo.errors())
        problems.extend(self.regime.errors())
        problems.extend(self.copula.errors())

        if problems:
            for problem in problems:
                logger.error(f"Config error: {problem}")
            raise ConfigValidationError(
                f"Configuration invalid ({len(problems)} errors)", problems
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "seed": self.seed,
            "max_entities": self.max_entities,
            "monte_carlo": dict(vars(self.monte_carlo)),
            "particle_filter": dict(vars(self.particle_filter)),
            "anomaly": {
                "method": self.anomaly.method.value,
                "threshold": self.anomaly.threshold,
                "window_size": self.anomaly.window_size,
            },
            "regime": {
                "params": self.regime.params.to_dict(),
                "variance_floor": self.regime.variance_floor,
                "n_iterations": self.regime.n_iterations,
                "xi_mode": self.regime.xi_mode.value,
                "simple_window": self.regime.simple_window,
            },
            "copula": {
                "family": self.copula.family.value,
                "nu": self.copula.nu,
                "theta": self.copula.theta,
                "n_samples": self.copula.n_samples,
            },
        }


def _build(cls, raw: dict):
    unknown = set(raw) - set(cls.__dataclass_fields__)
    if unknown:
        raise ValueError(f"unknown keys {sorted(unknown)}")
    return cls(**raw)


def load_config(path: str | Path) -> EngineConfig:
    """
    Load an EngineConfig from a YAML file.

    An empty file yields the defaults.

    Raises:
        FileNotFoundError: path does not exist
        ConfigValidationError: the YAML is malformed or fails validation
    """
    config_file = Path(path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_file, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Cannot parse {config_file}: {e}") from e

    config = EngineConfig.from_dict(data)
    logger.info(f"Loaded configuration from {config_file}")
    return config
