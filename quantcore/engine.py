"""
Quant Engine
============

Facade composing every simulator and detector from one EngineConfig.

One root VariateGenerator is split with spawn() so each component gets an
independent, reproducible stream: the same seed and config always give
the same numbers, whichever component is called first.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Sequence

from quantcore.anomaly import AnomalyDetectorRegistry, AnomalyResult, MultivariateAnomalyDetector
from quantcore.config import EngineConfig, load_config
from quantcore.copulas import CopulaEngine, CopulaFamily, CopulaParams, JointOutcomeResult
from quantcore.importance_sampling import ImportanceSampler, ImportanceSamplingResult, TailRiskResult
from quantcore.importance_sampling import perf_logger as importance_perf_logger
from quantcore.logging_config import configure_logging
from quantcore.monte_carlo import MonteCarloSimulator
from quantcore.monte_carlo import perf_logger as monte_carlo_perf_logger
from quantcore.numeric import EstimateResult
from quantcore.particle_filter import Observation, ParticleFilterRegistry
from quantcore.random_variates import VariateGenerator
from quantcore.regime import RegimeHMM, RegimeState, TrainingResult, detect_regime_simple

logger = logging.getLogger(__name__)


class PricingMethod(str, Enum):
    """Binary-contract estimator."""
    CRUDE = "crude"
    ANTITHETIC = "antithetic"
    STRATIFIED = "stratified"


class QuantEngine:
    """
    Owns the simulators, the regime model and the per-entity registries.

    Components stay reachable as attributes for anything the convenience
    methods do not cover.
    """

    def __init__(self, config: EngineConfig | None = None):
        self.config = config or EngineConfig()
        self._build(self.config.seed)
        logger.info(
            f"QuantEngine initialized (seed={self.config.seed}, "
            f"n_paths={self.config.monte_carlo.n_paths}, workers={self.config.monte_carlo.n_workers})"
        )

    def _build(self, seed: int | None) -> None:
        self.variates = VariateGenerator(seed)
        mc_gen, is_gen, copula_gen, pf_gen, anomaly_gen = self.variates.spawn(5)

        execution = self.config.monte_carlo.execution_options()
        self.monte_carlo = MonteCarloSimulator(variates=mc_gen, execution=execution)
        self.importance = ImportanceSampler(
            variates=is_gen,
            execution=execution,
            trading_days=self.config.monte_carlo.trading_days,
        )
        self.copulas = CopulaEngine(variates=copula_gen)
        self.regime = RegimeHMM(self.config.regime.params, self.config.regime.variance_floor)
        self.particle_filters = ParticleFilterRegistry(
            self.config.particle_filter, pf_gen, max_entities=self.config.max_entities,
        )
        self.anomaly_detectors = AnomalyDetectorRegistry(
            self.config.anomaly, anomaly_gen, max_entities=self.config.max_entities,
        )
        self.multivariate_anomaly = MultivariateAnomalyDetector(window_size=self.config.anomaly.window_size)

    # =========================================================================
    # SIMULATION
    # =========================================================================

    def price_binary(
        self,
        s0: float,
        k: float,
        mu: float,
        sigma: float,
        t: float,
        method: PricingMethod | str = PricingMethod.STRATIFIED,
        n_paths: int | None = None,
    ) -> EstimateResult:
        """P(S_T > K) with the chosen estimator and the configured path count."""
        method = PricingMethod(method)
        n_paths = n_paths or self.config.monte_carlo.n_paths
        if method is PricingMethod.CRUDE:
            return self.monte_carlo.price_binary_contract(s0, k, mu, sigma, t, n_paths)
        if method is PricingMethod.ANTITHETIC:
            return self.monte_carlo.price_binary_antithetic(s0, k, mu, sigma, t, n_paths)
        return self.monte_carlo.price_binary_stratified(
            s0, k, mu, sigma, t, self.config.monte_carlo.n_strata, n_paths,
        )

    def crash_probability(
        self,
        price: float,
        crash_pct: float,
        volatility: float,
        days: float,
    ) -> ImportanceSamplingResult:
        return self.importance.crash_probability(
            price, crash_pct, volatility, days, self.config.monte_carlo.n_paths,
        )

    def tail_var(self, s0: float, sigma: float, days: float, alpha: float = 0.99) -> TailRiskResult:
        return self.importance.tail_var(
            s0, sigma, days / self.config.monte_carlo.trading_days, alpha, self.config.monte_carlo.n_paths,
        )

    def joint_outcomes(
        self,
        probabilities: Sequence[float],
        correlation=None,
        family: CopulaFamily | str | None = None,
    ) -> JointOutcomeResult:
        """Correlated binary outcomes with the configured copula defaults."""
        settings = self.config.copula
        return self.copulas.simulate_correlated_outcomes(
            probabilities,
            correlation,
            family or settings.family,
            CopulaParams(nu=settings.nu, theta=settings.theta),
            settings.n_samples,
        )

    # =========================================================================
    # PER-ENTITY TRACKING
    # =========================================================================

    def update_probability(self, key: str, observation: float | Observation) -> float:
        return self.particle_filters.update(key, observation)

    def check_anomaly(self, key: str, value: float) -> AnomalyResult:
        return self.anomaly_detectors.check(key, value)

    # =========================================================================
    # REGIMES
    # =========================================================================

    def update_regime(self, ret: float) -> RegimeState:
        return self.regime.update(ret)

    def train_regime(self, returns: Sequence[float]) -> TrainingResult:
        return self.regime.train(
            returns, self.config.regime.n_iterations, self.config.regime.xi_mode,
        )

    def simple_regime(self, returns: Sequence[float]) -> RegimeState:
        return detect_regime_simple(returns, self.config.regime.simple_window)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def reset(self, seed: int | None = None) -> None:
        """
        Rebuild every component, dropping tracked entities and regime history.

        Timing statistics gathered so far are logged before the rebuild.

        Args:
            seed: New root seed; defaults to the configured one
        """
        monte_carlo_perf_logger.log_summary()
        importance_perf_logger.log_summary()
        self._build(self.config.seed if seed is None else seed)
        logger.info(f"QuantEngine reset (seed={self.variates.seed})")

    def get_status(self) -> dict[str, Any]:
        return {
            "seed": self.variates.seed,
            "particle_filters": len(self.particle_filters),
            "anomaly_detectors": len(self.anomaly_detectors),
            "regime_observations": len(self.regime.history),
            "regime_probabilities": {
                k.value: v for k, v in self.regime.state_probabilities().items()
            },
            "timings": {
                **monte_carlo_perf_logger.summary(),
                **importance_perf_logger.summary(),
            },
        }


def create_engine(
    config: EngineConfig | dict | str | Path | None = None,
    setup_logging: bool = False,
) -> QuantEngine:
    """
    Factory for a QuantEngine.

    Args:
        config: EngineConfig, plain mapping, or path to a YAML file
        setup_logging: Apply the config's logging section to the root logger
    """
    if isinstance(config, (str, Path)):
        engine_config = load_config(config)
    elif isinstance(config, dict):
        engine_config = EngineConfig.from_dict(config)
    else:
        engine_config = config or EngineConfig()

    if setup_logging:
        configure_logging(engine_config.logging)
    return QuantEngine(engine_config)
