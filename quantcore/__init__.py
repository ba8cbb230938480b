"""
QuantCore - Quantitative Simulation Engine
==========================================

Turns noisy, partial observations into calibrated probabilistic signals:
rare-event probabilities, Bayesian estimates, joint tail risk, anomalies
and market regimes.
"""

from quantcore.exceptions import (
    QuantCoreError,
    MatrixDecompositionError,
    SingularMatrixError,
    SimulationCancelledError,
    ConfigValidationError,
)
from quantcore.numeric import EstimateResult
from quantcore.random_variates import VariateGenerator
from quantcore.parallel import ExecutionOptions
from quantcore.monte_carlo import (
    GBMParams,
    JumpDiffusionParams,
    PathSet,
    RiskMetrics,
    MonteCarloSimulator,
)
from quantcore.importance_sampling import (
    CrashAsset,
    TailDirection,
    ImportanceSampler,
    ImportanceSamplingResult,
    TailRiskResult,
)
from quantcore.particle_filter import (
    Observation,
    ParticleFilter,
    ParticleFilterConfig,
    ParticleFilterRegistry,
    TrendProbabilityFilter,
)
from quantcore.copulas import CopulaEngine, CopulaFamily, CopulaParams
from quantcore.anomaly import (
    AnomalyMethod,
    AnomalyResult,
    AnomalyDetector,
    AnomalyDetectorConfig,
    AnomalyDetectorRegistry,
    MultivariateAnomalyDetector,
)
from quantcore.regime import (
    MarketRegime,
    HMMParams,
    RegimeHMM,
    RegimeState,
    detect_regime_simple,
    get_regime_strategy_params,
)
from quantcore.config import EngineConfig, load_config
from quantcore.engine import QuantEngine, PricingMethod, create_engine

__version__ = "0.1.0"

__all__ = [
    # Errors
    "QuantCoreError",
    "MatrixDecompositionError",
    "SingularMatrixError",
    "SimulationCancelledError",
    "ConfigValidationError",
    # Building blocks
    "EstimateResult",
    "VariateGenerator",
    "ExecutionOptions",
    # Monte Carlo
    "GBMParams",
    "JumpDiffusionParams",
    "PathSet",
    "RiskMetrics",
    "MonteCarloSimulator",
    # Importance sampling
    "CrashAsset",
    "TailDirection",
    "ImportanceSampler",
    "ImportanceSamplingResult",
    "TailRiskResult",
    # Particle filter
    "Observation",
    "ParticleFilter",
    "ParticleFilterConfig",
    "ParticleFilterRegistry",
    "TrendProbabilityFilter",
    # Copulas
    "CopulaEngine",
    "CopulaFamily",
    "CopulaParams",
    # Anomaly detection
    "AnomalyMethod",
    "AnomalyResult",
    "AnomalyDetector",
    "AnomalyDetectorConfig",
    "AnomalyDetectorRegistry",
    "MultivariateAnomalyDetector",
    # Regimes
    "MarketRegime",
    "HMMParams",
    "RegimeHMM",
    "RegimeState",
    "detect_regime_simple",
    "get_regime_strategy_params",
    # Engine
    "EngineConfig",
    "load_config",
    "QuantEngine",
    "PricingMethod",
    "create_engine",
]
