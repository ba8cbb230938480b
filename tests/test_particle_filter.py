"""
Tests for Particle Filter
=========================
"""

import numpy as np
import pytest

from quantcore.particle_filter import (
    Observation,
    ParticleFilter,
    ParticleFilterConfig,
    ParticleFilterRegistry,
    TrendDirection,
    TrendProbabilityFilter,
    effective_sample_size,
    systematic_resample,
)
from quantcore.random_variates import VariateGenerator


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def pf():
    """Seeded filter starting at 0.5."""
    return ParticleFilter(prior_probability=0.5, seed=42)


# ============================================================================
# CONFIG TESTS
# ============================================================================

class TestConfig:
    """Tests for ParticleFilterConfig."""

    def test_defaults(self):
        """Test default tuning."""
        config = ParticleFilterConfig()
        assert config.n_particles == 5000
        assert config.process_vol == 0.05
        assert config.obs_noise == 0.03
        assert config.resample_threshold == 0.5

    def test_from_dict_ignores_unknown(self):
        """Test unknown keys are ignored."""
        config = ParticleFilterConfig.from_dict({"n_particles": 100, "colour": "red"})
        assert config.n_particles == 100

    def test_invalid(self):
        """Test rejected values."""
        with pytest.raises(ValueError, match="at least 2 particles"):
            ParticleFilterConfig(n_particles=1)
        with pytest.raises(ValueError, match="resample_threshold"):
            ParticleFilterConfig(resample_threshold=1.5)


# ============================================================================
# RESAMPLING TESTS
# ============================================================================

class TestResampling:
    """Tests for systematic resampling."""

    def test_concentrated_weight(self, variates):
        """Test all indices land on the only weighted particle."""
        indices = systematic_resample(np.array([0.0, 0.0, 1.0, 0.0]), variates)
        assert list(indices) == [2, 2, 2, 2]

    def test_proportional_counts(self, variates):
        """Test counts match N * weight exactly when it is integral."""
        indices = systematic_resample(np.array([0.5, 0.25, 0.25, 0.0]), variates)
        assert list(np.bincount(indices, minlength=4)) == [2, 1, 1, 0]

    def test_effective_sample_size(self):
        """Test ESS for uniform and degenerate weights."""
        assert effective_sample_size(np.full(10, 0.1)) == pytest.approx(10)
        assert effective_sample_size(np.array([1.0, 0.0, 0.0])) == pytest.approx(1)

    def test_resample_preserves_estimate(self, pf):
        """Test resampling does not shift the weighted mean."""
        pf.update(0.7)
        pf.weights = pf.weights * np.linspace(0.5, 1.5, pf.config.n_particles)
        pf.weights /= pf.weights.sum()
        before = pf.estimate()
        pf.resample()
        assert abs(pf.estimate() - before) < 0.01
        assert pf.weights.sum() == pytest.approx(1.0)
        assert np.allclose(pf.weights, 1.0 / pf.config.n_particles)


# ============================================================================
# FILTER TESTS
# ============================================================================

class TestParticleFilter:
    """Tests for the update cycle and summaries."""

    def test_initial_estimate_near_prior(self):
        """Test the swarm starts around the prior."""
        pf = ParticleFilter(0.3, seed=1)
        assert pf.estimate() == pytest.approx(0.3, abs=0.03)

    def test_weights_normalized_after_update(self, pf):
        """Test weights sum to 1 after every update."""
        for value in (0.6, 0.2, 0.9, 0.5):
            pf.update(value)
            assert pf.weights.sum() == pytest.approx(1.0)

    def test_converges_to_observations(self, pf):
        """Test repeated observations pull the estimate."""
        for _ in range(30):
            estimate = pf.update(0.8)
        assert estimate == pytest.approx(0.8, abs=0.05)

    def test_extreme_prior_is_clamped(self):
        """Test priors of 0 and 1 stay finite."""
        for prior in (0.0, 1.0):
            pf = ParticleFilter(prior, ParticleFilterConfig(n_particles=100), seed=1)
            assert np.all(np.isfinite(pf.states))

    def test_confidence_tightens_update(self):
        """Test a confident observation moves the estimate further."""
        low = ParticleFilter(0.5, seed=3)
        high = ParticleFilter(0.5, seed=3)
        low.update(Observation(0.9, confidence=1.0))
        high.update(Observation(0.9, confidence=4.0))
        assert high.estimate() > low.estimate()

    def test_invalid_confidence(self):
        """Test non-positive confidence is rejected."""
        with pytest.raises(ValueError, match="confidence"):
            Observation(0.5, confidence=0.0)

    def test_update_batch(self, pf):
        """Test batch updates return the final estimate and record history."""
        final = pf.update_batch([0.6, 0.65, 0.7])
        assert final == pf.history[-1]
        assert len(pf.history) == 3

    def test_credible_interval(self, pf):
        """Test the interval brackets the estimate and narrows with data."""
        initial_width = np.subtract(*reversed(pf.credible_interval()))
        for _ in range(20):
            pf.update(0.4)
        lower, upper = pf.credible_interval()
        assert lower <= pf.estimate() <= upper
        assert upper - lower < initial_width

    def test_distribution_integrates_to_one(self, pf):
        """Test the binned density integrates to 1."""
        density = pf.distribution(n_bins=20)
        assert len(density) == 20
        assert sum(d for _, d in density) / 20 == pytest.approx(1.0)

    def test_get_state(self, pf):
        """Test state snapshot."""
        pf.update(0.6)
        state = pf.get_state()
        assert state.n_updates == 1
        assert state.n_particles == 5000
        assert state.to_dict()["history"] == pf.history

    def test_reset(self, pf):
        """Test reset clears history and re-centers on a new prior."""
        pf.update_batch([0.9] * 5)
        pf.reset(prior_probability=0.2)
        assert pf.history == []
        assert pf.estimate() == pytest.approx(0.2, abs=0.03)


# ============================================================================
# REGISTRY TESTS
# ============================================================================

class TestRegistry:
    """Tests for the per-entity filter registry."""

    @pytest.fixture
    def registry(self):
        return ParticleFilterRegistry(ParticleFilterConfig(n_particles=500), VariateGenerator(1))

    def test_get_or_create_returns_same_filter(self, registry):
        """Test one filter per key."""
        assert registry.get_or_create("BTC") is registry.get_or_create("BTC")
        assert len(registry) == 1

    def test_entities_are_independent(self, registry):
        """Test updates to one entity leave another untouched."""
        registry.get_or_create("ETH")
        before = registry.get("ETH").estimate()
        registry.update("BTC", 0.9)
        assert registry.get("ETH").estimate() == before
        assert set(registry.estimates()) == {"BTC", "ETH"}

    def test_custom_prior(self, registry):
        """Test a per-entity prior."""
        pf = registry.get_or_create("SOL", prior_probability=0.1)
        assert pf.estimate() == pytest.approx(0.1, abs=0.03)

    def test_lru_eviction(self):
        """Test the least recently used entity is evicted."""
        registry = ParticleFilterRegistry(ParticleFilterConfig(n_particles=50), max_entities=2)
        registry.get_or_create("a")
        registry.get_or_create("b")
        registry.get_or_create("a")
        registry.get_or_create("c")
        assert "b" not in registry
        assert set(registry.keys()) == {"a", "c"}

    def test_remove_and_clear(self, registry):
        """Test explicit lifecycle."""
        registry.get_or_create("x")
        assert registry.remove("x")
        assert not registry.remove("x")
        registry.get_or_create("y")
        registry.clear()
        assert len(registry) == 0

    def test_reset_all(self, registry):
        """Test every filter's history is cleared."""
        registry.update("a", 0.8)
        registry.update("b", 0.2)
        registry.reset_all()
        assert all(state.n_updates == 0 for state in registry.states().values())


# ============================================================================
# TREND FILTER TESTS
# ============================================================================

class TestTrendFilter:
    """Tests for the viral-trend specialization."""

    def test_metrics_mapping(self):
        """Test velocity, mentions and flags map into [0, 1]."""
        assert TrendProbabilityFilter.metrics_to_observation(0.0, 0).value == pytest.approx(0.4)
        assert TrendProbabilityFilter.metrics_to_observation(-2.0, 0).value == pytest.approx(0.0)
        assert TrendProbabilityFilter.metrics_to_observation(0.0, 99).value == pytest.approx(0.5)
        assert TrendProbabilityFilter.metrics_to_observation(3.0, 1000, True, True).value == 1.0

    def test_cross_platform_confidence(self):
        """Test cross-platform spread raises observation confidence."""
        obs = TrendProbabilityFilter.metrics_to_observation(1.0, 10, cross_platform=True)
        assert obs.confidence == 1.2

    def test_rising_trend(self):
        """Test strong metrics produce a rising prediction."""
        config = ParticleFilterConfig(n_particles=2000, process_vol=0.2, obs_noise=0.1)
        trend = TrendProbabilityFilter(prior_probability=0.1, config=config, seed=7)
        for _ in range(3):
            trend.update_with_metrics(velocity=2.5, mentions=500, cross_platform=True)
        prediction = trend.viral_prediction()
        assert prediction.trend is TrendDirection.RISING
        assert prediction.probability > 0.3
        assert len(trend.velocity_history) == 3

    def test_stable_with_short_history(self):
        """Test fewer than three estimates reads as stable."""
        trend = TrendProbabilityFilter(seed=7)
        trend.update_with_metrics(velocity=2.5, mentions=500)
        assert trend.trend() is TrendDirection.STABLE

    def test_reset_clears_metric_history(self):
        """Test reset clears metric history."""
        trend = TrendProbabilityFilter(seed=7)
        trend.update_with_metrics(velocity=1.0, mentions=10)
        trend.reset()
        assert trend.velocity_history == []
        assert trend.history == []
