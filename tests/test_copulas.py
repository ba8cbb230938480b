"""
Tests for Copula Engine
=======================

Closed-form tail dependence plus sampling checks for every family.
"""

import numpy as np
import pytest

from quantcore.copulas import (
    CopulaEngine,
    CopulaFamily,
    CopulaParams,
    build_correlation_matrix,
    empirical_tail_dependence,
    t_copula_tail_dependence,
    tail_dependence,
)
from quantcore.exceptions import MatrixDecompositionError
from quantcore.linalg import equicorrelation_matrix


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def engine():
    """Seeded copula engine."""
    return CopulaEngine(seed=42)


@pytest.fixture
def corr_06():
    """Bivariate correlation 0.6."""
    return equicorrelation_matrix(2, 0.6)


# ============================================================================
# CLOSED FORMS
# ============================================================================

class TestClosedFormTailDependence:
    """Tests for analytic tail-dependence coefficients."""

    def test_student_t_value(self):
        """Test nu=4, rho=0.6 tail dependence."""
        assert t_copula_tail_dependence(0.6, 4.0) == pytest.approx(0.314, abs=0.02)

    def test_student_t_decreases_with_nu(self):
        """Test heavier tails give stronger dependence."""
        assert t_copula_tail_dependence(0.5, 3.0) > t_copula_tail_dependence(0.5, 30.0)

    def test_student_t_limits(self):
        """Test perfect correlation boundaries."""
        assert t_copula_tail_dependence(1.0, 4.0) == 1.0
        assert t_copula_tail_dependence(-1.0, 4.0) == 0.0

    def test_gaussian_is_zero(self, corr_06):
        """Test the Gaussian copula has no tail dependence."""
        result = tail_dependence(CopulaFamily.GAUSSIAN, CopulaParams(correlation=corr_06))
        assert result.lower == 0.0
        assert result.upper == 0.0

    def test_clayton_lower_only(self):
        """Test Clayton lambda_L = 2^(-1/theta)."""
        result = tail_dependence("clayton", CopulaParams(theta=2.0))
        assert result.lower == pytest.approx(2 ** -0.5)
        assert result.upper == 0.0

    def test_gumbel_upper_only(self):
        """Test Gumbel lambda_U = 2 - 2^(1/theta)."""
        result = tail_dependence("gumbel", CopulaParams(theta=2.0))
        assert result.upper == pytest.approx(2 - 2 ** 0.5)
        assert result.lower == 0.0

    def test_frank_none(self):
        """Test Frank copula has no tail dependence."""
        result = tail_dependence("frank", CopulaParams(theta=5.0))
        assert result.to_dict() == {"lower": 0.0, "upper": 0.0}

    def test_rho_requires_correlation(self):
        """Test rho property without a matrix."""
        with pytest.raises(ValueError, match="Correlation matrix required"):
            _ = CopulaParams().rho


# ============================================================================
# SAMPLING
# ============================================================================

class TestEllipticalSampling:
    """Tests for Gaussian and Student-t copulas."""

    def test_uniform_marginals(self, engine, corr_06):
        """Test samples lie strictly inside the unit square."""
        u = engine.sample_student_t(20_000, corr_06, nu=4.0)
        assert u.shape == (20_000, 2)
        assert np.all((u > 0) & (u < 1))
        assert u.mean(axis=0) == pytest.approx([0.5, 0.5], abs=0.01)

    def test_t_tail_exceeds_gaussian(self, engine, corr_06):
        """Test joint extremes are more frequent under the t copula."""
        t_samples = engine.sample(CopulaFamily.STUDENT_T, 200_000, CopulaParams(correlation=corr_06, nu=4.0))
        g_samples = engine.sample(CopulaFamily.GAUSSIAN, 200_000, CopulaParams(correlation=corr_06))

        t_tail = empirical_tail_dependence(t_samples, q=0.01)
        g_tail = empirical_tail_dependence(g_samples, q=0.01)

        assert t_tail.lower > g_tail.lower + 0.05
        assert t_tail.upper > g_tail.upper + 0.05

    def test_non_psd_correlation_raises(self, engine):
        """Test an indefinite matrix is rejected."""
        bad = np.array([[1.0, 0.9, 0.9], [0.9, 1.0, -0.9], [0.9, -0.9, 1.0]])
        with pytest.raises(MatrixDecompositionError):
            engine.sample_gaussian(100, bad)

    def test_invalid_nu(self, engine, corr_06):
        """Test nu must be positive."""
        with pytest.raises(ValueError, match="Degrees of freedom"):
            engine.sample_student_t(100, corr_06, nu=0.0)

    def test_invalid_sample_count(self, engine, corr_06):
        """Test at least one draw is required."""
        with pytest.raises(ValueError, match="Need at least 1 sample"):
            engine.sample("gaussian", 0, CopulaParams(correlation=corr_06))


class TestArchimedeanSampling:
    """Tests for Clayton, Gumbel and Frank copulas."""

    def test_clayton_lower_tail(self, engine):
        """Test empirical Clayton lower tail near 0.707."""
        u = engine.sample_clayton(200_000, theta=2.0)
        tail = empirical_tail_dependence(u, q=0.01)
        assert tail.lower == pytest.approx(0.707, abs=0.05)
        assert tail.upper < 0.2

    def test_gumbel_upper_tail(self, engine):
        """Test empirical Gumbel upper tail near 0.586."""
        u = engine.sample_gumbel(200_000, theta=2.0)
        tail = empirical_tail_dependence(u, q=0.01)
        assert tail.upper == pytest.approx(0.586, abs=0.05)
        assert tail.lower < 0.2

    def test_gumbel_independence_at_one(self, engine):
        """Test theta=1 gives independent coordinates."""
        u = engine.sample_gumbel(50_000, theta=1.0)
        assert abs(np.corrcoef(u.T)[0, 1]) < 0.03

    def test_frank_dependence_sign(self, engine):
        """Test Frank theta sign controls the dependence sign."""
        positive = engine.sample_frank(20_000, theta=5.0)
        negative = engine.sample_frank(20_000, theta=-5.0)
        assert np.corrcoef(positive.T)[0, 1] > 0.4
        assert np.corrcoef(negative.T)[0, 1] < -0.4

    def test_frank_higher_dimension(self, engine):
        """Test the frailty construction in three dimensions."""
        u = engine.sample_frank(20_000, theta=5.0, dimension=3)
        assert u.shape == (20_000, 3)
        assert u.mean(axis=0) == pytest.approx([0.5, 0.5, 0.5], abs=0.02)
        corr = np.corrcoef(u.T)
        assert corr[0, 1] > 0.3
        assert corr[1, 2] > 0.3

    def test_parameter_errors(self, engine):
        """Test invalid Archimedean parameters."""
        with pytest.raises(ValueError, match="Clayton theta"):
            engine.sample_clayton(10, theta=0.0)
        with pytest.raises(ValueError, match="Gumbel theta"):
            engine.sample_gumbel(10, theta=0.5)
        with pytest.raises(ValueError, match="non-zero"):
            engine.sample_frank(10, theta=0.0)
        with pytest.raises(ValueError, match="negative theta"):
            engine.sample_frank(10, theta=-2.0, dimension=3)

    def test_reproducible(self):
        """Test equal seeds give identical samples."""
        a = CopulaEngine(seed=7).sample_clayton(100, theta=1.5)
        b = CopulaEngine(seed=7).sample_clayton(100, theta=1.5)
        np.testing.assert_array_equal(a, b)


# ============================================================================
# OUTCOMES
# ============================================================================

class TestCorrelatedOutcomes:
    """Tests for correlated binary outcomes."""

    def test_marginals_preserved(self, engine):
        """Test each column hits its up-probability."""
        probs = [0.3, 0.5, 0.7]
        result = engine.simulate_correlated_outcomes(probs, 0.5, n_samples=50_000)
        assert result.outcomes.shape == (50_000, 3)
        assert result.outcomes.mean(axis=0) == pytest.approx(probs, abs=0.01)

    def test_positive_correlation_raises_joint(self, engine):
        """Test correlated all-up exceeds the independent product."""
        result = engine.simulate_correlated_outcomes([0.6, 0.6], 0.5, n_samples=50_000)
        assert result.joint.all_up > 0.36 + 0.03
        assert result.joint.any_up >= result.joint.all_up
        assert result.joint.any_down >= result.joint.all_down

    def test_default_is_independent(self, engine):
        """Test no correlation gives the product of marginals."""
        result = engine.simulate_correlated_outcomes([0.5, 0.5], family="gaussian", n_samples=50_000)
        assert result.joint.all_up == pytest.approx(0.25, abs=0.01)

    def test_archimedean_family(self, engine):
        """Test outcomes from a Clayton copula in four dimensions."""
        result = engine.simulate_correlated_outcomes(
            [0.2] * 4, family=CopulaFamily.CLAYTON, params=CopulaParams(theta=2.0), n_samples=20_000,
        )
        assert result.outcomes.shape == (20_000, 4)
        assert result.joint.all_up > 0.2 ** 4
        assert result.tail_dependence.lower == pytest.approx(2 ** -0.5)

    def test_to_dict(self, engine):
        """Test serialisation."""
        data = engine.simulate_correlated_outcomes([0.5, 0.5], 0.3, n_samples=1000).to_dict()
        assert data["n_samples"] == 1000
        assert data["family"] == "student_t"
        assert len(data["marginal_up"]) == 2

    def test_invalid_probabilities(self, engine):
        """Test probabilities outside [0, 1]."""
        with pytest.raises(ValueError, match="must lie in"):
            engine.simulate_correlated_outcomes([0.5, 1.2], 0.3)
        with pytest.raises(ValueError, match="non-empty"):
            engine.simulate_correlated_outcomes([], 0.3)


class TestTailRiskComparison:
    """Tests for Student-t vs Gaussian joint tails."""

    def test_t_exceeds_gaussian(self, engine):
        """Test three 10% events co-occur more often under the t copula."""
        comparison = engine.compare_tail_risk([0.1, 0.1, 0.1], 0.5, nu=4.0, n_samples=100_000)
        assert comparison.t_vs_gaussian_up > 1.0
        assert comparison.gaussian_all_up > comparison.independent_all_up
        assert comparison.independent_all_up == pytest.approx(0.001)
        assert "t_vs_gaussian_down" in comparison.to_dict()


# ============================================================================
# CORRELATION STRUCTURE
# ============================================================================

class TestBuildCorrelationMatrix:
    """Tests for named correlation matrices."""

    def test_pairs_and_defaults(self):
        """Test listed pairs fill symmetrically and unknown pairs are skipped."""
        structure = build_correlation_matrix(
            ["SPY", "QQQ", "GLD"],
            [("SPY", "QQQ", 0.8), ("SPY", "BTC", 0.3)],
        )
        assert structure.matrix[0, 1] == structure.matrix[1, 0] == 0.8
        assert structure.matrix[0, 2] == 0.0
        assert structure.tail_dependence[0, 1] == pytest.approx(t_copula_tail_dependence(0.8, 4.0))
        assert np.all(np.diag(structure.tail_dependence) == 1.0)
        assert not structure.repaired

    def test_out_of_range(self):
        """Test correlations outside [-1, 1]."""
        with pytest.raises(ValueError, match="out of range"):
            build_correlation_matrix(["A", "B"], [("A", "B", 1.5)])

    def test_non_psd_raises_without_repair(self):
        """Test inconsistent pairs raise."""
        pairs = [("A", "B", 0.9), ("A", "C", 0.9), ("B", "C", -0.9)]
        with pytest.raises(MatrixDecompositionError):
            build_correlation_matrix(["A", "B", "C"], pairs)

    def test_repair(self):
        """Test repair projects to a valid correlation matrix."""
        pairs = [("A", "B", 0.9), ("A", "C", 0.9), ("B", "C", -0.9)]
        structure = build_correlation_matrix(["A", "B", "C"], pairs, repair=True)
        assert structure.repaired
        assert np.allclose(np.diag(structure.matrix), 1.0)
        assert np.linalg.eigvalsh(structure.matrix).min() > -1e-8
        assert structure.to_dict()["assets"] == ["A", "B", "C"]
