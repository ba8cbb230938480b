"""
Tests for Variate Generator
===========================

Moment checks for each sampler and seed reproducibility.
"""

import math

import numpy as np
import pytest

from quantcore.random_variates import VariateGenerator


N = 200_000


class TestReproducibility:
    """Seeding and child streams."""

    def test_same_seed_same_draws(self):
        """Test that equal seeds give identical draws."""
        a = VariateGenerator(seed=11).standard_normal(100)
        b = VariateGenerator(seed=11).standard_normal(100)
        np.testing.assert_array_equal(a, b)

    def test_different_seeds_differ(self):
        """Test that different seeds give different draws."""
        a = VariateGenerator(seed=11).standard_normal(100)
        b = VariateGenerator(seed=12).standard_normal(100)
        assert not np.array_equal(a, b)

    def test_spawn_is_deterministic(self):
        """Test that spawned children reproduce for the same parent seed."""
        first = [g.uniform(5) for g in VariateGenerator(seed=3).spawn(3)]
        second = [g.uniform(5) for g in VariateGenerator(seed=3).spawn(3)]
        for a, b in zip(first, second):
            np.testing.assert_array_equal(a, b)

    def test_spawned_children_independent(self):
        """Test that children produce different streams."""
        children = VariateGenerator(seed=3).spawn(2)
        assert not np.array_equal(children[0].uniform(10), children[1].uniform(10))

    def test_seed_recorded(self):
        """Test that from_seed records the seed."""
        assert VariateGenerator.from_seed(99).seed == 99


class TestScalarAndShape:
    """Return types."""

    def test_scalar_when_size_none(self, variates):
        """Test that size=None returns a Python scalar."""
        assert isinstance(variates.standard_normal(), float)
        assert isinstance(variates.uniform(), float)
        assert isinstance(variates.gamma(2.0), float)

    def test_tuple_size(self, variates):
        """Test multi-dimensional sizes."""
        assert variates.standard_normal((3, 4)).shape == (3, 4)
        assert variates.box_muller((5, 2)).shape == (5, 2)

    def test_open_uniform_strictly_inside(self, variates):
        """Test that open uniforms avoid 0 and 1."""
        u = variates.open_uniform(N)
        assert np.all(u > 0)
        assert np.all(u < 1)


class TestContinuous:
    """Moments of continuous samplers."""

    def test_standard_normal_moments(self, variates):
        """Test mean 0 and variance 1."""
        z = variates.standard_normal(N)
        assert abs(z.mean()) < 0.01
        assert abs(z.var() - 1) < 0.02

    def test_box_muller_moments(self, variates):
        """Test Box-Muller mean and variance, including odd sizes."""
        z = variates.box_muller(N + 1)
        assert z.shape == (N + 1,)
        assert abs(z.mean()) < 0.01
        assert abs(z.var() - 1) < 0.02

    def test_exponential_mean(self, variates):
        """Test exponential mean equals scale."""
        assert abs(variates.exponential(N, scale=2.0).mean() - 2.0) < 0.03

    @pytest.mark.parametrize("shape_param", [0.5, 1.0, 3.0, 7.5])
    def test_gamma_moments(self, variates, shape_param):
        """Test gamma mean k*s and variance k*s^2, including the boost path."""
        draws = variates.gamma(shape_param, scale=2.0, size=N)
        assert np.all(draws > 0)
        assert abs(draws.mean() - 2.0 * shape_param) < 0.05 * 2.0 * shape_param
        assert abs(draws.var() - 4.0 * shape_param) < 0.08 * 4.0 * shape_param

    def test_gamma_rejects_non_positive_shape(self, variates):
        """Test validation of gamma shape."""
        with pytest.raises(ValueError, match="shape must be positive"):
            variates.gamma(0.0)

    def test_chi_square_non_integer_df(self, variates):
        """Test chi-square mean equals df for non-integer df."""
        draws = variates.chi_square(3.5, N)
        assert abs(draws.mean() - 3.5) < 0.1

    def test_stable_alpha_two_is_gaussian(self, variates):
        """Test that alpha=2 gives a normal with variance 2."""
        draws = variates.stable(2.0, 0.0, N)
        assert abs(draws.var() - 2.0) < 0.06

    def test_stable_alpha_one_is_cauchy(self, variates):
        """Test that symmetric alpha=1 matches Cauchy quartiles."""
        draws = variates.stable(1.0, 0.0, N)
        q25, q75 = np.quantile(draws, [0.25, 0.75])
        assert abs(q25 + 1) < 0.03
        assert abs(q75 - 1) < 0.03

    def test_stable_validation(self, variates):
        """Test stable parameter ranges."""
        with pytest.raises(ValueError, match="Stability index"):
            variates.stable(2.5)
        with pytest.raises(ValueError, match="Skewness"):
            variates.stable(1.5, 2.0)

    def test_positive_stable_laplace_transform(self, variates):
        """Test E[exp(-sV)] = exp(-s^alpha)."""
        alpha = 0.5
        draws = variates.positive_stable(alpha, N)
        assert np.all(draws > 0)
        for s in (0.5, 1.0, 2.0):
            empirical = np.mean(np.exp(-s * draws))
            assert abs(empirical - math.exp(-s ** alpha)) < 0.01

    def test_positive_stable_alpha_one_is_point_mass(self, variates):
        """Test that alpha=1 degenerates to 1."""
        np.testing.assert_allclose(variates.positive_stable(1.0, 100), 1.0)


class TestDiscrete:
    """Discrete samplers."""

    @pytest.mark.parametrize("lam", [0.5, 4.0, 50.0])
    def test_poisson_mean_and_variance(self, variates, lam):
        """Test Poisson mean and variance equal lambda."""
        draws = variates.poisson(lam, N)
        assert abs(draws.mean() - lam) < 0.03 * lam + 0.01
        assert abs(draws.var() - lam) < 0.06 * lam + 0.02

    def test_poisson_zero_intensity(self, variates):
        """Test that lambda=0 yields zeros."""
        assert np.all(variates.poisson(0.0, 10) == 0)

    def test_poisson_negative_intensity(self, variates):
        """Test that a negative intensity is rejected."""
        with pytest.raises(ValueError, match="non-negative"):
            variates.poisson(-1.0, 10)

    def test_logarithmic_support(self, variates):
        """Test logarithmic series draws are positive integers."""
        draws = variates.logarithmic(0.5, 1000)
        assert draws.min() >= 1
