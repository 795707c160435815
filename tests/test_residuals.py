"""Tests for residuals of a fitted Gamma-Poisson model."""

import numpy as np
import pytest

from transformgampoi_py.errors import UnsupportedResidualKind
from transformgampoi_py.fit import GamPoiFit
from transformgampoi_py.residuals import (
    RESIDUAL_TYPES,
    as_seed_sequence,
    block_generator,
    cdf_bounds,
    check_residual_type,
    deviance_residual,
    pearson_residual,
    residuals_of,
)


def constant_fit(counts, mu, alpha):
    """Intercept-only fit with fitted mean ``mu`` for every entry."""
    counts = np.asarray(counts, dtype=float)
    G, S = counts.shape
    return GamPoiFit(
        beta=np.full((G, 1), np.log(mu)),
        design_matrix=np.ones((S, 1)),
        design_columns=["Intercept"],
        offset=np.zeros(S),
        overdispersions=np.broadcast_to(alpha, (G,)),
        size_factors=np.ones(S),
        counts=counts,
    )


class TestResidualKinds:
    """Closed-form checks of the residual formulas."""

    def test_pearson_hand_computed(self):
        """Test Pearson residuals for y = [0, 5, 10], mu = 2, alpha = 0.1."""
        fit = constant_fit([[0, 5, 10]], 2.0, 0.1)
        expected = np.array([-2.0, 3.0, 8.0]) / np.sqrt(2.4)
        np.testing.assert_allclose(fit.residuals("pearson")[0], expected)

    def test_pearson_linear_in_y(self):
        """Test equal steps in y give equal steps in the residual."""
        r = pearson_residual(np.array([0.0, 5.0, 10.0]), 2.0, 0.1)
        assert np.isclose(r[1] - r[0], r[2] - r[1])

    def test_response_and_working(self):
        fit = constant_fit([[0, 5, 10]], 2.0, 0.1)
        np.testing.assert_allclose(fit.residuals("response")[0], [-2.0, 3.0, 8.0])
        np.testing.assert_allclose(fit.residuals("working")[0], [-1.0, 1.5, 4.0])

    def test_poisson_deviance(self):
        """Test alpha = 0 gives the Poisson deviance residual."""
        y = np.array([0.0, 2.0, 6.0])
        r = deviance_residual(y, 2.0, 0.0)
        with np.errstate(divide="ignore", invalid="ignore"):
            dev = 2 * (np.where(y > 0, y * np.log(y / 2.0), 0.0) - (y - 2.0))
        np.testing.assert_allclose(r, np.sign(y - 2.0) * np.sqrt(dev))
        assert r[1] == 0.0

    def test_nb_deviance_tends_to_poisson(self):
        y = np.array([0.0, 1.0, 7.0])
        np.testing.assert_allclose(deviance_residual(y, 3.0, 1e-6),
                                   deviance_residual(y, 3.0, 0.0), rtol=1e-4)

    def test_cdf_bounds_zero_count(self):
        """Test a count of zero occupies [0, P(y = 0)]."""
        lower, upper = cdf_bounds(np.array([0.0]), np.array([2.0]), np.array([0.5]))
        assert lower[0] == 0.0
        np.testing.assert_allclose(upper[0], (1 / (1 + 0.5 * 2.0)) ** 2)

    def test_cdf_bounds_poisson(self):
        lower, upper = cdf_bounds(np.array([0.0, 1.0]), np.array([1.0, 1.0]), np.array([0.0, 0.0]))
        np.testing.assert_allclose(upper, [np.exp(-1), 2 * np.exp(-1)])
        np.testing.assert_allclose(lower, [0.0, np.exp(-1)])

    def test_quantile_is_deterministic(self):
        fit = constant_fit([[0, 1, 2, 8]], 2.0, 0.2)
        np.testing.assert_array_equal(fit.residuals("quantile"), fit.residuals("quantile"))


class TestResidualType:
    """Tests for residual type validation."""

    def test_known(self):
        for kind in RESIDUAL_TYPES:
            assert check_residual_type(kind) == kind

    def test_unknown(self):
        with pytest.raises(UnsupportedResidualKind, match="Unknown residual type"):
            check_residual_type("studentized")

    def test_unknown_is_value_error(self):
        with pytest.raises(ValueError):
            residuals_of(constant_fit([[1, 2]], 1.0, 0.1), "anscombe")


class TestRandomizedQuantile:
    """Tests for randomized quantile residuals."""

    def setup_method(self):
        rng = np.random.default_rng(11)
        self.counts = rng.poisson(2, size=(20, 15)).astype(float)
        self.fit = constant_fit(self.counts, 2.0, 0.1)

    def test_seed_reproducible(self):
        """Test a fixed seed gives bit-identical results."""
        a = self.fit.residuals("randomized_quantile", random_state=5)
        b = self.fit.residuals("randomized_quantile", random_state=5)
        np.testing.assert_array_equal(a, b)

    def test_seeds_differ(self):
        """Test different draws give different residuals for the same counts."""
        a = self.fit.residuals("randomized_quantile", random_state=5)
        b = self.fit.residuals("randomized_quantile", random_state=6)
        assert not np.array_equal(a, b)

    def test_generator_accepted(self):
        a = self.fit.residuals("randomized_quantile", random_state=np.random.default_rng(1))
        b = self.fit.residuals("randomized_quantile", random_state=np.random.default_rng(1))
        np.testing.assert_array_equal(a, b)

    def test_within_cdf_interval(self):
        """Test every residual maps back into its count's CDF interval."""
        from scipy.stats import norm

        r = self.fit.residuals("randomized_quantile", random_state=0)
        lower, upper = cdf_bounds(self.counts, 2.0, 0.1)
        u = norm.cdf(r)
        assert np.all(u >= lower - 1e-12)
        assert np.all(u <= upper + 1e-12)

    def test_finite_for_extreme_counts(self):
        """Test counts far in the tail do not give infinite residuals."""
        fit = constant_fit([[0, 0, 500]], 1e-3, 0.0)
        r = fit.residuals("randomized_quantile", random_state=0)
        assert np.all(np.isfinite(r))

    def test_block_streams_independent(self):
        """Test blocks starting at different rows draw different streams."""
        root = as_seed_sequence(3)
        a = block_generator(root, slice(0, 10)).random(5)
        b = block_generator(root, slice(10, 20)).random(5)
        assert not np.array_equal(a, b)
        c = block_generator(as_seed_sequence(3), slice(0, 10)).random(5)
        np.testing.assert_array_equal(a, c)
