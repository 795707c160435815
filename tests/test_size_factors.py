"""Tests for size factor estimation and resolution."""

import numpy as np
import pytest
from scipy import sparse

from transformgampoi_py.arrays import BlockMatrix
from transformgampoi_py.errors import DimensionMismatch, InvalidSizeFactor
from transformgampoi_py.fit import GamPoiFit
from transformgampoi_py.options import Auto, Fixed, FromModel, size_factor_option
from transformgampoi_py.size_factors import (
    estimate_size_factors,
    estimate_size_factors_for_matrix,
    resolve_size_factors,
)


class TestSizeFactorOption:
    """Tests for parsing the size_factors argument."""

    def test_true_is_auto(self):
        assert size_factor_option(True) == Auto()

    def test_false_is_ones(self):
        option = size_factor_option(False)
        assert isinstance(option, Fixed)
        assert option.value == 1.0

    def test_method_name(self):
        assert size_factor_option("poscounts") == Auto(method="poscounts")

    def test_unknown_method(self):
        """Test an unknown method name raises ValueError."""
        with pytest.raises(ValueError, match="Unknown size factor method"):
            size_factor_option("deconvolution")

    def test_model_is_from_model(self):
        fit = GamPoiFit(np.zeros((1, 1)), np.ones((2, 1)), ["Intercept"],
                        np.zeros(2), [0.0], [1.0, 1.0], np.ones((1, 2)))
        assert isinstance(size_factor_option(fit), FromModel)


class TestResolveSizeFactors:
    """Tests for resolve_size_factors."""

    def setup_method(self):
        rng = np.random.default_rng(1)
        self.counts = rng.poisson(5, size=(50, 8)).astype(float)

    def test_auto_mean_one(self):
        """Test estimated size factors have mean 1 and one entry per sample."""
        sf = resolve_size_factors(True, self.counts)
        assert sf.shape == (8,)
        assert np.isclose(sf.mean(), 1.0)

    def test_auto_is_normed_column_sums(self):
        """Test the default estimator is the column totals over their mean."""
        totals = self.counts.sum(axis=0)
        np.testing.assert_allclose(resolve_size_factors(True, self.counts),
                                   totals / totals.mean())

    def test_same_for_every_representation(self):
        """Test dense, sparse and block-backed counts give the same size factors."""
        expected = resolve_size_factors(True, self.counts)
        np.testing.assert_allclose(
            resolve_size_factors(True, sparse.csr_matrix(self.counts)), expected)
        np.testing.assert_allclose(
            resolve_size_factors(True, BlockMatrix(self.counts, block_size=7)), expected)

    def test_fixed_vector_renormalized(self):
        """Test a supplied vector is re-normalized to mean 1."""
        sf = resolve_size_factors(np.arange(1, 9), self.counts)
        np.testing.assert_allclose(sf, np.arange(1, 9) / 4.5)

    def test_false_gives_ones(self):
        np.testing.assert_array_equal(resolve_size_factors(False, self.counts), np.ones(8))

    def test_wrong_length(self):
        """Test a vector of the wrong length raises DimensionMismatch."""
        with pytest.raises(DimensionMismatch, match="one value per sample"):
            resolve_size_factors([1.0, 2.0], self.counts)

    def test_non_positive_rejected(self):
        """Test zero or negative supplied size factors raise InvalidSizeFactor."""
        with pytest.raises(InvalidSizeFactor):
            resolve_size_factors([1, 1, 1, 1, 1, 1, 1, 0], self.counts)

    def test_all_zero_columns(self):
        """Test all-zero data cannot be normalized."""
        with pytest.raises(InvalidSizeFactor):
            resolve_size_factors(True, np.zeros((3, 4)))

    def test_single_zero_column(self):
        """Test one empty sample still gets a small positive size factor."""
        counts = self.counts.copy()
        counts[:, 2] = 0
        sf = resolve_size_factors(True, counts)
        assert np.all(sf > 0)
        assert sf[2] < 0.01
        assert np.isclose(sf.mean(), 1.0)

    def test_model_wins(self):
        """Test the size factors of a model are used and the argument ignored."""
        fit = GamPoiFit(np.zeros((50, 1)), np.ones((8, 1)), ["Intercept"],
                        np.zeros(8), np.zeros(50), np.linspace(0.5, 1.5, 8), self.counts)
        sf = resolve_size_factors([1, 2], self.counts, model=fit)
        np.testing.assert_allclose(sf, np.linspace(0.5, 1.5, 8))


class TestMedianOfRatios:
    """Tests for the DESeq2 median-of-ratios estimators."""

    def test_proportional_samples(self):
        """Test samples that are multiples of each other get proportional factors."""
        base = np.array([[10.0], [20.0], [30.0], [5.0]])
        counts = base * np.array([[1.0, 2.0, 4.0]])
        sf = estimate_size_factors(counts, method="ratio")
        np.testing.assert_allclose(sf / sf[0], [1.0, 2.0, 4.0])
        assert np.isclose(sf.mean(), 1.0)

    def test_ratio_needs_a_gene_without_zeros(self):
        """Test ratio size factors fail if every gene has a zero."""
        counts = np.array([[0, 5], [5, 0]])
        with pytest.raises(InvalidSizeFactor):
            estimate_size_factors_for_matrix(counts, type="ratio")

    def test_poscounts_handles_zeros(self):
        """Test poscounts works when every gene has a zero."""
        counts = np.array([[0, 5, 3], [5, 0, 2], [4, 6, 0]])
        sf = estimate_size_factors(counts, method="poscounts")
        assert np.all(sf > 0)

    def test_empty_sample_positive(self):
        """Test a sample without usable ratios gets a positive size factor."""
        counts = np.array([[10.0, 20.0, 0.0], [5.0, 10.0, 0.0], [3.0, 6.0, 0.0]])
        sf = estimate_size_factors(counts, method="poscounts")
        assert np.all(sf > 0)
        assert sf[2] < sf[0] < sf[1]


class TestMedianOfRatiosOptions:
    """Tests for the reference, gene subset and summary options."""

    def setup_method(self):
        self.base = np.array([10.0, 20.0, 30.0, 5.0])
        self.counts = self.base[:, np.newaxis] * np.array([[1.0, 2.0, 4.0]])

    def test_geo_means(self):
        """Test a supplied per-gene reference is used as the denominator."""
        sf = estimate_size_factors_for_matrix(self.counts, geo_means=self.base)
        np.testing.assert_allclose(sf, [1.0, 2.0, 4.0])

    def test_geo_means_wrong_length(self):
        with pytest.raises(DimensionMismatch, match="one value per gene"):
            estimate_size_factors_for_matrix(self.counts, geo_means=self.base[:2])

    def test_control_genes(self):
        """Test only the control genes enter the ratios."""
        counts = self.counts.copy()
        counts[3] = [500.0, 1.0, 1.0]
        sf = estimate_size_factors_for_matrix(counts, control_genes=[0, 1, 2])
        np.testing.assert_allclose(sf / sf[0], [1.0, 2.0, 4.0])

    def test_loc_func(self):
        """Test the summary of the log ratios can be replaced."""
        counts = self.counts.copy()
        counts[0, 0] *= 8
        median_sf = estimate_size_factors_for_matrix(counts)
        mean_sf = estimate_size_factors_for_matrix(counts, loc_func=np.mean)
        assert mean_sf[0] > median_sf[0]

    def test_options_reach_estimate_size_factors(self):
        """Test keyword arguments are passed through estimate_size_factors."""
        sf = estimate_size_factors(self.counts, method="ratio", geo_means=self.base)
        np.testing.assert_allclose(sf, np.array([1.0, 2.0, 4.0]) / (7.0 / 3.0))
