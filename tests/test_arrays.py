"""Tests for the array adapter."""

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from transformgampoi_py import arrays
from transformgampoi_py.arrays import BlockMatrix
from transformgampoi_py.errors import InvalidInputKind


class TestNormalizeRestore:
    """Tests for normalize and restore."""

    def test_vector_becomes_single_column(self):
        """Test a vector is treated as a genes x 1 matrix."""
        matrix, info = arrays.normalize([1, 2, 3])
        assert matrix.shape == (3, 1)
        assert info.was_vector

    def test_vector_round_trip(self):
        """Test restore turns a genes x 1 result back into a vector."""
        matrix, info = arrays.normalize(np.arange(5))
        out = arrays.restore(matrix * 2, info)
        assert out.shape == (5,)
        np.testing.assert_array_equal(out, np.arange(5) * 2)

    def test_dataframe_labels_kept(self):
        """Test DataFrame labels survive the round trip."""
        df = pd.DataFrame([[1, 2], [3, 4]], index=["g1", "g2"], columns=["s1", "s2"])
        matrix, info = arrays.normalize(df)
        out = arrays.restore(matrix + 1, info)
        assert isinstance(out, pd.DataFrame)
        assert list(out.index) == ["g1", "g2"]
        assert list(out.columns) == ["s1", "s2"]

    def test_series_labels_kept(self):
        """Test a Series comes back as a Series with its index and name."""
        s = pd.Series([1, 2, 3], index=list("abc"), name="cell")
        matrix, info = arrays.normalize(s)
        out = arrays.restore(matrix, info)
        assert isinstance(out, pd.Series)
        assert out.name == "cell"
        assert list(out.index) == list("abc")

    def test_sparse_becomes_float_csr(self):
        """Test sparse input is converted to float CSR."""
        m = sparse.coo_matrix(np.array([[0, 1], [2, 0]]))
        matrix, _ = arrays.normalize(m)
        assert matrix.format == "csr"
        assert matrix.dtype == float

    def test_rejects_strings(self):
        """Test non-numeric input raises InvalidInputKind."""
        with pytest.raises(InvalidInputKind):
            arrays.normalize(np.array([["a", "b"], ["c", "d"]]))

    def test_rejects_three_dimensions(self):
        """Test a 3-D array raises InvalidInputKind."""
        with pytest.raises(InvalidInputKind, match="3 dimensions"):
            arrays.normalize(np.zeros((2, 2, 2)))

    def test_invalid_input_is_type_error(self):
        """Test InvalidInputKind can be caught as TypeError."""
        with pytest.raises(TypeError):
            arrays.normalize(np.array(["x"]))


class TestCapabilities:
    """Tests for the per-representation operations."""

    def setup_method(self):
        rng = np.random.default_rng(0)
        self.dense = rng.poisson(2, size=(7, 4)).astype(float)

    def test_col_sums_agree(self):
        """Test column sums match across representations."""
        expected = self.dense.sum(axis=0)
        np.testing.assert_allclose(arrays.col_sums(self.dense), expected)
        np.testing.assert_allclose(arrays.col_sums(sparse.csr_matrix(self.dense)), expected)
        np.testing.assert_allclose(arrays.col_sums(BlockMatrix(self.dense, block_size=3)), expected)

    def test_divide_columns_sparse_stays_sparse(self):
        """Test column division keeps sparse input sparse."""
        sf = np.array([0.5, 1.0, 1.5, 2.0])
        out = arrays.divide_columns(sparse.csr_matrix(self.dense), sf)
        assert sparse.issparse(out)
        np.testing.assert_allclose(out.toarray(), self.dense / sf)

    def test_iter_dense_blocks_covers_rows(self):
        """Test dense blocks of a sparse matrix cover every row once."""
        blocks = list(arrays.iter_dense_blocks(sparse.csr_matrix(self.dense), block_size=3))
        assert [rows.start for rows, _ in blocks] == [0, 3, 6]
        np.testing.assert_array_equal(np.vstack([b for _, b in blocks]), self.dense)

    def test_apply_blockwise_densifies_when_zero_not_preserved(self):
        """Test sparse input gives a dense result for non zero-preserving functions."""
        out = arrays.apply_blockwise(sparse.csr_matrix(self.dense),
                                     lambda block, rows: block + 1, preserves_zero=False)
        assert isinstance(out, np.ndarray)
        np.testing.assert_array_equal(out, self.dense + 1)

    def test_map_entries_aligns_per_gene_values(self):
        """Test per-gene parameters line up with stored sparse entries."""
        m = sparse.csr_matrix(np.array([[0.0, 2.0], [3.0, 0.0]]))
        out = arrays.map_entries(m, lambda x, a: x * a, np.array([10.0, 100.0]))
        np.testing.assert_array_equal(out.toarray(), [[0.0, 20.0], [300.0, 0.0]])

    def test_map_entries_aligns_per_entry_values(self):
        """Test per-entry parameters line up by position."""
        m = np.array([[1.0, 2.0], [3.0, 4.0]])
        a = np.array([[1.0, 0.0], [0.0, 1.0]])
        out = arrays.map_entries(m, lambda x, p: x * p, a)
        np.testing.assert_array_equal(out, [[1.0, 0.0], [0.0, 4.0]])


class TestBlockMatrix:
    """Tests for BlockMatrix."""

    def test_rejects_non_matrix_source(self):
        """Test a 1-D source is rejected."""
        with pytest.raises(InvalidInputKind):
            BlockMatrix(np.arange(3))

    def test_map_blocks_is_lazy(self):
        """Test registered functions only run when blocks are read."""
        calls = []

        def fn(block, rows):
            calls.append(rows.start)
            return block * 2

        bm = BlockMatrix(np.ones((5, 2)), block_size=2).map_blocks(fn)
        assert calls == []
        np.testing.assert_array_equal(bm.to_array(), np.full((5, 2), 2.0))
        assert calls == [0, 2, 4]

    def test_write_to_target(self):
        """Test write fills a target array block by block."""
        source = np.arange(12, dtype=float).reshape(6, 2)
        target = np.zeros((6, 2))
        BlockMatrix(source, block_size=4).write(target)
        np.testing.assert_array_equal(target, source)

    def test_write_shape_mismatch(self):
        """Test write refuses a target of the wrong shape."""
        with pytest.raises(ValueError, match="does not match"):
            BlockMatrix(np.ones((3, 2))).write(np.zeros((2, 3)))
