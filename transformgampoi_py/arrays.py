"""
Array adapter for count matrices.

The transforms in this package only need a handful of operations from a
count matrix: column sums, division of each column by a per-sample value,
iteration over row blocks, and element-wise maps that keep the storage class
of the input. This module implements those operations once per supported
representation:

- dense ``numpy.ndarray`` (also reached from lists, ``pandas.DataFrame`` and
  ``pandas.Series``)
- ``scipy.sparse`` matrices and arrays (handled as CSR)
- ``BlockMatrix``, a lazy row-block view of an array that is not held in
  memory (``h5py.Dataset``, ``numpy.memmap``, ...)

Vectors are treated as a single-sample matrix (genes x 1) and turned back
into vectors by ``restore``.
"""

from collections import namedtuple

import numpy as np
import pandas as pd
from scipy import sparse

from .errors import InvalidInputKind

DEFAULT_BLOCK_SIZE = 1000

ShapeInfo = namedtuple("ShapeInfo", ["was_vector", "index", "columns", "name"])
ShapeInfo.__new__.__defaults__ = (False, None, None, None)


class BlockMatrix:
    """
    Lazily evaluated, row-blocked view of a 2-D count matrix.

    The source is only read one block of rows at a time, so peak memory
    is bounded by the block size rather than by the size of the matrix.
    Functions registered with ``map_blocks`` are applied to each block
    when it is produced; nothing is computed before iteration.

    Parameters
    ----------
    source : array-like
        Any object with a 2-D ``shape`` that supports row slicing, e.g.
        ``h5py.Dataset``, ``numpy.memmap`` or a plain ``numpy.ndarray``.
    block_size : int, default 1000
        Number of rows (genes) per block.

    Examples
    --------
    >>> import h5py
    >>> with h5py.File("counts.h5", "r") as f:
    ...     counts = BlockMatrix(f["counts"], block_size=500)
    ...     vst = acosh_transform(counts, overdispersion=0.05)
    ...     vst.write(out_dataset)
    """

    def __init__(self, source, block_size=DEFAULT_BLOCK_SIZE, _fns=()):
        shape = tuple(getattr(source, "shape", ()))
        if len(shape) != 2:
            raise InvalidInputKind(
                f"BlockMatrix needs a 2-D source, got shape {shape}")
        dtype = getattr(source, "dtype", None)
        if dtype is not None:
            _check_numeric(np.dtype(dtype))
        if int(block_size) < 1:
            raise ValueError("block_size must be a positive integer")

        self.source = source
        self.block_size = int(block_size)
        self.shape = shape
        self._fns = tuple(_fns)

    @property
    def ndim(self):
        return 2

    def row_slices(self):
        """Yield the row slice of every block, in order."""
        n_rows = self.shape[0]
        for start in range(0, n_rows, self.block_size):
            yield slice(start, min(start + self.block_size, n_rows))

    def blocks(self):
        """Yield ``(rows, block)`` pairs with all registered functions applied."""
        for rows in self.row_slices():
            block = np.asarray(self.source[rows.start:rows.stop], dtype=float)
            for fn in self._fns:
                block = fn(block, rows)
            yield rows, block

    def map_blocks(self, fn):
        """Return a new BlockMatrix that applies ``fn(block, rows)`` lazily."""
        return BlockMatrix(self.source, self.block_size, self._fns + (fn,))

    def to_array(self):
        """Materialize the full matrix in memory."""
        out = np.empty(self.shape, dtype=float)
        for rows, block in self.blocks():
            out[rows] = block
        return out

    def write(self, target):
        """
        Write the matrix block by block into ``target``.

        ``target`` must have the same shape and support slice assignment
        (e.g. an ``h5py.Dataset`` or a writable ``numpy.memmap``).
        """
        if tuple(target.shape) != self.shape:
            raise ValueError(
                f"target shape {tuple(target.shape)} does not match {self.shape}")
        for rows, block in self.blocks():
            target[rows.start:rows.stop] = block
        return target

    def __array__(self, dtype=None, copy=None):
        out = self.to_array()
        if dtype is not None:
            out = out.astype(dtype)
        return out

    def __repr__(self):
        G, S = self.shape
        return (f"BlockMatrix with {G} genes and {S} samples "
                f"(block_size={self.block_size}, {len(self._fns)} pending ops)")


# --- representation strategies ---

class _DenseBackend:
    name = "dense"

    def col_sums(self, m):
        return m.sum(axis=0)

    def divide_columns(self, m, v):
        return m / v[np.newaxis, :]

    def blocks(self, m, block_size):
        yield slice(0, m.shape[0]), m

    def dense_blocks(self, m, block_size):
        yield slice(0, m.shape[0]), m

    def apply_blockwise(self, m, fn, preserves_zero):
        return fn(m, slice(0, m.shape[0]))

    def to_dense(self, m):
        return np.asarray(m, dtype=float)


class _SparseBackend:
    name = "sparse"

    def col_sums(self, m):
        return np.asarray(m.sum(axis=0), dtype=float).ravel()

    def divide_columns(self, m, v):
        # CSR keeps column indices per stored value
        out = m.tocsr(copy=True).astype(float)
        out.data = out.data / v[out.indices]
        return out

    def blocks(self, m, block_size):
        yield slice(0, m.shape[0]), m.tocsr()

    def dense_blocks(self, m, block_size):
        m = m.tocsr()
        for start in range(0, m.shape[0], block_size):
            rows = slice(start, min(start + block_size, m.shape[0]))
            yield rows, m[rows].toarray()

    def apply_blockwise(self, m, fn, preserves_zero):
        block = m.tocsr()
        if not preserves_zero:
            block = block.toarray()
        return fn(block, slice(0, m.shape[0]))

    def to_dense(self, m):
        return m.toarray()


class _BlockBackend:
    name = "block"

    def col_sums(self, m):
        total = np.zeros(m.shape[1], dtype=float)
        for _, block in m.blocks():
            total += block.sum(axis=0)
        return total

    def divide_columns(self, m, v):
        return m.map_blocks(lambda block, rows: block / v[np.newaxis, :])

    def blocks(self, m, block_size):
        return m.blocks()

    def dense_blocks(self, m, block_size):
        return m.blocks()

    def apply_blockwise(self, m, fn, preserves_zero):
        return m.map_blocks(fn)

    def to_dense(self, m):
        return m.to_array()


_DENSE = _DenseBackend()
_SPARSE = _SparseBackend()
_BLOCK = _BlockBackend()


def backend_for(matrix):
    """Return the strategy object that handles ``matrix``'s representation."""
    if isinstance(matrix, BlockMatrix):
        return _BLOCK
    if sparse.issparse(matrix):
        return _SPARSE
    return _DENSE


def _check_numeric(dtype):
    if dtype.kind not in "biuf":
        raise InvalidInputKind(f"count data must be numeric, got dtype '{dtype}'")


# --- normalize / restore ---

def normalize(data):
    """
    Turn matrix-like input into a float matrix the transforms can work with.

    Parameters
    ----------
    data : array-like
        Dense array (1-D or 2-D), nested list, ``pandas.DataFrame``,
        ``pandas.Series``, ``scipy.sparse`` matrix/array or ``BlockMatrix``.

    Returns
    -------
    matrix : np.ndarray, scipy.sparse.csr_matrix or BlockMatrix
        Genes x samples float matrix. Vectors become a genes x 1 matrix.
    info : ShapeInfo
        What ``restore`` needs to give the result the input's shape and labels.

    Raises
    ------
    InvalidInputKind
        If the data is not numeric or is neither a vector nor a matrix.
    """
    if isinstance(data, BlockMatrix):
        return data, ShapeInfo()

    if sparse.issparse(data):
        if data.ndim != 2:
            raise InvalidInputKind("sparse count data must be 2-D")
        _check_numeric(data.dtype)
        return data.tocsr().astype(float), ShapeInfo()

    if isinstance(data, pd.DataFrame):
        values = data.to_numpy()
        _check_numeric(values.dtype)
        return values.astype(float), ShapeInfo(False, data.index, data.columns)

    if isinstance(data, pd.Series):
        values = data.to_numpy()
        _check_numeric(values.dtype)
        return (values.astype(float).reshape(-1, 1),
                ShapeInfo(True, data.index, None, data.name))

    try:
        values = np.asarray(data)
    except (TypeError, ValueError) as err:
        raise InvalidInputKind(f"cannot interpret {type(data).__name__} as a matrix") from err
    _check_numeric(values.dtype)

    if values.ndim == 1:
        return values.astype(float).reshape(-1, 1), ShapeInfo(was_vector=True)
    if values.ndim == 2:
        return values.astype(float), ShapeInfo()
    raise InvalidInputKind(
        f"count data must be a vector or a 2-D matrix, got {values.ndim} dimensions")


def restore(result, info):
    """Give ``result`` the shape and labels recorded by ``normalize``."""
    if isinstance(result, BlockMatrix):
        return result
    if info is None:
        return result
    if info.was_vector:
        values = to_dense(result).reshape(-1)
        if info.index is not None:
            return pd.Series(values, index=info.index, name=info.name)
        return values
    if info.columns is not None:
        return pd.DataFrame(to_dense(result), index=info.index, columns=info.columns)
    return result


# --- capability helpers ---

def col_sums(matrix):
    """Total counts per sample."""
    return backend_for(matrix).col_sums(matrix)


def divide_columns(matrix, values):
    """Divide every column by its entry in ``values`` (e.g. size factors)."""
    values = np.asarray(values, dtype=float)
    return backend_for(matrix).divide_columns(matrix, values)


def iter_blocks(matrix, block_size=DEFAULT_BLOCK_SIZE):
    """Yield ``(rows, block)`` in the matrix's own storage class."""
    return backend_for(matrix).blocks(matrix, block_size)


def iter_dense_blocks(matrix, block_size=DEFAULT_BLOCK_SIZE):
    """Yield ``(rows, block)`` with every block as a dense array."""
    return backend_for(matrix).dense_blocks(matrix, block_size)


def to_dense(matrix):
    return backend_for(matrix).to_dense(matrix)


def apply_blockwise(matrix, fn, preserves_zero=True):
    """
    Apply ``fn(block, rows)`` to each block, keeping the storage class.

    Dense input is a single block. Sparse input is a single CSR block
    that is handed to ``fn`` as-is when ``preserves_zero`` is true and
    densified otherwise. A BlockMatrix returns a new lazy BlockMatrix.

    Parameters
    ----------
    matrix : np.ndarray, scipy.sparse matrix or BlockMatrix
    fn : callable
        ``fn(block, rows)`` where ``rows`` is the slice of genes the
        block covers. Must return a block of the same shape.
    preserves_zero : bool, default True
        Whether ``fn`` maps zero to zero, so sparse blocks can stay sparse.
    """
    return backend_for(matrix).apply_blockwise(matrix, fn, preserves_zero)


def slice_rows(param, rows):
    """Cut a scalar, per-gene or per-entry parameter down to a row block."""
    if np.ndim(param) == 0:
        return param
    return param[rows]


def map_entries(block, fn, *params):
    """
    Apply an element-wise function to the stored entries of a block.

    ``fn(values, *aligned)`` receives the entries as a flat float array and
    each parameter aligned to them: scalars pass through unchanged,
    vectors (one value per row of the block) are looked up by row and
    matrices (block shape) by position. For sparse blocks only the
    stored entries are visited, which is only correct if ``fn`` maps zero
    to zero.
    """
    if sparse.issparse(block):
        out = block.tocsr(copy=True).astype(float)
        rows = np.repeat(np.arange(out.shape[0]), np.diff(out.indptr))
        aligned = [_align_sparse(p, rows, out.indices) for p in params]
        out.data = np.asarray(fn(out.data, *aligned), dtype=float)
        return out

    values = np.asarray(block, dtype=float)
    aligned = [_align_dense(p, values.shape) for p in params]
    return np.asarray(fn(values.ravel(), *aligned), dtype=float).reshape(values.shape)


def _align_sparse(param, rows, cols):
    if np.ndim(param) == 0:
        return param
    if np.ndim(param) == 1:
        return np.asarray(param, dtype=float)[rows]
    if sparse.issparse(param):
        return np.asarray(param.tocsr()[rows, cols], dtype=float).ravel()
    return np.asarray(param, dtype=float)[rows, cols]


def _align_dense(param, shape):
    if np.ndim(param) == 0:
        return param
    if sparse.issparse(param):
        param = param.toarray()
    param = np.asarray(param, dtype=float)
    if param.ndim == 1:
        param = param[:, np.newaxis]
    return np.broadcast_to(param, shape).ravel()
