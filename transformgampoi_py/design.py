"""
Design matrix construction for Gamma-Poisson GLMs.

Formulas are R-style strings parsed by patsy (``"~ 1"``, ``"~ 1 + log_sf"``,
``"~ condition + batch"``); a ready-made numeric matrix is accepted as is.

References:
    - Wilkinson GN, Rogers CE (1973). Symbolic description of factorial
      models for analysis of variance. Applied Statistics 22:392-399
"""

import numpy as np
import pandas as pd
from patsy import dmatrix

from .errors import DimensionMismatch

_INTERCEPT_ONLY = ("~1", "1", "")


def create_design_matrix(coldata, formula="~ 1"):
    """
    Evaluate an R-style formula on per-sample metadata with patsy.

    Parameters
    ----------
    coldata : pd.DataFrame
        One row per sample; the formula's variables are its columns.
    formula : str, default "~ 1"
        For example ``"~ 1 + log_sf"`` or ``"~ C(batch) + condition"``.

    Returns
    -------
    np.ndarray
        Numeric model matrix, one row per sample.
    list of str
        Coefficient names as patsy reports them.

    Examples
    --------
    >>> coldata = pd.DataFrame({'log_sf': np.log([0.5, 1.0, 2.0])})
    >>> X, names = create_design_matrix(coldata, "~ 1 + log_sf")
    >>> names
    ['Intercept', 'log_sf']
    """
    if not isinstance(coldata, pd.DataFrame):
        raise TypeError(f"col_data must be a pandas DataFrame, got {type(coldata).__name__}")

    frame = dmatrix(formula, data=coldata, return_type="dataframe")
    return frame.to_numpy(dtype=float), list(frame.columns)


def check_full_rank(X):
    """True if the columns of ``X`` are linearly independent."""
    X = np.asarray(X, dtype=float)
    return np.linalg.matrix_rank(X) == X.shape[1]


def resolve_design(design, coldata, n_samples):
    """
    Turn a ``design`` argument into ``(matrix, column_names)``.

    Parameters
    ----------
    design : str, np.ndarray or pd.DataFrame
        Formula, or a numeric matrix with one row per sample.
    coldata : pd.DataFrame or None
        Sample metadata for formulas that reference variables.
    n_samples : int
        Number of samples in the count matrix.

    Raises
    ------
    DimensionMismatch
        If the design does not have one row per sample.
    ValueError
        If the design matrix is not full rank.
    """
    if isinstance(design, str):
        if design.replace(" ", "") in _INTERCEPT_ONLY:
            X, names = np.ones((n_samples, 1)), ["Intercept"]
        else:
            if coldata is None:
                raise ValueError(f"design '{design}' needs col_data")
            X, names = create_design_matrix(coldata, design)
    elif isinstance(design, pd.DataFrame):
        X, names = design.to_numpy(dtype=float), [str(c) for c in design.columns]
    else:
        X = np.asarray(design, dtype=float)
        if X.ndim == 1:
            X = X[:, np.newaxis]
        names = [f"Coef_{i + 1}" for i in range(X.shape[1])]

    if X.shape[0] != n_samples:
        raise DimensionMismatch(
            f"design has {X.shape[0]} rows but the data has {n_samples} samples")
    if not check_full_rank(X):
        raise ValueError("design matrix is not full rank")
    return X, names
