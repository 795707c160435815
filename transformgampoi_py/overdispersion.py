import numpy as np
from scipy import sparse

from ._utils import log_progress
from .errors import DimensionMismatch, InvalidOverdispersion
from .options import Auto, FromModel, overdispersion_option


def validate_overdispersion(value, shape):
    """
    Check a user-supplied overdispersion against the data's shape.

    Parameters
    ----------
    value : float or array-like
        Scalar, length-1, per-gene (length G) or per-entry (G x S) values.
    shape : tuple
        ``(n_genes, n_samples)`` of the count matrix.

    Returns
    -------
    float or np.ndarray
        A ``float`` for a single value, a 1-D array for per-gene values or
        a 2-D array for per-entry values. The class decides how the
        delta-method transforms dispatch.

    Raises
    ------
    DimensionMismatch
        If the values fit neither the genes nor the whole matrix.
    InvalidOverdispersion
        If any value is negative or not finite.
    """
    G, S = shape
    if sparse.issparse(value):
        value = value.toarray()
    try:
        alpha = np.asarray(value, dtype=float)
    except (TypeError, ValueError) as err:
        raise InvalidOverdispersion("overdispersion must be numeric") from err

    if alpha.size and (not np.all(np.isfinite(alpha)) or np.any(alpha < 0)):
        raise InvalidOverdispersion("overdispersion must be finite and non-negative")

    if alpha.ndim == 0:
        return float(alpha)
    if alpha.ndim == 1:
        if alpha.shape[0] == 1:
            return float(alpha[0])
        if alpha.shape[0] == G:
            return alpha
    elif alpha.ndim == 2:
        if alpha.shape == (G, S):
            return alpha
        if alpha.shape == (G, 1):
            return alpha[:, 0]

    raise DimensionMismatch(
        f"overdispersion has shape {alpha.shape}; expected a scalar, "
        f"one value per gene ({G}) or a {G} x {S} matrix")


def _estimate_global(matrix, size_factors, verbose=False):
    from .glm_gp import glm_gp

    fit = glm_gp(matrix, design="~ 1", size_factors=size_factors,
                 overdispersion=True, overdispersion_shrinkage=False,
                 verbose=verbose)
    return fit.overdispersions


def resolve_overdispersion(value, matrix, size_factors=True, estimate_fn=None,
                           verbose=False):
    """
    Turn an ``overdispersion`` argument into concrete values.

    Parameters
    ----------
    value : bool, "global", float, array-like, Auto, Fixed or FromModel
        ``True``/``"global"``/``Auto`` estimate one value per gene with an
        intercept-only Gamma-Poisson fit (no shrinkage). ``False`` is 0.
        Numbers are validated against the data shape.
    matrix : np.ndarray, scipy.sparse matrix or BlockMatrix
        Count matrix (genes x samples).
    size_factors : array-like or bool, default True
        Size factors used when the overdispersion has to be estimated.
    estimate_fn : callable, optional
        ``estimate_fn(matrix, size_factors)`` returning one value per gene.
        Default: ``glm_gp`` with design ``~ 1``.

    Returns
    -------
    float or np.ndarray
        Scalar, per-gene vector or per-entry matrix.
    """
    option = overdispersion_option(value)

    if isinstance(option, Auto):
        log_progress(verbose, "Estimating overdispersion per gene")
        if estimate_fn is None:
            alpha = _estimate_global(matrix, size_factors, verbose=verbose)
        else:
            alpha = estimate_fn(matrix, size_factors)
        return validate_overdispersion(alpha, matrix.shape)

    if isinstance(option, FromModel):
        return validate_overdispersion(option.model.overdispersions, matrix.shape)

    return validate_overdispersion(option.value, matrix.shape)
