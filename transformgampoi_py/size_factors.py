import numpy as np

from . import arrays
from ._utils import log_progress, logger
from .errors import DimensionMismatch, InvalidSizeFactor
from .options import Auto, FromModel, size_factor_option

# stand-in for the size factor of a sample without any counts
EMPTY_SAMPLE_FACTOR = 0.001


def estimate_size_factors_for_matrix(
    counts,
    loc_func=np.median,
    geo_means=None,
    control_genes=None,
    type="ratio"
):
    """
    Median-of-ratios size factors, as in DESeq2.

    Each sample's factor is the median ratio of its counts to a per-gene
    reference (the geometric mean across samples).

    Parameters
    ----------
    counts : np.ndarray
        Raw counts (genes x samples).
    loc_func : callable, default np.median
        Summary of the log ratios of one sample.
    geo_means : np.ndarray, optional
        Per-gene reference instead of the geometric means.
    control_genes : array-like, optional
        Genes (indices or boolean mask) the ratios are taken over.
    type : {"ratio", "poscounts"}, default "ratio"
        ``"ratio"`` skips every gene with a zero; ``"poscounts"`` takes
        the geometric mean over the positive counts only.

    Returns
    -------
    np.ndarray
        One value per sample, not normalized. Samples without a single
        usable ratio get 0, which ``estimate_size_factors`` replaces.
    """
    counts = np.asarray(counts, dtype=float)
    n_genes = counts.shape[0]

    if geo_means is not None:
        if len(geo_means) != n_genes:
            raise DimensionMismatch(f"geo_means must have one value per gene ({n_genes})")
        with np.errstate(divide="ignore"):
            log_ref = np.log(np.asarray(geo_means, dtype=float))
    elif type == "ratio":
        with np.errstate(divide="ignore"):
            log_ref = np.log(counts).mean(axis=1)
    elif type == "poscounts":
        positive = counts > 0
        log_ref = np.log(counts, where=positive, out=np.zeros_like(counts)).mean(axis=1)
        log_ref[~positive.any(axis=1)] = -np.inf
    else:
        raise ValueError(f"Unknown type: {type}")

    if not np.isfinite(log_ref).any():
        raise InvalidSizeFactor("every gene has a zero count; cannot compute size factors")

    if control_genes is not None:
        log_ref = log_ref[control_genes]
        counts = counts[control_genes]

    factors = np.zeros(counts.shape[1])
    for j, col in enumerate(counts.T):
        usable = np.isfinite(log_ref) & (col > 0)
        if usable.any():
            factors[j] = np.exp(loc_func(np.log(col[usable]) - log_ref[usable]))
    return factors


def normed_sum_size_factors(matrix):
    """
    Column totals divided by their mean.

    Empty samples get ``EMPTY_SAMPLE_FACTOR`` instead of 0, so the result
    is strictly positive. Only all-zero data is rejected.
    """
    totals = arrays.col_sums(matrix)
    if not np.any(totals > 0):
        raise InvalidSizeFactor("all samples have zero total counts; cannot normalize")
    return _fill_empty_samples(totals / totals.mean())


def _fill_empty_samples(size_factors):
    size_factors = np.asarray(size_factors, dtype=float).copy()
    empty = size_factors == 0
    if empty.any():
        logger.debug("%d samples without counts get size factor %g",
                     empty.sum(), EMPTY_SAMPLE_FACTOR)
        size_factors[empty] = EMPTY_SAMPLE_FACTOR
    return size_factors


def estimate_size_factors(counts, method="normed_sum", **kwargs):
    """
    Estimate per-sample size factors.

    Parameters
    ----------
    counts : np.ndarray, scipy.sparse matrix or BlockMatrix
        Raw count matrix (genes x samples).
    method : {"normed_sum", "ratio", "poscounts"}, default "normed_sum"
        ``"normed_sum"`` uses the column totals and streams over blocks.
        ``"ratio"`` and ``"poscounts"`` are the DESeq2 median-of-ratios
        estimators; they need the whole matrix in memory.
    **kwargs
        Passed to ``estimate_size_factors_for_matrix``.

    Returns
    -------
    np.ndarray
        Size factors with mean 1.

    Examples
    --------
    >>> counts = np.array([[10, 20], [5, 10], [1, 2]])
    >>> estimate_size_factors(counts)
    array([0.66666667, 1.33333333])
    """
    if method == "normed_sum":
        sf = normed_sum_size_factors(counts)
    elif method in ("ratio", "poscounts"):
        sf = estimate_size_factors_for_matrix(arrays.to_dense(counts), type=method, **kwargs)
        sf = _fill_empty_samples(sf / sf.mean())
    else:
        raise ValueError(f"Unknown size factor method: {method}")
    return _normalize_to_mean_one(sf)


def _normalize_to_mean_one(size_factors):
    size_factors = np.asarray(size_factors, dtype=float)
    bad = ~np.isfinite(size_factors) | (size_factors <= 0)
    if bad.any():
        raise InvalidSizeFactor(
            f"size factors must be finite and positive; "
            f"{bad.sum()} of {size_factors.size} samples are not "
            f"(first: {np.flatnonzero(bad)[:5].tolist()})")
    return size_factors / size_factors.mean()


def resolve_size_factors(value, matrix, model=None, verbose=False):
    """
    Turn a ``size_factors`` argument into a concrete vector.

    Parameters
    ----------
    value : bool, str, float, array-like, Auto, Fixed or FromModel
        ``True``/``Auto`` estimates from the data, a method name picks
        the estimator, ``False`` means all ones, numbers are used as given.
    matrix : np.ndarray, scipy.sparse matrix or BlockMatrix
        Count matrix (genes x samples) as returned by ``arrays.normalize``.
    model : GamPoiFit, optional
        If given, its stored size factors are returned and ``value`` is ignored.

    Returns
    -------
    np.ndarray
        One size factor per sample, mean 1.

    Raises
    ------
    DimensionMismatch
        If a supplied vector does not have one entry per sample.
    InvalidSizeFactor
        If the data has no counts at all, or a supplied size factor is
        zero, negative or not finite.
    """
    if model is not None:
        return np.asarray(model.size_factors, dtype=float)

    option = size_factor_option(value)
    if isinstance(option, FromModel):
        return np.asarray(option.model.size_factors, dtype=float)

    n_samples = matrix.shape[1]
    if isinstance(option, Auto):
        log_progress(verbose, "Estimating size factors (%s)", option.method)
        return estimate_size_factors(matrix, method=option.method)

    values = np.asarray(option.value, dtype=float)
    if values.ndim == 0:
        values = np.full(n_samples, float(values))
    elif values.ndim != 1 or values.shape[0] != n_samples:
        raise DimensionMismatch(
            f"size_factors has shape {values.shape}, expected one value "
            f"per sample ({n_samples})")
    return _normalize_to_mean_one(values)
