"""
Delta method-based variance stabilizing transformations.

For Gamma-Poisson data with Var[y] = mu + alpha * mu^2 the delta method
gives the variance stabilizing function

    g(x) = 1 / sqrt(alpha) * acosh(2 * alpha * x + 1)

which tends to 2 * sqrt(x) (the Poisson VST) as alpha goes to 0. The
shifted logarithm

    g(x) = 1 / sqrt(alpha) * log(4 * alpha * x + 1)

approximates it for large x and is often written with a pseudo-count
``c = 1 / (4 * alpha)``.

Both are applied to counts divided by their size factors. A count of zero
always maps to zero, so sparse inputs stay sparse.

References:
    - Ahlmann-Eltze C, Huber W (2023). Comparison of transformations for
      single-cell RNA-seq data. Nature Methods 20:665-672
    - Anscombe FJ (1948). The transformation of Poisson, binomial and
      negative-binomial data. Biometrika 35:246-254
"""

from dataclasses import dataclass

import numpy as np

from . import arrays
from ._utils import log_progress
from .errors import InvalidOverdispersion
from .fit import GamPoiFit
from .options import Auto, Fixed, FromModel, overdispersion_option
from .overdispersion import resolve_overdispersion
from .size_factors import resolve_size_factors

NEAR_ZERO_TOLERANCE = np.sqrt(np.finfo(float).eps)


def acoshp1(x):
    """
    ``acosh(1 + x)``, accurate for small ``x``.

    Examples
    --------
    >>> acoshp1(0.0)
    0.0
    >>> np.arccosh(1 + 1e-20)  # cancels to 0
    0.0
    >>> acoshp1(1e-20)
    1.4142135623730952e-10
    """
    x = np.asarray(x, dtype=float)
    out = np.log1p(x + np.sqrt(x * (x + 2)))
    return out[()]


# --- closed forms ---

def _acosh_impl(x, alpha):
    return acoshp1(2 * alpha * x) / np.sqrt(alpha)


def _sqrt_impl(x):
    return 2 * np.sqrt(x)


def _shifted_log_impl(x, alpha):
    return np.log1p(4 * alpha * x) / np.sqrt(alpha)


def _shifted_log_limit(x):
    # 1/sqrt(a) * log1p(4 a x) ~ 4 sqrt(a) x -> 0
    return np.zeros_like(x)


# --- classification of the overdispersion ---

@dataclass(frozen=True)
class AllNearZero:
    """Every overdispersion is zero: only the limit formula applies."""


@dataclass(frozen=True)
class NoneNearZero:
    """No overdispersion is zero: only the closed form applies."""


@dataclass(frozen=True, eq=False)
class Mixed:
    """Some overdispersions are zero. ``near_zero`` has alpha's shape."""

    near_zero: np.ndarray


def near_zero(alpha, tol=NEAR_ZERO_TOLERANCE):
    return np.abs(np.asarray(alpha, dtype=float)) < tol


def classify_overdispersion(alpha, tol=NEAR_ZERO_TOLERANCE):
    """
    Sort the overdispersion into ``AllNearZero``, ``NoneNearZero`` or ``Mixed``.

    A scalar is never ``Mixed``. For ``Mixed`` the mask is per gene or per
    entry, matching the shape of ``alpha``.
    """
    mask = near_zero(alpha, tol)
    if not mask.any():
        return NoneNearZero()
    if mask.all():
        return AllNearZero()
    return Mixed(mask)


def _apply_all_near_zero(values, alpha, zero, impl, limit):
    return limit(values)


def _apply_none_near_zero(values, alpha, zero, impl, limit):
    return impl(values, alpha)


def _apply_mixed(values, alpha, zero, impl, limit):
    alpha = np.broadcast_to(alpha, values.shape)
    zero = np.broadcast_to(np.asarray(zero, dtype=bool), values.shape)
    out = np.empty_like(values)
    out[zero] = limit(values[zero])
    out[~zero] = impl(values[~zero], alpha[~zero])
    return out


_HANDLERS = {
    AllNearZero: _apply_all_near_zero,
    NoneNearZero: _apply_none_near_zero,
    Mixed: _apply_mixed,
}


def apply_transform(norm_counts, alpha, impl, limit, regime=None):
    """
    Apply a closed-form transform block by block.

    Parameters
    ----------
    norm_counts : np.ndarray, scipy.sparse matrix or BlockMatrix
        Size-factor normalized counts.
    alpha : float or np.ndarray
        Scalar, per-gene or per-entry overdispersion.
    impl : callable
        ``impl(x, alpha)`` for entries with non-zero overdispersion.
    limit : callable
        ``limit(x)`` for entries with zero overdispersion.
    regime : AllNearZero, NoneNearZero or Mixed, optional
        Result of ``classify_overdispersion(alpha)``; computed if omitted.
        For ``Mixed`` its mask, not ``alpha``, picks the form per entry.
    """
    if regime is None:
        regime = classify_overdispersion(alpha)
    handler = _HANDLERS[type(regime)]
    mask = regime.near_zero if isinstance(regime, Mixed) else False

    def entry_fn(values, a, zero):
        return handler(values, a, zero, impl, limit)

    def transform_block(block, rows):
        return arrays.map_entries(block, entry_fn, arrays.slice_rows(alpha, rows),
                                  arrays.slice_rows(mask, rows))

    return arrays.apply_blockwise(norm_counts, transform_block)


# --- public transforms ---

def _unwrap(data):
    if isinstance(data, GamPoiFit):
        return data.counts, data.shape_info, data
    counts, info = arrays.normalize(data)
    return counts, info, None


def _overdispersion_option(overdispersion, model):
    option = overdispersion_option(overdispersion)
    if model is not None and isinstance(option, Auto):
        return FromModel(model)
    return option


def _prepare(data, overdispersion, size_factors, verbose):
    counts, info, model = _unwrap(data)
    sf = resolve_size_factors(size_factors, counts, model=model, verbose=verbose)
    alpha = resolve_overdispersion(_overdispersion_option(overdispersion, model),
                                   counts, size_factors=sf, verbose=verbose)
    return counts, info, sf, alpha


def acosh_transform(data, overdispersion=0.05, size_factors=True, verbose=False):
    """
    Delta method-based variance stabilizing transformation.

    Computes ``1/sqrt(alpha) * acosh(2 * alpha * x + 1)`` on the counts
    divided by their size factors, and ``2 * sqrt(x)`` wherever alpha is 0.

    Parameters
    ----------
    data : array-like, scipy.sparse matrix, BlockMatrix or GamPoiFit
        Count matrix (genes x samples) or a vector. A ``GamPoiFit``
        contributes its counts, size factors and (if ``overdispersion`` is
        ``True``) overdispersions.
    overdispersion : float, array-like, bool or "global", default 0.05
        A scalar, one value per gene or one value per entry. ``True`` or
        ``"global"`` estimates one value per gene.
    size_factors : bool, str or array-like, default True
        ``True`` uses the column sums normalized to mean 1, a vector is
        used as given (re-normalized to mean 1), ``False`` disables them.
    verbose : bool, default False
        Log progress at INFO level.

    Returns
    -------
    Same kind as ``data``
        Transformed values with the input's shape; vectors stay vectors,
        DataFrames keep their labels, sparse stays sparse and a
        BlockMatrix returns a lazy BlockMatrix.

    Examples
    --------
    >>> counts = np.random.poisson(5, size=(100, 10))
    >>> vst = acosh_transform(counts, overdispersion=0.1)
    >>> vst.shape
    (100, 10)
    """
    counts, info, sf, alpha = _prepare(data, overdispersion, size_factors, verbose)
    norm_counts = arrays.divide_columns(counts, sf)

    regime = classify_overdispersion(alpha)
    log_progress(verbose, "Applying acosh transform (%s)", type(regime).__name__)
    result = apply_transform(norm_counts, alpha, _acosh_impl, _sqrt_impl, regime)
    return arrays.restore(result, info)


def _overdispersion_from_pseudo_count(pseudo_count):
    c = np.asarray(pseudo_count, dtype=float)
    if np.any(np.isnan(c)) or np.any(c <= 0):
        raise InvalidOverdispersion("pseudo_count must be positive")
    alpha = 1.0 / (4.0 * c)
    return float(alpha) if alpha.ndim == 0 else alpha


def shifted_log_transform(data, overdispersion=0.05, pseudo_count=None,
                          size_factors=True, minimum_overdispersion=0.001,
                          verbose=False):
    """
    Shifted logarithm ``1/sqrt(alpha) * log(4 * alpha * x + 1)``.

    Parameters
    ----------
    data : array-like, scipy.sparse matrix, BlockMatrix or GamPoiFit
        Count matrix (genes x samples) or a vector.
    overdispersion : float, array-like, bool or "global", default 0.05
        See ``acosh_transform``. Ignored if ``pseudo_count`` is given.
    pseudo_count : float or array-like, optional
        Alternative parameterization, ``alpha = 1 / (4 * pseudo_count)``.
        Takes precedence over ``overdispersion``.
    size_factors : bool, str or array-like, default True
        See ``acosh_transform``.
    minimum_overdispersion : float, default 0.001
        Overdispersions below this value are raised to it. For alpha -> 0
        the shifted log degenerates to 0 (unlike the acosh transform,
        which tends to ``2 * sqrt(x)``). If set to 0, entries with zero
        overdispersion map to 0.
    verbose : bool, default False
        Log progress at INFO level.

    Returns
    -------
    Same kind as ``data``
        Transformed values, see ``acosh_transform``.

    Examples
    --------
    >>> counts = np.random.poisson(5, size=(100, 10))
    >>> logged = shifted_log_transform(counts, pseudo_count=1)
    """
    if pseudo_count is not None:
        overdispersion = Fixed(_overdispersion_from_pseudo_count(pseudo_count))

    counts, info, sf, alpha = _prepare(data, overdispersion, size_factors, verbose)
    norm_counts = arrays.divide_columns(counts, sf)

    alpha = np.maximum(alpha, minimum_overdispersion)
    if np.ndim(alpha) == 0:
        alpha = float(alpha)

    regime = classify_overdispersion(alpha)
    log_progress(verbose, "Applying shifted log transform (%s)", type(regime).__name__)
    result = apply_transform(norm_counts, alpha, _shifted_log_impl,
                             _shifted_log_limit, regime)
    return arrays.restore(result, info)
