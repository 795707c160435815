"""
Residual-based variance stabilizing transformations.

Fits a Gamma-Poisson GLM to every gene (or takes an existing fit) and
returns the residuals of that fit. Pearson residuals are the analytic
choice used by sctransform; randomized quantile residuals are approximately
standard normal for any mean and overdispersion, even for small counts.

References:
    - Hafemeister C, Satija R (2019). Normalization and variance
      stabilization of single-cell RNA-seq data using regularized negative
      binomial regression. Genome Biology 20:296
    - Lause J, Berens P, Kobak D (2021). Analytic Pearson residuals for
      normalization of single-cell RNA-seq UMI data. Genome Biology 22:258
"""

import numpy as np
import pandas as pd

from . import arrays
from ._utils import log_progress
from .fit import GamPoiFit
from .glm_gp import glm_gp
from .residuals import check_residual_type
from .size_factors import resolve_size_factors


def use_trended_overdispersions(fit):
    """
    Copy of ``fit`` whose overdispersions are the fitted trend.

    The values the fit had before are kept in
    ``overdispersion_shrinkage_list["original_overdispersions"]``. A fit
    without shrinkage results is returned unchanged.
    """
    shrinkage = fit.overdispersion_shrinkage_list
    if shrinkage is None or "dispersion_trend" not in shrinkage:
        return fit

    new = fit.copy()
    new.overdispersion_shrinkage_list.setdefault(
        "original_overdispersions", fit.overdispersions)
    new.overdispersions = np.asarray(shrinkage["dispersion_trend"], dtype=float)
    return new


def _clip_bound(clipping, n_samples):
    if clipping is False or clipping is None:
        return None
    if clipping is True:
        return np.sqrt(n_samples)
    bound = float(clipping)
    if not bound > 0:
        raise ValueError("clipping must be a positive number, True or False")
    return bound


def _fit_model(counts, offset_model, size_factors, overdispersion,
               overdispersion_shrinkage, ridge_penalty, verbose, fit_kwargs):
    if offset_model:
        return glm_gp(counts, design="~ 1", size_factors=size_factors,
                      overdispersion=overdispersion,
                      overdispersion_shrinkage=overdispersion_shrinkage,
                      verbose=verbose, **fit_kwargs)

    # depth enters as a covariate; the ridge keeps its slope near 1
    sf = resolve_size_factors(size_factors, counts, verbose=verbose)
    col_data = pd.DataFrame({"log_sf": np.log(sf)})
    return glm_gp(counts, design="~ 1 + log_sf", col_data=col_data,
                  size_factors=False, overdispersion=overdispersion,
                  overdispersion_shrinkage=overdispersion_shrinkage,
                  ridge_penalty=[0.0, ridge_penalty], ridge_target=[0.0, 1.0],
                  verbose=verbose, **fit_kwargs)


def residual_transform(data, residual_type="randomized_quantile", offset_model=True,
                       size_factors=True, overdispersion=True,
                       overdispersion_shrinkage=True, ridge_penalty=2,
                       clipping=False, return_fit=False, random_state=None,
                       verbose=False, **fit_kwargs):
    """
    Residual-based variance stabilizing transformation.

    Parameters
    ----------
    data : array-like, scipy.sparse matrix, BlockMatrix or GamPoiFit
        Count matrix (genes x samples) or a vector. A ``GamPoiFit`` is used
        as is and no model is fitted.
    residual_type : str, default "randomized_quantile"
        One of ``"randomized_quantile"``, ``"pearson"``, ``"deviance"``,
        ``"working"``, ``"response"``, ``"quantile"``.
    offset_model : bool, default True
        ``True`` fits ``log mu = beta_0 + log(size factor)``. ``False``
        estimates the slope of the log size factor too, with a ridge
        penalty pulling it towards 1.
    size_factors : bool, str or array-like, default True
        See ``resolve_size_factors``.
    overdispersion : bool, float or array-like, default True
        ``True`` estimates one value per gene.
    overdispersion_shrinkage : bool, default True
        Use the mean-overdispersion trend instead of the gene-wise
        estimates. The gene-wise values are kept on the fit under
        ``overdispersion_shrinkage_list["original_overdispersions"]``.
    ridge_penalty : float, default 2
        Penalty on the log size factor slope when ``offset_model=False``.
    clipping : bool or float, default False
        ``True`` clips residuals to ``+-sqrt(n_samples)``, a number clips
        to ``+-clipping``.
    return_fit : bool, default False
        Also return the fit the residuals were computed from.
    random_state : None, int, np.random.SeedSequence or np.random.Generator
        Randomness for ``"randomized_quantile"``. The same count can get
        different residuals on repeated calls unless this is fixed.
    verbose : bool, default False
        Log progress at INFO level.
    **fit_kwargs
        Passed on to ``glm_gp`` (e.g. ``trend_type``).

    Returns
    -------
    residuals : same kind as ``data``
        Dense for dense or sparse input, a lazy BlockMatrix for
        block-backed input, a vector for vector input.
    fit : GamPoiFit
        Only if ``return_fit`` is True.

    Examples
    --------
    >>> counts = np.random.negative_binomial(n=5, p=0.3, size=(200, 50))
    >>> rqr = residual_transform(counts, random_state=1)
    >>> pearson, fit = residual_transform(counts, "pearson", return_fit=True)
    """
    check_residual_type(residual_type)

    if isinstance(data, GamPoiFit):
        fit = data
        bound = _clip_bound(clipping, fit.n_samples)
    else:
        counts, info = arrays.normalize(data)
        bound = _clip_bound(clipping, counts.shape[1])
        fit = _fit_model(counts, offset_model, size_factors, overdispersion,
                         overdispersion_shrinkage, ridge_penalty, verbose, fit_kwargs)
        fit.shape_info = info

    if overdispersion_shrinkage:
        fit = use_trended_overdispersions(fit)

    log_progress(verbose, "Computing %s residuals", residual_type)
    resid = fit.residuals(residual_type, random_state=random_state)

    if bound is not None:
        resid = arrays.apply_blockwise(
            resid, lambda block, rows: np.clip(block, -bound, bound))

    resid = arrays.restore(resid, fit.shape_info)
    if return_fit:
        return resid, fit
    return resid


def pearson_residuals(data, **kwargs):
    """``residual_transform`` with ``residual_type="pearson"``."""
    return residual_transform(data, residual_type="pearson", **kwargs)


def randomized_quantile_residuals(data, **kwargs):
    """``residual_transform`` with ``residual_type="randomized_quantile"``."""
    return residual_transform(data, residual_type="randomized_quantile", **kwargs)
