"""
Overdispersion estimation for Gamma-Poisson models.

Per-gene estimates maximize the Cox-Reid adjusted profile likelihood
(CR-APL) for fixed fitted means. For shrinkage, a trend of overdispersion
against mean expression is fitted (LOWESS on the log-log scale, or the
parametric a / mean + b curve) and the gene-wise estimates are pulled
towards it with an empirical Bayes weight.

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
    - Ahlmann-Eltze C, Huber W (2020). glmGamPoi: Fitting Gamma-Poisson
      Generalized Linear Models on Single Cell Count Data. Bioinformatics
    - Cleveland WS (1979). Robust Locally Weighted Regression and Smoothing
      Scatterplots. JASA 74:829-836
"""

import numpy as np
from scipy.optimize import minimize, minimize_scalar
from scipy.special import gammaln, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess

from ._utils import log_progress

MIN_DISP = 1e-8
MAX_DISP = 1e4

# genes needed before a trend is fitted instead of a constant
MIN_TREND_GENES = 10


# --- objective ---

def nbinom_loglike(y, mu, alpha):
    """Gamma-Poisson log-likelihood of one gene's counts."""
    size = 1.0 / max(alpha, MIN_DISP)
    log_p = np.log(size / (size + mu))
    log_q = np.log(mu / (size + mu))
    ll = (gammaln(y + size) - gammaln(size) - gammaln(y + 1.0)
          + size * log_p + y * log_q)
    return ll.sum()


def cox_reid_adjustment(mu, alpha, X):
    """``-0.5 * log det(X^T W X)`` with Gamma-Poisson working weights."""
    weights = mu / (1.0 + max(alpha, MIN_DISP) * mu)
    sign, logdet = np.linalg.slogdet((X.T * weights) @ X)
    if sign <= 0:
        return -np.inf
    return -0.5 * logdet


def get_crap_objective(y, X, mu):
    """Negative CR-APL of one gene as a function of log(alpha)."""
    def objective(log_alpha):
        alpha = np.exp(log_alpha)
        return -(nbinom_loglike(y, mu, alpha) + cox_reid_adjustment(mu, alpha, X))
    return objective


# --- gene-wise estimates ---

def moment_overdispersion(counts, size_factors):
    """
    Method-of-moments overdispersion per gene.

    For y = s * x with E[x] = m and Var(y) = s*m + alpha*(s*m)^2, the
    normalized counts x have variance m * mean(1/s) + alpha * m^2.
    Negative estimates (underdispersion) are set to 0.
    """
    counts = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    norm_counts = counts / sf
    means = norm_counts.mean(axis=1)
    if counts.shape[1] > 1:
        var = norm_counts.var(axis=1, ddof=1)
    else:
        var = np.zeros_like(means)

    alpha = np.zeros_like(means)
    expressed = means > 0
    alpha[expressed] = ((var[expressed] - means[expressed] * np.mean(1.0 / sf))
                        / means[expressed] ** 2)
    return np.clip(alpha, 0.0, MAX_DISP)


def estimate_gene_wise_overdispersion(counts, mu, design_matrix, verbose=False):
    """
    Maximum CR-APL estimate of the overdispersion of each gene.

    Parameters
    ----------
    counts : np.ndarray
        Raw counts (genes x samples).
    mu : np.ndarray
        Fitted means (genes x samples), held fixed.
    design_matrix : np.ndarray
        Design matrix (samples x parameters).

    Returns
    -------
    np.ndarray
        Overdispersion per gene. Genes without counts, or whose optimum
        sits at the lower bound, get exactly 0 (Poisson).
    """
    counts = np.asarray(counts, dtype=float)
    alpha = np.zeros(counts.shape[0])

    expressed = np.flatnonzero(counts.sum(axis=1) > 0)
    log_progress(verbose, "Running Cox-Reid APL for %d genes", len(expressed))

    bounds = (np.log(MIN_DISP), np.log(MAX_DISP))
    for g in expressed:
        res = minimize_scalar(get_crap_objective(counts[g], design_matrix, mu[g]),
                              bounds=bounds, method="bounded")
        est = np.exp(res.x)
        alpha[g] = est if est > 10 * MIN_DISP else 0.0

    return alpha


# --- trend ---

def _usable(means, alpha):
    return (np.isfinite(means) & np.isfinite(alpha) & (means > 0)
            & (alpha > MIN_DISP) & (alpha < MAX_DISP))


def fit_local_dispersion_trend(means, alpha, frac=0.2, it=3):
    """
    LOWESS trend of log10(overdispersion) against log10(mean).

    Genes with zero mean or an overdispersion at the bounds are left out
    of the fit. With fewer than ``MIN_TREND_GENES`` usable genes the trend
    is constant (see ``fit_mean_dispersion``). Outside the range of the
    fitted means the trend is flat.

    Parameters
    ----------
    means : np.ndarray
        Mean normalized counts per gene.
    alpha : np.ndarray
        Gene-wise overdispersion estimates.
    frac : float, default 0.2
        LOWESS span.
    it : int, default 3
        LOWESS robustifying iterations.

    Returns
    -------
    callable
        Maps mean expression to the trended overdispersion.
    np.ndarray
        The trend evaluated at ``means``.
    """
    means = np.asarray(means, dtype=float)
    alpha = np.asarray(alpha, dtype=float)

    keep = _usable(means, alpha)
    if keep.sum() < MIN_TREND_GENES:
        trend_fn, _ = fit_mean_dispersion(alpha, means)
        return trend_fn, trend_fn(means)

    curve = lowess(np.log10(alpha[keep]), np.log10(means[keep]),
                   frac=frac, it=it, return_sorted=True)
    grid, fitted = curve[:, 0], curve[:, 1]

    def trend_fn(m):
        log_m = np.log10(np.maximum(np.asarray(m, dtype=float), MIN_DISP))
        return 10 ** np.interp(log_m, grid, fitted, left=fitted[0], right=fitted[-1])

    return trend_fn, trend_fn(means)


def fit_parametric_dispersion_trend(means, alpha):
    """
    Trend ``alpha = a / mean + b``, fitted with a Gamma deviance.

    Only genes with mean above 2 and overdispersion in (1e-6, 20) enter the
    fit. Falls back to a constant with fewer than ``MIN_TREND_GENES`` of them.
    """
    means = np.asarray(means, dtype=float)
    alpha = np.asarray(alpha, dtype=float)

    keep = (means > 2.0) & (alpha > 1e-6) & (alpha < 20.0)
    if keep.sum() < MIN_TREND_GENES:
        trend_fn, _ = fit_mean_dispersion(alpha, means)
        return trend_fn, trend_fn(means)

    m_fit, a_fit = means[keep], alpha[keep]

    def deviance(params):
        asympt, extra = params
        pred = asympt + extra / m_fit
        return np.sum((a_fit - pred) / pred - np.log(a_fit / pred))

    res = minimize(deviance, x0=[0.01, 1.0],
                   bounds=[(1e-8, None), (0.0, None)], method="L-BFGS-B")
    asympt, extra = res.x

    def trend_fn(m):
        return asympt + extra / np.maximum(np.asarray(m, dtype=float), MIN_DISP)

    return trend_fn, trend_fn(means)


def fit_mean_dispersion(alpha, means=None, min_mean=0.0):
    """
    Constant trend at the geometric mean of the overdispersed genes.

    Returns
    -------
    callable
        Maps mean expression to the constant.
    float
        The constant; 0 if no gene is overdispersed.
    """
    alpha = np.asarray(alpha, dtype=float)
    keep = np.isfinite(alpha) & (alpha > MIN_DISP) & (alpha < MAX_DISP)
    if means is not None:
        keep &= np.asarray(means, dtype=float) >= min_mean

    level = float(np.exp(np.log(alpha[keep]).mean())) if keep.any() else 0.0

    def trend_fn(m):
        return np.full(np.shape(m), level, dtype=float)

    return trend_fn, level


_TRENDS = {
    "local": fit_local_dispersion_trend,
    "parametric": fit_parametric_dispersion_trend,
}


def fit_dispersion_trend(means, alpha, fit_type="local", **kwargs):
    """
    Fit an overdispersion-mean trend.

    Parameters
    ----------
    means : np.ndarray
        Mean normalized counts per gene.
    alpha : np.ndarray
        Gene-wise overdispersion estimates.
    fit_type : {"local", "parametric", "mean"}, default "local"
        LOWESS, ``a / mean + b`` or a constant.

    Returns
    -------
    callable, np.ndarray
        The trend function and the trend evaluated at ``means``.
    """
    if fit_type == "mean":
        trend_fn, _ = fit_mean_dispersion(alpha, means)
        return trend_fn, trend_fn(means)
    if fit_type not in _TRENDS:
        raise ValueError(f"Unknown fit_type: {fit_type}")
    return _TRENDS[fit_type](means, alpha, **kwargs)


# --- shrinkage ---

def estimate_prior_variance(means, alpha, trend):
    """
    Spread of log(alpha) around the trend, from the MAD of the residuals.

    Only genes with mean above 1 count. The standard deviation is at least
    0.25; with fewer than ``MIN_TREND_GENES`` genes the variance is 1.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        resid = np.log(alpha) - np.log(trend)
    resid = resid[np.isfinite(resid) & (np.asarray(means) > 1)]
    if resid.size < MIN_TREND_GENES:
        return 1.0

    sd = 1.4826 * np.median(np.abs(resid - np.median(resid)))
    return max(sd, 0.25) ** 2


def shrink_overdispersion(means, alpha, n_samples, n_params,
                          fit_type="local", outlier_sd=2.0, verbose=False):
    """
    Shrink gene-wise overdispersions towards the mean-overdispersion trend.

    The maximum a posteriori estimate on the log scale is a weighted mean
    of the gene-wise estimate and the trend, weighted by the prior variance
    and the sampling variance ``trigamma(df / 2)`` of a log estimate with
    ``df = n_samples - n_params`` degrees of freedom.

    Parameters
    ----------
    means : np.ndarray
        Mean normalized counts per gene.
    alpha : np.ndarray
        Gene-wise overdispersion estimates.
    n_samples, n_params : int
        Size of the design.
    fit_type : str, default "local"
        Trend type, see ``fit_dispersion_trend``.
    outlier_sd : float, default 2.0
        Genes more than this many prior SDs above the trend keep their
        gene-wise estimate.

    Returns
    -------
    dict
        ``dispersion_trend``, ``dispersion_shrunken``,
        ``dispersion_prior_var`` and ``is_outlier``.
    """
    means = np.asarray(means, dtype=float)
    alpha = np.asarray(alpha, dtype=float)

    log_progress(verbose, "Fitting overdispersion trend (%s)", fit_type)
    _, trend = fit_dispersion_trend(means, alpha, fit_type=fit_type)
    trend = np.maximum(trend, 0.0)

    prior_var = estimate_prior_variance(means, alpha, trend)
    sampling_var = polygamma(1, max(n_samples - n_params, 1) / 2.0)
    w = prior_var / (prior_var + sampling_var)

    log_alpha = np.log(np.maximum(alpha, MIN_DISP))
    log_trend = np.log(np.maximum(trend, MIN_DISP))
    is_outlier = log_alpha - log_trend > outlier_sd * np.sqrt(prior_var)

    shrunken = np.where(is_outlier, alpha, np.exp(w * log_alpha + (1.0 - w) * log_trend))
    shrunken[shrunken <= MIN_DISP] = 0.0

    return {
        "dispersion_trend": trend,
        "dispersion_shrunken": shrunken,
        "dispersion_prior_var": prior_var,
        "is_outlier": is_outlier,
    }
