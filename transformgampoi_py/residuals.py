"""
Residuals of a fitted Gamma-Poisson model.

All residual kinds take the observed counts ``y``, the fitted means ``mu``
and the overdispersion ``alpha`` (aligned to ``y``) and are computed one
row block at a time.

Randomized quantile residuals (Dunn & Smyth 1996) map every count to a
uniform draw inside the interval ``[F(y - 1), F(y)]`` of the fitted
cumulative distribution and then through the standard normal quantile
function. The draw is random on purpose: the same count can map to
different residuals. Fix ``random_state`` for reproducible results. Each
row block draws from its own stream, derived from the root seed and the
block's first row, so results only depend on the seed and the block size.

References:
    - Dunn PK, Smyth GK (1996). Randomized quantile residuals. Journal of
      Computational and Graphical Statistics 5:236-244
"""

import numpy as np
from scipy.special import xlogy
from scipy.stats import nbinom, norm, poisson

from . import arrays
from .delta_method import near_zero
from .errors import UnsupportedResidualKind

RESIDUAL_TYPES = ("deviance", "pearson", "randomized_quantile",
                  "working", "response", "quantile")

# keeps norm.ppf finite
_EPS = np.finfo(float).eps


def check_residual_type(kind):
    """Raise ``UnsupportedResidualKind`` unless ``kind`` is a known residual type."""
    if not isinstance(kind, str) or kind not in RESIDUAL_TYPES:
        raise UnsupportedResidualKind(
            f"Unknown residual type: {kind!r}. Available: {', '.join(RESIDUAL_TYPES)}")
    return kind


def pearson_residual(y, mu, alpha):
    """``(y - mu) / sqrt(mu + mu^2 * alpha)``"""
    return (y - mu) / np.sqrt(mu + mu ** 2 * alpha)


def response_residual(y, mu, alpha):
    return y - mu


def working_residual(y, mu, alpha):
    return (y - mu) / mu


def deviance_residual(y, mu, alpha):
    """
    Signed square root of the unit deviance.

    Poisson deviance where alpha is zero, negative-binomial otherwise.
    """
    y, mu = np.broadcast_arrays(np.asarray(y, dtype=float), np.asarray(mu, dtype=float))
    alpha = np.broadcast_to(np.asarray(alpha, dtype=float), y.shape)
    zero = near_zero(alpha)

    dev = np.empty_like(y)
    dev[zero] = 2 * (xlogy(y[zero], y[zero] / mu[zero]) - (y[zero] - mu[zero]))

    y_nb, mu_nb, a = y[~zero], mu[~zero], alpha[~zero]
    dev[~zero] = 2 * (xlogy(y_nb, y_nb / mu_nb)
                      - (y_nb + 1 / a) * np.log1p(a * y_nb) + (y_nb + 1 / a) * np.log1p(a * mu_nb))

    return np.sign(y - mu) * np.sqrt(np.maximum(dev, 0))


def cdf_bounds(y, mu, alpha):
    """
    ``(F(y - 1), F(y))`` under the fitted Gamma-Poisson distribution.

    Uses the Poisson distribution where alpha is zero.
    """
    y, mu = np.broadcast_arrays(np.asarray(y, dtype=float), np.asarray(mu, dtype=float))
    alpha = np.broadcast_to(np.asarray(alpha, dtype=float), y.shape)
    zero = near_zero(alpha)

    lower = np.empty_like(y)
    upper = np.empty_like(y)

    lower[zero] = poisson.cdf(y[zero] - 1, mu[zero])
    upper[zero] = poisson.cdf(y[zero], mu[zero])

    # scipy's nbinom: n = 1 / alpha, p = n / (n + mu)
    n = 1 / alpha[~zero]
    p = 1 / (1 + alpha[~zero] * mu[~zero])
    lower[~zero] = nbinom.cdf(y[~zero] - 1, n, p)
    upper[~zero] = nbinom.cdf(y[~zero], n, p)
    return lower, upper


def _normal_quantile(u):
    return norm.ppf(np.clip(u, _EPS, 1 - _EPS))


def randomized_quantile_residual(y, mu, alpha, rng):
    """Randomized quantile residuals, drawing from the generator ``rng``."""
    lower, upper = cdf_bounds(y, mu, alpha)
    u = lower + (upper - lower) * rng.random(lower.shape)
    return _normal_quantile(u)


def quantile_residual(y, mu, alpha):
    """Quantile residuals at the middle of each count's CDF interval."""
    lower, upper = cdf_bounds(y, mu, alpha)
    return _normal_quantile((lower + upper) / 2)


_DETERMINISTIC = {
    "deviance": deviance_residual,
    "pearson": pearson_residual,
    "working": working_residual,
    "response": response_residual,
    "quantile": quantile_residual,
}


def as_seed_sequence(random_state):
    """
    Root ``SeedSequence`` for a ``random_state`` argument.

    ``None`` draws fresh entropy, an int or ``SeedSequence`` is
    deterministic, and a ``Generator`` contributes one draw.
    """
    if isinstance(random_state, np.random.SeedSequence):
        return random_state
    if isinstance(random_state, np.random.Generator):
        return np.random.SeedSequence(int(random_state.integers(0, 2 ** 62)))
    return np.random.SeedSequence(random_state)


def block_generator(root, rows):
    """Independent generator for the block starting at ``rows.start``."""
    child = np.random.SeedSequence(root.entropy,
                                   spawn_key=tuple(root.spawn_key) + (rows.start,))
    return np.random.default_rng(child)


def residuals_of(fit, kind, random_state=None):
    """
    Residuals of a ``GamPoiFit``.

    Parameters
    ----------
    fit : GamPoiFit
        Fitted model; its ``counts``, fitted means and ``overdispersions``
        are used.
    kind : str
        One of ``RESIDUAL_TYPES``.
    random_state : None, int, np.random.SeedSequence or np.random.Generator
        Source of randomness for ``"randomized_quantile"``.

    Returns
    -------
    np.ndarray or BlockMatrix
        Residual matrix (genes x samples). Sparse counts give a dense
        result; block-backed counts give a lazy BlockMatrix.
    """
    check_residual_type(kind)
    root = as_seed_sequence(random_state) if kind == "randomized_quantile" else None
    alpha = np.broadcast_to(np.asarray(fit.overdispersions, dtype=float), (fit.n_genes,))

    def block_residuals(block, rows):
        y = arrays.to_dense(block)
        mu = fit.fitted_means_block(rows)
        a = alpha[rows][:, np.newaxis]
        if root is not None:
            return randomized_quantile_residual(y, mu, a, block_generator(root, rows))
        return _DETERMINISTIC[kind](y, mu, a)

    return arrays.apply_blockwise(fit.counts, block_residuals, preserves_zero=False)
