"""
Container for a fitted Gamma-Poisson GLM.

``GamPoiFit`` is what ``glm_gp`` returns and what the residual-based
transforms consume. It keeps the coefficients rather than the full matrix
of fitted means, so fitted means can be produced one row block at a time
for data that is not held in memory.
"""

import copy

import numpy as np

MIN_MU = 1e-8


class GamPoiFit:
    """
    Fitted Gamma-Poisson model for a count matrix.

    Parameters
    ----------
    beta : np.ndarray
        Coefficients (genes x parameters). Rows of NaN mark genes without
        a single count; their fitted means are ``min_mu``.
    design_matrix : np.ndarray
        Design matrix (samples x parameters).
    design_columns : list of str
        Names of the design matrix columns.
    offset : np.ndarray
        Per-sample offset on the log scale (log size factors).
    overdispersions : np.ndarray
        Per-gene overdispersion (alpha). ``0`` means Poisson.
    size_factors : np.ndarray
        Per-sample size factors (mean 1).
    counts : np.ndarray, scipy.sparse matrix or BlockMatrix
        The count matrix the model was fitted on.
    overdispersion_shrinkage_list : dict, optional
        Output of the dispersion shrinkage step: ``dispersion_trend``,
        ``dispersion_shrunken``, ``dispersion_prior_var``, ``is_outlier``
        and, once the trend has been plugged in,
        ``original_overdispersions``.
    shape_info : ShapeInfo, optional
        Shape and labels of the original input, used to restore outputs.
    min_mu : float, default 1e-8
        Lower bound for fitted means.

    Attributes
    ----------
    fitted_means : np.ndarray
        Fitted means (genes x samples), computed on access.

    Examples
    --------
    >>> fit = glm_gp(counts, design="~ 1")
    >>> fit.fitted_means.shape == counts.shape
    True
    >>> pearson = fit.residuals("pearson")
    """

    def __init__(self, beta, design_matrix, design_columns, offset,
                 overdispersions, size_factors, counts,
                 overdispersion_shrinkage_list=None, shape_info=None,
                 min_mu=MIN_MU):
        self.beta = np.asarray(beta, dtype=float)
        self.design_matrix = np.asarray(design_matrix, dtype=float)
        self.design_columns = list(design_columns)
        self.offset = np.asarray(offset, dtype=float)
        self.overdispersions = np.asarray(overdispersions, dtype=float)
        self.size_factors = np.asarray(size_factors, dtype=float)
        self.counts = counts
        self.overdispersion_shrinkage_list = overdispersion_shrinkage_list
        self.shape_info = shape_info
        self.min_mu = min_mu

    @property
    def n_genes(self):
        return self.beta.shape[0]

    @property
    def n_samples(self):
        return self.design_matrix.shape[0]

    def fitted_means_block(self, rows):
        """Fitted means for the genes in ``rows`` (a slice)."""
        beta = self.beta[rows]
        eta = beta @ self.design_matrix.T + self.offset[np.newaxis, :]
        with np.errstate(over="ignore"):
            mu = np.exp(eta)
        # fmax drops the NaN of all-zero genes
        return np.fmax(mu, self.min_mu)

    @property
    def fitted_means(self):
        return self.fitted_means_block(slice(0, self.n_genes))

    def residuals(self, type="deviance", random_state=None):
        """
        Residuals of the fit.

        Parameters
        ----------
        type : str, default "deviance"
            One of ``"deviance"``, ``"pearson"``, ``"randomized_quantile"``,
            ``"working"``, ``"response"``, ``"quantile"``.
        random_state : None, int, np.random.SeedSequence or np.random.Generator
            Source of randomness for ``"randomized_quantile"``.
        """
        from .residuals import residuals_of
        return residuals_of(self, type, random_state=random_state)

    def copy(self):
        """Shallow copy with its own shrinkage dictionary."""
        new = copy.copy(self)
        if self.overdispersion_shrinkage_list is not None:
            new.overdispersion_shrinkage_list = dict(self.overdispersion_shrinkage_list)
        return new

    def __repr__(self):
        shrunk = "with" if self.overdispersion_shrinkage_list is not None else "without"
        return (f"GamPoiFit with {self.n_genes} genes and {self.n_samples} samples "
                f"({self.beta.shape[1]} coefficients, {shrunk} dispersion shrinkage)")
