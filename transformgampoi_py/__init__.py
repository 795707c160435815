"""
Variance stabilizing transformations for Gamma-Poisson count data in Python.

This package transforms count matrices (genes x samples) whose variance
grows with the mean, so that generic methods such as PCA, clustering and
distance computations can be applied to them.

Main Functions:
    transform_gampoi : Dispatch to any of the transformations below
    acosh_transform : Delta method-based acosh transformation
    shifted_log_transform : Shifted logarithm log(y / s + c)
    residual_transform : Residuals of a Gamma-Poisson GLM fit
    pearson_residuals : Pearson residuals
    randomized_quantile_residuals : Randomized quantile residuals
    glm_gp : Fit a Gamma-Poisson GLM to every gene

Main Classes:
    GamPoiFit : Fitted Gamma-Poisson model
    BlockMatrix : Lazy row-blocked view of an out-of-core matrix

References:
    Ahlmann-Eltze C, Huber W (2023). Comparison of transformations for
    single-cell RNA-seq data. Nature Methods 20:665-672
"""

# Transformations
from .transform import transform_gampoi
from .delta_method import acosh_transform, shifted_log_transform, acoshp1
from .residual_transform import (
    residual_transform,
    pearson_residuals,
    randomized_quantile_residuals
)

# Model fitting
from .glm_gp import glm_gp
from .fit import GamPoiFit
from .size_factors import estimate_size_factors
from .dispersion import fit_dispersion_trend, shrink_overdispersion
from .design import create_design_matrix

# Arrays
from .arrays import BlockMatrix

# Option variants
from .options import Auto, Fixed, FromModel

# Errors
from .errors import (
    TransformGamPoiError,
    InvalidInputKind,
    DimensionMismatch,
    InvalidSizeFactor,
    InvalidOverdispersion,
    UnsupportedResidualKind
)

__version__ = "0.1.0"

__all__ = [
    # Transformations
    'transform_gampoi',
    'acosh_transform',
    'shifted_log_transform',
    'acoshp1',
    'residual_transform',
    'pearson_residuals',
    'randomized_quantile_residuals',

    # Model fitting
    'glm_gp',
    'GamPoiFit',
    'estimate_size_factors',
    'fit_dispersion_trend',
    'shrink_overdispersion',
    'create_design_matrix',

    # Arrays
    'BlockMatrix',

    # Options
    'Auto',
    'Fixed',
    'FromModel',

    # Errors
    'TransformGamPoiError',
    'InvalidInputKind',
    'DimensionMismatch',
    'InvalidSizeFactor',
    'InvalidOverdispersion',
    'UnsupportedResidualKind',
]
