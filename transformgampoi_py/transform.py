from .delta_method import acosh_transform, shifted_log_transform
from .residual_transform import pearson_residuals, randomized_quantile_residuals

TRANSFORMATIONS = {
    "acosh": acosh_transform,
    "shifted_log": shifted_log_transform,
    "randomized_quantile_residuals": randomized_quantile_residuals,
    "pearson_residuals": pearson_residuals,
}


def transform_gampoi(data, transformation="acosh", **kwargs):
    """
    Variance stabilizing transformation of a count matrix.

    Parameters
    ----------
    data : array-like, scipy.sparse matrix, BlockMatrix or GamPoiFit
        Count matrix (genes x samples) or a vector.
    transformation : str, default "acosh"
        One of ``"acosh"``, ``"shifted_log"``,
        ``"randomized_quantile_residuals"``, ``"pearson_residuals"``.
    **kwargs
        Passed on to the chosen transformation.

    Examples
    --------
    >>> vst = transform_gampoi(counts)
    >>> logged = transform_gampoi(counts, "shifted_log", pseudo_count=1)
    >>> rqr = transform_gampoi(counts, "randomized_quantile_residuals", random_state=0)
    """
    try:
        fn = TRANSFORMATIONS[transformation]
    except (KeyError, TypeError):
        raise ValueError(f"Unknown transformation: {transformation!r}. "
                         f"Available: {', '.join(TRANSFORMATIONS)}") from None
    return fn(data, **kwargs)
