"""
Exception types raised by transformgampoi_py.

Each error also derives from the builtin exception a caller would expect
(``TypeError`` for the wrong kind of input, ``ValueError`` for bad values),
so ``except ValueError`` keeps working.
"""


class TransformGamPoiError(Exception):
    """Base class for all errors raised by this package."""


class InvalidInputKind(TransformGamPoiError, TypeError):
    """Input is not numeric, or is not a vector or a 2-D matrix."""


class DimensionMismatch(TransformGamPoiError, ValueError):
    """Size factors or overdispersion do not fit the shape of the data."""


class InvalidSizeFactor(TransformGamPoiError, ValueError):
    """Size factors are zero, negative or not finite."""


class InvalidOverdispersion(TransformGamPoiError, ValueError):
    """Overdispersion (or pseudo-count) is negative or not finite."""


class UnsupportedResidualKind(TransformGamPoiError, ValueError):
    """The requested residual type is not one of the supported kinds."""
