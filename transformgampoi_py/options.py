"""
Explicit variants for the size factor and overdispersion arguments.

The public functions accept the loose values users are used to (``True``,
``"global"``, a number, an array, a fitted model). They are converted once,
here, into one of three variants so the resolvers never have to inspect
types again:

- ``Auto``: estimate from the data
- ``Fixed(value)``: use the given value
- ``FromModel(model)``: take the value stored on a ``GamPoiFit``
"""

from dataclasses import dataclass
from typing import Any

import numpy as np
from scipy import sparse

from .errors import InvalidInputKind
from .fit import GamPoiFit

SIZE_FACTOR_METHODS = ("normed_sum", "ratio", "poscounts")


@dataclass(frozen=True)
class Auto:
    """Estimate the value from the data. ``method`` only matters for size factors."""

    method: str = "normed_sum"


@dataclass(frozen=True, eq=False)
class Fixed:
    """A value supplied by the caller (scalar, vector or matrix)."""

    value: Any


@dataclass(frozen=True, eq=False)
class FromModel:
    """Take the value from a previously fitted ``GamPoiFit``."""

    model: GamPoiFit


_VARIANTS = (Auto, Fixed, FromModel)


def _is_bool(value):
    return isinstance(value, (bool, np.bool_))


def _as_numeric(value, what):
    if sparse.issparse(value):
        return value
    try:
        arr = np.asarray(value)
    except (TypeError, ValueError) as err:
        raise InvalidInputKind(f"{what} must be numeric") from err
    if arr.dtype.kind not in "iuf":
        raise InvalidInputKind(f"{what} must be numeric, got dtype '{arr.dtype}'")
    return value


def size_factor_option(value):
    """
    Convert a ``size_factors`` argument into ``Auto``, ``Fixed`` or ``FromModel``.

    ``True`` (or a method name from ``SIZE_FACTOR_METHODS``) means estimate,
    ``False`` means all size factors are 1, numbers are fixed values and a
    ``GamPoiFit`` contributes its stored size factors.
    """
    if isinstance(value, _VARIANTS):
        return value
    if isinstance(value, GamPoiFit):
        return FromModel(value)
    if _is_bool(value):
        return Auto() if value else Fixed(1.0)
    if isinstance(value, str):
        if value not in SIZE_FACTOR_METHODS:
            raise ValueError(f"Unknown size factor method: '{value}'. "
                             f"Available: {', '.join(SIZE_FACTOR_METHODS)}")
        return Auto(method=value)
    return Fixed(_as_numeric(value, "size_factors"))


def overdispersion_option(value):
    """
    Convert an ``overdispersion`` argument into ``Auto``, ``Fixed`` or ``FromModel``.

    ``True`` and ``"global"`` mean estimate one value per gene, ``False``
    means no overdispersion (Poisson), numbers are fixed values and a
    ``GamPoiFit`` contributes its stored overdispersions.
    """
    if isinstance(value, _VARIANTS):
        return value
    if isinstance(value, GamPoiFit):
        return FromModel(value)
    if _is_bool(value):
        return Auto() if value else Fixed(0.0)
    if isinstance(value, str):
        if value != "global":
            raise ValueError(f"Unknown overdispersion option: '{value}'")
        return Auto()
    return Fixed(_as_numeric(value, "overdispersion"))
