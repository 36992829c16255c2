"""
Percentile intervals from bootstrap or posterior draws.

Quantiles use linear interpolation between order statistics
(``numpy.quantile(..., method="linear")``, Hyndman & Fan type 7, the default
of R's ``quantile``), so results are reproducible across implementations.
"""

from __future__ import annotations

from typing import Any, Hashable, Mapping, Sequence

import numpy as np

from conjoint.errors import ConfigurationError, InsufficientDrawsError
from conjoint.models import Estimand, EstimandKind

QUANTILE_METHOD = "linear"


def _check_alpha(alpha: float) -> None:
    if not 0.0 < alpha < 1.0:
        raise ConfigurationError(f"alpha must lie in (0, 1), got {alpha}")


def percentile_interval(draws: Sequence[float], alpha: float = 0.05) -> tuple[float, float, float]:
    """
    Reduce *draws* to ``(mean, lower, upper)``.

    ``lower`` and ``upper`` are the ``alpha/2`` and ``1 - alpha/2`` quantiles.
    NaN draws are dropped first; at least two valid draws must remain.
    """
    _check_alpha(alpha)
    arr = np.asarray(draws, dtype=float)
    arr = arr[~np.isnan(arr)]
    if arr.size < 2:
        raise InsufficientDrawsError(
            f"Need at least 2 valid draws for a percentile interval, got {arr.size}"
        )
    lower, upper = np.quantile(arr, [alpha / 2, 1 - alpha / 2], method=QUANTILE_METHOD)
    return float(np.mean(arr)), float(lower), float(upper)


def summarize(
    draws: Sequence[float],
    alpha: float = 0.05,
    *,
    kind: EstimandKind,
    **fields: Any,
) -> Estimand:
    """
    Build an ``Estimand`` from draws.

    A single draw (a plain point fit) yields a point estimate without an
    interval; two or more yield a percentile interval.
    """
    arr = np.asarray(draws, dtype=float)
    valid = arr[~np.isnan(arr)]
    if valid.size == 1:
        return Estimand(kind=kind, estimate=float(valid[0]), n_draws=1, **fields)
    try:
        point, lower, upper = percentile_interval(arr, alpha)
    except InsufficientDrawsError as exc:
        where = ", ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
        raise InsufficientDrawsError(f"{exc} ({kind.value}: {where})") from None
    return Estimand(
        kind=kind,
        estimate=point,
        lower=lower,
        upper=upper,
        conf_level=1.0 - alpha,
        n_draws=int(valid.size),
        **fields,
    )


def collect_columns(mappings: Sequence[Mapping[Hashable, float]]) -> dict[Hashable, list[float]]:
    """Turn per-draw ``{key: value}`` mappings into ``{key: [values...]}``."""
    columns: dict[Hashable, list[float]] = {}
    for m in mappings:
        for key, value in m.items():
            columns.setdefault(key, []).append(value)
    return columns
