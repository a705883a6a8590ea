"""Closed-form normal distribution helpers used for service-level maths.

The error function uses the Numerical Recipes ``erfc`` fit (fractional error
below 1.2e-7) and the inverse CDF uses Acklam's three-region rational
approximation (relative error around 1.15e-9).  Both are deterministic and
free of third-party dependencies so results match across platforms.
"""

from __future__ import annotations

import math

_SQRT2 = math.sqrt(2.0)

# Central region coefficients
_A = (
    -3.969683028665376e1,
    2.209460984245205e2,
    -2.759285104469687e2,
    1.38357751867269e2,
    -3.066479806614716e1,
    2.506628277459239,
)
_B = (
    -5.447609879822406e1,
    1.615858368580409e2,
    -1.556989798598866e2,
    6.680131188771972e1,
    -1.328068155288572e1,
)
# Tail coefficients
_C = (
    -7.784894002430293e-3,
    -3.223964580411365e-1,
    -2.400758277161838,
    -2.549732539343734,
    4.374664141464968,
    2.938163982698783,
)
_D = (
    7.784695709041462e-3,
    3.224671290700398e-1,
    2.445134137142996,
    3.754408661907416,
)

P_LOW = 0.02425
P_HIGH = 1.0 - P_LOW

MIN_PROBABILITY = 1e-4
MAX_PROBABILITY = 0.9999


def erf(x: float) -> float:
    """Return the Gauss error function of ``x``."""

    sign = -1.0 if x < 0 else 1.0
    z = abs(x)
    t = 1.0 / (1.0 + 0.5 * z)
    tau = t * math.exp(
        -z * z
        - 1.26551223
        + t
        * (
            1.00002368
            + t
            * (
                0.37409196
                + t
                * (
                    0.09678418
                    + t
                    * (
                        -0.18628806
                        + t
                        * (
                            0.27886807
                            + t
                            * (
                                -1.13520398
                                + t * (1.48851587 + t * (-0.82215223 + t * 0.17087277))
                            )
                        )
                    )
                )
            )
        )
    )
    return sign * (1.0 - tau)


def standard_normal_cdf(x: float) -> float:
    """Return ``P(Z <= x)`` for a standard normal ``Z``."""

    return 0.5 * (1.0 + erf(x / _SQRT2))


def _tail(q: float) -> float:
    c, d = _C, _D
    numerator = ((((c[0] * q + c[1]) * q + c[2]) * q + c[3]) * q + c[4]) * q + c[5]
    denominator = (((d[0] * q + d[1]) * q + d[2]) * q + d[3]) * q + 1.0
    return numerator / denominator


def inverse_standard_normal_cdf(p: float) -> float:
    """Return the quantile ``z`` such that ``standard_normal_cdf(z) == p``.

    ``p <= 0`` maps to ``-inf`` and ``p >= 1`` to ``+inf``.  NaN propagates.
    """

    if math.isnan(p):
        return math.nan
    if p <= 0:
        return -math.inf
    if p >= 1:
        return math.inf

    if p < P_LOW:
        return _tail(math.sqrt(-2.0 * math.log(p)))

    if p <= P_HIGH:
        a, b = _A, _B
        q = p - 0.5
        r = q * q
        numerator = (((((a[0] * r + a[1]) * r + a[2]) * r + a[3]) * r + a[4]) * r + a[5]) * q
        denominator = ((((b[0] * r + b[1]) * r + b[2]) * r + b[3]) * r + b[4]) * r + 1.0
        return numerator / denominator

    return -_tail(math.sqrt(-2.0 * math.log(1.0 - p)))


def service_level_percentage_to_z(percent: float) -> float:
    """Convert a service level such as ``95`` (percent) to its z-score.

    The probability is clamped into ``[1e-4, 0.9999]`` so extreme inputs map
    to finite quantiles.  Non-finite input returns NaN.
    """

    try:
        value = float(percent)
    except (TypeError, ValueError):
        return math.nan
    if not math.isfinite(value):
        return math.nan
    probability = min(max(value / 100.0, MIN_PROBABILITY), MAX_PROBABILITY)
    return inverse_standard_normal_cdf(probability)


def z_to_service_level_percentage(z: float) -> float:
    """Convert a z-score back to a service level percentage (0 when non-finite)."""

    try:
        value = float(z)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return standard_normal_cdf(value) * 100.0
