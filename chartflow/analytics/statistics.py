"""
Statistical calculations for chart data analysis.

All functions read one numeric field from a collection of records, ignore
nulls and non-numeric values, and return None (or an empty result) instead
of raising when there is not enough data.

Percentiles use linear interpolation between closest ranks:
``rank = p / 100 * (n - 1)``.
"""
from __future__ import annotations

import math
from typing import Any, Iterable

from chartflow.analytics.fields import numeric_values


def _percentile_of_sorted(values: list[float], p: float) -> float:
    rank = p / 100.0 * (len(values) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(values[lower])
    fraction = rank - lower
    return values[lower] + (values[upper] - values[lower]) * fraction


def percentile(data: Iterable[Any], field: Any, p: float) -> float | None:
    """Return the *p*-th percentile (0-100) of *field*, or None with no values."""
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be within [0, 100], got {p}")
    values = sorted(numeric_values(data, field))
    if not values:
        return None
    return _percentile_of_sorted(values, p)


def median(data: Iterable[Any], field: Any) -> float | None:
    return percentile(data, field, 50)


def mean(data: Iterable[Any], field: Any) -> float | None:
    values = numeric_values(data, field)
    if not values:
        return None
    return math.fsum(values) / len(values)


def quartiles(data: Iterable[Any], field: Any) -> dict[str, float] | None:
    """Return ``{"q1", "q2", "q3"}`` or None when there are no values."""
    values = sorted(numeric_values(data, field))
    if not values:
        return None
    return {
        "q1": _percentile_of_sorted(values, 25),
        "q2": _percentile_of_sorted(values, 50),
        "q3": _percentile_of_sorted(values, 75),
    }


def _variance(values: list[float], population: bool) -> float:
    avg = math.fsum(values) / len(values)
    divisor = len(values) if population else len(values) - 1
    return math.fsum((x - avg) ** 2 for x in values) / divisor


def variance(data: Iterable[Any], field: Any, population: bool = False) -> float | None:
    """Sample variance by default; population variance when *population*.

    Requires at least two values.
    """
    values = numeric_values(data, field)
    if len(values) < 2:
        return None
    return _variance(values, population)


def std_dev(data: Iterable[Any], field: Any, population: bool = False) -> float | None:
    var = variance(data, field, population=population)
    return math.sqrt(var) if var is not None else None


def outliers(data: Iterable[Any], field: Any, multiplier: float = 1.5) -> list[float]:
    """Values strictly outside ``[q1 - m*IQR, q3 + m*IQR]``, in input order."""
    rows = list(data)
    q = quartiles(rows, field)
    if q is None:
        return []
    iqr = q["q3"] - q["q1"]
    lower = q["q1"] - multiplier * iqr
    upper = q["q3"] + multiplier * iqr
    return [v for v in numeric_values(rows, field) if v < lower or v > upper]


def summary(data: Iterable[Any], field: Any) -> dict[str, Any]:
    """Distribution summary suitable for box-plot charts.

    Keys: count, min, max, mean, median, q1, q3, std_dev.  For an empty
    dataset every key except ``count`` is None.
    """
    values = numeric_values(data, field)
    if not values:
        return {
            "count": 0,
            "min": None,
            "max": None,
            "mean": None,
            "median": None,
            "q1": None,
            "q3": None,
            "std_dev": None,
        }
    ordered = sorted(values)
    return {
        "count": len(values),
        "min": ordered[0],
        "max": ordered[-1],
        "mean": math.fsum(values) / len(values),
        "median": _percentile_of_sorted(ordered, 50),
        "q1": _percentile_of_sorted(ordered, 25),
        "q3": _percentile_of_sorted(ordered, 75),
        "std_dev": math.sqrt(_variance(values, False)) if len(values) >= 2 else None,
    }
