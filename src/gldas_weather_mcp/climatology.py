"""
Climatological building blocks: seasonal windows, percentiles, heat index,
confidence and historical aggregation. Everything here is a pure function of
its inputs.
"""

import calendar
import math
from datetime import date
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd

from gldas_weather_mcp.errors import InsufficientData

SEASONAL_WINDOW_DAYS = 7

# Rothfusz regression is only valid from 80F upwards
HEAT_INDEX_CUTOFF_C = 26.7

STANDARD_PRESSURE_HPA = 1013.25

Z_95 = 1.96

# (minimum sample count, stated confidence), checked from the top
CONFIDENCE_STEPS = ((1000, 95), (200, 85), (50, 75), (20, 60), (1, 40))

# composite = (T / 50 + P / 20) * 50
COMPOSITE_TEMPERATURE_WEIGHT = 1.0
COMPOSITE_PRECIPITATION_WEIGHT = 2.5


def _anniversary(year: int, target: date) -> date:
    if target.month == 2 and target.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return date(year, target.month, target.day)


def calendar_distance(day: date, target: date) -> int:
    """Days between day and the nearest anniversary of target, across year boundaries"""
    return min(abs((day - _anniversary(day.year + k, target)).days) for k in (-1, 0, 1))


def seasonal_mask(index: pd.DatetimeIndex, target: date, window: int = SEASONAL_WINDOW_DAYS) -> np.ndarray:
    """True for timestamps whose calendar day lies within +/- window days of target in any year"""
    days = pd.DatetimeIndex(index).normalize()
    inside = {d: calendar_distance(d.date(), target) <= window for d in days.unique()}
    return np.array([inside[d] for d in days], dtype=bool)


def percentile(values, p: float) -> float:
    """Linear-interpolated percentile: index p/100 * (n - 1) between the bracketing order statistics"""
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be within [0, 100], got {p}")
    arr = np.asarray(values, dtype=float)
    arr = arr[~np.isnan(arr)]
    if arr.size == 0:
        raise InsufficientData(message="Cannot compute a percentile of an empty sample")
    return float(np.percentile(arr, p, method="linear"))


def heat_index(temp_c: Union[float, np.ndarray], rh_percent: Union[float, np.ndarray]):
    """
    Heat index in Celsius from air temperature (C) and relative humidity (%).

    Uses the Rothfusz regression in Fahrenheit. Below 26.7C the air temperature
    is returned unchanged.
    """
    t = np.asarray(temp_c, dtype=float)
    rh = np.asarray(rh_percent, dtype=float)
    temp_f = t * 9.0 / 5.0 + 32.0

    hi_f = (
        -42.379
        + 2.04901523 * temp_f
        + 10.14333127 * rh
        - 0.22475541 * temp_f * rh
        - 6.83783e-3 * temp_f**2
        - 5.481717e-2 * rh**2
        + 1.22874e-3 * temp_f**2 * rh
        + 8.5282e-4 * temp_f * rh**2
        - 1.99e-6 * temp_f**2 * rh**2
    )
    hi_c = (hi_f - 32.0) * 5.0 / 9.0
    result = np.where(t < HEAT_INDEX_CUTOFF_C, t, hi_c)
    if result.ndim == 0:
        return float(result)
    return result


def relative_humidity(
    temp_c: Union[float, np.ndarray],
    specific_humidity_gkg: Union[float, np.ndarray],
    pressure_hpa: Optional[Union[float, np.ndarray]] = None,
):
    """Relative humidity (%) from specific humidity (g/kg) using Bolton's saturation vapour pressure"""
    t = np.asarray(temp_c, dtype=float)
    q = np.asarray(specific_humidity_gkg, dtype=float) / 1000.0
    p = STANDARD_PRESSURE_HPA if pressure_hpa is None else np.asarray(pressure_hpa, dtype=float)
    p = np.where(np.isnan(p), STANDARD_PRESSURE_HPA, p)

    vapour_pressure = q * p / (0.622 + 0.378 * q)
    saturation = 6.112 * np.exp(17.67 * t / (t + 243.5))
    result = np.clip(100.0 * vapour_pressure / saturation, 0.0, 100.0)
    if result.ndim == 0:
        return float(result)
    return result


def confidence_for(sample_size: int) -> int:
    """Stated confidence (%) for a seasonal sample size; non-decreasing in sample size"""
    for minimum, confidence in CONFIDENCE_STEPS:
        if sample_size >= minimum:
            return confidence
    return 0


def binomial_interval(occurrences: int, sample_size: int, z: float = Z_95) -> Tuple[float, float]:
    """Normal-approximation interval of an occurrence rate, in percent"""
    if sample_size <= 0:
        raise InsufficientData(message="Cannot compute an interval without samples")
    p = occurrences / sample_size
    margin = z * math.sqrt(p * (1 - p) / sample_size)
    lower = max(0.0, (p - margin) * 100.0)
    upper = min(100.0, (p + margin) * 100.0)
    return round(lower, 1), round(upper, 1)


def composite_index(mean_temperature: float, mean_precipitation: float) -> float:
    return round(
        COMPOSITE_TEMPERATURE_WEIGHT * mean_temperature + COMPOSITE_PRECIPITATION_WEIGHT * mean_precipitation, 2
    )
