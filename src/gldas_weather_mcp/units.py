"""Unit conversions applied to GLDAS NOAH variables before analysis.

Decoders hand over values exactly as received; every conversion to the units
the analysis works in happens through this registry, so the ASCII and binary
paths cannot drift apart.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional

SECONDS_PER_HOUR = 3600.0
KELVIN_OFFSET = 273.15


@dataclass(frozen=True)
class UnitConversion:
    native_units: str
    canonical_units: str
    convert: Callable[[float], float]
    description: str = ""


def _identity(value: float) -> float:
    return value


def _kelvin_to_celsius(value: float) -> float:
    return value - KELVIN_OFFSET


def _rate_to_mm_per_hour(value: float) -> float:
    # 1 kg m-2 of water is 1 mm
    return value * SECONDS_PER_HOUR


def _kg_per_kg_to_g_per_kg(value: float) -> float:
    return value * 1000.0


def _pa_to_hpa(value: float) -> float:
    return value / 100.0


GLDAS_CONVERSIONS: Dict[str, UnitConversion] = {
    "Tair_f_inst": UnitConversion("K", "C", _kelvin_to_celsius, "Near surface air temperature"),
    "AvgSurfT_inst": UnitConversion("K", "C", _kelvin_to_celsius, "Average surface skin temperature"),
    "Rainf_f_tavg": UnitConversion("kg m-2 s-1", "mm/hr", _rate_to_mm_per_hour, "Total precipitation rate"),
    "Rainf_tavg": UnitConversion("kg m-2 s-1", "mm/hr", _rate_to_mm_per_hour, "Rain precipitation rate"),
    "Snowf_tavg": UnitConversion("kg m-2 s-1", "mm/hr", _rate_to_mm_per_hour, "Snow precipitation rate"),
    "Evap_tavg": UnitConversion("kg m-2 s-1", "mm/hr", _rate_to_mm_per_hour, "Evapotranspiration"),
    "Qair_f_inst": UnitConversion("kg kg-1", "g/kg", _kg_per_kg_to_g_per_kg, "Specific humidity"),
    "Psurf_f_inst": UnitConversion("Pa", "hPa", _pa_to_hpa, "Surface pressure"),
    "Wind_f_inst": UnitConversion("m s-1", "m/s", _identity, "Wind speed"),
}


def convert(name: str, value: float) -> float:
    conversion = GLDAS_CONVERSIONS.get(name)
    if conversion is None:
        return value
    return conversion.convert(value)


def canonical_units(name: str, received: Optional[str] = None) -> str:
    """Units of a variable after conversion; unknown variables keep what they arrived with"""
    conversion = GLDAS_CONVERSIONS.get(name)
    if conversion is not None:
        return conversion.canonical_units
    return received or ""
