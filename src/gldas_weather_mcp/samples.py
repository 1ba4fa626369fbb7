"""
Helpers shared by the ASCII and binary decoders.

Both wire formats end up here: coordinate axes are turned into absolute GLDAS
grid indices, fill values are dropped, and each data variable is expanded into
``VariableSample`` records according to its dimensionality.
"""

import logging
import re
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from gldas_weather_mcp.errors import PartialVariableFailure
from gldas_weather_mcp.grid import GridLocator
from gldas_weather_mcp.models import RequestDescriptor, VariableSample

logger = logging.getLogger("gldas_weather.decoder")

# Sentinels used by GLDAS and the netCDF default float fill
FILL_VALUES = (-9999.0, -999.0, 9.96921e36)

GLDAS_TIME_UNITS = "minutes since 2000-01-01 00:00:00"

COORDINATE_NAMES = ("lat", "lon", "time")

_DIM_ALIASES = {"latitude": "lat", "longitude": "lon", "y": "lat", "x": "lon", "t": "time"}

_TIME_UNITS = {
    "second": "s",
    "seconds": "s",
    "minute": "min",
    "minutes": "min",
    "hour": "h",
    "hours": "h",
    "day": "D",
    "days": "D",
}

_TIME_UNITS_RE = re.compile(r"^\s*(\w+)\s+since\s+(.+?)\s*$")


def fill_mask(values) -> np.ndarray:
    """True where a value is NaN, infinite or one of the fill sentinels"""
    arr = np.asarray(values, dtype=float)
    mask = ~np.isfinite(arr)
    for sentinel in FILL_VALUES:
        mask |= np.isclose(arr, sentinel, rtol=1e-6, atol=0.0)
    return mask


def is_fill(value: float) -> bool:
    return bool(fill_mask([value])[0])


def decode_time_axis(values, units: Optional[str] = None) -> List[datetime]:
    """Convert a CF style numeric time axis into UTC datetimes"""
    units = units or GLDAS_TIME_UNITS
    match = _TIME_UNITS_RE.match(units)
    if not match or match.group(1).lower() not in _TIME_UNITS:
        raise ValueError(f"Unsupported time units: {units}")

    epoch = pd.Timestamp(match.group(2).replace("UTC", "").replace("Z", "").strip())
    if epoch.tzinfo is None:
        epoch = epoch.tz_localize("UTC")
    offsets = pd.to_timedelta(np.asarray(values, dtype=float), unit=_TIME_UNITS[match.group(1).lower()])
    return [(epoch + offset).to_pydatetime() for offset in offsets]


def normalize_dims(dims: Sequence[Optional[str]]) -> Tuple[str, ...]:
    """Canonical dimension names; unnamed dimensions are inferred from rank"""
    if any(d is None for d in dims):
        by_rank = {0: (), 1: ("time",), 2: ("lat", "lon"), 3: ("time", "lat", "lon")}
        return by_rank.get(len(dims), tuple(f"dim_{i}" for i in range(len(dims))))
    return tuple(_DIM_ALIASES.get(d.lower(), d.lower()) for d in dims)


class Axes:
    """Coordinate axes of one payload mapped onto absolute grid indices"""

    def __init__(
        self,
        lats: Sequence[float],
        lons: Sequence[float],
        times: Sequence[datetime],
        locator: GridLocator,
        descriptor: Optional[RequestDescriptor] = None,
    ):
        self.lats = [float(v) for v in lats]
        self.lons = [float(v) for v in lons]
        self.times = list(times)
        if not self.times and descriptor is not None:
            self.times = [descriptor.timestamp]
        self.descriptor = descriptor
        self.lat_indices = [locator.lat_index_of(v) for v in self.lats]
        self.lon_indices = [locator.lon_index_of(v) for v in self.lons]

    @property
    def is_empty(self) -> bool:
        return not self.lats or not self.lons or not self.times

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (len(self.times), len(self.lat_indices), len(self.lon_indices))

    def lat_index(self, local: int) -> Optional[int]:
        if local < len(self.lat_indices):
            return self.lat_indices[local]
        if self.descriptor is not None:
            absolute = self.descriptor.window.lat_start + local
            if absolute <= self.descriptor.window.lat_end:
                return absolute
        return None

    def lon_index(self, local: int) -> Optional[int]:
        if local < len(self.lon_indices):
            return self.lon_indices[local]
        if self.descriptor is not None:
            absolute = self.descriptor.window.lon_start + local
            if absolute <= self.descriptor.window.lon_end:
                return absolute
        return None

    def timestamp(self, local: int) -> Optional[datetime]:
        if local < len(self.times):
            return self.times[local]
        return None


def make_sample(name: str, axes: Axes, t: int, i: int, j: int, value: float) -> Optional[VariableSample]:
    """Sample for local indices (t, i, j), or None when the indices fall outside the axes"""
    timestamp = axes.timestamp(t)
    lat_index = axes.lat_index(i)
    lon_index = axes.lon_index(j)
    if timestamp is None or lat_index is None or lon_index is None:
        return None
    return VariableSample(
        variable_name=name,
        time_index=t,
        lat_index=lat_index,
        lon_index=lon_index,
        raw_value=float(value),
        timestamp=timestamp,
    )


def emit_variable(name: str, values, dims: Sequence[Optional[str]], axes: Axes) -> List[VariableSample]:
    """
    Expand one decoded variable into samples.

    Three layouts are understood: a full [time, lat, lon] cube, a [lat, lon]
    field that applies to every timestep, and a scalar or [time] series that
    applies to every grid cell. Anything else raises PartialVariableFailure.
    """
    arr = np.asarray(values, dtype=float)
    dims = normalize_dims(dims)
    n_time, n_lat, n_lon = axes.shape
    samples: List[VariableSample] = []

    if dims == ("time", "lat", "lon"):
        flat = arr.reshape(-1)
        if flat.size != n_time * n_lat * n_lon:
            raise PartialVariableFailure(name, f"shape {arr.shape} does not match axes {axes.shape}")
        valid = ~fill_mask(flat)
        for position in np.flatnonzero(valid):
            t, rest = divmod(int(position), n_lat * n_lon)
            i, j = divmod(rest, n_lon)
            sample = make_sample(name, axes, t, i, j, flat[position])
            if sample is not None:
                samples.append(sample)

    elif dims == ("lat", "lon"):
        if arr.shape != (n_lat, n_lon):
            raise PartialVariableFailure(name, f"shape {arr.shape} does not match lat/lon axes")
        valid = ~fill_mask(arr)
        for t in range(n_time):
            for i, j in zip(*np.nonzero(valid)):
                sample = make_sample(name, axes, t, int(i), int(j), arr[i, j])
                if sample is not None:
                    samples.append(sample)

    elif dims in ((), ("time",)):
        series = arr.reshape(-1)
        if series.size == 0:
            raise PartialVariableFailure(name, "no values")
        if dims == ("time",) and series.size != n_time:
            raise PartialVariableFailure(name, f"time series of length {series.size} for {n_time} timesteps")
        for t in range(n_time):
            value = series[0] if dims == () else series[t]
            if is_fill(value):
                continue
            for i in range(n_lat):
                for j in range(n_lon):
                    sample = make_sample(name, axes, t, i, j, value)
                    if sample is not None:
                        samples.append(sample)

    else:
        raise PartialVariableFailure(name, f"unsupported dimensions {dims}")

    logger.debug(f"Variable {name} {dims}: {len(samples)} samples")
    return samples
