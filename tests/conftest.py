from datetime import datetime, timezone
from typing import Iterable, Tuple

import pytest

from gldas_weather_mcp.grid import GridLocator
from gldas_weather_mcp.models import DatasetMetadata, GeoPoint, TimeSeriesPoint, WeatherDataset

# Boulder, CO: nearest cell is lat index 400 (40.125), lon index 299 (-105.125)
BOULDER = GeoPoint(lat=40.1, lon=-105.1)
WINDOW_LATS = (39.875, 40.125, 40.375)
WINDOW_LONS = (-105.375, -105.125, -104.875)


def make_dataset(series: dict, source: str = "test") -> WeatherDataset:
    """Dataset from {variable: [(datetime, value), ...]} with values already in analysis units"""
    return WeatherDataset(
        metadata=DatasetMetadata(source=source),
        series={
            name: tuple(TimeSeriesPoint(timestamp=ts, value=value) for ts, value in sorted(points))
            for name, points in series.items()
        },
    )


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def ascii_body(descriptor, values: Iterable[Tuple[str, float]]) -> str:
    """OPeNDAP ASCII response for a 3x3 window, one constant value per variable, no time axis"""
    window = descriptor.window
    locator = GridLocator()
    lats = [locator.lat_origin + i * locator.resolution for i in range(window.lat_start, window.lat_end + 1)]
    lons = [locator.lon_origin + j * locator.resolution for j in range(window.lon_start, window.lon_end + 1)]
    lines = [f"Dataset: GLDAS_NOAH025_3H.{descriptor.resource_id}.021.nc4"]
    for name, value in values:
        lines.append("---------------------------------------------")
        for i in range(len(lats)):
            lines.append(f"{name}[0][{i}], " + ", ".join(str(value) for _ in lons))
    lines.append("lat, " + ", ".join(str(v) for v in lats))
    lines.append("lon, " + ", ".join(str(v) for v in lons))
    return "\n".join(lines) + "\n"


@pytest.fixture
def locator():
    return GridLocator()
