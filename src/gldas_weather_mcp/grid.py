import calendar
import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import List

from gldas_weather_mcp.errors import OutOfCoverage
from gldas_weather_mcp.models import GeoPoint, GridIndex, GridWindow, RequestDescriptor

logger = logging.getLogger("gldas_weather.grid")

# GLDAS NOAH 0.25 degree global grid
LAT_ORIGIN = -59.875
LON_ORIGIN = -179.875
RESOLUTION = 0.25
LAT_COUNT = 600
LON_COUNT = 1440
MIN_LAT = -60.0
MAX_LAT = 90.0

# 3-hourly product, 8 timesteps per day
DIURNAL_HOURS = (0, 3, 6, 9, 12, 15, 18, 21)


def day_of_year(day: date) -> int:
    return day.timetuple().tm_yday


def resource_id(timestamp: datetime) -> str:
    """Encoded timestep as it appears in GLDAS file names, e.g. A20200101.0300"""
    return f"A{timestamp:%Y%m%d}.{timestamp:%H%M}"


class GridLocator:
    """Maps geographic points onto the fixed GLDAS grid and plans per-timestep requests"""

    def __init__(
        self,
        lat_origin: float = LAT_ORIGIN,
        lon_origin: float = LON_ORIGIN,
        resolution: float = RESOLUTION,
        lat_count: int = LAT_COUNT,
        lon_count: int = LON_COUNT,
    ):
        self.lat_origin = lat_origin
        self.lon_origin = lon_origin
        self.resolution = resolution
        self.lat_count = lat_count
        self.lon_count = lon_count

    def _nearest(self, value: float, origin: float, count: int) -> int:
        # half-up rounding keeps cell boundaries deterministic
        index = math.floor((value - origin) / self.resolution + 0.5)
        return max(0, min(count - 1, index))

    def lat_index_of(self, lat: float) -> int:
        return self._nearest(lat, self.lat_origin, self.lat_count)

    def lon_index_of(self, lon: float) -> int:
        return self._nearest(lon, self.lon_origin, self.lon_count)

    def locate(self, point: GeoPoint) -> GridIndex:
        """Nearest grid cell for a point, without interpolation"""
        if not (MIN_LAT <= point.lat <= MAX_LAT):
            logger.error(f"Point ({point.lat}, {point.lon}) is outside grid coverage")
            raise OutOfCoverage(point.lat, point.lon)
        return GridIndex(lat_index=self.lat_index_of(point.lat), lon_index=self.lon_index_of(point.lon))

    def cell_center(self, index: GridIndex) -> GeoPoint:
        return GeoPoint(
            lat=self.lat_origin + index.lat_index * self.resolution,
            lon=self.lon_origin + index.lon_index * self.resolution,
        )

    def window(self, index: GridIndex, radius: int = 1) -> GridWindow:
        """Square neighbourhood around a cell, clamped to the grid (no wraparound at the dateline)"""
        return GridWindow(
            lat_start=max(0, index.lat_index - radius),
            lat_end=min(self.lat_count - 1, index.lat_index + radius),
            lon_start=max(0, index.lon_index - radius),
            lon_end=min(self.lon_count - 1, index.lon_index + radius),
        )

    def plan(self, point: GeoPoint, start: date, end: date) -> List[RequestDescriptor]:
        """
        Enumerate one request per day and 3-hourly timestep between start and end (inclusive)

        Args:
            point: Query location
            start: First calendar day
            end: Last calendar day
        """
        index = self.locate(point)
        window = self.window(index)
        descriptors = []
        day = start
        while day <= end:
            for hour in DIURNAL_HOURS:
                timestamp = datetime.combine(day, time(hour=hour), tzinfo=timezone.utc)
                descriptors.append(
                    RequestDescriptor(
                        point=point,
                        grid_index=index,
                        window=window,
                        timestamp=timestamp,
                        year=day.year,
                        day_of_year=day_of_year(day),
                        resource_id=resource_id(timestamp),
                    )
                )
            day += timedelta(days=1)

        logger.debug(
            f"Planned {len(descriptors)} requests for ({point.lat}, {point.lon}) "
            f"lat[{window.lat_start}:{window.lat_end}] lon[{window.lon_start}:{window.lon_end}]"
        )
        return descriptors

    def plan_seasonal(
        self, point: GeoPoint, target: date, start_year: int, end_year: int, window_days: int = 7
    ) -> List[RequestDescriptor]:
        """Requests covering +/- window_days around the anniversary of target in each year"""
        if end_year < start_year:
            raise ValueError("end_year must not be before start_year")
        seen = set()
        descriptors = []
        for year in range(start_year, end_year + 1):
            if target.month == 2 and target.day == 29 and not calendar.isleap(year):
                day = date(year, 2, 28)
            else:
                day = target.replace(year=year)
            for descriptor in self.plan(point, day - timedelta(days=window_days), day + timedelta(days=window_days)):
                if descriptor.resource_id not in seen:
                    seen.add(descriptor.resource_id)
                    descriptors.append(descriptor)
        return descriptors
