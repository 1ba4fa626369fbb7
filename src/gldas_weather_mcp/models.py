import hashlib
import math
from datetime import date, datetime, timezone
from enum import Enum
from functools import cached_property
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def normalize_longitude(lon: float) -> float:
    """Map any longitude into (-180, 180]"""
    if -180.0 < lon <= 180.0:
        return float(lon)
    wrapped = math.fmod(lon + 180.0, 360.0)
    if wrapped <= 0:
        wrapped += 360.0
    return wrapped - 180.0


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lon: float

    @field_validator("lon")
    @classmethod
    def _normalize_lon(cls, value: float) -> float:
        return normalize_longitude(value)


class GridIndex(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat_index: int = Field(..., ge=0, le=599)
    lon_index: int = Field(..., ge=0, le=1439)


class GridWindow(BaseModel):
    """Inclusive index bounds of a grid subset"""

    model_config = ConfigDict(frozen=True)

    lat_start: int
    lat_end: int
    lon_start: int
    lon_end: int

    @property
    def lat_count(self) -> int:
        return self.lat_end - self.lat_start + 1

    @property
    def lon_count(self) -> int:
        return self.lon_end - self.lon_start + 1

    def contains(self, lat_index: int, lon_index: int) -> bool:
        return self.lat_start <= lat_index <= self.lat_end and self.lon_start <= lon_index <= self.lon_end


class RequestDescriptor(BaseModel):
    """One GLDAS timestep to fetch for a query point"""

    model_config = ConfigDict(frozen=True)

    point: GeoPoint
    grid_index: GridIndex
    window: GridWindow
    timestamp: datetime
    year: int
    day_of_year: int
    resource_id: str


class VariableSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    variable_name: str
    time_index: int
    lat_index: int
    lon_index: int
    raw_value: float
    timestamp: datetime


class DecodedPayload(BaseModel):
    """Samples extracted from one response, still in the units they were received in"""

    model_config = ConfigDict(frozen=True)

    samples: Tuple[VariableSample, ...] = ()
    units: Dict[str, str] = Field(default_factory=dict)
    skipped_variables: Dict[str, str] = Field(default_factory=dict)
    lats: Tuple[float, ...] = ()
    lons: Tuple[float, ...] = ()
    times: Tuple[datetime, ...] = ()

    @property
    def variable_names(self) -> List[str]:
        return sorted({s.variable_name for s in self.samples})


class TimeSeriesPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    value: float


class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    north: float
    south: float
    east: float
    west: float

    def union(self, other: "BoundingBox") -> "BoundingBox":
        return BoundingBox(
            north=max(self.north, other.north),
            south=min(self.south, other.south),
            east=max(self.east, other.east),
            west=min(self.west, other.west),
        )


class DatasetMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    bounding_box: Optional[BoundingBox] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    units: Dict[str, str] = Field(default_factory=dict)


class WeatherDataset(BaseModel):
    """Unit-normalised time series per variable for a single query point"""

    model_config = ConfigDict(frozen=True)

    metadata: DatasetMetadata
    series: Dict[str, Tuple[TimeSeriesPoint, ...]] = Field(default_factory=dict)

    @property
    def variables(self) -> List[str]:
        return sorted(self.series)

    @property
    def sources(self) -> List[str]:
        return [s.strip() for s in self.metadata.source.split(",") if s.strip()]

    def __len__(self) -> int:
        return sum(len(points) for points in self.series.values())

    @cached_property
    def version(self) -> str:
        """Content digest, stable for identical series"""
        digest = hashlib.sha1()
        for name in sorted(self.series):
            digest.update(name.encode("utf-8"))
            for point in self.series[name]:
                digest.update(f"{point.timestamp.isoformat()}={point.value!r};".encode("utf-8"))
        return digest.hexdigest()

    @staticmethod
    def cache_key(point: GeoPoint, start: date, end: date) -> Tuple[float, float, date, date]:
        return (round(point.lat, 4), round(point.lon, 4), start, end)

    def to_frame(self) -> pd.DataFrame:
        """One column per variable indexed by UTC timestamp; duplicate timestamps are averaged"""
        columns = {}
        for name, points in self.series.items():
            if not points:
                continue
            index = pd.DatetimeIndex([p.timestamp for p in points])
            if index.tz is None:
                index = index.tz_localize("UTC")
            s = pd.Series([p.value for p in points], index=index, dtype=float)
            columns[name] = s.groupby(level=0).mean()
        if not columns:
            return pd.DataFrame(index=pd.DatetimeIndex([], tz="UTC"))
        return pd.concat(columns, axis=1).sort_index()

    @classmethod
    def merge(cls, datasets: Iterable["WeatherDataset"]) -> "WeatherDataset":
        """Concatenate datasets and stable-sort each series by timestamp"""
        datasets = list(datasets)
        if not datasets:
            return cls(metadata=DatasetMetadata(source=""))

        merged: Dict[str, List[TimeSeriesPoint]] = {}
        sources: List[str] = []
        units: Dict[str, str] = {}
        box: Optional[BoundingBox] = None
        starts = []
        ends = []
        for ds in datasets:
            for name, points in ds.series.items():
                merged.setdefault(name, []).extend(points)
            for source in ds.sources:
                if source not in sources:
                    sources.append(source)
            units.update(ds.metadata.units)
            if ds.metadata.bounding_box is not None:
                box = ds.metadata.bounding_box if box is None else box.union(ds.metadata.bounding_box)
            if ds.metadata.start is not None:
                starts.append(ds.metadata.start)
            if ds.metadata.end is not None:
                ends.append(ds.metadata.end)

        return cls(
            metadata=DatasetMetadata(
                source=", ".join(sources),
                bounding_box=box,
                start=min(starts) if starts else None,
                end=max(ends) if ends else None,
                units=units,
            ),
            series={name: tuple(sorted(points, key=lambda p: p.timestamp)) for name, points in merged.items()},
        )


class ConditionType(str, Enum):
    VERY_HOT = "veryHot"
    VERY_COLD = "veryCold"
    VERY_WET = "veryWet"
    VERY_WINDY = "veryWindy"
    VERY_UNCOMFORTABLE = "veryUncomfortable"

    @property
    def label(self) -> str:
        return {
            "veryHot": "Very Hot",
            "veryCold": "Very Cold",
            "veryWet": "Very Wet",
            "veryWindy": "Very Windy",
            "veryUncomfortable": "Very Uncomfortable",
        }[self.value]


class ProbabilityThresholds(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    very_hot: Optional[float] = Field(None, alias="veryHot")
    very_cold: Optional[float] = Field(None, alias="veryCold")
    very_wet: Optional[float] = Field(None, alias="veryWet")
    very_windy: Optional[float] = Field(None, alias="veryWindy")
    very_uncomfortable: Optional[float] = Field(None, alias="veryUncomfortable")

    def for_condition(self, condition: ConditionType) -> Optional[float]:
        return {
            ConditionType.VERY_HOT: self.very_hot,
            ConditionType.VERY_COLD: self.very_cold,
            ConditionType.VERY_WET: self.very_wet,
            ConditionType.VERY_WINDY: self.very_windy,
            ConditionType.VERY_UNCOMFORTABLE: self.very_uncomfortable,
        }[condition]


class ConditionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition: ConditionType
    label: str
    probability: int = Field(..., ge=0, le=100)
    confidence: int = Field(..., ge=0, le=100)
    threshold: float
    occurrences: int = Field(..., ge=0)
    sample_size: int = Field(..., gt=0)


class ConfidenceInterval(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition: ConditionType
    lower: float = Field(..., ge=0, le=100)
    upper: float = Field(..., ge=0, le=100)


class YearlyIndex(BaseModel):
    model_config = ConfigDict(frozen=True)

    year: int
    index: float
    mean_temperature: float
    mean_precipitation: float
    sample_size: int


class ExtremeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    variable: str
    value: float
    timestamp: datetime


class HistoricalContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    years: Tuple[YearlyIndex, ...] = ()
    extremes: Tuple[ExtremeRecord, ...] = ()


class DataQuality(BaseModel):
    model_config = ConfigDict(frozen=True)

    completeness: float = Field(..., ge=0, le=100)
    reliability: float = Field(..., ge=0, le=100)
    sources: Tuple[str, ...] = ()


class ProbabilityResults(BaseModel):
    model_config = ConfigDict(frozen=True)

    location: Optional[GeoPoint] = None
    target_date: date
    conditions: Tuple[ConditionResult, ...]
    confidence_intervals: Tuple[ConfidenceInterval, ...]
    thresholds: ProbabilityThresholds
    historical_context: HistoricalContext
    data_quality: DataQuality
    insufficient: Tuple[ConditionType, ...] = ()
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def condition(self, condition: ConditionType) -> Optional[ConditionResult]:
        for result in self.conditions:
            if result.condition == condition:
                return result
        return None


class CollectionReport(BaseModel):
    """Outcome of fetching every timestep of a range"""

    model_config = ConfigDict(frozen=True)

    requested: int
    succeeded: int
    missing: Tuple[str, ...] = ()
    skipped_variables: Dict[str, int] = Field(default_factory=dict)

    @property
    def missing_fraction(self) -> float:
        if self.requested == 0:
            return 1.0
        return len(self.missing) / self.requested

    @property
    def completeness(self) -> float:
        return round(100.0 * (1.0 - self.missing_fraction), 1)


class AnalysisQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lon: float
    start_date: date
    end_date: date
    target_date: date

    @model_validator(mode="after")
    def _check_range(self) -> "AnalysisQuery":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lon=self.lon)
