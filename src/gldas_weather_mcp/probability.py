import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from gldas_weather_mcp.climatology import (
    binomial_interval,
    composite_index,
    confidence_for,
    heat_index,
    percentile,
    relative_humidity,
    seasonal_mask,
)
from gldas_weather_mcp.errors import InsufficientData
from gldas_weather_mcp.models import (
    CollectionReport,
    ConditionResult,
    ConditionType,
    ConfidenceInterval,
    DataQuality,
    ExtremeRecord,
    GeoPoint,
    HistoricalContext,
    ProbabilityResults,
    ProbabilityThresholds,
    WeatherDataset,
    YearlyIndex,
)

logger = logging.getLogger("gldas_weather.probability")

# Seasonal frame column -> dataset variables that can supply it, in order of preference
DEFAULT_VARIABLE_MAP: Dict[str, Tuple[str, ...]] = {
    "temperature": ("Tair_f_inst",),
    "precipitation": ("Rainf_f_tavg", "Rainf_tavg"),
    "wind_speed": ("Wind_f_inst",),
    "specific_humidity": ("Qair_f_inst",),
    "pressure": ("Psurf_f_inst",),
}

FRAME_COLUMNS = (
    "temperature",
    "precipitation",
    "wind_speed",
    "specific_humidity",
    "pressure",
    "relative_humidity",
    "heat_index",
)


@dataclass(frozen=True)
class ConditionSpec:
    condition: ConditionType
    column: str
    percentile: float
    at_or_below: bool = False


CONDITION_SPECS: Tuple[ConditionSpec, ...] = (
    ConditionSpec(ConditionType.VERY_HOT, "temperature", 95),
    ConditionSpec(ConditionType.VERY_COLD, "temperature", 5, at_or_below=True),
    ConditionSpec(ConditionType.VERY_WET, "precipitation", 90),
    ConditionSpec(ConditionType.VERY_WINDY, "wind_speed", 85),
    ConditionSpec(ConditionType.VERY_UNCOMFORTABLE, "heat_index", 90),
)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ProbabilityEngine:
    """Turns a location's multi-year time series into exceedance probabilities for a calendar date"""

    def __init__(
        self,
        variable_map: Optional[Dict[str, Sequence[str]]] = None,
        specs: Sequence[ConditionSpec] = CONDITION_SPECS,
        cache_size: int = 128,
    ):
        self.variable_map = dict(DEFAULT_VARIABLE_MAP)
        if variable_map:
            self.variable_map.update({k: tuple(v) for k, v in variable_map.items()})
        self.specs = tuple(specs)
        self.cache_size = cache_size
        self._cache: "OrderedDict[tuple, ProbabilityResults]" = OrderedDict()

    def _column(self, frame: pd.DataFrame, column: str) -> pd.Series:
        for variable in self.variable_map.get(column, ()):
            if variable in frame.columns:
                return frame[variable].astype(float)
        return pd.Series(np.nan, index=frame.index, dtype=float)

    def seasonal_frame(self, dataset: WeatherDataset, target_date: date) -> pd.DataFrame:
        """Samples within the seasonal window of target_date, one row per timestamp"""
        raw = dataset.to_frame()
        frame = pd.DataFrame(index=raw.index)
        for column in ("temperature", "precipitation", "wind_speed", "specific_humidity", "pressure"):
            frame[column] = self._column(raw, column)

        if frame.empty:
            frame["relative_humidity"] = pd.Series(dtype=float)
            frame["heat_index"] = pd.Series(dtype=float)
            return frame

        rh = relative_humidity(
            frame["temperature"].to_numpy(), frame["specific_humidity"].to_numpy(), frame["pressure"].to_numpy()
        )
        frame["relative_humidity"] = rh
        both = frame["temperature"].notna() & frame["relative_humidity"].notna()
        hi = heat_index(frame["temperature"].to_numpy(), frame["relative_humidity"].to_numpy())
        frame["heat_index"] = np.where(both.to_numpy(), hi, np.nan)

        mask = seasonal_mask(frame.index, target_date)
        seasonal = frame[mask]
        logger.debug(f"Seasonal window around {target_date:%m-%d} kept {len(seasonal)} of {len(frame)} timestamps")
        return seasonal

    def thresholds(self, frame: pd.DataFrame) -> ProbabilityThresholds:
        values = {}
        for spec in self.specs:
            column = frame[spec.column].dropna() if spec.column in frame else pd.Series(dtype=float)
            values[spec.condition.value] = percentile(column, spec.percentile) if len(column) else None
        return ProbabilityThresholds(**values)

    def evaluate(self, spec: ConditionSpec, frame: pd.DataFrame) -> ConditionResult:
        """Probability of one condition; raises InsufficientData when the seasonal sample is empty"""
        values = frame[spec.column].dropna() if spec.column in frame else pd.Series(dtype=float)
        sample_size = len(values)
        if sample_size == 0:
            raise InsufficientData(spec.condition.value)

        threshold = percentile(values, spec.percentile)
        if spec.at_or_below:
            occurrences = int((values <= threshold).sum())
        else:
            occurrences = int((values >= threshold).sum())

        return ConditionResult(
            condition=spec.condition,
            label=spec.condition.label,
            probability=_round_half_up(occurrences / sample_size * 100),
            confidence=confidence_for(sample_size),
            threshold=threshold,
            occurrences=occurrences,
            sample_size=sample_size,
        )

    def historical_context(self, frame: pd.DataFrame) -> HistoricalContext:
        """Composite index per year and the extreme records of the seasonal sample"""
        years: List[YearlyIndex] = []
        usable = frame.dropna(subset=["temperature", "precipitation"]) if len(frame) else frame
        for year, group in usable.groupby(usable.index.year):
            mean_temperature = float(group["temperature"].mean())
            mean_precipitation = float(group["precipitation"].mean())
            years.append(
                YearlyIndex(
                    year=int(year),
                    index=composite_index(mean_temperature, mean_precipitation),
                    mean_temperature=round(mean_temperature, 2),
                    mean_precipitation=round(mean_precipitation, 4),
                    sample_size=len(group),
                )
            )

        extremes: List[ExtremeRecord] = []
        for kind, column, pick_max in (
            ("max_temperature", "temperature", True),
            ("min_temperature", "temperature", False),
            ("max_precipitation", "precipitation", True),
        ):
            values = frame[column].dropna() if column in frame else pd.Series(dtype=float)
            if values.empty:
                continue
            when = values.idxmax() if pick_max else values.idxmin()
            extremes.append(
                ExtremeRecord(kind=kind, variable=column, value=float(values[when]), timestamp=when.to_pydatetime())
            )

        return HistoricalContext(years=tuple(years), extremes=tuple(extremes))

    def data_quality(
        self, dataset: WeatherDataset, frame: pd.DataFrame, report: Optional[CollectionReport] = None
    ) -> DataQuality:
        sample_size = int(frame["temperature"].notna().sum()) if len(frame) else 0
        if report is not None:
            completeness = report.completeness
        else:
            completeness = min(95.0, round(sample_size / 20 * 95))
        return DataQuality(
            completeness=completeness,
            reliability=confidence_for(sample_size),
            sources=tuple(dataset.sources),
        )

    def analyze(
        self,
        dataset: WeatherDataset,
        target_date: date,
        location: Optional[GeoPoint] = None,
        report: Optional[CollectionReport] = None,
    ) -> ProbabilityResults:
        """
        Compute all condition probabilities for target_date

        Conditions whose seasonal sample is empty are listed in `insufficient`.
        When every condition is empty, InsufficientData is raised instead of
        returning a result.
        """
        key = (
            (round(location.lat, 4), round(location.lon, 4)) if location else None,
            target_date,
            dataset.version,
            report.completeness if report else None,
        )
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        frame = self.seasonal_frame(dataset, target_date)
        conditions: List[ConditionResult] = []
        intervals: List[ConfidenceInterval] = []
        insufficient: List[ConditionType] = []
        for spec in self.specs:
            try:
                result = self.evaluate(spec, frame)
            except InsufficientData:
                logger.warning(f"No seasonal samples for {spec.condition.value} around {target_date}")
                insufficient.append(spec.condition)
                continue
            conditions.append(result)
            lower, upper = binomial_interval(result.occurrences, result.sample_size)
            intervals.append(ConfidenceInterval(condition=spec.condition, lower=lower, upper=upper))

        if not conditions:
            logger.error(f"No seasonal samples at all around {target_date}")
            raise InsufficientData(message=f"No historical samples within the seasonal window of {target_date}")

        results = ProbabilityResults(
            location=location,
            target_date=target_date,
            conditions=tuple(conditions),
            confidence_intervals=tuple(intervals),
            thresholds=self.thresholds(frame),
            historical_context=self.historical_context(frame),
            data_quality=self.data_quality(dataset, frame, report),
            insufficient=tuple(insufficient),
        )

        self._cache[key] = results
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        logger.info(
            f"Analyzed {target_date}: "
            + ", ".join(f"{c.condition.value}={c.probability}%" for c in conditions)
        )
        return results
