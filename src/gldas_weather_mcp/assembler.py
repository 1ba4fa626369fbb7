import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from gldas_weather_mcp import units as unit_registry
from gldas_weather_mcp.grid import GridLocator
from gldas_weather_mcp.models import (
    BoundingBox,
    DatasetMetadata,
    DecodedPayload,
    GridIndex,
    TimeSeriesPoint,
    VariableSample,
    WeatherDataset,
)

logger = logging.getLogger("gldas_weather.assembler")

DEFAULT_SOURCE = "NASA GLDAS NOAH 0.25deg 3-hourly"


class TimeSeriesAssembler:
    """Collapses decoded grid samples into one converted time series per variable at the query cell"""

    def __init__(self, locator: Optional[GridLocator] = None, source: str = DEFAULT_SOURCE):
        self.locator = locator or GridLocator()
        self.source = source

    def _select(
        self, samples: Iterable[VariableSample], grid_index: GridIndex
    ) -> Dict[Tuple[str, datetime], VariableSample]:
        """Pick the closest available cell inside the 3x3 window for each (variable, timestep)"""
        window = self.locator.window(grid_index)
        best: Dict[Tuple[str, datetime], Tuple[tuple, VariableSample]] = {}
        outside = 0
        for sample in samples:
            if not window.contains(sample.lat_index, sample.lon_index):
                outside += 1
                continue
            dlat = sample.lat_index - grid_index.lat_index
            dlon = sample.lon_index - grid_index.lon_index
            # total order over candidate cells
            rank = (dlat * dlat + dlon * dlon, abs(dlat) + abs(dlon), sample.lat_index, sample.lon_index, sample.raw_value)
            key = (sample.variable_name, sample.timestamp)
            current = best.get(key)
            if current is None or rank < current[0]:
                best[key] = (rank, sample)

        if outside:
            logger.debug(f"Ignored {outside} samples outside the query window")
        return {key: sample for key, (_, sample) in best.items()}

    def assemble(
        self,
        samples: Iterable[VariableSample],
        grid_index: GridIndex,
        units: Optional[Dict[str, str]] = None,
        source: Optional[str] = None,
    ) -> WeatherDataset:
        """
        Build a dataset for the cell at grid_index

        Args:
            samples: Raw samples from one or more decoded payloads
            grid_index: Nearest cell to the query point
            units: Units as received, per variable, when the payload carried them
            source: Label recorded in the dataset metadata
        """
        units = units or {}
        selected = self._select(samples, grid_index)

        series: Dict[str, List[TimeSeriesPoint]] = {}
        cells = set()
        for (name, timestamp), sample in selected.items():
            series.setdefault(name, []).append(
                TimeSeriesPoint(timestamp=timestamp, value=unit_registry.convert(name, sample.raw_value))
            )
            cells.add((sample.lat_index, sample.lon_index))

        timestamps = [timestamp for _, timestamp in selected]
        metadata = DatasetMetadata(
            source=source or self.source,
            bounding_box=self._bounding_box(cells),
            start=min(timestamps) if timestamps else None,
            end=max(timestamps) if timestamps else None,
            units={name: unit_registry.canonical_units(name, units.get(name)) for name in series},
        )
        dataset = WeatherDataset(
            metadata=metadata,
            series={name: tuple(sorted(points, key=lambda p: p.timestamp)) for name, points in series.items()},
        )
        logger.info(f"Assembled {len(dataset)} points for {len(series)} variables from {len(cells)} cells")
        return dataset

    def assemble_payloads(
        self, payloads: Iterable[DecodedPayload], grid_index: GridIndex, source: Optional[str] = None
    ) -> WeatherDataset:
        samples: List[VariableSample] = []
        received_units: Dict[str, str] = {}
        for payload in payloads:
            samples.extend(payload.samples)
            received_units.update(payload.units)
        return self.assemble(samples, grid_index, received_units, source)

    def _bounding_box(self, cells) -> Optional[BoundingBox]:
        if not cells:
            return None
        half = self.locator.resolution / 2
        centers = [self.locator.cell_center(GridIndex(lat_index=i, lon_index=j)) for i, j in cells]
        return BoundingBox(
            north=max(c.lat for c in centers) + half,
            south=min(c.lat for c in centers) - half,
            east=max(c.lon for c in centers) + half,
            west=min(c.lon for c in centers) - half,
        )


def merge_datasets(datasets: Iterable[WeatherDataset]) -> WeatherDataset:
    """Concatenate per-file datasets; series are stable-sorted by timestamp"""
    return WeatherDataset.merge(datasets)
