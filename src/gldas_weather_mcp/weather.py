import asyncio
import logging
from collections import Counter
from datetime import date
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from gldas_weather_mcp.assembler import TimeSeriesAssembler
from gldas_weather_mcp.decoder import ContentKind, PayloadDecoder, sniff_content_kind
from gldas_weather_mcp.errors import EmptyResponse, FetchFailure, FetchTimeout, NoDataCollected
from gldas_weather_mcp.grid import GridLocator
from gldas_weather_mcp.models import (
    AnalysisQuery,
    CollectionReport,
    DecodedPayload,
    GeoPoint,
    ProbabilityResults,
    RequestDescriptor,
    WeatherDataset,
)
from gldas_weather_mcp.probability import ProbabilityEngine

logger = logging.getLogger("gldas_weather.weather")

FetchFn = Callable[[RequestDescriptor], Awaitable[Tuple[Union[bytes, str], ContentKind]]]


class TimestepCollector:
    """
    Fetches and decodes many timesteps with bounded concurrency.

    Every finished timestep is merged into `payloads` as soon as it is decoded,
    so whatever arrived before a cancellation is still available afterwards.
    Timesteps that time out, fail or come back empty are recorded as missing.
    """

    def __init__(
        self,
        fetch: FetchFn,
        decoder: Optional[PayloadDecoder] = None,
        max_concurrency: int = 8,
        timeout: Optional[float] = None,
    ):
        self.fetch = fetch
        self.decoder = decoder or PayloadDecoder()
        self.max_concurrency = max(1, max_concurrency)
        self.timeout = timeout
        self.payloads: List[DecodedPayload] = []
        self.missing: List[str] = []
        self.skipped: Counter = Counter()
        self._requested: List[str] = []
        self._pending: set = set()

    async def _collect_one(self, descriptor: RequestDescriptor, semaphore: asyncio.Semaphore) -> None:
        resource = descriptor.resource_id
        async with semaphore:
            try:
                if self.timeout is not None:
                    payload, kind = await asyncio.wait_for(self.fetch(descriptor), self.timeout)
                else:
                    payload, kind = await self.fetch(descriptor)
            except asyncio.TimeoutError:
                logger.warning(f"Timestep {resource} timed out after {self.timeout}s")
                self._mark_missing(resource)
                return
            except FetchTimeout as e:
                logger.warning(f"Timestep {resource} timed out: {e}")
                self._mark_missing(resource)
                return
            except FetchFailure as e:
                logger.warning(f"Timestep {resource} failed: {e}")
                self._mark_missing(resource)
                return
            except Exception as e:
                logger.warning(f"Unexpected error fetching timestep {resource}: {e}")
                self._mark_missing(resource)
                return

        try:
            decoded = await asyncio.to_thread(self.decoder.decode, payload, kind, descriptor)
        except EmptyResponse as e:
            logger.warning(f"Timestep {resource} returned no usable data: {e}")
            self._mark_missing(resource)
            return
        except Exception as e:
            logger.warning(f"Unexpected error decoding timestep {resource}: {e}")
            self._mark_missing(resource)
            return

        self.payloads.append(decoded)
        self.skipped.update(decoded.skipped_variables.keys())
        self._pending.discard(resource)

    def _mark_missing(self, resource: str) -> None:
        self._pending.discard(resource)
        self.missing.append(resource)

    async def collect(self, descriptors: Iterable[RequestDescriptor]) -> List[DecodedPayload]:
        descriptors = list(descriptors)
        for descriptor in descriptors:
            self._requested.append(descriptor.resource_id)
            self._pending.add(descriptor.resource_id)

        logger.info(f"Collecting {len(descriptors)} timesteps with up to {self.max_concurrency} in flight")
        semaphore = asyncio.Semaphore(self.max_concurrency)
        await asyncio.gather(*(self._collect_one(d, semaphore) for d in descriptors))
        return list(self.payloads)

    def report(self) -> CollectionReport:
        """Outcome so far; timesteps still in flight count as missing"""
        missing = list(self.missing) + sorted(self._pending)
        return CollectionReport(
            requested=len(self._requested),
            succeeded=len(self.payloads),
            missing=tuple(missing),
            skipped_variables=dict(self.skipped),
        )


class WeatherService:
    """Collects GLDAS history for a point and turns it into weather odds"""

    def __init__(
        self,
        fetch: FetchFn,
        locator: Optional[GridLocator] = None,
        decoder: Optional[PayloadDecoder] = None,
        assembler: Optional[TimeSeriesAssembler] = None,
        engine: Optional[ProbabilityEngine] = None,
        max_concurrency: int = 8,
        timeout: Optional[float] = None,
    ):
        self.fetch = fetch
        self.locator = locator or GridLocator()
        self.decoder = decoder or PayloadDecoder(self.locator)
        self.assembler = assembler or TimeSeriesAssembler(self.locator)
        self.engine = engine or ProbabilityEngine()
        self.max_concurrency = max_concurrency
        self.timeout = timeout

    async def _collect_descriptors(
        self, point: GeoPoint, descriptors: List[RequestDescriptor]
    ) -> Tuple[WeatherDataset, CollectionReport]:
        collector = TimestepCollector(self.fetch, self.decoder, self.max_concurrency, self.timeout)
        payloads = await collector.collect(descriptors)
        report = collector.report()

        if not payloads:
            logger.error(f"No timestep of {report.requested} returned data for ({point.lat}, {point.lon})")
            raise NoDataCollected(f"None of the {report.requested} requested timesteps returned data")

        if report.missing:
            logger.warning(
                f"{len(report.missing)} of {report.requested} timesteps missing "
                f"({report.missing_fraction:.1%})"
            )
        dataset = self.assembler.assemble_payloads(payloads, self.locator.locate(point))
        return dataset, report

    async def collect(self, query: AnalysisQuery) -> Tuple[WeatherDataset, CollectionReport]:
        """
        Fetch every timestep of the query range and assemble the point's time series

        Raises:
            OutOfCoverage: the point lies outside the grid
            NoDataCollected: every timestep failed
        """
        point = query.point
        descriptors = self.locator.plan(point, query.start_date, query.end_date)
        return await self._collect_descriptors(point, descriptors)

    async def analyze(self, query: AnalysisQuery) -> ProbabilityResults:
        dataset, report = await self.collect(query)
        return self.engine.analyze(dataset, query.target_date, query.point, report)

    async def analyze_years(
        self, point: GeoPoint, target_date: date, start_year: int, end_year: int
    ) -> ProbabilityResults:
        """Fetch only the seasonal window around target_date in each year, then analyze"""
        descriptors = self.locator.plan_seasonal(point, target_date, start_year, end_year)
        logger.info(
            f"Analyzing {target_date:%m-%d} at ({point.lat}, {point.lon}) over {start_year}-{end_year}: "
            f"{len(descriptors)} timesteps"
        )
        dataset, report = await self._collect_descriptors(point, descriptors)
        return self.engine.analyze(dataset, target_date, point, report)

    def load_files(self, paths: Iterable[Union[str, Path]], point: GeoPoint) -> WeatherDataset:
        """Decode local NetCDF or OPeNDAP ASCII files and assemble the point's series"""
        index = self.locator.locate(point)
        payloads: List[DecodedPayload] = []
        for path in paths:
            path = Path(path)
            data = path.read_bytes()
            kind = sniff_content_kind(data)
            logger.info(f"Loading {path.name} as {kind.value}")
            if kind == ContentKind.NETCDF:
                payloads.append(self.decoder.binary.decode_file(path))
            else:
                payloads.append(self.decoder.decode(data, kind))

        skipped: Dict[str, int] = Counter()
        for payload in payloads:
            skipped.update(payload.skipped_variables.keys())
        if skipped:
            logger.warning(f"Variables skipped while loading files: {dict(skipped)}")
        return self.assembler.assemble_payloads(payloads, index, source="Local GLDAS files")
