import asyncio
from datetime import date

import pytest

from conftest import BOULDER, ascii_body
from gldas_weather_mcp.decoder import ContentKind, PayloadDecoder
from gldas_weather_mcp.errors import EmptyResponse, FetchFailure, FetchTimeout, NoDataCollected, OutOfCoverage
from gldas_weather_mcp.grid import GridLocator
from gldas_weather_mcp.models import AnalysisQuery, ConditionType
from gldas_weather_mcp.weather import TimestepCollector, WeatherService

OVERFLOWING_TIME = "lat, 40.125\nlon, -105.125\ntime, 1e20\nTair_f_inst[0][0][0], 280.0\n"


def kelvin(descriptor) -> float:
    # warmest in the afternoon, a little warmer every day
    return 285.0 + descriptor.timestamp.hour / 3 + descriptor.timestamp.day * 0.1


class FakeFetcher:
    """Serves ASCII responses; timesteps listed in `fail` time out, those in `broken` fail outright,
    those in `reset` lose the connection and those in `garbled` carry an unusable time axis"""

    def __init__(self, fail=(), broken=(), empty=(), hang=(), reset=(), garbled=()):
        self.fail = set(fail)
        self.broken = set(broken)
        self.empty = set(empty)
        self.hang = set(hang)
        self.reset = set(reset)
        self.garbled = set(garbled)
        self.calls = []

    async def fetch(self, descriptor):
        self.calls.append(descriptor.resource_id)
        if descriptor.resource_id in self.hang:
            await asyncio.sleep(3600)
        if descriptor.resource_id in self.fail:
            raise FetchTimeout(descriptor.resource_id, 30.0)
        if descriptor.resource_id in self.broken:
            raise FetchFailure(descriptor.resource_id, "HTTP 500", status_code=500)
        if descriptor.resource_id in self.empty:
            return "<html>maintenance</html>", ContentKind.ASCII
        if descriptor.resource_id in self.reset:
            raise ConnectionResetError("peer reset")
        if descriptor.resource_id in self.garbled:
            return OVERFLOWING_TIME, ContentKind.ASCII
        values = [("Tair_f_inst", kelvin(descriptor)), ("Wind_f_inst", 2.0 + descriptor.timestamp.hour / 6)]
        return ascii_body(descriptor, values), ContentKind.ASCII


def plan(start=date(2020, 7, 10), end=date(2020, 7, 12)):
    return GridLocator().plan(BOULDER, start, end)


@pytest.mark.asyncio
async def test_collector_records_missing_timesteps():
    descriptors = plan()
    fetcher = FakeFetcher(fail={"A20200710.0300"}, broken={"A20200711.0000"}, empty={"A20200712.2100"})
    collector = TimestepCollector(fetcher.fetch, PayloadDecoder(), max_concurrency=4)
    payloads = await collector.collect(descriptors)

    report = collector.report()
    assert report.requested == 24
    assert report.succeeded == len(payloads) == 21
    assert set(report.missing) == {"A20200710.0300", "A20200711.0000", "A20200712.2100"}
    assert report.missing_fraction == pytest.approx(3 / 24)
    assert report.completeness == pytest.approx(87.5)


def test_overflowing_time_axis_is_an_empty_response():
    with pytest.raises(EmptyResponse):
        PayloadDecoder().decode(OVERFLOWING_TIME, ContentKind.ASCII)


@pytest.mark.asyncio
async def test_collector_survives_an_undecodable_timestep():
    descriptors = plan(date(2020, 7, 10), date(2020, 7, 10))
    fetcher = FakeFetcher(garbled={"A20200710.0600"})
    collector = TimestepCollector(fetcher.fetch, PayloadDecoder(), max_concurrency=4)
    payloads = await collector.collect(descriptors)

    report = collector.report()
    assert report.missing == ("A20200710.0600",)
    assert report.succeeded == len(payloads) == 7


@pytest.mark.asyncio
async def test_collector_survives_an_unexpected_fetch_error():
    descriptors = plan(date(2020, 7, 10), date(2020, 7, 10))
    fetcher = FakeFetcher(reset={"A20200710.0900"})
    collector = TimestepCollector(fetcher.fetch, PayloadDecoder(), max_concurrency=4)
    payloads = await collector.collect(descriptors)

    report = collector.report()
    assert report.missing == ("A20200710.0900",)
    assert report.succeeded == len(payloads) == 7


@pytest.mark.asyncio
async def test_collector_bounds_concurrency():
    in_flight = 0
    peak = 0
    fake = FakeFetcher()

    async def fetch(descriptor):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return await fake.fetch(descriptor)

    collector = TimestepCollector(fetch, PayloadDecoder(), max_concurrency=3)
    await collector.collect(plan())
    assert peak <= 3
    assert collector.report().succeeded == 24


@pytest.mark.asyncio
async def test_collector_applies_its_own_timeout():
    descriptors = plan(date(2020, 7, 10), date(2020, 7, 10))
    fetcher = FakeFetcher(hang={"A20200710.1200"})
    collector = TimestepCollector(fetcher.fetch, PayloadDecoder(), max_concurrency=8, timeout=0.2)
    await collector.collect(descriptors)
    assert collector.report().missing == ("A20200710.1200",)


@pytest.mark.asyncio
async def test_cancellation_keeps_finished_timesteps():
    descriptors = plan(date(2020, 7, 10), date(2020, 7, 10))
    fetcher = FakeFetcher(hang={"A20200710.1800", "A20200710.2100"})
    collector = TimestepCollector(fetcher.fetch, PayloadDecoder(), max_concurrency=8)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(collector.collect(descriptors), timeout=0.5)

    report = collector.report()
    assert len(collector.payloads) == 6
    assert report.succeeded == 6
    assert set(report.missing) == {"A20200710.1800", "A20200710.2100"}


@pytest.mark.asyncio
async def test_collect_assembles_the_query_cell():
    service = WeatherService(FakeFetcher().fetch)
    query = AnalysisQuery(lat=40.1, lon=-105.1, start_date=date(2020, 7, 10), end_date=date(2020, 7, 12), target_date=date(2021, 7, 11))
    dataset, report = await service.collect(query)

    assert report.missing == ()
    assert dataset.variables == ["Tair_f_inst", "Wind_f_inst"]
    temperatures = dataset.series["Tair_f_inst"]
    assert len(temperatures) == 24
    assert temperatures[0].value == pytest.approx(285.0 + 1.0 - 273.15)
    assert dataset.metadata.units == {"Tair_f_inst": "C", "Wind_f_inst": "m/s"}


@pytest.mark.asyncio
async def test_analyze_end_to_end():
    service = WeatherService(FakeFetcher(fail={"A20200711.1200"}).fetch)
    query = AnalysisQuery(lat=40.1, lon=-105.1, start_date=date(2020, 7, 10), end_date=date(2020, 7, 12), target_date=date(2021, 7, 11))
    results = await service.analyze(query)

    hot = results.condition(ConditionType.VERY_HOT)
    assert hot.sample_size == 23
    assert hot.occurrences >= 1
    assert results.condition(ConditionType.VERY_WINDY).sample_size == 23
    assert ConditionType.VERY_WET in results.insufficient
    assert results.data_quality.completeness == pytest.approx(95.8)
    assert results.location == BOULDER


@pytest.mark.asyncio
async def test_analyze_years_fetches_only_the_season():
    fetcher = FakeFetcher()
    service = WeatherService(fetcher.fetch)
    results = await service.analyze_years(BOULDER, date(2024, 7, 15), 2019, 2020)
    assert len(fetcher.calls) == 2 * 15 * 8
    assert results.condition(ConditionType.VERY_HOT).sample_size == 240


@pytest.mark.asyncio
async def test_nothing_collected():
    descriptors = plan(date(2020, 7, 10), date(2020, 7, 10))
    service = WeatherService(FakeFetcher(fail={d.resource_id for d in descriptors}).fetch)
    query = AnalysisQuery(lat=40.1, lon=-105.1, start_date=date(2020, 7, 10), end_date=date(2020, 7, 10), target_date=date(2021, 7, 10))
    with pytest.raises(NoDataCollected):
        await service.collect(query)


@pytest.mark.asyncio
async def test_out_of_coverage_query():
    service = WeatherService(FakeFetcher().fetch)
    query = AnalysisQuery(lat=-75.0, lon=0.0, start_date=date(2020, 7, 10), end_date=date(2020, 7, 10), target_date=date(2021, 7, 10))
    with pytest.raises(OutOfCoverage):
        await service.collect(query)


def test_query_rejects_reversed_range():
    with pytest.raises(ValueError):
        AnalysisQuery(lat=40.1, lon=-105.1, start_date=date(2020, 7, 12), end_date=date(2020, 7, 10), target_date=date(2021, 7, 10))


def test_load_files(tmp_path):
    descriptor = plan(date(2020, 7, 10), date(2020, 7, 10))[0]
    text = ascii_body(descriptor, [("Tair_f_inst", 290.0)]).replace("Dataset:", "time, 10794240\nDataset:")
    path = tmp_path / "A20200710.0000.ascii"
    path.write_text(text)

    service = WeatherService(FakeFetcher().fetch)
    dataset = service.load_files([path], BOULDER)
    assert dataset.series["Tair_f_inst"][0].value == pytest.approx(290.0 - 273.15)
    assert dataset.series["Tair_f_inst"][0].timestamp == descriptor.timestamp
    assert dataset.sources == ["Local GLDAS files"]
