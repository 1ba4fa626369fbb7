import random

import pytest

from conftest import make_dataset, utc
from gldas_weather_mcp.assembler import TimeSeriesAssembler, merge_datasets
from gldas_weather_mcp.models import DecodedPayload, GridIndex, VariableSample
from gldas_weather_mcp.units import canonical_units, convert

CENTRE = GridIndex(lat_index=400, lon_index=299)


def sample(name, lat_index, lon_index, value, hour=3):
    return VariableSample(
        variable_name=name,
        time_index=0,
        lat_index=lat_index,
        lon_index=lon_index,
        raw_value=value,
        timestamp=utc(2020, 1, 1, hour),
    )


def neighbourhood(name="Tair_f_inst", hour=3, skip=()):
    samples = []
    for i in (399, 400, 401):
        for j in (298, 299, 300):
            if (i, j) in skip:
                continue
            samples.append(sample(name, i, j, 270.0 + (i - 399) * 3 + (j - 298), hour))
    return samples


@pytest.fixture
def assembler():
    return TimeSeriesAssembler()


def test_centre_cell_wins(assembler):
    dataset = assembler.assemble(neighbourhood(), CENTRE)
    points = dataset.series["Tair_f_inst"]
    assert len(points) == 1
    assert points[0].value == pytest.approx(274.0 - 273.15)
    assert dataset.metadata.units["Tair_f_inst"] == "C"


def test_falls_back_to_nearest_available_cell(assembler):
    dataset = assembler.assemble(neighbourhood(skip={(400, 299)}), CENTRE)
    # four orthogonal neighbours tie on distance; the lowest lat index wins
    assert dataset.series["Tair_f_inst"][0].value == pytest.approx(271.0 - 273.15)


def test_orthogonal_neighbour_beats_diagonal(assembler):
    samples = [sample("Tair_f_inst", 401, 300, 300.0), sample("Tair_f_inst", 401, 299, 290.0)]
    dataset = assembler.assemble(samples, CENTRE)
    assert dataset.series["Tair_f_inst"][0].value == pytest.approx(290.0 - 273.15)


def test_assembly_is_order_independent(assembler):
    samples = neighbourhood(skip={(400, 299)}) + neighbourhood(hour=6) + neighbourhood("Wind_f_inst")
    expected = assembler.assemble(samples, CENTRE)
    for seed in range(5):
        shuffled = list(samples)
        random.Random(seed).shuffle(shuffled)
        assert assembler.assemble(shuffled, CENTRE) == expected
    assert assembler.assemble(samples + samples, CENTRE) == expected


def test_samples_outside_window_are_ignored(assembler):
    samples = [sample("Tair_f_inst", 410, 299, 999.0), sample("Tair_f_inst", 399, 298, 280.0)]
    dataset = assembler.assemble(samples, CENTRE)
    assert [p.value for p in dataset.series["Tair_f_inst"]] == [pytest.approx(280.0 - 273.15)]


def test_series_sorted_and_metadata(assembler):
    samples = neighbourhood(hour=9) + neighbourhood(hour=3) + neighbourhood(hour=6)
    dataset = assembler.assemble(samples, CENTRE)
    timestamps = [p.timestamp for p in dataset.series["Tair_f_inst"]]
    assert timestamps == sorted(timestamps)
    assert dataset.metadata.start == utc(2020, 1, 1, 3)
    assert dataset.metadata.end == utc(2020, 1, 1, 9)
    box = dataset.metadata.bounding_box
    assert box.north == pytest.approx(40.25)
    assert box.south == pytest.approx(40.0)


def test_assemble_payloads_keeps_received_units_for_unknown_variables(assembler):
    payload = DecodedPayload(samples=tuple(neighbourhood("Albedo_inst")), units={"Albedo_inst": "%"})
    dataset = assembler.assemble_payloads([payload], CENTRE)
    assert dataset.series["Albedo_inst"][0].value == pytest.approx(274.0)
    assert dataset.metadata.units == {"Albedo_inst": "%"}


def test_empty_input(assembler):
    dataset = assembler.assemble([], CENTRE)
    assert len(dataset) == 0
    assert dataset.metadata.bounding_box is None


def test_merge_datasets_sorts_series(assembler):
    late = assembler.assemble(neighbourhood(hour=9), CENTRE)
    early = assembler.assemble(neighbourhood(hour=3), CENTRE)
    merged = merge_datasets([late, early])
    assert [p.timestamp.hour for p in merged.series["Tair_f_inst"]] == [3, 9]
    assert merged.sources == ["NASA GLDAS NOAH 0.25deg 3-hourly"]


def test_overlapping_merge_averages_shared_timestamps_in_frame():
    first = make_dataset({"Tair_f_inst": [(utc(2020, 1, 1, 3), 10.0), (utc(2020, 1, 1, 6), 12.0)]})
    second = make_dataset({"Tair_f_inst": [(utc(2020, 1, 1, 6), 14.0)]})
    merged = merge_datasets([first, second])
    assert len(merged.series["Tair_f_inst"]) == 3

    frame = merged.to_frame()
    assert len(frame) == 2
    assert frame.loc[utc(2020, 1, 1, 6), "Tair_f_inst"] == pytest.approx(13.0)


@pytest.mark.parametrize(
    "name,raw,expected,units",
    [
        ("Tair_f_inst", 300.0, 26.85, "C"),
        ("Rainf_f_tavg", 0.001, 3.6, "mm/hr"),
        ("Qair_f_inst", 0.0073, 7.3, "g/kg"),
        ("Psurf_f_inst", 101325.0, 1013.25, "hPa"),
        ("Wind_f_inst", 4.2, 4.2, "m/s"),
        ("Albedo_inst", 14.0, 14.0, ""),
    ],
)
def test_unit_registry(name, raw, expected, units):
    assert convert(name, raw) == pytest.approx(expected)
    assert canonical_units(name) == units
