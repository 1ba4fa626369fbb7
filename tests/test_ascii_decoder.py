from datetime import date

import pytest

from conftest import BOULDER, ascii_body, utc
from gldas_weather_mcp.ascii_decoder import AsciiDecoder
from gldas_weather_mcp.errors import EmptyResponse
from gldas_weather_mcp.grid import GridLocator

# 2020-01-01 03:00 UTC in minutes since 2000-01-01
TIME_0300 = 10519380

ROW_RESPONSE = f"""Dataset: GLDAS_NOAH025_3H.A20200101.0300.021.nc4
Tair_f_inst.Tair_f_inst[1][3][3]
Tair_f_inst[0][0], 270.1, 270.2, 270.3
Tair_f_inst[0][1], 271.1, 271.2, 271.3
Tair_f_inst[0][2], 272.1, -9999, 272.3
lat, 39.875, 40.125, 40.375
lon, -105.375, -105.125, -104.875
time, {TIME_0300}
"""


@pytest.fixture
def decoder():
    return AsciiDecoder(GridLocator())


def test_row_lines(decoder):
    payload = decoder.decode(ROW_RESPONSE)
    assert payload.variable_names == ["Tair_f_inst"]
    # one fill value dropped
    assert len(payload.samples) == 8
    centre = [s for s in payload.samples if (s.lat_index, s.lon_index) == (400, 299)]
    assert len(centre) == 1
    assert centre[0].raw_value == pytest.approx(271.2)
    assert centre[0].timestamp == utc(2020, 1, 1, 3)
    assert payload.lats == (39.875, 40.125, 40.375)


def test_fill_value_is_not_a_sample(decoder):
    payload = decoder.decode(ROW_RESPONSE)
    assert not any(s.lat_index == 401 and s.lon_index == 299 for s in payload.samples)


def test_index_triple_lines(decoder):
    text = f"""lat[3]
39.875, 40.125, 40.375
lon[3]
-105.375, -105.125, -104.875
time[1]
{TIME_0300}
Tair_f_inst[0][1][1], 280.5
Psurf_f_inst[0][1][2], 84000.0
"""
    payload = decoder.decode(text)
    by_name = {s.variable_name: s for s in payload.samples}
    assert by_name["Tair_f_inst"].raw_value == pytest.approx(280.5)
    assert (by_name["Tair_f_inst"].lat_index, by_name["Tair_f_inst"].lon_index) == (400, 299)
    assert (by_name["Psurf_f_inst"].lat_index, by_name["Psurf_f_inst"].lon_index) == (400, 300)


def test_grid_map_lines_with_echoed_axes(decoder):
    text = f"""Dataset: GLDAS_NOAH025_3H.A20200101.0300.021.nc4
Tair_f_inst.Tair_f_inst[Tair_f_inst.time={TIME_0300}][Tair_f_inst.lat=40.125], 280.1, 280.2, 280.3
Tair_f_inst.time, {TIME_0300}
Tair_f_inst.lat, 39.875, 40.125, 40.375
Tair_f_inst.lon, -105.375, -105.125, -104.875
"""
    payload = decoder.decode(text)
    assert len(payload.samples) == 3
    assert {s.lat_index for s in payload.samples} == {400}
    assert sorted(s.lon_index for s in payload.samples) == [298, 299, 300]
    assert all(s.timestamp == utc(2020, 1, 1, 3) for s in payload.samples)


def test_non_numeric_values_are_skipped(decoder):
    text = f"""lat, 39.875, 40.125, 40.375
lon, -105.375, -105.125, -104.875
time, {TIME_0300}
Tair_f_inst[0][0], 270.1, abc, 270.3
Tair_f_inst[0][1], nan, 271.2, 271.3
"""
    payload = decoder.decode(text)
    assert sorted((s.lat_index, s.lon_index) for s in payload.samples) == [(399, 298), (399, 300), (400, 299), (400, 300)]


def test_unrecognised_lines_are_ignored(decoder):
    text = ROW_RESPONSE + "this is not data\nAttributes {\n"
    assert len(decoder.decode(text).samples) == 8


def test_missing_time_axis_uses_request_timestamp(decoder):
    descriptor = GridLocator().plan(BOULDER, date(2021, 6, 1), date(2021, 6, 1))[4]
    payload = decoder.decode(ascii_body(descriptor, [("Wind_f_inst", 3.5)]), descriptor)
    assert len(payload.samples) == 9
    assert all(s.timestamp == utc(2021, 6, 1, 12) for s in payload.samples)


def test_missing_time_axis_without_request(decoder):
    text = "lat, 39.875\nlon, -105.375\nTair_f_inst[0][0], 270.1\n"
    with pytest.raises(EmptyResponse):
        decoder.decode(text)


def test_missing_coordinates(decoder):
    with pytest.raises(EmptyResponse):
        decoder.decode("Tair_f_inst[0][0], 270.1, 270.2\n")


def test_no_variable_data(decoder):
    text = f"lat, 39.875, 40.125\nlon, -105.375, -105.125\ntime, {TIME_0300}\n"
    with pytest.raises(EmptyResponse):
        decoder.decode(text)


def test_error_page(decoder):
    with pytest.raises(EmptyResponse):
        decoder.decode("<html><body>401 Unauthorized</body></html>")


def test_nan_coordinate_is_an_empty_response(decoder):
    text = "lat, nan\nlon, -105.125\ntime, 10519380\nTair_f_inst[0][0][0], 280.0\n"
    with pytest.raises(EmptyResponse):
        decoder.decode(text)


def test_overflowing_time_value_is_an_empty_response(decoder):
    text = "lat, 40.125\nlon, -105.125\ntime, 1e20\nTair_f_inst[0][0][0], 280.0\n"
    with pytest.raises(EmptyResponse):
        decoder.decode(text)
