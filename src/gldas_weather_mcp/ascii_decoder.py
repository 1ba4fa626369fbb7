import logging
import re
from typing import Dict, List, Optional, Tuple

from gldas_weather_mcp.errors import EmptyResponse
from gldas_weather_mcp.grid import GridLocator
from gldas_weather_mcp.models import DecodedPayload, RequestDescriptor, VariableSample
from gldas_weather_mcp.samples import Axes, decode_time_axis, is_fill, make_sample

logger = logging.getLogger("gldas_weather.decoder.ascii")

_NUMBER = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?"

# lat, 39.875, 40.125   /   lat[3], 39.875, ...   /   lat[3]  (values on the next line)
_COORDINATE_RE = re.compile(r"^(?P<axis>lat|lon|time)(?:\[\s*\d+\s*\])?\s*(?:,(?P<values>.*))?$")

# Tair_f_inst.lat, 39.875, 40.125  (map vectors echoed inside a Grid)
_MAP_ECHO_RE = re.compile(r"^(?P<name>[A-Za-z_]\w*)\.(?P<axis>lat|lon|time)\s*,(?P<values>.*)$")

# Tair_f_inst[0][1][2], 280.5
_TRIPLE_RE = re.compile(r"^(?P<name>[A-Za-z_]\w*)\[(?P<t>\d+)\]\[(?P<i>\d+)\]\[(?P<j>\d+)\]\s*,(?P<values>.*)$")

# Tair_f_inst[0][1], 280.1, 280.2, 280.3
_ROW_RE = re.compile(r"^(?P<name>[A-Za-z_]\w*)\[(?P<t>\d+)\]\[(?P<i>\d+)\]\s*,(?P<values>.*)$")

# Tair_f_inst.Tair_f_inst[Tair_f_inst.time=12362220][Tair_f_inst.lat=39.875], 280.1, 280.2
_GRID_RE = re.compile(
    r"^(?P<name>[A-Za-z_]\w*)\.(?P=name)"
    rf"\[(?P=name)\.time=(?P<time>{_NUMBER})\]"
    rf"\[(?P=name)\.lat=(?P<lat>{_NUMBER})\]\s*,(?P<values>.*)$"
)

_NUMERIC_LINE_RE = re.compile(rf"^\s*{_NUMBER}\s*(?:,\s*{_NUMBER}\s*)*$")


def _parse_numbers(text: str) -> List[float]:
    numbers = []
    for token in text.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            numbers.append(float(token))
        except ValueError:
            continue
    return numbers


def _value_tokens(text: str) -> List[str]:
    return [token.strip() for token in text.split(",") if token.strip()]


class AsciiDecoder:
    """Decoder for OPeNDAP ASCII (.ascii) responses"""

    def __init__(self, locator: Optional[GridLocator] = None, time_units: Optional[str] = None):
        self.locator = locator or GridLocator()
        self.time_units = time_units

    def _scan_axes(self, lines: List[str]) -> Tuple[Dict[str, List[float]], List[int]]:
        """Find coordinate arrays; returns the axes and the line numbers they occupied"""
        axes: Dict[str, List[float]] = {}
        echoed: Dict[str, List[float]] = {}
        used: List[int] = []
        n = 0
        while n < len(lines):
            line = lines[n]
            match = _COORDINATE_RE.match(line)
            if match:
                values = _parse_numbers(match.group("values") or "")
                used.append(n)
                if not values and n + 1 < len(lines) and _NUMERIC_LINE_RE.match(lines[n + 1]):
                    values = _parse_numbers(lines[n + 1])
                    used.append(n + 1)
                    n += 1
                if values and match.group("axis") not in axes:
                    axes[match.group("axis")] = values
            else:
                echo = _MAP_ECHO_RE.match(line)
                if echo:
                    used.append(n)
                    echoed.setdefault(echo.group("axis"), _parse_numbers(echo.group("values")))
            n += 1

        for axis, values in echoed.items():
            if axis not in axes and values:
                logger.debug(f"Using map vector echo for missing {axis} axis")
                axes[axis] = values
        return axes, used

    def decode(self, text: str, descriptor: Optional[RequestDescriptor] = None) -> DecodedPayload:
        """
        Parse an OPeNDAP ASCII payload into raw-unit samples

        Args:
            text: Response body
            descriptor: Request that produced the response, used when axes are incomplete
        """
        lines = [line.strip() for line in text.splitlines()]
        lines = [line for line in lines if line]

        raw_axes, used = self._scan_axes(lines)
        if "lat" not in raw_axes or "lon" not in raw_axes:
            logger.error("Could not find coordinate arrays (lat/lon) in ASCII data")
            logger.debug(f"First lines: {lines[:20]}")
            raise EmptyResponse("Could not find coordinate arrays (lat/lon/time) in ASCII data")

        time_values = raw_axes.get("time", [])
        try:
            times = decode_time_axis(time_values, self.time_units) if time_values else []
            axes = Axes(raw_axes["lat"], raw_axes["lon"], times, self.locator, descriptor)
        except (ValueError, OverflowError, TypeError) as e:
            logger.error(f"Unusable coordinate axes in ASCII data: {e}")
            raise EmptyResponse(f"Unusable coordinate axes in ASCII data: {e}") from e
        if axes.is_empty:
            raise EmptyResponse("ASCII data has no time axis and no request to fall back on")

        skip = set(used)
        samples: List[VariableSample] = []
        rejected = 0
        for n, line in enumerate(lines):
            if n in skip or line.startswith("#") or line.startswith("Dataset") or set(line) <= {"-", "="}:
                continue
            parsed = self._parse_data_line(line, axes, time_values, raw_axes["lat"])
            if parsed is None:
                rejected += 1
                logger.debug(f"Could not parse line: {line[:100]}")
                continue
            samples.extend(parsed)

        if rejected:
            logger.info(f"Rejected {rejected} malformed ASCII lines")
        if not samples:
            logger.error("No variable data found in ASCII response")
            raise EmptyResponse("No variable data found in ASCII response")

        names = sorted({s.variable_name for s in samples})
        logger.info(f"Parsed {len(samples)} samples, variables: {', '.join(names)}")
        return DecodedPayload(
            samples=tuple(samples),
            lats=tuple(axes.lats),
            lons=tuple(axes.lons),
            times=tuple(axes.times),
        )

    def _parse_data_line(
        self, line: str, axes: Axes, time_values: List[float], lat_values: List[float]
    ) -> Optional[List[VariableSample]]:
        """Samples for one data line, or None when the line has none of the known shapes"""
        match = _TRIPLE_RE.match(line)
        if match:
            tokens = _value_tokens(match.group("values"))
            t, i, j = int(match.group("t")), int(match.group("i")), int(match.group("j"))
            return self._row_samples(match.group("name"), axes, t, i, tokens[:1], first_lon=j)

        match = _ROW_RE.match(line)
        if match:
            tokens = _value_tokens(match.group("values"))
            return self._row_samples(match.group("name"), axes, int(match.group("t")), int(match.group("i")), tokens)

        match = _GRID_RE.match(line)
        if match:
            time_value = float(match.group("time"))
            lat_value = float(match.group("lat"))
            t = next((k for k, v in enumerate(time_values) if abs(v - time_value) < 1), None)
            i = next((k for k, v in enumerate(lat_values) if abs(v - lat_value) < 0.01), None)
            if t is None and not time_values and axes.descriptor is not None:
                t = 0
            if t is None or i is None:
                logger.debug(f"Could not match lat={lat_value} time={time_value}")
                return None
            tokens = _value_tokens(match.group("values"))
            return self._row_samples(match.group("name"), axes, t, i, tokens)

        return None

    def _row_samples(
        self, name: str, axes: Axes, t: int, i: int, tokens: List[str], first_lon: int = 0
    ) -> List[VariableSample]:
        samples = []
        for offset, token in enumerate(tokens):
            try:
                value = float(token)
            except ValueError:
                logger.debug(f"Skipping non-numeric value {token!r} for {name}")
                continue
            if is_fill(value):
                continue
            sample = make_sample(name, axes, t, i, first_lon + offset, value)
            if sample is not None:
                samples.append(sample)
        return samples
