"""
Decoder for binary OPeNDAP responses.

Two containers are handled. A DAP2 ``.dods`` stream is a DDS text header
followed by ``Data:`` and the XDR encoded values; it is decoded here with numpy
big-endian dtypes. A NetCDF subset (``.nc4`` fileout or a downloaded granule)
is opened with xarray. Both are reduced to the same per-variable arrays and
expanded into samples by ``emit_variable``.
"""

import logging
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import xarray as xr

from gldas_weather_mcp.errors import EmptyResponse, PartialVariableFailure
from gldas_weather_mcp.grid import GridLocator
from gldas_weather_mcp.models import DecodedPayload, RequestDescriptor, VariableSample
from gldas_weather_mcp.samples import COORDINATE_NAMES, Axes, decode_time_axis, emit_variable

logger = logging.getLogger("gldas_weather.decoder.binary")

DATA_MARKERS = (b"\nData:\n", b"\nData:\r\n")

# DAP2 atomic types: (on-the-wire dtype, bytes per element)
XDR_TYPES = {
    "byte": (">u1", 1),
    "int16": (">i4", 4),
    "uint16": (">u4", 4),
    "int32": (">i4", 4),
    "uint32": (">u4", 4),
    "float32": (">f4", 4),
    "float64": (">f8", 8),
}

_TOKEN_RE = re.compile(r"\s*([{}\[\];:=]|[^\s{}\[\];:=]+)")


@dataclass
class DodsArray:
    name: str
    type_name: str
    dims: List[Tuple[Optional[str], int]] = field(default_factory=list)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(size for _, size in self.dims)

    @property
    def dim_names(self) -> List[Optional[str]]:
        return [name for name, _ in self.dims]


@dataclass
class DodsGrid:
    name: str
    array: DodsArray
    maps: List[DodsArray]


@dataclass
class DodsStructure:
    name: str
    members: list


class DdsParser:
    """Recursive-descent parser for the DDS dimension table and variable directory"""

    def __init__(self, text: str):
        self.tokens = _TOKEN_RE.findall(text)
        self.pos = 0

    def _peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> str:
        if self.pos >= len(self.tokens):
            raise ValueError("Unexpected end of DDS")
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _expect(self, expected: str) -> None:
        token = self._next()
        if token.lower() != expected.lower():
            raise ValueError(f"Expected {expected!r} in DDS, got {token!r}")

    def parse(self) -> Tuple[str, list]:
        self._expect("Dataset")
        self._expect("{")
        declarations = self._declarations()
        self._expect("}")
        name = self._next()
        if self._peek() == ";":
            self._next()
        return name, declarations

    def _declarations(self) -> list:
        declarations = []
        while self._peek() not in (None, "}"):
            declarations.append(self._declaration())
        return declarations

    def _declaration(self):
        keyword = self._next()
        lowered = keyword.lower()
        if lowered == "grid":
            self._expect("{")
            self._expect("ARRAY")
            self._expect(":")
            array = self._array()
            self._expect("MAPS")
            self._expect(":")
            maps = []
            while self._peek() != "}":
                maps.append(self._array())
            self._expect("}")
            name = self._next()
            self._expect(";")
            return DodsGrid(name=name, array=array, maps=maps)
        if lowered == "structure":
            self._expect("{")
            members = self._declarations()
            self._expect("}")
            name = self._next()
            self._expect(";")
            return DodsStructure(name=name, members=members)
        if lowered == "sequence":
            raise ValueError("DDS sequences are not supported")
        self.pos -= 1
        return self._array()

    def _array(self) -> DodsArray:
        type_name = self._next()
        name = self._next()
        dims = []
        while self._peek() == "[":
            self._next()
            first = self._next()
            if self._peek() == "=":
                self._next()
                dims.append((first, int(self._next())))
            else:
                dims.append((None, int(first)))
            self._expect("]")
        self._expect(";")
        return DodsArray(name=name, type_name=type_name, dims=dims)


class XdrReader:
    def __init__(self, buffer: bytes):
        self.buffer = buffer
        self.offset = 0

    def _take(self, size: int) -> bytes:
        if self.offset + size > len(self.buffer):
            raise ValueError("XDR data ended early")
        chunk = self.buffer[self.offset : self.offset + size]
        self.offset += size
        return chunk

    def read(self, var: DodsArray) -> np.ndarray:
        key = var.type_name.lower()
        if key not in XDR_TYPES:
            raise ValueError(f"unsupported DAP type {var.type_name}")
        dtype, width = XDR_TYPES[key]

        if not var.dims:
            raw = self._take(4 if width < 4 else width)
            if key == "byte":
                return np.array(raw[3], dtype=np.uint8)
            return np.frombuffer(raw, dtype=dtype)[0]

        count = int(np.frombuffer(self._take(4), dtype=">u4")[0])
        self._take(4)
        expected = int(np.prod(var.shape))
        if count != expected:
            raise ValueError(f"{var.name} declares {expected} values but carries {count}")
        size = count * width
        values = np.frombuffer(self._take(size), dtype=dtype)
        if key == "byte":
            self._take((4 - size % 4) % 4)
        return values.reshape(var.shape)


def _split_dods(payload: bytes) -> Tuple[str, bytes]:
    for marker in DATA_MARKERS:
        position = payload.find(marker)
        if position >= 0:
            return payload[:position].decode("utf-8", errors="replace"), payload[position + len(marker) :]
    raise EmptyResponse("DODS response has no Data: section")


def _flatten(declarations: list) -> List[Union[DodsArray, DodsGrid]]:
    flat = []
    for declaration in declarations:
        if isinstance(declaration, DodsStructure):
            flat.extend(_flatten(declaration.members))
        else:
            flat.append(declaration)
    return flat


class BinaryDecoder:
    """Decoder for DODS streams and NetCDF containers"""

    def __init__(self, locator: Optional[GridLocator] = None, time_units: Optional[str] = None):
        self.locator = locator or GridLocator()
        self.time_units = time_units

    def decode(self, payload: bytes, descriptor: Optional[RequestDescriptor] = None) -> DecodedPayload:
        if payload.lstrip().startswith(b"Dataset"):
            return self.decode_dods(payload, descriptor)
        return self.decode_netcdf(payload, descriptor)

    def decode_dods(self, payload: bytes, descriptor: Optional[RequestDescriptor] = None) -> DecodedPayload:
        """Decode a DAP2 .dods response"""
        dds_text, body = _split_dods(payload)
        try:
            dataset_name, declarations = DdsParser(dds_text).parse()
        except ValueError as e:
            logger.error(f"Malformed DDS: {e}")
            raise EmptyResponse(f"Malformed DDS: {e}") from e
        logger.debug(f"DODS dataset {dataset_name} with {len(declarations)} declarations")

        reader = XdrReader(body)
        arrays: Dict[str, Tuple[np.ndarray, List[Optional[str]]]] = {}
        maps: Dict[str, np.ndarray] = {}
        skipped: Dict[str, str] = {}
        entries = _flatten(declarations)
        for position, entry in enumerate(entries):
            try:
                if isinstance(entry, DodsGrid):
                    arrays[entry.name] = (reader.read(entry.array), entry.array.dim_names)
                    for map_var in entry.maps:
                        maps.setdefault(map_var.name, reader.read(map_var))
                else:
                    arrays[entry.name] = (reader.read(entry), entry.dim_names)
            except ValueError as e:
                # offsets of everything after an unreadable entry are unknown
                for rest in entries[position:]:
                    if rest.name not in COORDINATE_NAMES:
                        skipped[rest.name] = f"unreadable: {e}"
                logger.warning(f"Stopped reading DODS data at {entry.name}: {e}")
                break

        coords = {}
        for axis in COORDINATE_NAMES:
            if axis in arrays:
                coords[axis] = np.asarray(arrays.pop(axis)[0]).reshape(-1)
            elif axis in maps:
                coords[axis] = np.asarray(maps[axis]).reshape(-1)

        data = {name: value for name, value in arrays.items() if not name.endswith("_bnds")}
        return self._build_payload(coords, {}, data, {}, skipped, descriptor)

    def decode_netcdf(self, payload: bytes, descriptor: Optional[RequestDescriptor] = None) -> DecodedPayload:
        """Decode a NetCDF-3/4 container held in memory"""
        with tempfile.TemporaryDirectory() as temp_dir:
            temp_file = Path(temp_dir) / "subset.nc"
            temp_file.write_bytes(payload)
            return self.decode_file(temp_file, descriptor)

    def decode_file(self, path: Union[str, Path], descriptor: Optional[RequestDescriptor] = None) -> DecodedPayload:
        logger.info(f"Reading NetCDF file {path}")
        try:
            ds = xr.open_dataset(path, decode_times=False)
        except (OSError, ValueError) as e:
            logger.error(f"Error reading NetCDF file: {e}")
            raise EmptyResponse(f"Failed to read NetCDF file: {e}") from e

        with ds:
            logger.debug(f"Available variables: {list(ds.variables)}")
            logger.debug(f"Dimensions: {dict(ds.sizes)}")
            coords = {}
            time_units = None
            for axis in COORDINATE_NAMES:
                if axis in ds.variables:
                    coords[axis] = np.asarray(ds[axis].values).reshape(-1)
                    if axis == "time":
                        time_units = ds[axis].attrs.get("units")

            data = {}
            units = {}
            skipped = {}
            for name in ds.data_vars:
                if name in COORDINATE_NAMES or name.endswith("_bnds"):
                    continue
                var = ds[name]
                try:
                    data[name] = (np.asarray(var.values, dtype=float), list(var.dims))
                except Exception as e:
                    logger.warning(f"Could not read variable {name}: {e}")
                    skipped[name] = f"unreadable: {e}"
                    continue
                if "units" in var.attrs:
                    units[name] = str(var.attrs["units"])

        return self._build_payload(coords, {"time": time_units}, data, units, skipped, descriptor)

    def _build_payload(
        self,
        coords: Dict[str, np.ndarray],
        coord_units: Dict[str, Optional[str]],
        data: Dict[str, Tuple[np.ndarray, Sequence[Optional[str]]]],
        units: Dict[str, str],
        skipped: Dict[str, str],
        descriptor: Optional[RequestDescriptor],
    ) -> DecodedPayload:
        if "lat" not in coords or "lon" not in coords:
            logger.error("Binary payload has no lat/lon coordinate variables")
            raise EmptyResponse("Could not find coordinate arrays (lat/lon/time) in binary data")

        try:
            times = []
            if "time" in coords and coords["time"].size:
                times = decode_time_axis(coords["time"], coord_units.get("time") or self.time_units)
            axes = Axes(coords["lat"], coords["lon"], times, self.locator, descriptor)
        except (ValueError, OverflowError, TypeError) as e:
            logger.error(f"Unusable coordinate axes in binary data: {e}")
            raise EmptyResponse(f"Unusable coordinate axes in binary data: {e}") from e
        if axes.is_empty:
            raise EmptyResponse("Binary payload has empty coordinate axes")

        samples: List[VariableSample] = []
        for name, (values, dims) in data.items():
            try:
                samples.extend(emit_variable(name, values, dims, axes))
            except PartialVariableFailure as e:
                logger.warning(f"Skipping variable {e.variable}: {e.reason}")
                skipped[name] = e.reason

        if not samples:
            raise EmptyResponse("No variable samples in binary data")

        decoded = {s.variable_name for s in samples}
        logger.info(f"Decoded {len(samples)} samples from {len(decoded)} variables")
        return DecodedPayload(
            samples=tuple(samples),
            units={name: unit for name, unit in units.items() if name not in skipped},
            skipped_variables=skipped,
            lats=tuple(axes.lats),
            lons=tuple(axes.lons),
            times=tuple(axes.times),
        )
