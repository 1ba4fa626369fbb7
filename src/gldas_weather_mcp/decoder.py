import logging
from enum import Enum
from typing import Optional, Union

from gldas_weather_mcp.ascii_decoder import AsciiDecoder
from gldas_weather_mcp.binary_decoder import DATA_MARKERS, BinaryDecoder
from gldas_weather_mcp.grid import GridLocator
from gldas_weather_mcp.models import DecodedPayload, RequestDescriptor

logger = logging.getLogger("gldas_weather.decoder")

NETCDF_MAGIC = (b"CDF\x01", b"CDF\x02", b"CDF\x05", b"\x89HDF\r\n\x1a\n")


class ContentKind(str, Enum):
    ASCII = "ascii"
    DODS = "dods"
    NETCDF = "netcdf"


def sniff_content_kind(payload: Union[bytes, str]) -> ContentKind:
    """Guess the wire format of a response body from its leading bytes"""
    if isinstance(payload, str):
        return ContentKind.ASCII
    if payload.startswith(NETCDF_MAGIC):
        return ContentKind.NETCDF
    if payload.lstrip().startswith(b"Dataset") and any(marker in payload for marker in DATA_MARKERS):
        return ContentKind.DODS
    return ContentKind.ASCII


class PayloadDecoder:
    """Turns a fetched response into raw-unit samples, whatever its wire format"""

    def __init__(self, locator: Optional[GridLocator] = None, time_units: Optional[str] = None):
        self.locator = locator or GridLocator()
        self.ascii = AsciiDecoder(self.locator, time_units)
        self.binary = BinaryDecoder(self.locator, time_units)

    def decode(
        self,
        payload: Union[bytes, str],
        content_kind: Optional[ContentKind] = None,
        descriptor: Optional[RequestDescriptor] = None,
    ) -> DecodedPayload:
        kind = ContentKind(content_kind) if content_kind is not None else sniff_content_kind(payload)
        logger.debug(f"Decoding {len(payload)} byte {kind.value} payload")

        if kind == ContentKind.ASCII:
            text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
            return self.ascii.decode(text, descriptor)

        data = payload.encode("utf-8") if isinstance(payload, str) else payload
        if kind == ContentKind.DODS:
            return self.binary.decode_dods(data, descriptor)
        return self.binary.decode_netcdf(data, descriptor)
