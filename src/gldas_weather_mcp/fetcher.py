import asyncio
import logging
from typing import List, Optional, Sequence, Tuple, Union

import httpx

from gldas_weather_mcp.config import DEFAULT_VARIABLES
from gldas_weather_mcp.decoder import ContentKind, sniff_content_kind
from gldas_weather_mcp.errors import FetchFailure, FetchTimeout
from gldas_weather_mcp.models import RequestDescriptor

logger = logging.getLogger("gldas_weather.fetcher")


class OpendapFetcher:
    """Fetches GLDAS timestep subsets from the GES DISC OPeNDAP server"""

    BASE_URL = "https://hydro1.gesdisc.eosdis.nasa.gov/opendap/GLDAS/GLDAS_NOAH025_3H.2.1"
    FILE_TEMPLATE = "GLDAS_NOAH025_3H.{resource_id}.021.nc4"
    EXTENSIONS = {
        ContentKind.ASCII: "ascii",
        ContentKind.DODS: "dods",
        ContentKind.NETCDF: "nc4",
    }
    USER_AGENT = "GLDAS_Weather_MCP/1.0"

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 2,
        response_format: Union[ContentKind, str] = ContentKind.ASCII,
        variables: Sequence[str] = DEFAULT_VARIABLES,
        client: Optional[httpx.AsyncClient] = None,
        retry_delay: float = 2.0,
    ):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        # Strip "Bearer" prefix if it was pasted along with the token
        self.token = token.replace("Bearer ", "") if token else None
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.response_format = ContentKind(response_format)
        self.variables = list(variables)
        self.retry_delay = retry_delay
        self._client = client

    def constraints(self, descriptor: RequestDescriptor) -> str:
        window = descriptor.window
        lat_range = f"[{window.lat_start}:{window.lat_end}]"
        lon_range = f"[{window.lon_start}:{window.lon_end}]"
        parts: List[str] = [f"{name}[0:0]{lat_range}{lon_range}" for name in self.variables]
        # coordinate arrays go last
        parts.extend([f"lat{lat_range}", f"lon{lon_range}", "time[0:0]"])
        return ",".join(parts)

    def build_url(self, descriptor: RequestDescriptor) -> str:
        """Resolve a request descriptor into the OPeNDAP URL of its 3x3 subset"""
        filename = self.FILE_TEMPLATE.format(resource_id=descriptor.resource_id)
        extension = self.EXTENSIONS[self.response_format]
        return (
            f"{self.base_url}/{descriptor.year}/{descriptor.day_of_year:03d}/"
            f"{filename}.{extension}?{self.constraints(descriptor)}"
        )

    @property
    def headers(self) -> dict:
        headers = {"User-Agent": self.USER_AGENT}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def fetch(self, descriptor: RequestDescriptor) -> Tuple[Union[bytes, str], ContentKind]:
        """
        Download one timestep

        Returns:
            The response body and the wire format it is in

        Raises:
            FetchTimeout: every attempt timed out
            FetchFailure: the server answered with an error or the transport failed
        """
        url = self.build_url(descriptor)
        if self._client is not None:
            return await self._fetch_with_retry(self._client, url, descriptor.resource_id)
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            return await self._fetch_with_retry(client, url, descriptor.resource_id)

    async def _fetch_with_retry(
        self, client: httpx.AsyncClient, url: str, resource: str
    ) -> Tuple[Union[bytes, str], ContentKind]:
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.debug(f"Download attempt {attempt}/{self.max_retries} for {resource}")
                response = await client.get(url, headers=self.headers, timeout=self.timeout)
                response.raise_for_status()
            except httpx.TimeoutException:
                logger.warning(f"Attempt {attempt} for {resource} timed out after {self.timeout}s")
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)
                    continue
                raise FetchTimeout(resource, self.timeout)
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                logger.error(f"HTTP {status} for {resource}")
                logger.error(f"Request URL: {e.request.url if e.request else 'Unknown'}")
                raise FetchFailure(resource, f"HTTP {status}", status_code=status) from e
            except httpx.HTTPError as e:
                logger.error(f"Transport error for {resource}: {e}")
                raise FetchFailure(resource, str(e)) from e

            logger.info(f"Downloaded {resource}: {len(response.content)} bytes")
            if self.response_format == ContentKind.ASCII:
                return response.text, ContentKind.ASCII
            if sniff_content_kind(response.content) == ContentKind.ASCII:
                raise FetchFailure(resource, "expected a binary response but received text")
            return response.content, self.response_format

        raise FetchFailure(resource, "no attempts made")
