import logging
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Union

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from gldas_weather_mcp.config import config
from gldas_weather_mcp.errors import WeatherOddsError
from gldas_weather_mcp.fetcher import OpendapFetcher
from gldas_weather_mcp.grid import GridLocator
from gldas_weather_mcp.models import GeoPoint
from gldas_weather_mcp.probability import ProbabilityEngine
from gldas_weather_mcp.weather import WeatherService

load_dotenv()

# Set up logging
log_dir = Path("logs")
log_dir.mkdir(exist_ok=True)
log_file = log_dir / "gldas_weather.log"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(log_file),
        logging.StreamHandler(),
    ],
)

logger = logging.getLogger("gldas_weather.server")

mcp = FastMCP(
    "GLDAS Weather Odds",
    instructions=(
        "Historical weather odds from NASA GLDAS reanalysis: how likely a calendar day is to be "
        "very hot, very cold, very wet, very windy or very uncomfortable at a location."
    ),
    dependencies=["httpx", "pydantic", "pydantic-settings", "python-dotenv", "pandas", "xarray", "numpy", "netCDF4"],
    port=config.port,
)

locator = GridLocator()
fetcher = OpendapFetcher(
    base_url=config.opendap_base_url,
    token=config.nasa_token,
    timeout=config.fetch_timeout,
    max_retries=config.max_retries,
    response_format=config.response_format,
    variables=config.variables,
)
weather_service = WeatherService(
    fetcher.fetch,
    locator=locator,
    engine=ProbabilityEngine(cache_size=config.cache_size),
    max_concurrency=config.max_concurrency,
)


# Tools
@mcp.tool()
async def get_grid_cell(latitude: float, longitude: float) -> Union[Dict[str, Any], str]:
    """
    Find the GLDAS grid cell nearest to a point

    Args:
        latitude: Latitude in degrees (-60 to 90)
        longitude: Longitude in degrees
    """
    try:
        point = GeoPoint(lat=latitude, lon=longitude)
        index = locator.locate(point)
        center = locator.cell_center(index)
        window = locator.window(index)
        return {
            "lat_index": index.lat_index,
            "lon_index": index.lon_index,
            "cell_center": {"latitude": center.lat, "longitude": center.lon},
            "window": window.model_dump(),
        }
    except (WeatherOddsError, ValueError) as e:
        logger.error(f"Error locating ({latitude}, {longitude}): {str(e)}")
        return f"Error: Unable to locate a grid cell for ({latitude}, {longitude}). {str(e)}"


@mcp.tool()
async def plan_gldas_requests(latitude: float, longitude: float, start_date: str, end_date: str) -> Union[List[str], str]:
    """
    List the OPeNDAP URLs needed to cover a date range at a point

    Args:
        latitude: Latitude in degrees
        longitude: Longitude in degrees
        start_date: First day, YYYY-MM-DD
        end_date: Last day, YYYY-MM-DD
    """
    try:
        point = GeoPoint(lat=latitude, lon=longitude)
        descriptors = locator.plan(point, date.fromisoformat(start_date), date.fromisoformat(end_date))
        logger.info(f"Planned {len(descriptors)} requests from {start_date} to {end_date}")
        return [fetcher.build_url(d) for d in descriptors]
    except (WeatherOddsError, ValueError) as e:
        logger.error(f"Error planning requests: {str(e)}")
        return f"Error: Unable to plan requests for ({latitude}, {longitude}). {str(e)}"


@mcp.tool()
async def get_weather_odds(
    latitude: float, longitude: float, target_date: str, start_year: int, end_year: int
) -> Union[Dict[str, Any], str]:
    """
    Probability of extreme conditions on a calendar day, from GLDAS history

    Args:
        latitude: Latitude in degrees
        longitude: Longitude in degrees
        target_date: Day of interest, YYYY-MM-DD (only month and day matter)
        start_year: First historical year to sample
        end_year: Last historical year to sample
    """
    logger.info(f"Starting weather odds request for ({latitude}, {longitude}) on {target_date}")
    try:
        point = GeoPoint(lat=latitude, lon=longitude)
        results = await weather_service.analyze_years(point, date.fromisoformat(target_date), start_year, end_year)
        logger.info("Weather odds computed successfully")
        return results.model_dump(mode="json", by_alias=True)
    except Exception as e:
        logger.error(f"Error computing weather odds: {str(e)}")
        return f"Error: Unable to compute weather odds for ({latitude}, {longitude}). {str(e)}"


# Prompts
@mcp.prompt()
def weather_odds_interpretation(results: Dict[str, Any]) -> str:
    """Help interpret computed weather odds"""
    try:
        location = results.get("location") or {}
        lines = []
        for condition in results.get("conditions", []):
            lines.append(
                f"- {condition['label']}: {condition['probability']}% "
                f"(threshold {condition['threshold']:.2f}, {condition['occurrences']} of "
                f"{condition['sample_size']} samples, confidence {condition['confidence']}%)"
            )
        insufficient = ", ".join(results.get("insufficient", [])) or "none"
        quality = results.get("data_quality", {})

        return f"""Please explain these historical weather odds and provide:
        1. Which conditions are most and least likely on this day
        2. How much trust the sample sizes and data completeness allow
        3. Practical advice for planning an outdoor activity

        Location: {location.get("lat", 0.0):.3f}°N, {location.get("lon", 0.0):.3f}°E
        Target date: {results.get("target_date", "Unknown")}
        Data completeness: {quality.get("completeness", "N/A")}%

        Conditions:
{chr(10).join(lines)}

        Conditions without enough data: {insufficient}
        """
    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Error formatting weather odds interpretation: {str(e)}")
        return "Error: Unable to interpret weather odds due to missing or invalid data."


if __name__ == "__main__":
    mcp.run()
