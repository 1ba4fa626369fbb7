"""Error kinds raised across the ingest and analysis pipeline."""

from typing import Optional


class WeatherOddsError(Exception):
    """Base class for all errors raised by this package"""


class OutOfCoverage(WeatherOddsError, ValueError):
    """Location lies outside the GLDAS grid (latitude below -60 or above 90)"""

    def __init__(self, lat: float, lon: Optional[float] = None):
        self.lat = lat
        self.lon = lon
        super().__init__(f"Latitude {lat} is outside GLDAS coverage (-60 to 90)")


class EmptyResponse(WeatherOddsError, ValueError):
    """Payload yielded no coordinate axes or no variable samples"""


class PartialVariableFailure(WeatherOddsError):
    """A single named variable could not be decoded from an otherwise valid payload"""

    def __init__(self, variable: str, reason: str):
        self.variable = variable
        self.reason = reason
        super().__init__(f"{variable}: {reason}")


class InsufficientData(WeatherOddsError):
    """Seasonal window contains no samples for a condition"""

    def __init__(self, condition: Optional[str] = None, message: Optional[str] = None):
        self.condition = condition
        if message is None:
            target = f" for {condition}" if condition else ""
            message = f"No seasonal samples available{target}"
        super().__init__(message)


class FetchFailure(WeatherOddsError):
    """Remote resource could not be retrieved"""

    def __init__(self, resource: str, reason: str, status_code: Optional[int] = None):
        self.resource = resource
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Failed to fetch {resource}: {reason}")


class FetchTimeout(FetchFailure):
    """Remote resource did not answer within the configured timeout"""

    def __init__(self, resource: str, timeout: float):
        self.timeout = timeout
        super().__init__(resource, f"timed out after {timeout}s")


class NoDataCollected(WeatherOddsError):
    """Every timestep of a requested range failed"""
