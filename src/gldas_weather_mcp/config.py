from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_VARIABLES = [
    "Tair_f_inst",
    "Rainf_f_tavg",
    "Wind_f_inst",
    "Qair_f_inst",
    "Psurf_f_inst",
    "Albedo_inst",
]


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
    nasa_token: Optional[str] = None
    opendap_base_url: str = "https://hydro1.gesdisc.eosdis.nasa.gov/opendap/GLDAS/GLDAS_NOAH025_3H.2.1"
    fetch_timeout: float = 30.0
    max_retries: int = 2
    max_concurrency: int = 8
    response_format: str = "ascii"
    variables: List[str] = DEFAULT_VARIABLES
    cache_size: int = 128
    port: int = 8001


config = Config()
