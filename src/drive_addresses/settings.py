from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ddb_path: Path = Path("drives.duckdb")

    # Nominatim
    nominatim_url: str = "https://nominatim.openstreetmap.org"
    nominatim_email: Optional[str] = None
    nominatim_user_agent: str = "drive-address-backfill/0.1"
    nominatim_proxy: Optional[str] = None
    nominatim_zoom: int = 18
    accept_language: Optional[str] = None
    request_timeout_s: float = 10.0
    requests_per_second: float = 1.0
    max_retries: int = 3
    retry_delay_s: float = 1.0

    unique_coordinates: bool = False

    log_level: str = "INFO"
    log_file: Optional[Path] = None

    model_config = SettingsConfigDict(
        env_prefix="BACKFILL_",
        env_file=".env",
        extra="ignore",
    )

settings = Settings()
