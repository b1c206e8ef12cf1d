import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_URL: str = "http://localhost:3000/api"
    PROBE_URL: str = ""  # empty: probe API_URL
    STORE_PATH: str = "~/.chordbook/records.json"
    REQUEST_TIMEOUT: float = 10.0
    PROBE_TIMEOUT: float = 5.0
    CHECK_INTERVAL: float = 30.0
    SYNC_COOLDOWN: float = 5.0
    FORCE_OFFLINE: bool = False
    LOG_LEVEL: str = "WARNING"

    class Config:
        env_prefix = "CHORDBOOK_"
        env_file = ".env"

    @property
    def store_file(self) -> Path:
        return Path(self.STORE_PATH).expanduser()

    @property
    def probe_url(self) -> str:
        return self.PROBE_URL or self.API_URL


@lru_cache()
def get_settings() -> Settings:
    # Tests point at their own env file
    if os.getenv("CHORDBOOK_ENV") == "test":
        load_dotenv(".env.test")
    else:
        load_dotenv(".env")
    return Settings()
