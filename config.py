from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode
from typing import Annotated, List, Optional

class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./jobs.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 3000

    # Browser
    browser_executable_path: Optional[str] = None
    browser_args: Annotated[List[str], NoDecode] = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
    ]
    download_dir: str = "downloads"
    download_timeout: float = 300  # per job, at teardown

    # Page execution (seconds)
    navigation_timeout: float = 1800  # 30 minutes
    grace_period: float = 2.0
    fallback_period: float = 5.0

    # Viewport
    viewport_width: int = 1280
    viewport_height: int = 720
    max_viewport_width: int = 4096
    max_viewport_height: int = 16384

    # Worker
    poll_interval: float = 5.0
    record_attempts: int = 3
    record_backoff: float = 0.5  # doubles per attempt

    # Logging
    log_level: str = "INFO"
    log_file: str = "app.log"
    worker_log_file: str = "worker_profile.log"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @field_validator("browser_args", mode="before")
    @classmethod
    def split_browser_args(cls, value):
        # BROWSER_ARGS is a comma-separated string
        if isinstance(value, str):
            return [arg.strip() for arg in value.split(",") if arg.strip()]
        return value

    @field_validator("navigation_timeout", "poll_interval", "download_timeout", "record_attempts")
    @classmethod
    def must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("grace_period", "fallback_period", "record_backoff")
    @classmethod
    def must_not_be_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def check_viewport_bounds(self):
        if self.viewport_width <= 0 or self.viewport_height <= 0:
            raise ValueError("viewport dimensions must be positive")
        if (self.max_viewport_width < self.viewport_width
                or self.max_viewport_height < self.viewport_height):
            raise ValueError("max viewport must not be smaller than the initial viewport")
        return self

settings = Settings()
