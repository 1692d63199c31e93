"""Application configuration via environment variables and .env file."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")

SCANNER_MODES = ("ble", "mock", "none")


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "PILLWATCH_",
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database
    db_path: Path = Path("./data/pillwatch.db")

    # Logging
    log_level: str = "info"

    # Beacon radio backend: "ble", "mock" or "none"
    scanner_mode: str = "none"

    # Beacon thresholds
    rssi_threshold: int = -55  # weaker advertisements are dropped
    sensor_open_threshold: int = Field(default=128, ge=0, le=255)  # byte > this = lid open

    # Adherence
    box_count: int = Field(default=10, ge=1)
    due_window_seconds: int = Field(default=60, ge=1)
    evaluation_interval: int = Field(default=60, ge=1)  # seconds between ticks

    # Notifications
    dispatch_interval: float = Field(default=1.0, gt=0)
    wrong_box_delay_seconds: int = Field(default=1, ge=0)
    daily_reminders: bool = True
    webhook_url: str | None = None

    # Authentication (leave the password unset to disable)
    auth_username: str = "admin"
    auth_password: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("scanner_mode", mode="before")
    @classmethod
    def parse_scanner_mode(cls, v: object) -> str:
        """Normalize case/whitespace and reject unknown backends."""
        mode = str(v or "none").strip().lower()
        if mode not in SCANNER_MODES:
            raise ValueError(f"scanner_mode must be one of {', '.join(SCANNER_MODES)}")
        return mode


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
