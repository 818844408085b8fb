"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All deployment configuration is loaded from environment variables (or .env file).

    Halachic and scheduling constants live in ``tracking_config.yaml`` instead,
    see ``src.tracking.config_loader``.
    """

    # --- App ---
    app_name: str = "MikvahCal"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = "postgresql://localhost:5432/mikvahcal"
    database_pool_min: int = 2
    database_pool_max: int = 20
    database_command_timeout: float = 30.0

    # --- Brevo (transactional email) ---
    brevo_api_key: str = ""  # server-side only
    brevo_api_url: str = "https://api.brevo.com/v3/smtp/email"
    sender_email: str = "no-reply@freemikvahcal.com"
    sender_name: str = "FreeMikvahCal"

    # --- Background sweeps ---
    sweeps_enabled: bool = True

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
