"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "DailySync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Storage ---
    store_backend: str = "postgres"  # postgres | memory
    supabase_url: str = ""
    supabase_service_role_key: str = ""  # server-side only — never expose to client
    supabase_db_url: str = ""  # direct postgres connection string for asyncpg

    # --- Providers ---
    whoop_client_id: str = ""
    whoop_client_secret: str = ""
    oura_client_id: str = ""
    oura_client_secret: str = ""
    oura_personal_token: str = ""

    # --- Sync engine ---
    device_timezone: str = "UTC"
    sync_config_path: str | None = None  # override for the bundled sync_config.yaml
    start_scheduler: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
