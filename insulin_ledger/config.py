"""Application configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="INSULIN_LEDGER_",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./insulin_ledger.db"

    # Logging
    log_format: str = "json"  # 'json' or 'text'
    log_level: str = "INFO"
    service_name: str = "insulin-ledger"

    # Provenance stamped on every record created by this process
    provenance_identifier: str = "com.insulin-ledger"

    # Cache / retention
    cache_length_hours: int = 24  # Rows older than this may be purged
    device_log_max_entry_age_days: int = 7  # Never below 7 days

    # Dose normalization
    pump_event_reconciliation_window_hours: int = 6
    reconciliation_freshness_minutes: int = 15  # Trailing basal fill window

    # Critical event log export
    export_row_cost_ms: float = 1.0  # Estimated cost per exported row

    # Testing
    testing: bool = False


settings = Settings()
