"""Configuration settings for the building sensor analytics service."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (telemetry store backing the SQL gateway)
    database_url: str = "sqlite:///./building_sensors.db"
    query_timeout_seconds: int = 5

    # Application
    api_prefix: str = "/api/v2"
    log_level: str = "INFO"

    # Fleet health alerts
    default_offline_threshold_minutes: int = 5
    default_battery_warning_threshold: int = 20
    maintenance_due_alert_days: int = 7
    alert_sample_size: int = 10          # Devices listed per alert category

    # Predictive maintenance rules
    battery_critical_threshold: float = 15
    predictive_maintenance_days: int = 3
    high_error_count_threshold: int = 10

    # Maintenance forecast tiers
    battery_warning_forecast_threshold: float = 30
    warranty_watch_days: int = 30

    # Temperature correlation
    default_device_temp_threshold: float = 75.0
    default_ambient_temp_threshold: float = 28.0
    ambient_alignment_tolerance_seconds: int = 300  # Nearest-timestamp match window (5 minutes)

    # Audit trail reconstruction
    audit_update_epsilon_ms: int = 1      # updated_at must trail created_at by more than this
    audit_device_batch_size: int = 500    # Devices fetched per gateway call for the global feed

    # Streaming reads for aggregate reports
    reading_batch_size: int = 1000        # Readings fetched per gateway call

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100
    max_analytics_page_size: int = 1000

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
