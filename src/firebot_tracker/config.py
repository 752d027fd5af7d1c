"""Configuration for firebot-tracker."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FIREBOT_TRACKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = "firebot-tracker"
    default_lat: float = 30.0444
    default_lng: float = 31.2357
    device_gps_enabled: bool = True
    phone_gps_enabled: bool = False
    fallback_interval_sec: float = 0.9
    fallback_step_deg: float = 0.00025
    watch_maximum_age_sec: float = 1.0
    watch_timeout_sec: float = 15.0
    boost_target_accuracy_m: float = 25.0
    boost_budget_sec: float = 20.0
    boost_attempt_timeout_sec: float = 8.0
    geocode_debounce_sec: float = 0.6
    geocode_base_url: str = "https://nominatim.openstreetmap.org"
    geocode_user_agent: str = "firebot-tracker/0.1"
    geocode_timeout_sec: float = 5.0
    phone_stream_url: str = ""
    phone_reconnect_initial_sec: float = 1.0
    phone_reconnect_max_sec: float = 30.0
    notify_cooldown_sec: float = 5.0
    notify_history_size: int = 50
    position_push_interval_sec: float = 0.5
    gps_serial_port: str = "/dev/ttyACM0"
    gps_baudrate: int = 9600
    gps_read_timeout_sec: float = 1.0
    gps_reopen_delay_sec: float = 2.0


settings = Settings()
