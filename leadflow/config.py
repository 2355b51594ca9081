"""
Application configuration using pydantic-settings.
Provider credentials are optional at startup - a transport without
credentials fails at send time with a TransportError.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost/leadflow"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Twilio (SMS)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_messaging_service_sid: str = ""

    # WhatsApp Cloud API
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_api_base_url: str = "https://graph.facebook.com/v19.0"
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""

    # SendGrid (email fallback)
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "messages@leadflow.app"
    sendgrid_from_name: str = "LeadFlow"

    # Webhooks
    allow_unsigned_webhooks: bool = False

    # Sentry
    sentry_dsn: str = ""

    # Scheduling defaults (per-client SMS settings override the hours)
    default_timezone: str = "America/New_York"
    default_business_hours_start: str = "09:00"
    default_business_hours_end: str = "18:00"
    booking_base_url: str = "https://book.leadflow.app"

    # Engine limits
    dispatch_timeout_seconds: float = 15.0
    scheduler_max_concurrency: int = 20
    clock_tick_interval_seconds: int = 60
    clock_tick_batch_size: int = 200
    scheduled_idle_minutes_default: int = 1440
    auto_reply_cooldown_minutes: int = 720

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
