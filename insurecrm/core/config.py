"""
Application settings

All runtime configuration is read from the environment (or a local .env file).
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration for the CRM backend"""
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "InsureCRM"
    environment: str = "development"
    debug: bool = False
    app_url: str = "http://localhost:8000"
    cors_origins: str = "*"

    # Database
    database_url: str = "sqlite:///./insurecrm.db"
    database_echo: bool = False

    # Secrets
    encryption_key: Optional[str] = Field(None, description="32-byte key, hex encoded")
    widget_secret: str = Field("change-me-widget-secret", description="HMAC secret for widget tokens")
    jwt_secret: str = Field("change-me-jwt-secret", description="Signing secret for access tokens")
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24

    # OpenAI
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4"
    openai_temperature: float = 0.7
    openai_max_tokens: int = 300
    openai_timeout: float = 30.0

    # WhatsApp Business (Meta Graph API)
    whatsapp_graph_api_base: str = "https://graph.facebook.com"
    whatsapp_graph_api_version: str = "v18.0"
    whatsapp_api_timeout: float = 10.0

    # Widget
    widget_token_ttl_seconds: int = 86400

    # Tenancy
    trial_period_days: int = 30

    # Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: Optional[str] = None
    campaign_lease_seconds: int = 300

    # Logging
    log_level: str = "INFO"
    use_json_logging: bool = False

    def get_celery_broker_url(self) -> str:
        return self.celery_broker_url

    def get_celery_result_backend(self) -> str:
        return self.celery_result_backend or self.celery_broker_url

    def get_cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
