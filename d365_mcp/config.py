from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    environment: str = "dev"

    # Identity and resource. Validated at first use, not at import.
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    dynamics_resource_url: str | None = None
    authority_host: str = "https://login.microsoftonline.com"

    token_expiry_buffer_seconds: int = 60
    fuzzy_threshold: float = 0.6
    default_page_size: int = 5

    http_timeout_seconds: float = 30.0
    max_retry_attempts: int = 3

    session_idle_timeout_seconds: float = 3600.0
    session_sweep_interval_seconds: float = 60.0
    json_response: bool = False

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    otel_exporter_otlp_endpoint: str | None = None
    otel_api_key: str | None = None

    @field_validator("dynamics_resource_url", "authority_host")
    @classmethod
    def strip_trailing_slash(cls, value: str | None) -> str | None:
        if value:
            return value.rstrip("/")
        return value


settings = Settings()
