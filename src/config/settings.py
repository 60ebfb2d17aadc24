"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Downstream provider
    upstream_base_url: str = "https://api.openai.com"
    upstream_api_version: str = "v1"
    upstream_timeout: float = 60.0  # Read/write/pool timeout, seconds
    upstream_connect_timeout: float = 10.0

    # Relay and body limits
    stream_buffer_chunks: int = 16  # Max chunks held between downstream and caller
    max_upload_bytes: int = 512 * 1024 * 1024
    max_json_bytes: int = 32 * 1024 * 1024

    # HTTP surface
    cors_allow_origins: str = "*"
    host: str = "0.0.0.0"
    port: int = 8080
    lambda_base_path: str = "/"  # API Gateway stage prefix stripped by Mangum

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins."""
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @property
    def upstream_root(self) -> str:
        """Base URL joined with the API version, without a trailing slash."""
        base = self.upstream_base_url.rstrip("/")
        version = self.upstream_api_version.strip("/")
        return f"{base}/{version}" if version else base


@lru_cache
def get_settings() -> Settings:
    return Settings()
