from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    """Application configuration loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Platform backend
    api_url: str = "http://localhost:5001"
    api_timeout_seconds: float = 15.0

    # Embedded Signup flow
    esb_launch_mode: Literal["redirect", "popup"] = "redirect"
    esb_poll_interval_seconds: float = 3.0
    esb_poll_max_duration_seconds: float = 5 * 60
    phone_min_length: int = 6
    otp_length: int = 6
    esb_session_idle_ttl_seconds: float = 30 * 60

    # CORS
    cors_origins: str = "*"  # Comma-separated origins or * for dev

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True

    @property
    def api_base_url(self) -> str:
        """Backend base URL, always ending in /api/v1."""
        clean = self.api_url.rstrip("/")
        if clean.endswith("/api/v1"):
            return clean
        return f"{clean}/api/v1"

    @property
    def cors_origin_list(self) -> list[str]:
        if self.cors_origins == "*":
            return ["*"]
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Global settings instance
settings = Settings()
