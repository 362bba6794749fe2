"""
Configuration management for the storefront security pipeline.
Centralized configuration with environment variables and per-profile SSRF policy.
"""
from typing import Annotated, Dict, List, Optional
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import Field, field_validator


class SecurityError(Exception):
    """Security configuration error."""
    pass


# Outbound URL policy per profile. Development allows loopback targets and a
# broader allow-list; production is strict.
SSRF_PROFILES: Dict[str, Dict[str, object]] = {
    "development": {
        "allowed_domains": [
            "localhost",
            "127.0.0.1",
            "0.0.0.0",
            "api.stripe.com",
            "api.cloudinary.com",
            "res.cloudinary.com",
        ],
        "allow_private_networks": True,
        "strict_mode": False,
    },
    "production": {
        "allowed_domains": [
            "api.stripe.com",
            "api.cloudinary.com",
            "res.cloudinary.com",
        ],
        "allow_private_networks": False,
        "strict_mode": True,
    },
}


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Environment
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    # Application configuration
    app_name: str = Field(default="Storefront API", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    debug: bool = Field(default=False, validation_alias="DEBUG")

    # Logging
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_dir: str = Field(default="logs", validation_alias="LOG_DIR")
    file_logging_enabled: bool = Field(default=True, validation_alias="FILE_LOGGING_ENABLED")

    # Origins
    frontend_url: str = Field(default="http://localhost:5173", validation_alias="FRONTEND_URL")
    frontend_domain: Optional[str] = Field(default=None, validation_alias="FRONTEND_DOMAIN")
    default_origin: str = Field(default="http://localhost:5173", validation_alias="DEFAULT_ORIGIN")
    cors_origins: Annotated[List[str], NoDecode] = Field(
        default=["http://localhost:5173", "https://localhost:5173"],
        validation_alias="ALLOWED_ORIGINS"
    )

    # Security monitoring
    security_admin_token: Optional[str] = Field(default=None, validation_alias="SECURITY_ADMIN_TOKEN")
    trusted_ips: Annotated[List[str], NoDecode] = Field(default_factory=list, validation_alias="TRUSTED_IPS")
    # Reverse proxies whose X-Forwarded-For header is honored
    trusted_proxies: Annotated[List[str], NoDecode] = Field(default_factory=list, validation_alias="TRUSTED_PROXIES")
    suspicious_event_threshold: int = Field(default=10, validation_alias="SUSPICIOUS_EVENT_THRESHOLD")
    suspicious_window_seconds: int = Field(default=15 * 60, validation_alias="SUSPICIOUS_WINDOW_SECONDS")
    event_buffer_size: int = Field(default=100, validation_alias="EVENT_BUFFER_SIZE")
    block_suspicious_clients: bool = Field(default=True, validation_alias="BLOCK_SUSPICIOUS_CLIENTS")

    # Error Handling
    verbose_error_messages: bool = Field(default=False, validation_alias="VERBOSE_ERROR_MESSAGES")

    # Security Headers
    security_headers_enabled: bool = Field(default=True, validation_alias="SECURITY_HEADERS_ENABLED")
    hsts_max_age: int = Field(default=31536000, validation_alias="HSTS_MAX_AGE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("trusted_ips", "trusted_proxies", "cors_origins", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() in ["development", "dev", "local"]

    def is_testing(self) -> bool:
        return self.environment.lower() in ["test", "testing"]

    @property
    def profile(self) -> str:
        """SSRF/strictness profile; anything that is not production is treated as development."""
        return "production" if self.is_production() else "development"

    def get_ssrf_config(self) -> Dict[str, object]:
        """Get the outbound URL policy for the active profile."""
        base = SSRF_PROFILES[self.profile]
        domains = list(base["allowed_domains"])
        if self.frontend_domain and self.frontend_domain not in domains:
            domains.append(self.frontend_domain.lower())
        return {
            "allowed_domains": domains,
            "allow_private_networks": base["allow_private_networks"],
            "strict_mode": base["strict_mode"],
        }

    def show_error_details(self) -> bool:
        """Whether user-facing failures may carry internal detail strings."""
        if self.is_production():
            return False
        return self.verbose_error_messages or self.is_development() or self.debug

    def validate_production_security(self) -> None:
        """Validate that security configurations are production-ready."""
        if not self.is_production():
            return

        security_errors = []

        if self.debug:
            security_errors.append("DEBUG must be False in production")

        if self.verbose_error_messages:
            security_errors.append("VERBOSE_ERROR_MESSAGES must be disabled in production")

        if not self.security_admin_token or len(self.security_admin_token) < 32:
            security_errors.append("SECURITY_ADMIN_TOKEN must be at least 32 characters in production")

        if not self.default_origin.startswith("https://"):
            security_errors.append("DEFAULT_ORIGIN must use https in production")

        if security_errors:
            error_message = "CRITICAL SECURITY VIOLATIONS:\n" + "\n".join(f"- {error}" for error in security_errors)
            raise SecurityError(error_message)

    def get_security_headers(self) -> dict:
        """Get security headers configuration."""
        headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "X-XSS-Protection": "1; mode=block",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }

        if self.is_production() and self.security_headers_enabled:
            headers["Strict-Transport-Security"] = f"max-age={self.hsts_max_age}; includeSubDomains; preload"

        return headers


# Global settings instance
settings = Settings()
