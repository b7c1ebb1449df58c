"""
Configuration management module for the Transportation Invoicing Engine.
Loads and validates environment variables with type safety using Pydantic.
"""

from pathlib import Path
from typing import Optional, Dict, Any
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv


# Load environment variables from .env file
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


PROJECT_ROOT = Path(__file__).parent.parent.parent


class AppConfig(BaseSettings):
    """Application-wide configuration"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    app_log_level: str = Field(default="INFO")
    app_log_json: bool = Field(default=True)

    @field_validator("app_log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is valid"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("app_env")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment is valid"""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Invalid environment. Must be one of: {valid_envs}")
        return v.lower()


class MileageCacheConfig(BaseSettings):
    """Local mileage cache database configuration"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    mileage_cache_db_path: Path = Field(default=PROJECT_ROOT / "data" / "mileage_cache.db")
    mileage_cache_metadata_path: Optional[Path] = Field(default=None)
    company_address: str = Field(default="N5806 Co Rd M, Plymouth, WI 53073, USA")

    @property
    def metadata_path(self) -> Path:
        """Metadata file travels next to the database unless overridden"""
        if self.mileage_cache_metadata_path is not None:
            return self.mileage_cache_metadata_path
        return self.mileage_cache_db_path.with_suffix(".meta.json")


class RemoteMirrorConfig(BaseSettings):
    """Remote object store mirror of the mileage cache"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    remote_mirror_enabled: bool = Field(default=True)
    remote_mirror_bucket: str = Field(default="mileage-cache")
    remote_mirror_db_key: str = Field(default="mileage_cache.db")
    remote_mirror_metadata_key: str = Field(default="mileage_cache.meta.json")
    remote_mirror_region: Optional[str] = Field(default=None)
    remote_mirror_endpoint_url: Optional[str] = Field(default=None)


class DistanceConfig(BaseSettings):
    """Distance oracle (Google Maps Directions) configuration"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    google_maps_api_key: Optional[str] = Field(default=None)
    google_maps_base_url: str = Field(default="https://maps.googleapis.com/maps/api/directions/json")
    google_maps_timeout_seconds: float = Field(default=30.0, gt=0)


class InvoicingConfig(BaseSettings):
    """Invoice numbering and input handling"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    starting_invoice_number: int = Field(default=1000, ge=0)
    input_leading_lines: int = Field(default=1, ge=0)


class SyncConfig(BaseSettings):
    """Remote synchronization retry configuration"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    sync_retry_attempts: int = Field(default=3, ge=0)
    sync_retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    sync_retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    sync_fallback_decision: str = Field(default="continue")

    @field_validator("sync_fallback_decision")
    @classmethod
    def validate_fallback(cls, v):
        """Fallback after retries is either continue or abort"""
        valid = ["continue", "abort"]
        if v.lower() not in valid:
            raise ValueError(f"Invalid sync fallback decision. Must be one of: {valid}")
        return v.lower()


class Settings:
    """Main settings class that combines all configuration sections"""

    def __init__(self, **kwargs):
        self.app = kwargs.get("app") or AppConfig()
        self.mileage_cache = kwargs.get("mileage_cache") or MileageCacheConfig()
        self.remote_mirror = kwargs.get("remote_mirror") or RemoteMirrorConfig()
        self.distance = kwargs.get("distance") or DistanceConfig()
        self.invoicing = kwargs.get("invoicing") or InvoicingConfig()
        self.sync = kwargs.get("sync") or SyncConfig()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.app.app_env == "production"

    def to_dict(self, include_sensitive: bool = False) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        config = {
            "app": {
                "environment": self.app.app_env,
                "log_level": self.app.app_log_level,
            },
            "mileage_cache": {
                "db_path": str(self.mileage_cache.mileage_cache_db_path),
                "metadata_path": str(self.mileage_cache.metadata_path),
                "company_address": self.mileage_cache.company_address,
            },
            "remote_mirror": {
                "enabled": self.remote_mirror.remote_mirror_enabled,
                "bucket": self.remote_mirror.remote_mirror_bucket,
                "db_key": self.remote_mirror.remote_mirror_db_key,
                "metadata_key": self.remote_mirror.remote_mirror_metadata_key,
            },
            "distance": {
                "base_url": self.distance.google_maps_base_url,
                "timeout_seconds": self.distance.google_maps_timeout_seconds,
                "api_key_configured": bool(self.distance.google_maps_api_key),
            },
            "invoicing": {
                "starting_invoice_number": self.invoicing.starting_invoice_number,
            },
            "sync": {
                "retry_attempts": self.sync.sync_retry_attempts,
                "fallback_decision": self.sync.sync_fallback_decision,
            },
        }

        if include_sensitive and self.distance.google_maps_api_key:
            config["distance"]["api_key"] = self.distance.google_maps_api_key[:6] + "..."

        return config


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings instance

    Example:
        >>> from backend.core.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.invoicing.starting_invoice_number)
        1000
    """
    return Settings()


if __name__ == "__main__":
    import json

    try:
        config = get_settings()
        print("✓ Configuration loaded successfully!")
        print("\nConfiguration summary:")
        print(json.dumps(config.to_dict(), indent=2))
    except Exception as e:
        print(f"✗ Configuration error: {e}")
        import sys
        sys.exit(1)
