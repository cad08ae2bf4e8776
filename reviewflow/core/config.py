"""
Application configuration

Settings are read from environment variables (or a local .env file) once per
process and shared through get_settings().
"""
from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from reviewflow.integrations.constants import GOOGLE_BUSINESS_API_URL, GOOGLE_TOKEN_URL


class Settings(BaseSettings):
    """ReviewFlow settings"""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Application
    app_name: str = "ReviewFlow"
    app_version: str = "1.0.0"
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    use_json_logging: bool = False

    # Database
    database_url: str = "sqlite:///./reviewflow.db"

    # Credential encryption
    credentials_encryption_key: Optional[str] = None
    credentials_encryption_kid: str = "default"
    # Retired keys still accepted for decryption: "kid1=key1,kid2=key2"
    credentials_previous_keys: str = ""

    # Google Business Profile
    google_business_api_url: str = GOOGLE_BUSINESS_API_URL
    google_token_url: str = GOOGLE_TOKEN_URL
    google_http_timeout: float = 30.0

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def previous_keys(self) -> Dict[str, str]:
        """Parse the retired key list into a kid -> key mapping"""
        keys = {}
        for entry in self.credentials_previous_keys.split(","):
            entry = entry.strip()
            if not entry or "=" not in entry:
                continue
            kid, key = entry.split("=", 1)
            keys[kid.strip()] = key.strip()
        return keys


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
