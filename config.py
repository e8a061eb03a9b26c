from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration, read from the environment (and ``.env``)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "E-commerce SaaS API"
    host: str = "0.0.0.0"
    port: int = 8000

    # Store
    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: Optional[str] = Field(None, description="MongoDB database name")
    store_timeout_ms: int = Field(5000, ge=1, description="Upper bound for a single store call")

    # Accounts
    jwt_secret: SecretStr = Field(SecretStr("change-me"), description="Token signing key")
    jwt_algorithm: str = "HS256"
    token_ttl_minutes: int = Field(60 * 24, ge=1)
    auth_salt: str = "flames_saas"

    # Consistency
    max_update_retries: int = Field(5, ge=1, description="Attempts for a versioned read-modify-write")
    enforce_status_graph: bool = Field(True, description="Reject status changes outside the lifecycle graph")
    enforce_address_ownership: bool = Field(True, description="Only the owner may make an address default")
    require_shipping_address: bool = Field(False, description="Reject orders that resolve no address")

    # Listing
    default_page_size: int = Field(10, ge=1)
    max_page_size: int = Field(100, ge=1)

    log_format: Optional[str] = Field(None, description="json | console")


@lru_cache
def get_settings() -> Settings:
    return Settings()
