from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from core_config.constants import (
    DEFAULT_INDEX_ROOT,
    DEFAULT_TRACKED_RESOURCE_TYPES,
    INDEX_TXN_MAX_ATTEMPTS,
    TIMEOUT_BACKEND_MS,
)

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    service_log_level: str = Field(default="INFO", alias="SERVICE_LOG_LEVEL")

    # Backend FHIR server
    default_fhir_url: str = Field(default="http://localhost:8080", alias="DEFAULT_FHIR_URL")
    # Where the edge is mounted locally, and the path it maps to on the backend.
    mount_path: str = Field(default="", alias="MOUNT_PATH")
    proxy_path: str = Field(default="", alias="PROXY_PATH")
    backend_timeout_ms: int = Field(default=TIMEOUT_BACKEND_MS, alias="BACKEND_TIMEOUT_MS")

    # Redis (ownership index)
    redis_url: str = Field(default="redis://redis:6379/0", alias="REDIS_URL")
    redis_max_connections: int = Field(default=100, alias="REDIS_MAX_CONNECTIONS")
    index_root: str = Field(default=DEFAULT_INDEX_ROOT, alias="INDEX_ROOT")
    index_txn_max_attempts: int = Field(default=INDEX_TXN_MAX_ATTEMPTS, alias="INDEX_TXN_MAX_ATTEMPTS")

    # Resource types enrolled in ownership tracking. Accepts comma string via env.
    tracked_resource_types_raw: str = Field(
        default=",".join(DEFAULT_TRACKED_RESOURCE_TYPES), alias="TRACKED_RESOURCE_TYPES"
    )
    @property
    def tracked_resource_types(self) -> frozenset[str]:  # noqa: D401
        """Allow-list of resource types whose ownership is indexed."""
        return frozenset(x.strip() for x in (self.tracked_resource_types_raw or "").split(",") if x.strip())

    # Caller identity (JWT bearer tokens)
    auth_jwt_secret: Optional[str] = Field(default=None, alias="AUTH_JWT_SECRET")
    auth_jwks_url: Optional[str] = Field(default=None, alias="AUTH_JWKS_URL")
    auth_jwt_algorithms_raw: str = Field(default="HS256", alias="AUTH_JWT_ALGORITHMS")
    auth_jwt_audience: Optional[str] = Field(default=None, alias="AUTH_JWT_AUDIENCE")
    auth_jwt_issuer: Optional[str] = Field(default=None, alias="AUTH_JWT_ISSUER")
    auth_caller_claim: str = Field(default="sub", alias="AUTH_CALLER_CLAIM")
    @property
    def auth_jwt_algorithms(self) -> list[str]:  # noqa: D401
        """Accepted JWT signing algorithms."""
        return [x.strip() for x in (self.auth_jwt_algorithms_raw or "").split(",") if x.strip()]

def get_settings() -> "Settings":
    return Settings()  # type: ignore
