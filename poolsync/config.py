from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Runtime
    ENV: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Network
    NETWORK_MODE: str = Field(default="mainnet")  # mainnet | testnet
    CHAIN_ID: int = Field(default=8453)
    BACKEND_BASE_URL: str = Field(default="http://localhost:3000")
    POOLS_CONFIG_PATH: str = Field(default="pools.json")

    # Datastores
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    ENABLE_REDIS: bool = Field(default=False)

    # Observability
    LOKI_URL: str = Field(default="http://localhost:3100")
    ENABLE_LOKI: bool = Field(default=False)

    # External APIs
    COINGECKO_BASE_URL: str = Field(default="https://api.coingecko.com/api/v3")

    # Reconciliation
    REFRESH_THROTTLE_MS: int = Field(default=2000)
    INVALIDATION_REFETCH_DELAY_SECONDS: float = Field(default=3.0)
    POSITION_IDS_TTL_SECONDS: int = Field(default=3600)
    OVERLAY_MAX_AGE_SECONDS: int = Field(default=300)
    MAX_OWNER_PAGES: int = Field(default=256, ge=1)

    # Chart
    CHART_TARGET_DAYS: int = Field(default=60)
    CHART_FETCH_ATTEMPTS: int = Field(default=2)
    CHART_FETCH_BASE_DELAY_SECONDS: float = Field(default=0.3)

    # Polling
    POOL_STATE_POLL_SECONDS: int = Field(default=15)
    PRICE_POLL_SECONDS: int = Field(default=60)

    def chain_label(self) -> str:
        return "BASE" if self.NETWORK_MODE == "mainnet" else "BASE_SEPOLIA"

    def backend_url(self, path: str) -> str:
        return f"{self.BACKEND_BASE_URL.rstrip('/')}/{path.lstrip('/')}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
