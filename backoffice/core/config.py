from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Channel Back-Office"
    APP_PORT: int = 9202
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    SQLALCHEMY_DATABASE_URI: Optional[str] = None
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "backoffice"
    POSTGRES_PORT: int = 5432
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Money
    DEFAULT_CURRENCY: str = "TRY"

    # Shipping
    DEFAULT_SHIPPING_VAT_RATE: float = 20.0

    # Webhooks
    WEBHOOK_MAX_ATTEMPTS: int = 5
    WEBHOOK_RETRY_BASE_SECONDS: int = 30
    WEBHOOK_POLL_INTERVAL_SECONDS: int = 30
    WEBHOOK_VERIFY_SIGNATURES: bool = True

    # Sync
    SYNC_PAGE_SIZE: int = 50
    SYNC_LOOKBACK_HOURS: int = 2

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Paths
    LABEL_STORAGE_PATH: str = "./storage/return-labels"

    @property
    def DATABASE_URL(self) -> str:
        if self.SQLALCHEMY_DATABASE_URI:
            return self.SQLALCHEMY_DATABASE_URI
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
