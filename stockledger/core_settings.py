from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./stockledger.db"
    SERVICE_NAME: str = "stock-ledger-service"
    SERVICE_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    RUN_MIGRATIONS_ON_STARTUP: bool = False

    # Reservation expiry policy
    RESERVATION_TTL_MINUTES: int = 15
    RESERVATION_SWEEP_ENABLED: bool = True
    RESERVATION_SWEEP_INTERVAL_SECONDS: int = 60

    # Optimistic lock retry policy
    OPTIMISTIC_LOCK_MAX_ATTEMPTS: int = 5
    OPTIMISTIC_LOCK_BACKOFF_SECONDS: float = 0.1
    OPTIMISTIC_LOCK_BACKOFF_MULTIPLIER: float = 2.0
    OPTIMISTIC_LOCK_MAX_BACKOFF_SECONDS: float = 0.8

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

@lru_cache
def get_settings() -> Settings:
    return Settings()
