from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    APP_NAME: str = "SURPLUS-EXCHANGE"
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    DATABASE_URL: str = "sqlite+pysqlite:///./surplus.db"
    LOCK_TIMEOUT_SECONDS: float = 5.0
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_MS: int = 50
    TRANSFER_LIST_MAX_PAGE_SIZE: int = 100
    AUDIT_LIST_MAX_PAGE_SIZE: int = 200
    LOG_LEVEL: str = "INFO"
    METRICS_ENABLED: bool = True
    NOTIFICATIONS_ENABLED: bool = True
    PLATFORM_ORGANIZATION_NAME: str = "Platform Operations"
    PLATFORM_ORGANIZATION_CATEGORY: str = "ENTERPRISE"
    PLATFORM_ADMIN_NAME: str = "Platform Admin"
    PLATFORM_ADMIN_EMAIL: str = "admin@example.com"
    PLATFORM_ADMIN_PASSWORD: str = "change-me"

settings = Settings()
