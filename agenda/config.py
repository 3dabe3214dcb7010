from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Database
    DATABASE_URL: Optional[str] = None
    DATABASE_PRIVATE_URL: Optional[str] = None

    # JWT
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_MINUTES: int = 43200  # 30 days

    # Display
    DISPLAY_TIMEZONE: str = "America/Sao_Paulo"
    CURRENCY_SYMBOL: str = "R$"

    # Repository retries (only used when the caller sends a purchase intent id)
    REPOSITORY_RETRY_ATTEMPTS: int = 3
    REPOSITORY_RETRY_DELAY: float = 0.5  # seconds, multiplied by attempt number

    # Logging
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: list = ["*"]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
