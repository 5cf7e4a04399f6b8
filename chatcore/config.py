import logging
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Messaging core configuration using environment variables."""
    
    # Application
    APP_NAME: str = "chatcore"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    
    # Database
    DATABASE_URL: str = "sqlite:///./chatcore.db"
    
    # Local key storage (one directory per signed-in user)
    KEY_STORE_DIR: str = "./.chatcore_keys"
    
    # Message limits
    MAX_MESSAGE_LENGTH: int = 5000
    DEFAULT_MESSAGE_PAGE_SIZE: int = 50
    
    # Synchronization
    UNREAD_POLL_INTERVAL_SECONDS: float = 10.0
    MIN_REFRESH_INTERVAL_SECONDS: float = 3.0
    
    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()


def configure_logging(settings: Settings) -> None:
    """Apply the configured log level to the package loggers."""
    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.getLogger("chatcore").setLevel(level)
