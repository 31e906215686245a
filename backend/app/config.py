"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Workflow Execution Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database Settings (batch / execution metadata)
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/executions.db"
    SQLALCHEMY_ECHO: bool = False

    # Scheduler Settings
    MAX_WORKERS: int = 4  # global worker pool shared by all batches
    DEFAULT_BATCH_PRIORITY: int = 0
    DEFAULT_OUTPUT_PATH: str = "./output"
    EXECUTION_RELEASE_DELAY: float = 5.0  # seconds a finished execution stays in memory
    BATCH_RETENTION_DAYS: int = 30

    # Step Settings (milliseconds)
    DEFAULT_WAIT_TIMEOUT: int = 30000
    DEFAULT_RETRY_COUNT: int = 3
    DEFAULT_RETRY_DELAY: int = 1000
    DEFAULT_RETRY_TIMEOUT: int = 30000

    # Seconds between warnings for an execution left paused (0 disables)
    PAUSE_WARNING_AFTER: float = 300.0

    # Browser Settings
    BROWSER_HEADLESS: bool = True

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
