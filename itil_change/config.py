"""Application configuration."""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHANGE_", env_file=".env", extra="ignore")

    LOG_LEVEL: str = "INFO"

    # Single writer per change; waiting longer than this fails with ChangeBusy
    LOCK_TIMEOUT_SECONDS: float = 10.0

    # Outbound calls (user directory, ticket/problem history)
    EXTERNAL_CALL_ATTEMPTS: int = 3
    EXTERNAL_CALL_BASE_DELAY: float = 0.1
    EXTERNAL_CALL_MAX_DELAY: float = 2.0
    EXTERNAL_CALL_TIMEOUT: float = 5.0

    HISTORY_PAGE_SIZE: int = 50

    # CORS configuration - comma-separated origins
    CORS_ORIGINS: str = "http://localhost:5173"

    def get_cors_origins(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
