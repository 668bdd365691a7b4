from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: Optional[str] = None
    POSTGRES_USER: str = "incidentdesk"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_DB: str = "incidentdesk"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    # Create tables at startup instead of running migrations (local/dev only)
    AUTO_CREATE_SCHEMA: bool = False

    # Field encryption master key (>= 32 chars)
    ENCRYPTION_KEY: str = ""

    # development | test | production
    ENVIRONMENT: str = "development"

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    # Logging
    LOG_LEVEL: str = "INFO"

    # Authorization
    ROLE_CACHE_TTL_SECONDS: float = 300.0

    # Audit dispatch
    AUDIT_MAX_ATTEMPTS: int = 3

    class Config:
        env_file = ".env"
        extra = "allow"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
