"""Application configuration"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "Practice Billing API"
    VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database (audit log)
    DATABASE_URL: str = "postgresql://localhost:5432/practice_billing"

    # Stripe
    # WHY: Secrets are optional at import time so the app can boot for health
    # checks; every billing operation validates their presence before use.
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_VERSION: str = "2023-10-16"
    STRIPE_TIMEOUT_SECONDS: float = 20.0
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # FHIR record store
    FHIR_BASE_URL: str = "http://localhost:8103/fhir/R4"
    FHIR_ACCESS_TOKEN: Optional[str] = None
    FHIR_TIMEOUT_SECONDS: float = 15.0
    FHIR_EXTENSION_BASE_URL: str = "http://example.com/fhir/StructureDefinition/"
    FHIR_MAX_CONFLICT_RETRIES: int = 5

    # Plans
    PLAN_CATALOG_PATH: Optional[str] = None  # JSON file replacing the built-in catalog
    FREE_TIER_SESSIONS: int = 10

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    @property
    def stripe_configured(self) -> bool:
        """Both Stripe secrets are needed to take payments and verify events."""
        return bool(self.STRIPE_SECRET_KEY and self.STRIPE_WEBHOOK_SECRET)

    @property
    def async_database_url(self) -> str:
        """Get async database URL"""
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")


settings = Settings()
