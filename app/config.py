import logging
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


logger = logging.getLogger(__name__)

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./handoff.db"

    # Security
    JWT_SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 1 day

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    FROM_EMAIL: Optional[str] = None
    FROM_NAME: str = "Support Team"
    SUPPORT_INBOX_EMAIL: Optional[str] = None

    # Environment
    ENVIRONMENT: str = "development"  # development, staging, production
    ALLOWED_ORIGINS: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def get_allowed_origins_list(self) -> List[str]:
        """Get allowed CORS origins as a list"""
        if not self.ALLOWED_ORIGINS:
            return ["*"]
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    def is_production(self) -> bool:
        """Check if running in production"""
        return self.ENVIRONMENT == "production"

    def is_staging(self) -> bool:
        """Check if running in staging/testing"""
        return self.ENVIRONMENT in ["staging", "testing"]

    def is_development(self) -> bool:
        """Check if running in development"""
        return self.ENVIRONMENT == "development"

    def requires_security_validation(self) -> bool:
        """Check if environment requires full security validation"""
        return self.ENVIRONMENT in ["production", "staging"]

    def validate_production_config(self):
        """Validate required configuration for production and staging"""
        if not self.requires_security_validation():
            return

        required_fields = {
            "JWT_SECRET_KEY": self.JWT_SECRET_KEY,
            "DATABASE_URL": self.DATABASE_URL,
        }

        missing = [key for key, value in required_fields.items() if not value]
        if missing:
            env_name = "production" if self.is_production() else "staging"
            raise ValueError(f"Missing required {env_name} config: {missing}")

        if len(self.JWT_SECRET_KEY) < 32:
            raise ValueError("JWT_SECRET_KEY must be at least 32 characters")

        if self.FROM_EMAIL and "@" not in self.FROM_EMAIL:
            raise ValueError("FROM_EMAIL must be a valid email address")

        if self.SUPPORT_INBOX_EMAIL and "@" not in self.SUPPORT_INBOX_EMAIL:
            raise ValueError("SUPPORT_INBOX_EMAIL must be a valid email address")

        if not self.DATABASE_URL.startswith(("postgresql://", "postgresql+psycopg://")):
            raise ValueError("DATABASE_URL must start with 'postgresql://' or 'postgresql+psycopg://'")

        if not self.RESEND_API_KEY or not self.SUPPORT_INBOX_EMAIL:
            logger.warning("Resend or support inbox not configured - after-hours notices will not be emailed")


settings = Settings()
