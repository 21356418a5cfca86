import logging
import os
import tomllib
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_version() -> str:
    """Version from TWOFACTOR_VERSION, else the project table in pyproject.toml."""
    if env_version := os.getenv("TWOFACTOR_VERSION"):
        return env_version

    pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
    try:
        with pyproject.open("rb") as f:
            return tomllib.load(f)["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "0.0.0-dev"


APP_VERSION = _get_version()

INSECURE_SECRET_DEFAULTS = [
    "dev-secret-key-change-in-prod",
    "default-dev-key-change-in-prod",
    "secret",
    "changeme",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "twofactor"
    POSTGRES_PASSWORD: str = "devpassword"
    POSTGRES_DB: str = "twofactor"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40

    @property
    def DATABASE_URL(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # Redis (shared rate-limit counters)
    REDIS_URL: str = "redis://localhost:6379"

    # JWT issued by the identity provider; only decoded here
    JWT_SECRET_KEY: str = "dev-secret-key-change-in-prod"  # ALWAYS override via env var in production
    JWT_ALGORITHM: str = "HS256"
    # Lifetime of tokens minted locally by create_access_token (tests, dev)
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # App
    APP_NAME: str = "twofactor"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000"

    # TOTP enrollment
    TOTP_ISSUER: str = "μ-intern"
    QR_CODE_ENDPOINT: str = "https://api.qrserver.com/v1/create-qr-code/"
    QR_CODE_SIZE: str = "200x200"

    # Setup on an already-enabled credential overwrites the secret and drops
    # the credential back to pending. Set to False to require a disable first.
    ALLOW_REPROVISION_WHEN_ENABLED: bool = True

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"LOG_LEVEL must be a standard logging level, got '{v}'")
        return level

    @field_validator("JWT_SECRET_KEY")
    @classmethod
    def validate_secrets(cls, v: str, info) -> str:
        """Reject empty, well-known or short signing keys outside DEBUG."""
        hint = "Generate one with: openssl rand -base64 32"
        if not v.strip():
            raise ValueError(f"{info.field_name} is empty. {hint}")

        if v.lower() in INSECURE_SECRET_DEFAULTS:
            # Read from the environment: DEBUG may not be validated yet
            if os.environ.get("DEBUG", "").lower() not in ("true", "1", "yes"):
                raise ValueError(f"{info.field_name} is an insecure default value. {hint}")
            logging.getLogger(__name__).warning(
                f"{info.field_name} is an insecure default; tolerated only because DEBUG is set"
            )
        elif len(v) < 32:
            raise ValueError(f"{info.field_name} must be at least 32 characters long. {hint}")

        return v

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()
