"""
Application configuration management
Loads environment variables and provides type-safe configuration access
Supports both local .env files and cloud environment variables
"""

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


def get_env_file() -> str | None:
    """
    Determine which .env file to use (if any).
    Priority: .env.production > .env > None (cloud env vars only)
    """
    if Path(".env.production").exists():
        return ".env.production"
    elif Path(".env").exists():
        return ".env"
    return None


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    This configuration works in multiple contexts:
    - Local development: Reads from .env or .env.production
    - Cloud deployment: Reads from injected environment variables
    - Docker: Reads from environment variables passed to container
    """

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    DATABASE_URL: str

    # Redis
    REDIS_URL: str

    # Webhook authentication (HMAC-SHA256 over the raw body)
    ENVIO_WEBHOOK_SECRET: str | None = None
    WEBHOOK_SIGNATURE_HEADER: str = "X-Envio-Signature"

    # Chain access
    RPC_URL: str = "http://localhost:8545"
    BUNDLER_URL: str = "http://localhost:4337"
    CHAIN_ID: int = 10143

    # Account abstraction contracts
    ENTRYPOINT_ADDRESS: str = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
    DELEGATION_MANAGER_ADDRESS: str = "0xdb9B1e94B5b69Df7e401DDbedE43491141047dB3"

    # Relayer (the single submitter identity for every batch)
    RELAYER_PRIVATE_KEY: str | None = None
    RELAYER_SMART_ACCOUNT_ADDRESS: str | None = None

    # Batch submission policy
    BATCH_RECEIPT_TIMEOUT_SECONDS: float = 60.0
    BATCH_RECEIPT_POLL_INTERVAL_SECONDS: float = 1.0
    BATCH_SUBMIT_RETRIES: int = 1
    BATCH_KEY_TTL_SECONDS: int = 86400

    # Gas fallbacks when the node does not report EIP-1559 fee data (wei)
    FALLBACK_MAX_FEE_PER_GAS: int = 2_000_000_000  # 2 gwei
    FALLBACK_MAX_PRIORITY_FEE_PER_GAS: int = 1_000_000_000  # 1 gwei

    # Application URLs
    FRONTEND_URL: str = "http://localhost:3000"

    # Environment
    ENVIRONMENT: Literal["development", "staging", "production"] = "production"
    DEBUG: bool = False

    # CORS
    @property
    def CORS_ORIGINS(self) -> list[str]:
        """Get allowed CORS origins"""
        origins = [self.FRONTEND_URL]
        if self.ENVIRONMENT == "development":
            origins.extend([
                "http://localhost:3000",
                "http://localhost:8000"
            ])
        return origins

    # Rate Limiting
    RATE_LIMIT_WEBHOOK: str = "600/minute"
    RATE_LIMIT_DELEGATIONS: str = "30/minute"

    @property
    def webhook_auth_required(self) -> bool:
        """Unsigned webhooks are only tolerated outside production."""
        return bool(self.ENVIO_WEBHOOK_SECRET) or self.ENVIRONMENT == "production"


# Global settings instance
settings = Settings()
