"""
AnonVote Backend Configuration
Handles environment variables and application settings
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Dict, List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Application Settings
    APP_NAME: str = "AnonVote Backend"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./anonvote.db"
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # JWT Configuration (sessions are issued by the community web app)
    JWT_SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"

    # Blind signature key material (PEM, PKCS#8 private / SubjectPublicKeyInfo public)
    RSA_PRIVATE_KEY_PEM: Optional[str] = None
    RSA_PUBLIC_KEY_PEM: Optional[str] = None
    RSA_KEY_SIZE: int = 2048

    # Eligibility source
    ELIGIBILITY_BACKEND: str = "static"  # static | discord
    STATIC_ROLE_MEMBERS: Dict[str, List[str]] = {}
    ADMIN_ROLE_IDS: List[str] = []
    DISCORD_API_BASE: str = "https://discord.com/api/v10"
    DISCORD_BOT_TOKEN: Optional[str] = None
    DISCORD_GUILD_ID: Optional[str] = None
    DISCORD_REQUEST_TIMEOUT: float = 10.0

    # Default voting group for anonymous polls
    DEFAULT_GROUP_ROLE_ID: str = "voters"
    DEFAULT_GROUP_ROLE_NAME: str = "voters"
    DEFAULT_GROUP_NAME: str = "Default Voters"

    # Proof verification
    PROOF_VERIFY_TIMEOUT_SECONDS: float = 30.0

    # Group sync policy while a poll on the group is OPEN: block | allow
    SYNC_WHILE_OPEN: str = "block"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Global settings instance
settings = get_settings()
