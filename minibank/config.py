"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerConfig(BaseSettings):
    """Minibank ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="MINIBANK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///path/to/ledger.db
    store_timeout_seconds: float = 5.0  # Lock and sqlite busy timeout

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Credential hashing (scrypt cost parameters)
    scrypt_n: int = 16384
    scrypt_r: int = 8
    scrypt_p: int = 1

    # Authority granted to every authenticated principal
    default_authority: str = "User"


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
