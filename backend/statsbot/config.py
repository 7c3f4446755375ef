"""
Stats Bot Configuration
Configuration management for the stats worker
"""
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog import get_logger

# Load environment variables
load_dotenv()

logger = get_logger()

# Base directory
BASE_DIR = Path(__file__).parent


class StatsBotSettings(BaseSettings):
    """Stats bot configuration settings"""

    model_config = SettingsConfigDict(env_file='.env', case_sensitive=False, extra='ignore')

    # Bot identification
    DISCORD_BOT_TOKEN: str = Field('')
    BOT_PREFIX: str = Field('!')

    # Discord server configuration
    DISCORD_GUILD_ID: Optional[int] = Field(None)
    COMMAND_SYNC_GUILD_ONLY: bool = Field(False)

    # Database configuration
    DATABASE_URL: str = Field('sqlite:///stats.db')
    DATABASE_POOL_SIZE: int = Field(5)
    DATABASE_MAX_OVERFLOW: int = Field(10)
    DATABASE_CONNECT_ATTEMPTS: int = Field(5)
    DATABASE_CONNECT_DELAY: float = Field(2.0)  # seconds

    # Write-back configuration
    FLUSH_INTERVAL: float = Field(10.0)  # seconds

    # Statistics settings
    STATS_WINDOW_DAYS: int = Field(7)
    TOP_CHANNELS_LIMIT: int = Field(3)
    LEADERBOARD_LIMIT: int = Field(5)  # users listed by /stats server
    COMMAND_RATE_LIMIT: float = Field(5.0)  # seconds between /stats calls per user

    # Logging configuration
    LOG_LEVEL: str = Field('INFO')
    LOG_FILE: Optional[str] = Field(None)
    LOG_FORMAT: str = Field('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Development settings
    DEBUG: bool = Field(False)

    @field_validator('FLUSH_INTERVAL', 'COMMAND_RATE_LIMIT', 'DATABASE_CONNECT_DELAY')
    @classmethod
    def validate_positive_seconds(cls, v):
        if v <= 0:
            raise ValueError('interval must be greater than zero')
        return v

    @field_validator('STATS_WINDOW_DAYS', 'DATABASE_CONNECT_ATTEMPTS', 'LEADERBOARD_LIMIT')
    @classmethod
    def validate_at_least_one(cls, v):
        if v < 1:
            raise ValueError('value must be at least 1')
        return v

    @field_validator('TOP_CHANNELS_LIMIT')
    @classmethod
    def validate_top_channels(cls, v):
        if v < 0:
            raise ValueError('TOP_CHANNELS_LIMIT cannot be negative')
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'Unknown log level: {v}')
        return level


class DevelopmentSettings(StatsBotSettings):
    """Development configuration overrides"""

    DEBUG: bool = True
    LOG_LEVEL: str = 'DEBUG'

    # Flush more often so restarts lose less while iterating
    FLUSH_INTERVAL: float = 5.0
    COMMAND_RATE_LIMIT: float = 1.0

    DATABASE_URL: str = Field('sqlite:///./dev_stats.db')


class ProductionSettings(StatsBotSettings):
    """Production configuration overrides"""

    DEBUG: bool = False


def get_config(environment: str = 'production') -> StatsBotSettings:
    """
    Get bot configuration based on environment

    Args:
        environment: Environment name ('development', 'production')

    Returns:
        Settings instance
    """
    if environment == 'development':
        config = DevelopmentSettings()
    else:
        # Default to production for unknown environments
        config = ProductionSettings()

    # Log configuration (without sensitive data)
    log_config = {
        k: v for k, v in config.model_dump().items()
        if k not in ('DISCORD_BOT_TOKEN', 'DATABASE_URL')
    }
    logger.debug("Bot configuration loaded", environment=environment, config=log_config)

    return config


def validate_config(config: StatsBotSettings) -> bool:
    """
    Validate that required configuration is present

    Args:
        config: Settings instance

    Returns:
        True if configuration is valid, False otherwise
    """
    if not config.DISCORD_BOT_TOKEN or config.DISCORD_BOT_TOKEN.startswith('your_bot_token_here'):
        logger.error("Missing required configuration key", missing='DISCORD_BOT_TOKEN')
        return False

    if not config.DATABASE_URL:
        logger.error("Missing required configuration key", missing='DATABASE_URL')
        return False

    logger.info("Configuration validation passed")
    return True


# Global configuration instance
settings = get_config(os.getenv('BOT_ENV', 'production'))
