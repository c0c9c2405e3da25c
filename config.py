"""
Configuration module for the Stashvault store.

Loads configuration from environment variables with sensible defaults.
"""

import os

from dotenv import load_dotenv

# Pick up a local .env before the class attributes below read the environment
load_dotenv()


def _float_env(name: str, default: float) -> float:
    """Read a float from the environment, falling back on empty or bad values."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    """Base configuration class."""

    # Flask Settings
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
    DEBUG = os.getenv("FLASK_ENV", "production") == "development"
    TESTING = False

    # Database Settings
    DATABASE_URL = os.getenv(
        "DATABASE_URL",
        "sqlite:///./stashvault.db"  # Store in project root
    )
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "0") == "1"

    # Admin Auth
    # An empty password puts the store in open mode: every caller gets every scope.
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")
    ADMIN_SESSION_HOURS = _float_env("ADMIN_SESSION_HOURS", 24.0)
    SESSION_CLEANUP_INTERVAL = int(os.getenv("SESSION_CLEANUP_INTERVAL", "3600"))  # 1h

    # API Tokens
    TOKEN_HASH_METHOD = os.getenv("TOKEN_HASH_METHOD", "pbkdf2:sha256:60000")

    # Paging
    DEFAULT_PAGE_SIZE = 50
    SEARCH_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 200
    ACCESS_LOG_LIMIT = 100
    GRAPH_NODE_LIMIT = 200

    # Stash Limits
    MAX_NAME_LENGTH = 500
    MAX_DESCRIPTION_LENGTH = 50_000
    MAX_TAGS = 50
    MAX_TAG_LENGTH = 100
    MAX_METADATA_KEYS = 50
    MAX_FILES = 100
    MAX_FILENAME_LENGTH = 255
    MAX_FILE_CONTENT_LENGTH = 10 * 1024 * 1024  # 10MB per file


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False


class TestingConfig(Config):
    """Testing configuration."""
    DEBUG = True
    TESTING = True
    # Use in-memory DB so tests never touch the real data file
    DATABASE_URL = "sqlite:///:memory:"
    ADMIN_PASSWORD = ""
    ADMIN_SESSION_HOURS = 24.0
    TOKEN_HASH_METHOD = "pbkdf2:sha256:1000"


def get_config(env: str = None) -> Config:
    """
    Get configuration based on environment.

    Args:
        env: Environment name (development, production, testing)

    Returns:
        Configuration object for the specified environment
    """
    if env is None:
        env = os.getenv("FLASK_ENV", "production")

    config_map = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig,
    }

    return config_map.get(env, ProductionConfig)()
