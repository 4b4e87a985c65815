"""Configuration management for the campus credit ledger"""

import os
import logging
from typing import List

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./credit_ledger.db")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "7"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "15"))
    DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))
    DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"

    if DATABASE_URL.startswith("sqlite"):
        DATABASE_SOURCE = "SQLite (local)"
    elif DATABASE_URL.startswith("postgres"):
        DATABASE_SOURCE = "PostgreSQL"
    else:
        DATABASE_SOURCE = "Other"

    # Signed request protocol
    # Allowed clock skew between client timestamp and server time
    SIGNATURE_WINDOW_SECONDS = int(os.getenv("SIGNATURE_WINDOW_SECONDS", "300"))

    # Admin trust boundary
    ADMIN_SECRET = os.getenv("ADMIN_SECRET", "")
    ADMIN_JWT_SECRET = os.getenv("ADMIN_JWT_SECRET", "")
    ADMIN_TOKEN_TTL_SECONDS = int(os.getenv("ADMIN_TOKEN_TTL_SECONDS", str(12 * 60 * 60)))
    ADMIN_MASTER_SECRET = os.getenv("ADMIN_MASTER_SECRET", "")
    ADMIN_INITIAL_PASSWORD = os.getenv("ADMIN_INITIAL_PASSWORD", "")
    ADMIN_PASSWORD_MIN_LENGTH = 8

    # Redeem codes are stored as HMAC digests keyed by this secret
    REDEEM_CODE_SECRET = os.getenv("REDEEM_CODE_SECRET", "")
    REDEEM_CODE_MIN_LENGTH = 3
    REDEEM_CODE_MAX_LENGTH = 64

    # Pagination
    DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", "20"))
    MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", "100"))

    # Field limits
    MAX_TITLE_LENGTH = 200
    MAX_DESCRIPTION_LENGTH = 2000
    MAX_CONTACT_INFO_LENGTH = 300
    MAX_DELIVERY_INFO_LENGTH = 500
    MAX_REASON_LENGTH = 500
    # Upper bound for any amount, price, stock or delta; sums stay inside BIGINT
    MAX_AMOUNT = int(os.getenv("MAX_AMOUNT", str(10 ** 12)))

    # Advisory in-memory rate limiting
    RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
    RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "30"))
    RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

    CORS_ORIGINS = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]

    @classmethod
    def validate(cls) -> List[str]:
        """Return a list of configuration problems; empty when healthy"""
        problems = []
        if cls.IS_PRODUCTION:
            if not cls.ADMIN_SECRET and not cls.ADMIN_JWT_SECRET:
                problems.append("ADMIN_SECRET or ADMIN_JWT_SECRET must be set in production")
            if not cls.REDEEM_CODE_SECRET:
                problems.append("REDEEM_CODE_SECRET must be set in production")
            if cls.DATABASE_URL.startswith("sqlite"):
                problems.append("DATABASE_URL points at SQLite in production")
        if cls.SIGNATURE_WINDOW_SECONDS <= 0:
            problems.append("SIGNATURE_WINDOW_SECONDS must be positive")
        if cls.DEFAULT_PAGE_LIMIT > cls.MAX_PAGE_LIMIT:
            problems.append("DEFAULT_PAGE_LIMIT exceeds MAX_PAGE_LIMIT")
        return problems

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Ledger Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_SOURCE}")
        logger.info(f"   Signature window: {Config.SIGNATURE_WINDOW_SECONDS}s")
        logger.info(
            f"   Rate limiting: {'enabled' if Config.RATE_LIMIT_ENABLED else 'disabled'} "
            f"({Config.RATE_LIMIT_MAX_REQUESTS}/{Config.RATE_LIMIT_WINDOW_SECONDS}s)"
        )

        for problem in Config.validate():
            if Config.IS_PRODUCTION:
                logger.error(f"❌ Config: {problem}")
            else:
                logger.warning(f"⚠️ Config: {problem}")
