"""Configuration management for the CADOK trade security core"""

import os
import logging
from typing import Dict, Any, List

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default


class Config:
    """Application configuration"""

    # Environment detection
    # ENVIRONMENT takes absolute priority, anything other than "production" is development
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./cadok_trade_security.db")

    # Address encryption
    # Comma separated list of Fernet keys. The first key encrypts, every key decrypts,
    # so a new key is rotated in by prepending it.
    ADDRESS_ENCRYPTION_KEYS = os.getenv("ADDRESS_ENCRYPTION_KEYS", os.getenv("ADDRESS_ENCRYPTION_KEY", ""))

    # Redirection codes
    REDIRECTION_CODE_PREFIX = os.getenv("REDIRECTION_CODE_PREFIX", "CADOK")
    REDIRECTION_CODE_SUFFIX_LENGTH = _int_env("REDIRECTION_CODE_SUFFIX_LENGTH", 6)
    REDIRECTION_CODE_MAX_ATTEMPTS = _int_env("REDIRECTION_CODE_MAX_ATTEMPTS", 5)
    REDIRECTION_EXPIRY_DAYS = _int_env("REDIRECTION_EXPIRY_DAYS", 30)
    REDIRECTION_SWEEP_INTERVAL_MINUTES = _int_env("REDIRECTION_SWEEP_INTERVAL_MINUTES", 60)
    RESOLVED_ADDRESS_CACHE_TTL = _int_env("RESOLVED_ADDRESS_CACHE_TTL", 7 * 24 * 3600)
    REDIRECTION_TRACKING_URL = os.getenv("REDIRECTION_TRACKING_URL", "https://cadok.com/track/{code}")

    # Platform logistics hub printed on every decoy label
    DECOY_HUB_NAME = os.getenv("DECOY_HUB_NAME", "CADOK REDIRECTION")
    DECOY_HUB_STREET = os.getenv("DECOY_HUB_STREET", "15 Avenue des Trocs")
    DECOY_HUB_POSTAL_CODE = os.getenv("DECOY_HUB_POSTAL_CODE", "75001")
    DECOY_HUB_CITY = os.getenv("DECOY_HUB_CITY", "Paris")
    DECOY_HUB_COUNTRY = os.getenv("DECOY_HUB_COUNTRY", "France")

    # Carrier webhook authentication
    CARRIER_WEBHOOK_SECRET = os.getenv("CARRIER_WEBHOOK_SECRET", "")
    CARRIER_SIGNATURE_HEADER = "X-Carrier-Signature"

    # Trust and risk calibration
    TRUST_BASELINE_SCORE = _int_env("TRUST_BASELINE_SCORE", 40)
    LOW_RISK_THRESHOLD = _int_env("LOW_RISK_THRESHOLD", 75)
    MEDIUM_RISK_THRESHOLD = _int_env("MEDIUM_RISK_THRESHOLD", 50)
    TRUST_EXPERIENCE_HISTORY = _int_env("TRUST_EXPERIENCE_HISTORY", 10)
    TRUST_DISPUTE_PENALTY = _int_env("TRUST_DISPUTE_PENALTY", 10)  # reasons without their own weight
    TRUST_DISPUTE_PENALTY_CAP = _int_env("TRUST_DISPUTE_PENALTY_CAP", 60)

    # Trade verification
    MAX_PHOTOS_PER_SUBMISSION = _int_env("MAX_PHOTOS_PER_SUBMISSION", 10)
    LOW_RATING_COMMENT_THRESHOLD = 2

    @classmethod
    def encryption_keys(cls) -> List[str]:
        """Configured Fernet keys, primary first"""
        return [key.strip() for key in cls.ADDRESS_ENCRYPTION_KEYS.split(",") if key.strip()]

    @classmethod
    def validate(cls) -> Dict[str, Any]:
        """Check configuration for fatal problems"""
        errors = []
        warnings = []

        if not cls.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if not cls.encryption_keys():
            if cls.IS_PRODUCTION:
                errors.append("ADDRESS_ENCRYPTION_KEYS is required in production")
            else:
                warnings.append("ADDRESS_ENCRYPTION_KEYS not set, an ephemeral key will be used")

        if not cls.CARRIER_WEBHOOK_SECRET:
            if cls.IS_PRODUCTION:
                errors.append("CARRIER_WEBHOOK_SECRET is required in production")
            else:
                warnings.append("CARRIER_WEBHOOK_SECRET not set, carrier webhooks are unsigned")

        if not 0 <= cls.MEDIUM_RISK_THRESHOLD <= cls.LOW_RISK_THRESHOLD <= 100:
            errors.append(
                f"Risk thresholds must satisfy 0 <= MEDIUM ({cls.MEDIUM_RISK_THRESHOLD}) "
                f"<= LOW ({cls.LOW_RISK_THRESHOLD}) <= 100"
            )

        if cls.TRUST_BASELINE_SCORE >= cls.MEDIUM_RISK_THRESHOLD:
            warnings.append(
                "TRUST_BASELINE_SCORE is not below MEDIUM_RISK_THRESHOLD, new users will skip HIGH risk checks"
            )

        if cls.REDIRECTION_EXPIRY_DAYS <= 0:
            errors.append("REDIRECTION_EXPIRY_DAYS must be positive")

        return {"valid": not errors, "errors": errors, "warnings": warnings}

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Trade Security Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        database_kind = Config.DATABASE_URL.split(":", 1)[0] if Config.DATABASE_URL else "unset"
        logger.info(f"   Database: {database_kind}")
        logger.info(f"   Encryption keys configured: {len(Config.encryption_keys())}")
        logger.info(f"   Redirection prefix: {Config.REDIRECTION_CODE_PREFIX}")
        logger.info(f"   Redirection expiry: {Config.REDIRECTION_EXPIRY_DAYS} days")
        logger.info(
            f"   Risk thresholds: LOW>={Config.LOW_RISK_THRESHOLD} "
            f"MEDIUM>={Config.MEDIUM_RISK_THRESHOLD} baseline={Config.TRUST_BASELINE_SCORE}"
        )
        logger.info(f"   Carrier webhook signed: {bool(Config.CARRIER_WEBHOOK_SECRET)}")

        validation = Config.validate()
        for warning in validation["warnings"]:
            logger.warning(f"⚠️ CONFIG: {warning}")
        for error in validation["errors"]:
            logger.error(f"❌ CONFIG: {error}")
