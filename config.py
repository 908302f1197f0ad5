"""Configuration management for the creator/brand escrow engine"""

import os
import logging
from typing import Dict, Any

from dotenv import load_dotenv

# Load .env from the project root; real environment variables win
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./escrow.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO", "false")

    # Auto-release: brands that never answer a submission release it by default
    AUTO_RELEASE_ENABLED = _env_bool("AUTO_RELEASE_ENABLED", "true")
    AUTO_RELEASE_DAYS = int(os.getenv("AUTO_RELEASE_DAYS", "5"))
    AUTO_RELEASE_CHECK_INTERVAL_MINUTES = int(
        os.getenv("AUTO_RELEASE_CHECK_INTERVAL_MINUTES", "5")
    )

    # Review policy
    MAX_REVISION_ROUNDS = int(os.getenv("MAX_REVISION_ROUNDS", "3"))
    DISPUTE_CONTESTATION_HOURS = int(os.getenv("DISPUTE_CONTESTATION_HOURS", "72"))

    # Payout issuance against the external payment capability
    PAYOUT_MAX_ATTEMPTS = int(os.getenv("PAYOUT_MAX_ATTEMPTS", "3"))
    PAYOUT_INITIAL_DELAY_SECONDS = float(os.getenv("PAYOUT_INITIAL_DELAY_SECONDS", "1.0"))
    PAYOUT_MAX_DELAY_SECONDS = float(os.getenv("PAYOUT_MAX_DELAY_SECONDS", "10.0"))
    PAYOUT_TIMEOUT_SECONDS = int(os.getenv("PAYOUT_TIMEOUT_SECONDS", "30"))
    PAYOUT_PROCESSING_MAX_AGE_MINUTES = int(
        os.getenv("PAYOUT_PROCESSING_MAX_AGE_MINUTES", "15")
    )
    PAYOUT_RECONCILE_INTERVAL_MINUTES = int(
        os.getenv("PAYOUT_RECONCILE_INTERVAL_MINUTES", "10")
    )

    # Per-deal critical section
    DEAL_LOCK_TIMEOUT_SECONDS = float(os.getenv("DEAL_LOCK_TIMEOUT_SECONDS", "10"))

    # HTTP payment capability
    PAYMENT_API_BASE_URL = os.getenv("PAYMENT_API_BASE_URL", "")
    PAYMENT_API_KEY = os.getenv("PAYMENT_API_KEY", "")

    # Subscription
    DEFAULT_PLAN_TIER = os.getenv("DEFAULT_PLAN_TIER", "free").lower().strip()

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Escrow Engine Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {'sqlite' if Config.DATABASE_URL.startswith('sqlite') else 'postgresql'}")
        logger.info(
            f"   Auto-release: {'ON' if Config.AUTO_RELEASE_ENABLED else 'OFF'} "
            f"after {Config.AUTO_RELEASE_DAYS}d, tick every {Config.AUTO_RELEASE_CHECK_INTERVAL_MINUTES}m"
        )
        logger.info(
            f"   Payouts: {Config.PAYOUT_MAX_ATTEMPTS} attempts, "
            f"timeout {Config.PAYOUT_TIMEOUT_SECONDS}s, "
            f"reconcile after {Config.PAYOUT_PROCESSING_MAX_AGE_MINUTES}m"
        )
        logger.info(f"   Payment API: {'configured' if Config.PAYMENT_API_BASE_URL else 'NOT CONFIGURED'}")

    @staticmethod
    def validate():
        """Reject settings that would break escrow guarantees"""
        errors = []
        if Config.AUTO_RELEASE_DAYS < 1:
            errors.append("AUTO_RELEASE_DAYS must be at least 1")
        if Config.AUTO_RELEASE_CHECK_INTERVAL_MINUTES < 1:
            errors.append("AUTO_RELEASE_CHECK_INTERVAL_MINUTES must be at least 1")
        if Config.MAX_REVISION_ROUNDS < 0:
            errors.append("MAX_REVISION_ROUNDS cannot be negative")
        if Config.DISPUTE_CONTESTATION_HOURS < 0:
            errors.append("DISPUTE_CONTESTATION_HOURS cannot be negative")
        if Config.PAYOUT_MAX_ATTEMPTS < 1:
            errors.append("PAYOUT_MAX_ATTEMPTS must be at least 1")
        if Config.PAYOUT_TIMEOUT_SECONDS <= 0:
            errors.append("PAYOUT_TIMEOUT_SECONDS must be positive")
        if Config.DEAL_LOCK_TIMEOUT_SECONDS <= 0:
            errors.append("DEAL_LOCK_TIMEOUT_SECONDS must be positive")
        if Config.DEFAULT_PLAN_TIER not in ("free", "starter", "professional", "enterprise"):
            errors.append(f"Unknown DEFAULT_PLAN_TIER '{Config.DEFAULT_PLAN_TIER}'")

        if errors:
            for error in errors:
                logger.error(f"❌ CONFIG: {error}")
            raise ValueError("Invalid configuration: " + "; ".join(errors))

        if Config.IS_PRODUCTION and not Config.PAYMENT_API_BASE_URL:
            logger.warning("⚠️ Production environment without PAYMENT_API_BASE_URL - payouts will fail")

    @staticmethod
    def payout_retry_policy() -> Dict[str, Any]:
        """Retry settings handed to the payout retry wrapper"""
        return {
            "max_attempts": Config.PAYOUT_MAX_ATTEMPTS,
            "initial_delay": Config.PAYOUT_INITIAL_DELAY_SECONDS,
            "max_delay": Config.PAYOUT_MAX_DELAY_SECONDS,
        }
