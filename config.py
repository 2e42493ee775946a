"""Configuration management for the gig escrow & wallet ledger service"""

import os
import logging
from decimal import Decimal
from typing import List

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./gigledger.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Money
    CURRENCY = os.getenv("CURRENCY", "INR")
    MINOR_UNITS_PER_MAJOR = 100  # paise per rupee

    def _validate_percentage(env_var: str, default: str = "5.0", min_val: float = 0.0, max_val: float = 50.0) -> Decimal:
        """Validate percentage with bounds checking"""
        try:
            value_str = os.getenv(env_var, default)
            percentage = Decimal(value_str)

            if percentage < Decimal(str(min_val)):
                logger.error(f"❌ {env_var}={percentage}% is below minimum {min_val}%. Using default {default}%")
                return Decimal(default)

            if percentage > Decimal(str(max_val)):
                logger.error(f"❌ {env_var}={percentage}% exceeds maximum {max_val}%. Using default {default}%")
                return Decimal(default)

            return percentage

        except Exception as e:
            logger.error(f"❌ Invalid {env_var} value '{os.getenv(env_var)}': {e}. Using default {default}%")
            return Decimal(default)

    # Platform fee charged to the hiring party on top of the agreed amount
    PLATFORM_FEE_PERCENTAGE = _validate_percentage("PLATFORM_FEE_PERCENTAGE", "5.0", 0.0, 30.0)
    PLATFORM_FEE_RATE = PLATFORM_FEE_PERCENTAGE / Decimal("100")

    # Commission deducted from the payee; one configured value unless overridden
    PLATFORM_COMMISSION_PERCENTAGE = _validate_percentage(
        "PLATFORM_COMMISSION_PERCENTAGE", str(PLATFORM_FEE_PERCENTAGE), 0.0, 30.0
    )
    PLATFORM_COMMISSION_RATE = PLATFORM_COMMISSION_PERCENTAGE / Decimal("100")

    # Internal ledger sinks
    PLATFORM_ESCROW_ACCOUNT = os.getenv("PLATFORM_ESCROW_ACCOUNT", "platform:escrow")
    PLATFORM_REVENUE_ACCOUNT = os.getenv("PLATFORM_REVENUE_ACCOUNT", "platform:revenue")

    # Negotiation
    NEGOTIATION_EXPIRY_DAYS = int(os.getenv("NEGOTIATION_EXPIRY_DAYS", "7"))
    NEGOTIATION_SWEEP_MINUTES = int(os.getenv("NEGOTIATION_SWEEP_MINUTES", "15"))

    # Withdrawals
    MIN_WITHDRAWAL_AMOUNT = int(os.getenv("MIN_WITHDRAWAL_AMOUNT", "100"))
    DAILY_WITHDRAWAL_LIMIT = int(os.getenv("DAILY_WITHDRAWAL_LIMIT", "3"))

    # Delivery iterations
    MIN_ITERATIONS = 1
    MAX_ITERATIONS = int(os.getenv("MAX_ITERATIONS", "20"))
    DEFAULT_ITERATIONS = int(os.getenv("DEFAULT_ITERATIONS", "3"))

    # Optimistic locking
    OPTIMISTIC_LOCK_MAX_RETRIES = int(os.getenv("OPTIMISTIC_LOCK_MAX_RETRIES", "3"))
    OPTIMISTIC_LOCK_RETRY_DELAY = float(os.getenv("OPTIMISTIC_LOCK_RETRY_DELAY", "0.05"))

    # Payment gateway (Razorpay-compatible)
    GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://api.razorpay.com/v1")
    GATEWAY_KEY_ID = os.getenv("GATEWAY_KEY_ID", os.getenv("RAZORPAY_KEY_ID", ""))
    GATEWAY_KEY_SECRET = os.getenv("GATEWAY_KEY_SECRET", os.getenv("RAZORPAY_KEY_SECRET", ""))
    GATEWAY_WEBHOOK_SECRET = os.getenv("GATEWAY_WEBHOOK_SECRET", os.getenv("RAZORPAY_WEBHOOK_SECRET", ""))
    GATEWAY_PAYOUT_ACCOUNT = os.getenv("GATEWAY_PAYOUT_ACCOUNT", "")
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))

    # Webhook server
    WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
    WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", os.getenv("PORT", "8000")))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Ledger Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(f"   Currency: {Config.CURRENCY}")
        logger.info(f"   Platform fee: {Config.PLATFORM_FEE_PERCENTAGE}%")
        logger.info(f"   Platform commission: {Config.PLATFORM_COMMISSION_PERCENTAGE}%")
        logger.info(f"   Gateway: {Config.GATEWAY_BASE_URL} (timeout {Config.GATEWAY_TIMEOUT_SECONDS}s)")

    @staticmethod
    def validate() -> List[str]:
        """Return a list of configuration problems; raises in production"""
        problems = []

        if not Config.GATEWAY_KEY_ID or not Config.GATEWAY_KEY_SECRET:
            problems.append("GATEWAY_KEY_ID / GATEWAY_KEY_SECRET not configured - orders cannot be created")
        if not Config.GATEWAY_WEBHOOK_SECRET:
            problems.append("GATEWAY_WEBHOOK_SECRET not configured - webhooks will be rejected")
        if Config.PLATFORM_ESCROW_ACCOUNT == Config.PLATFORM_REVENUE_ACCOUNT:
            problems.append("PLATFORM_ESCROW_ACCOUNT and PLATFORM_REVENUE_ACCOUNT must differ")
        if not Config.MIN_ITERATIONS <= Config.DEFAULT_ITERATIONS <= Config.MAX_ITERATIONS:
            problems.append("DEFAULT_ITERATIONS must be within MIN_ITERATIONS..MAX_ITERATIONS")

        for problem in problems:
            if Config.IS_PRODUCTION:
                logger.critical(f"❌ {problem}")
            else:
                logger.warning(f"⚠️ {problem}")

        if problems and Config.IS_PRODUCTION:
            raise ValueError("Invalid production configuration: " + "; ".join(problems))

        return problems
