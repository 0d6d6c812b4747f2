"""
Runtime settings for the reconciliation engine.

All values come from environment variables. Secrets (Stripe keys, AWS
credentials, SendGrid key) are read here and nowhere else.

Usage:
    from entitlement_engine.config.settings import get_settings

    settings = get_settings()
    if settings.is_production:
        ...
"""

import os
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

_settings: Optional["EngineSettings"] = None
_settings_lock = Lock()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer in environment, using default", extra={
            "variable": name,
            "default": default,
        })
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class PoolSettings:
    """One liquidity pool read by the price oracle."""
    address: Optional[str]
    # Pool token0/token1 ordering is reversed from the quote we want
    invert: bool = True
    # Power of ten applied after inversion to correct token decimals
    decimals_adjustment: int = 0


@dataclass(frozen=True)
class EngineSettings:
    """Typed view over the process environment."""

    env: str = "development"

    # Deposits
    deposit_min_confirmations: int = 50
    token_decimals: int = 18
    deposit_contract_address: Optional[str] = None
    deposit_api_topic: Optional[str] = None
    deposit_rpc_topic: Optional[str] = None
    deposit_poll_interval_seconds: int = 15
    deposit_start_block: int = 0
    chain_rpc_url: Optional[str] = None
    chain_rpc_timeout_seconds: float = 20.0
    base_usd_pool: PoolSettings = field(default_factory=lambda: PoolSettings(None, True, 12))
    token_base_pool: PoolSettings = field(default_factory=lambda: PoolSettings(None, True, 0))

    # Subscriptions
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    deletion_grace_period_days: int = 0
    referral_bonus_percent: Decimal = Decimal("7.5")

    # Free trial
    free_trial_notice_days: int = 14
    free_trial_length_days: int = 21

    # Usage plan gateway
    aws_region: str = "us-east-1"
    access_key_name: str = "entitlement-user-api-key"

    # Notifications
    sendgrid_api_key: Optional[str] = None
    notification_from_email: str = "notifications@example.com"
    notification_from_name: str = "API Access"

    # Scheduled jobs
    job_lease_seconds: int = 3600

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from the current environment."""
        return cls(
            env=os.getenv("ENV", "development"),
            deposit_min_confirmations=_env_int("DEPOSIT_MIN_CONFIRMATIONS", 50),
            token_decimals=_env_int("TOKEN_DECIMALS", 18),
            deposit_contract_address=os.getenv("DEPOSIT_CONTRACT_ADDRESS"),
            deposit_api_topic=os.getenv("DEPOSIT_API_EVENT_TOPIC"),
            deposit_rpc_topic=os.getenv("DEPOSIT_RPC_EVENT_TOPIC"),
            deposit_poll_interval_seconds=_env_int("DEPOSIT_POLL_INTERVAL_SECONDS", 15),
            deposit_start_block=_env_int("DEPOSIT_START_BLOCK", 0),
            chain_rpc_url=os.getenv("CHAIN_RPC_URL"),
            chain_rpc_timeout_seconds=float(os.getenv("CHAIN_RPC_TIMEOUT_SECONDS", "20")),
            base_usd_pool=PoolSettings(
                address=os.getenv("BASE_USD_POOL_ADDRESS"),
                invert=_env_bool("BASE_USD_POOL_INVERT", True),
                decimals_adjustment=_env_int("BASE_USD_POOL_DECIMALS_ADJUSTMENT", 12),
            ),
            token_base_pool=PoolSettings(
                address=os.getenv("TOKEN_BASE_POOL_ADDRESS"),
                invert=_env_bool("TOKEN_BASE_POOL_INVERT", True),
                decimals_adjustment=_env_int("TOKEN_BASE_POOL_DECIMALS_ADJUSTMENT", 0),
            ),
            stripe_api_key=os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            deletion_grace_period_days=_env_int("DELETION_GRACE_PERIOD_DAYS", 0),
            referral_bonus_percent=Decimal(os.getenv("REFERRAL_BONUS_PERCENT", "7.5")),
            free_trial_notice_days=_env_int("FREE_TRIAL_NOTICE_DAYS", 14),
            free_trial_length_days=_env_int("FREE_TRIAL_LENGTH_DAYS", 21),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            access_key_name=os.getenv("ACCESS_KEY_NAME", "entitlement-user-api-key"),
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY"),
            notification_from_email=os.getenv("NOTIFICATION_FROM_EMAIL", "notifications@example.com"),
            notification_from_name=os.getenv("NOTIFICATION_FROM_NAME", "API Access"),
            job_lease_seconds=_env_int("JOB_LEASE_SECONDS", 3600),
        )


def get_settings() -> EngineSettings:
    """Process-wide settings singleton."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = EngineSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests change the environment)."""
    global _settings
    with _settings_lock:
        _settings = None
