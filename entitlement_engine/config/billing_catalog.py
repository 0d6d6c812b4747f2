"""
Billing catalog loader.

Loads the product -> (track, tier) table for subscription events and the
deposit tier-code table (tier name and USD-per-day price) for on-chain
deposits and the partner plan table for partner-provisioned accounts from
config/billing_catalog.yml.

Consumers:
  - SubscriptionEventProcessor: product mapping
  - DepositEventProcessor: tier code mapping and daily prices
  - PartnerProvisioningProcessor: partner plan mapping

Usage:
    from entitlement_engine.config.billing_catalog import get_billing_catalog

    catalog = get_billing_catalog()
    entry = catalog.product("prod_api_growth")     # ProductEntry(track=API, tier=GROWTH)
    deposit = catalog.deposit_tier(1)               # DepositTier(tier=GROWTH, daily_price_usd=6.67)
"""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

from entitlement_engine.errors import ConfigurationError
from entitlement_engine.models.account import Tier, Track

logger = logging.getLogger(__name__)

# Used when the YAML cannot be found
_FALLBACK_DEPOSIT_TIERS = {
    0: ("Starter", "1.67"),
    1: ("Growth", "6.67"),
    2: ("Business", "13.33"),
}


@dataclass(frozen=True)
class ProductEntry:
    """Tier granted by a billing product."""
    product_ref: str
    track: Track
    tier: Tier


@dataclass(frozen=True)
class DepositTier:
    """Tier bought by an on-chain deposit carrying this tier code."""
    code: int
    tier: Tier
    daily_price_usd: Decimal


@dataclass(frozen=True)
class PartnerPlan:
    """Tier granted by a plan sold through a provisioning partner."""
    name: str
    track: Track
    tier: Tier


class BillingCatalogLoader:
    """
    Thread-safe singleton loader for config/billing_catalog.yml.

    Unknown products map to Free on the API track. Unknown deposit tier
    codes and unknown partner plans are a ConfigurationError: a deposit or
    partner provisioning must never be applied against a guessed tier.
    """

    _instance: Optional["BillingCatalogLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("BILLING_CATALOG_PATH")
        self._products: Dict[str, ProductEntry] = {}
        self._deposit_tiers: Dict[int, DepositTier] = {}
        self._partner_plans: Dict[str, PartnerPlan] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent / "billing_catalog.yml",
            Path(os.getcwd()) / "config" / "billing_catalog.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"billing_catalog.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading billing catalog from %s", path)

                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}
            except FileNotFoundError:
                logger.warning("billing_catalog.yml not found, using fallback deposit tiers")
                raw = {
                    "deposit_tiers": {
                        code: {"tier": name, "daily_price_usd": price}
                        for code, (name, price) in _FALLBACK_DEPOSIT_TIERS.items()
                    }
                }

            self._products, self._deposit_tiers, self._partner_plans = parse_catalog(raw)

            logger.info(
                "Loaded billing catalog: products=%d, deposit_tiers=%s, partner_plans=%d",
                len(self._products),
                sorted(self._deposit_tiers.keys()),
                len(self._partner_plans),
            )

    def product(self, product_ref: Optional[str]) -> ProductEntry:
        """
        Resolve a billing product to its track and tier.

        Args:
            product_ref: Billing platform product id

        Returns:
            ProductEntry; unknown products resolve to Free on the API track
        """
        entry = self._products.get(product_ref or "")
        if entry is None:
            logger.warning("Unknown billing product, defaulting to Free", extra={
                "product_ref": product_ref,
            })
            return ProductEntry(product_ref=product_ref or "", track=Track.API, tier=Tier.FREE)
        return entry

    def deposit_tier(self, code: int) -> DepositTier:
        """
        Resolve a deposit tier code.

        Raises:
            ConfigurationError: If the code is not in the table
        """
        entry = self._deposit_tiers.get(int(code))
        if entry is None:
            raise ConfigurationError(f"Unknown deposit tier code: {code}")
        return entry

    def partner_plan(self, plan_name: Optional[str]) -> PartnerPlan:
        """
        Resolve a plan name sent by a provisioning partner.

        Raises:
            ConfigurationError: If the plan is not in the table
        """
        entry = self._partner_plans.get(plan_name or "")
        if entry is None:
            raise ConfigurationError(f"Unknown partner plan: {plan_name}")
        return entry

    def products(self) -> Dict[str, ProductEntry]:
        return dict(self._products)


def parse_catalog(raw: Dict[str, Any]):
    """
    Validate the raw YAML structure.

    Returns:
        (products by ref, deposit tiers by code, partner plans by name)

    Raises:
        ConfigurationError: On an unknown tier/track name or a bad price
    """
    products: Dict[str, ProductEntry] = {}
    for product_ref, entry in (raw.get("products") or {}).items():
        try:
            products[str(product_ref)] = ProductEntry(
                product_ref=str(product_ref),
                track=Track(entry["track"]),
                tier=Tier(entry["tier"]),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid product entry {product_ref!r}: {e}")

    deposit_tiers: Dict[int, DepositTier] = {}
    for code, entry in (raw.get("deposit_tiers") or {}).items():
        try:
            tier = Tier(entry["tier"])
            price = Decimal(str(entry["daily_price_usd"]))
        except (KeyError, ValueError, TypeError, InvalidOperation) as e:
            raise ConfigurationError(f"Invalid deposit tier {code!r}: {e}")
        if tier in (Tier.FREE, Tier.NONE) or price <= 0:
            raise ConfigurationError(f"Deposit tier {code!r} must be a paid tier with a positive price")
        deposit_tiers[int(code)] = DepositTier(code=int(code), tier=tier, daily_price_usd=price)

    partner_plans: Dict[str, PartnerPlan] = {}
    for plan_name, entry in (raw.get("partner_plans") or {}).items():
        try:
            partner_plans[str(plan_name)] = PartnerPlan(
                name=str(plan_name),
                track=Track(entry["track"]),
                tier=Tier(entry["tier"]),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid partner plan {plan_name!r}: {e}")
        if partner_plans[str(plan_name)].tier == Tier.NONE:
            raise ConfigurationError(f"Partner plan {plan_name!r} cannot grant None")

    return products, deposit_tiers, partner_plans


def get_billing_catalog(config_path: Optional[str] = None) -> BillingCatalogLoader:
    """Return the singleton BillingCatalogLoader."""
    return BillingCatalogLoader(config_path)


def reset_billing_catalog() -> None:
    """Reset singleton (for tests only)."""
    BillingCatalogLoader._instance = None
