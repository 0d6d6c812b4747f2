"""
Reconciliation services.
"""

from entitlement_engine.services.deposit_processor import DepositEventProcessor
from entitlement_engine.services.subscription_processor import SubscriptionEventProcessor
from entitlement_engine.services.partner_processor import PartnerProvisioningProcessor
from entitlement_engine.services.quota_gateway import QuotaAssociationGateway
from entitlement_engine.services.price_oracle import PriceOracle
from entitlement_engine.services.account_provisioning import AccountProvisioner

__all__ = [
    "DepositEventProcessor",
    "SubscriptionEventProcessor",
    "PartnerProvisioningProcessor",
    "QuotaAssociationGateway",
    "PriceOracle",
    "AccountProvisioner",
]
