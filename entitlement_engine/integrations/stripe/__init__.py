"""
Stripe integration module.
"""

from entitlement_engine.integrations.stripe.billing_platform import StripeBillingPlatform

__all__ = ["StripeBillingPlatform"]
