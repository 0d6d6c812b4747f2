"""
AWS API Gateway integration module.
"""

from entitlement_engine.integrations.aws.usage_plan_client import UsagePlanClient, UsagePlanAPIError

__all__ = ["UsagePlanClient", "UsagePlanAPIError"]
