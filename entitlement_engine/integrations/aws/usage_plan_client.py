"""
AWS API Gateway usage-plan client.

Thin wrapper over the boto3 "apigateway" client. Callers get plain dicts
back and a single exception type, UsagePlanAPIError, carrying the AWS error
code and HTTP status so the gateway layer can tell "already done" apart
from real failures.
"""

import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

# Conflict on CreateUsagePlanKey means the key is already on the plan;
# NotFound on DeleteUsagePlanKey means it already left it.
CONFLICT_CODES = frozenset({"ConflictException"})
NOT_FOUND_CODES = frozenset({"NotFoundException"})


class UsagePlanAPIError(Exception):
    """Error returned by (or while reaching) API Gateway."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code

    @property
    def is_conflict(self) -> bool:
        return self.error_code in CONFLICT_CODES or self.status_code == 409

    @property
    def is_not_found(self) -> bool:
        return self.error_code in NOT_FOUND_CODES or self.status_code == 404


def _wrap(operation: str, e: Exception) -> UsagePlanAPIError:
    if isinstance(e, ClientError):
        error = e.response.get("Error", {})
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return UsagePlanAPIError(
            f"{operation} failed: {error.get('Message', str(e))}",
            error_code=error.get("Code"),
            status_code=status,
        )
    return UsagePlanAPIError(f"{operation} failed: {e}")


class UsagePlanClient:
    """API Gateway usage plans, keys and usage."""

    def __init__(self, region_name: Optional[str] = None, client: Any = None):
        """
        Initialize the client.

        Args:
            region_name: AWS region; falls back to the boto3 default chain
            client: Pre-built boto3 client (tests pass a stubbed client)
        """
        self._client = client or boto3.client(
            "apigateway",
            region_name=region_name,
            config=Config(
                connect_timeout=10,
                read_timeout=30,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )

    def _invoke(self, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            return getattr(self._client, operation)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            wrapped = _wrap(operation, e)
            logger.warning("API Gateway call failed", extra={
                "operation": operation,
                "error_code": wrapped.error_code,
                "status_code": wrapped.status_code,
            })
            raise wrapped

    def create_api_key(self, name: str) -> Dict[str, Any]:
        return self._invoke("create_api_key", name=name, enabled=True)

    def create_usage_plan_key(self, usage_plan_id: str, key_id: str) -> Dict[str, Any]:
        return self._invoke(
            "create_usage_plan_key",
            usagePlanId=usage_plan_id,
            keyId=key_id,
            keyType="API_KEY",
        )

    def delete_usage_plan_key(self, usage_plan_id: str, key_id: str) -> Dict[str, Any]:
        return self._invoke("delete_usage_plan_key", usagePlanId=usage_plan_id, keyId=key_id)

    def get_usage_plan(self, usage_plan_id: str) -> Dict[str, Any]:
        return self._invoke("get_usage_plan", usagePlanId=usage_plan_id)

    def get_usage_plans(self) -> List[Dict[str, Any]]:
        """All usage plans, following the position cursor."""
        plans: List[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {"limit": 500}
        while True:
            page = self._invoke("get_usage_plans", **kwargs)
            plans.extend(page.get("items", []))
            position = page.get("position")
            if not position:
                return plans
            kwargs["position"] = position

    def get_usage(
        self,
        usage_plan_id: str,
        key_id: str,
        start_date: str,
        end_date: str,
    ) -> Dict[str, Any]:
        """
        Daily usage for one key on one plan.

        Dates are "YYYY-MM-DD". The response "items" maps key id to a list
        of [used, remaining] pairs, one per day.
        """
        return self._invoke(
            "get_usage",
            usagePlanId=usage_plan_id,
            keyId=key_id,
            startDate=start_date,
            endDate=end_date,
        )
