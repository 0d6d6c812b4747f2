"""
Error taxonomy for the entitlement reconciliation engine.

- ConfigurationError: unknown tier, unknown deposit tier code, missing quota
  plan. Fatal for the affected operation, never silently defaulted.
- TransientExternalError: a collaborator (usage-plan gateway, chain node,
  price oracle, billing platform, notification sender) could not be reached.
  The event is "not applied" and may be redelivered.
- DuplicateEvent: idempotency guard tripped. Success, no-op.
- AccountNotResolvable: no account matches the event's identifying
  reference. Dropped, not retried.
- InvalidEventError: the inbound envelope failed boundary validation.
"""

from typing import Optional


class EntitlementEngineError(Exception):
    """Base exception for all engine errors."""
    pass


class ConfigurationError(EntitlementEngineError):
    """Reference data or configuration is missing or inconsistent."""
    pass


class TransientExternalError(EntitlementEngineError):
    """An external collaborator failed; the operation may be retried later."""

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.service = service


class PriceUnavailableError(TransientExternalError):
    """Token price could not be quoted from the liquidity pools."""

    def __init__(self, message: str):
        super().__init__(message, service="price_oracle")


class ConfirmationError(TransientExternalError):
    """A deposit transaction did not reach the required confirmation depth."""

    def __init__(self, message: str, transaction_hash: Optional[str] = None):
        super().__init__(message, service="chain")
        self.transaction_hash = transaction_hash


class DuplicateEvent(EntitlementEngineError):
    """The event has already been applied."""

    def __init__(self, event_key: str, reason: str = "duplicate"):
        super().__init__(f"Event already processed: {event_key}")
        self.event_key = event_key
        self.reason = reason


class AccountNotResolvable(EntitlementEngineError):
    """No account matches the event's identifying reference."""

    def __init__(self, ref_kind: str, ref_value: str):
        super().__init__(f"No account for {ref_kind}={ref_value}")
        self.ref_kind = ref_kind
        self.ref_value = ref_value


class InvalidEventError(EntitlementEngineError):
    """Inbound event failed signature or payload validation."""
    pass
