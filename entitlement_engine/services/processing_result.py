"""Outcome of handling one inbound event."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class EventProcessingResult:
    """Result of event processing."""
    processed: bool
    message: str
    account_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    # Ledger committed but the usage-plan association still lags it
    association_pending: bool = False

    @property
    def retryable(self) -> bool:
        return self.error in ("transient_error", "unconfirmed", "price_unavailable")
