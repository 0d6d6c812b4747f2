"""
Typed inbound events.

Every external event is validated into one of these models at the boundary
(Stripe webhook parser, chain log decoder, partner request parser) before a
processor sees it. Subscription events and partner requests are tagged
variants discriminated on ``kind``.
"""

import re
from typing import Annotated, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from entitlement_engine.models.account import Track

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


class _SubscriptionEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Billing platform event id")
    customer_ref: str = Field(..., min_length=1)
    subscription_ref: Optional[str] = None
    product_ref: Optional[str] = None
    unit_amount: Optional[int] = Field(
        None,
        ge=0,
        description="Price in minor currency units",
    )


class SubscriptionCreated(_SubscriptionEventBase):
    kind: Literal["created"] = "created"


class SubscriptionUpdated(_SubscriptionEventBase):
    kind: Literal["updated"] = "updated"


class SubscriptionDeleted(_SubscriptionEventBase):
    kind: Literal["deleted"] = "deleted"


class TrialWillEnd(_SubscriptionEventBase):
    kind: Literal["trial_will_end"] = "trial_will_end"


SubscriptionEvent = Annotated[
    Union[SubscriptionCreated, SubscriptionUpdated, SubscriptionDeleted, TrialWillEnd],
    Field(discriminator="kind"),
]

_subscription_event_adapter = TypeAdapter(SubscriptionEvent)


def parse_subscription_event(data: dict):
    """Validate a plain dict into the matching SubscriptionEvent variant."""
    return _subscription_event_adapter.validate_python(data)


class DepositEvent(BaseModel):
    """A DepositedForAPI / DepositedForRPC log from the deposit contract."""

    model_config = ConfigDict(frozen=True)

    wallet_address: str
    amount_raw: int = Field(..., gt=0, description="Token amount in base units")
    tier_code: int = Field(..., ge=0, le=255)
    track: Track
    transaction_hash: str
    log_index: int = Field(0, ge=0)
    block_number: Optional[int] = Field(None, ge=0)

    @field_validator("wallet_address")
    @classmethod
    def normalize_wallet(cls, v: str) -> str:
        v = v.strip().lower()
        if not _ADDRESS_RE.match(v):
            raise ValueError(f"Invalid wallet address: {v}")
        return v

    @field_validator("transaction_hash")
    @classmethod
    def normalize_tx_hash(cls, v: str) -> str:
        v = v.strip().lower()
        if not _TX_HASH_RE.match(v):
            raise ValueError(f"Invalid transaction hash: {v}")
        return v


class _PartnerRequestBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Marketplace payloads name the instance "quicknode-id"
    partner_ref: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("partner_ref", "quicknode-id"),
    )
    plan: Optional[str] = None


class PartnerProvision(_PartnerRequestBase):
    kind: Literal["provision"] = "provision"
    plan: str = Field(..., min_length=1)
    email: Optional[str] = None


class PartnerPlanChange(_PartnerRequestBase):
    kind: Literal["update"] = "update"
    plan: str = Field(..., min_length=1)


class PartnerDeprovision(_PartnerRequestBase):
    kind: Literal["deprovision"] = "deprovision"


PartnerRequest = Annotated[
    Union[PartnerProvision, PartnerPlanChange, PartnerDeprovision],
    Field(discriminator="kind"),
]

_partner_request_adapter = TypeAdapter(PartnerRequest)


def parse_partner_request(data: dict):
    """Validate a partner payload into the matching PartnerRequest variant."""
    return _partner_request_adapter.validate_python(data)
