"""API schemas for subscription and webhook endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import CheckoutHandle, ReconciliationResult
from ..entitlements.models import AccountEntitlementRecord, AccountRole, SubscriptionStatus
from ..feature_gates import EntitlementContext


class CreateSubscriptionRequest(BaseModel):
    plan_id: Optional[str] = Field(alias="planId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutResponse(BaseModel):
    url: str
    session_id: str = Field(alias="sessionId")
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_handle(cls, handle: CheckoutHandle) -> "CheckoutResponse":
        return cls(url=handle.redirect_url, session_id=handle.session_ref, expires_at=handle.expires_at)


class CancelSubscriptionRequest(BaseModel):
    cancel_immediately: bool = Field(alias="cancelImmediately", default=False)

    model_config = ConfigDict(populate_by_name=True)


class ToggleAutoRenewRequest(BaseModel):
    auto_renew: bool = Field(alias="autoRenew")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionStatusResponse(BaseModel):
    status: SubscriptionStatus
    plan_id: Optional[str] = Field(alias="planId", default=None)
    current_period_start: Optional[datetime] = Field(alias="currentPeriodStart", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd", default=False)
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    auto_renew: bool = Field(alias="autoRenew", default=False)
    is_entitled: bool = Field(alias="isEntitled", default=False)
    capabilities: List[str] = Field(default_factory=list)
    listings_downgraded: bool = Field(alias="listingsDowngraded", default=False)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_context(cls, context: EntitlementContext) -> "SubscriptionStatusResponse":
        record = context.snapshot.record
        return cls(
            status=record.status,
            plan_id=record.plan_id,
            current_period_start=record.current_period_start,
            current_period_end=record.current_period_end,
            cancel_at_period_end=record.cancel_at_period_end,
            canceled_at=record.canceled_at,
            auto_renew=record.claims_live_subscription and not record.cancel_at_period_end,
            is_entitled=record.is_entitled(context.snapshot.evaluated_at),
            capabilities=context.capability_names,
            listings_downgraded=context.listings_downgraded,
        )


class RefreshSubscriptionResponse(BaseModel):
    corrected: bool
    drifted_fields: List[str] = Field(alias="driftedFields", default_factory=list)
    subscription: SubscriptionStatusResponse

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(
        cls, result: ReconciliationResult, context: EntitlementContext
    ) -> "RefreshSubscriptionResponse":
        return cls(
            corrected=result.corrected,
            drifted_fields=list(result.drift.fields) if result.drift else [],
            subscription=SubscriptionStatusResponse.from_context(context),
        )


class WebhookAcknowledgement(BaseModel):
    received: bool = True
    disposition: str


class AdminSubscriptionSummary(BaseModel):
    account_id: str = Field(alias="accountId")
    role: AccountRole
    status: SubscriptionStatus
    plan_id: Optional[str] = Field(alias="planId", default=None)
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd", default=False)
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    is_entitled: bool = Field(alias="isEntitled", default=False)
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_record(cls, record: AccountEntitlementRecord, now: datetime) -> "AdminSubscriptionSummary":
        return cls(
            account_id=record.account_id,
            role=record.role,
            status=record.status,
            plan_id=record.plan_id,
            subscription_id=record.external_subscription_ref,
            current_period_end=record.current_period_end,
            cancel_at_period_end=record.cancel_at_period_end,
            canceled_at=record.canceled_at,
            is_entitled=record.is_entitled(now),
            updated_at=record.updated_at,
        )


class AdminSubscriptionList(BaseModel):
    subscriptions: List[AdminSubscriptionSummary] = Field(default_factory=list)
    page: int = 1
    limit: int = 10
