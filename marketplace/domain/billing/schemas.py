"""Billing domain schemas - Pydantic models for validation"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    CLIENT = "client"
    PROFESSIONAL = "professional"
    ADMIN = "admin"


class Provider(str, Enum):
    CARD_CHECKOUT = "card-checkout"
    BOLETO_PIX = "boleto-pix"
    MANUAL = "manual"


class PaymentMethod(str, Enum):
    CARD = "card"
    BOLETO = "boleto"
    PIX = "pix"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NONE = "none"


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    IGNORED = "ignored"


class AccessDecision(str, Enum):
    ALLOW = "allow"
    REDIRECT_TO_PLAN_SELECTION = "redirect_to_plan_selection"
    REDIRECT_TO_LOGIN = "redirect_to_login"


class ResourceClass(str, Enum):
    PUBLIC = "public"
    PROTECTED = "protected"
    PLAN_SELECTION = "plan_selection"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionState(BaseModel):
    """The subscriptionStatus sub-document of a professional.

    Field names match what is stored in Firestore (camelCase). Legacy documents
    written by the web client hold ISO strings instead of timestamps; both parse.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    active: bool = False
    plan_id: Optional[str] = Field(default=None, alias="planId")
    plan_name: Optional[str] = Field(default=None, alias="planName")
    provider: Optional[Provider] = None
    external_customer_id: Optional[str] = Field(default=None, alias="externalCustomerId")
    external_subscription_id: Optional[str] = Field(default=None, alias="externalSubscriptionId")
    current_period_start: Optional[datetime] = Field(default=None, alias="currentPeriodStart")
    current_period_end: Optional[datetime] = Field(default=None, alias="currentPeriodEnd")
    last_payment_status: PaymentStatus = Field(default=PaymentStatus.NONE, alias="lastPaymentStatus")
    canceled_at: Optional[datetime] = Field(default=None, alias="canceledAt")
    last_event_at: Optional[datetime] = Field(default=None, alias="lastEventAt")
    last_event_ref: Optional[str] = Field(default=None, alias="lastEventRef")
    recent_event_refs: list[str] = Field(default_factory=list, alias="recentEventRefs")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @field_validator(
        "current_period_start",
        "current_period_end",
        "canceled_at",
        "last_event_at",
        "updated_at",
    )
    @classmethod
    def validate_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @field_validator("provider", mode="before")
    @classmethod
    def validate_provider(cls, v):
        # Documents written before providers were tracked carry no value
        if v in ("", None):
            return None
        return v

    @field_validator("last_payment_status", mode="before")
    @classmethod
    def validate_payment_status(cls, v):
        if v in ("", None):
            return PaymentStatus.NONE
        return v

    def is_expired(self, now: datetime) -> bool:
        """Expiry is derived from the period end, never from the stored flag"""
        if self.current_period_end is None:
            return True
        return self.current_period_end <= ensure_utc(now)

    def has_applied(self, reference: str) -> bool:
        return reference == self.last_event_ref or reference in self.recent_event_refs


class Identity(BaseModel):
    """Authenticated caller, as resolved from the Firebase token and users/{uid}"""

    uid: str
    email: Optional[str] = None
    role: Optional[Role] = None
    # users/{uid} could not be read; gate decisions fail closed
    role_lookup_failed: bool = False


class Plan(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str
    description: Optional[str] = None
    price: float = 0.0
    features: list[str] = Field(default_factory=list)
    price_id: Optional[str] = Field(default=None, alias="priceId")
    active: bool = False


class UserRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[Role] = Field(default=None, alias="userType")

    @field_validator("role", mode="before")
    @classmethod
    def validate_role(cls, v):
        if v not in {r.value for r in Role}:
            return None
        return v


class NormalizedPaymentEvent(BaseModel):
    """Provider-agnostic billing occurrence, consumed once by the reconciler"""

    kind: EventKind
    provider: Provider
    reference: str
    occurred_at: datetime
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    amount: Optional[float] = None
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    # Next due date when the provider supplies one
    period_end: Optional[datetime] = None
    raw_type: Optional[str] = None

    @field_validator("occurred_at", "period_end")
    @classmethod
    def validate_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class CustomerData(BaseModel):
    """Identity fields required by the boleto/PIX provider"""

    name: str
    cpf_cnpj: str
    phone: str


class CheckoutRequest(BaseModel):
    """Schema for starting a checkout"""

    plan_id: str
    payment_method: PaymentMethod = PaymentMethod.CARD
    provider: Optional[Provider] = None
    customer: Optional[CustomerData] = None

    @field_validator("plan_id")
    @classmethod
    def validate_plan_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("plan_id is required")
        return v.strip()

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: Optional[Provider]) -> Optional[Provider]:
        if v == Provider.MANUAL:
            raise ValueError("provider must be 'card-checkout' or 'boleto-pix'")
        return v

    def resolved_provider(self) -> Provider:
        if self.provider:
            return self.provider
        if self.payment_method == PaymentMethod.CARD:
            return Provider.CARD_CHECKOUT
        return Provider.BOLETO_PIX


class CheckoutResult(BaseModel):
    """What a provider returns after starting a checkout"""

    provider: Provider
    redirect_url: Optional[str] = None
    session_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None


class VerifySessionResponse(BaseModel):
    ok: bool
    error: Optional[str] = None
    status: Optional[str] = None


class WebhookAck(BaseModel):
    acknowledged: bool
    status: str


class ActivatePlanRequest(BaseModel):
    """Schema for manual plan activation (admin)"""

    user_id: str
    plan_id: str
    months: int = 1

    @field_validator("months")
    @classmethod
    def validate_months(cls, v: int) -> int:
        if v < 1 or v > 24:
            raise ValueError("months must be between 1 and 24")
        return v


class CurrentPlanResponse(BaseModel):
    subscription: Optional[SubscriptionState] = None
    expired: bool = True


class PlansResponse(BaseModel):
    plans: list[Plan]


class AccessResponse(BaseModel):
    decision: AccessDecision
    resource_class: ResourceClass
    redirect_to: Optional[str] = None
