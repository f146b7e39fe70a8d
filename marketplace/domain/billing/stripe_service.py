"""Stripe service - card checkout provider"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from ...config import (
    FRONTEND_URL,
    PROVIDER_TIMEOUT_SECONDS,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
)
from ...webhook_security import MAX_WEBHOOK_AGE_SECONDS
from .errors import (
    InvalidCustomerData,
    InvalidPlan,
    InvalidSignature,
    ProviderUnavailable,
    SessionIncomplete,
    SessionNotFound,
    WebhookNotConfigured,
)
from .providers import PaymentProvider
from .schemas import (
    CheckoutResult,
    CustomerData,
    EventKind,
    NormalizedPaymentEvent,
    PaymentMethod,
    Plan,
    Provider,
    UserRecord,
)

logger = logging.getLogger(__name__)

PAID_SESSION_STATUSES = {"paid", "no_payment_required"}


def _value(obj: Any, field: str) -> Any:
    """Read a field from a Stripe object or a plain dict"""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(field)
    return getattr(obj, field, None)


def _as_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return {}


def _object_id(obj: Any) -> Optional[str]:
    """Expandable fields arrive either as an id or as the expanded object"""
    if obj is None or isinstance(obj, str):
        return obj
    return _value(obj, "id")


def _cents_to_amount(cents: Any) -> Optional[float]:
    if cents is None:
        return None
    return int(cents) / 100


def _from_epoch(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeCheckoutService(PaymentProvider):
    """Service for Stripe Checkout (subscription mode) and Stripe webhooks"""

    provider = Provider.CARD_CHECKOUT

    def __init__(
        self,
        api_key: Optional[str] = STRIPE_SECRET_KEY,
        webhook_secret: Optional[str] = STRIPE_WEBHOOK_SECRET,
        frontend_url: str = FRONTEND_URL,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        client: Optional[stripe.StripeClient] = None,
    ):
        self.webhook_secret = webhook_secret
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout
        self.client = client

        if self.client is None:
            if not api_key:
                logger.warning(
                    "STRIPE_SECRET_KEY not set; card checkout will fail until configured"
                )
            else:
                try:
                    self.client = stripe.StripeClient(
                        api_key,
                        http_client=stripe.HTTPXClient(timeout=timeout),
                        max_network_retries=1,
                    )
                    logger.info("Stripe client initialized")
                except Exception as e:
                    logger.error(f"Failed to initialize Stripe client: {e}")
                    self.client = None

        if not self.webhook_secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not configured - webhook signature validation will fail"
            )

    def is_available(self) -> bool:
        """Check if the Stripe client is available"""
        return self.client is not None

    async def _call(self, operation: str, coro):
        """Await a Stripe call with a bounded timeout"""
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"❌ Stripe {operation} timed out after {self.timeout}s")
            raise ProviderUnavailable(f"stripe {operation} timed out") from e
        except stripe.InvalidRequestError:
            raise
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe {operation} failed: {e}")
            raise ProviderUnavailable(f"stripe {operation} failed") from e

    async def _find_or_create_customer(self, user: UserRecord) -> str:
        existing = await self._call(
            "customers.list",
            self.client.customers.list_async(params={"email": user.email, "limit": 1}),
        )
        data = _value(existing, "data") or []
        if data:
            customer_id = _value(data[0], "id")
            logger.info(f"🔄 Reusing Stripe customer {customer_id} for user {user.id}")
            return customer_id

        customer = await self._call(
            "customers.create",
            self.client.customers.create_async(
                params={
                    "email": user.email,
                    "name": user.name or "",
                    "metadata": {"userId": user.id},
                }
            ),
        )
        logger.info(f"🆕 Created Stripe customer {_value(customer, 'id')} for user {user.id}")
        return _value(customer, "id")

    async def initiate_checkout(
        self,
        user: UserRecord,
        plan: Plan,
        payment_method: PaymentMethod,
        customer: Optional[CustomerData] = None,
    ) -> CheckoutResult:
        """Create a subscription-mode Checkout Session for the plan"""
        if payment_method != PaymentMethod.CARD:
            raise InvalidCustomerData("card checkout only accepts card payments", field="payment_method")
        if not plan.price_id:
            logger.error(f"❌ Plan {plan.id} has no Stripe price configured")
            raise InvalidPlan(f"plan {plan.id} has no priceId")
        if not user.email:
            raise InvalidCustomerData("email is required", field="email")

        metadata = {"userId": user.id, "planId": plan.id, "planName": plan.name}

        try:
            customer_id = await self._find_or_create_customer(user)
            session = await self._call(
                "checkout.sessions.create",
                self.client.checkout.sessions.create_async(
                    params={
                        "customer": customer_id,
                        "mode": "subscription",
                        "payment_method_types": ["card"],
                        "line_items": [{"price": plan.price_id, "quantity": 1}],
                        "client_reference_id": user.id,
                        "success_url": f"{self.frontend_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
                        "cancel_url": f"{self.frontend_url}/plans",
                        "metadata": metadata,
                        "subscription_data": {"metadata": metadata},
                    }
                ),
            )
        except stripe.InvalidRequestError as e:
            logger.error(f"❌ Stripe rejected checkout for user {user.id}: {e}")
            if e.param and "email" in e.param:
                raise InvalidCustomerData(str(e), field="email") from e
            raise InvalidPlan(str(e)) from e

        logger.info(f"✅ Created checkout session for user {user.id}: {_value(session, 'id')}")
        return CheckoutResult(
            provider=self.provider,
            redirect_url=_value(session, "url"),
            session_id=_value(session, "id"),
            external_customer_id=customer_id,
        )

    async def verify_completed_session(self, session_ref: str) -> NormalizedPaymentEvent:
        """Check a Checkout Session on the redirect-return path"""
        try:
            session = await self._call(
                "checkout.sessions.retrieve",
                self.client.checkout.sessions.retrieve_async(
                    session_ref, params={"expand": ["subscription"]}
                ),
            )
        except stripe.InvalidRequestError as e:
            logger.warning(f"⚠️ Checkout session {session_ref} not found: {e}")
            raise SessionNotFound(session_ref) from e

        status = _value(session, "status")
        payment_status = _value(session, "payment_status")
        if status != "complete" or payment_status not in PAID_SESSION_STATUSES:
            logger.info(
                f"⏳ Checkout session {session_ref} not complete "
                f"(status={status}, payment_status={payment_status})"
            )
            raise SessionIncomplete(session_ref)

        metadata = _as_dict(_value(session, "metadata"))
        return NormalizedPaymentEvent(
            kind=EventKind.CHECKOUT_COMPLETED,
            provider=self.provider,
            reference=_value(session, "id") or session_ref,
            occurred_at=datetime.now(timezone.utc),
            user_id=metadata.get("userId") or _value(session, "client_reference_id"),
            plan_id=metadata.get("planId"),
            plan_name=metadata.get("planName"),
            amount=_cents_to_amount(_value(session, "amount_total")),
            external_customer_id=_object_id(_value(session, "customer")),
            external_subscription_id=_object_id(_value(session, "subscription")),
            raw_type="checkout.session.verified",
        )

    # ==================== Webhooks ====================

    def parse_webhook(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> NormalizedPaymentEvent:
        """Verify the Stripe-Signature header, then normalize the event"""
        if not self.webhook_secret:
            logger.error("❌ STRIPE_WEBHOOK_SECRET not configured - rejecting webhook")
            raise WebhookNotConfigured("stripe webhook secret missing")
        if not signature_header:
            logger.warning("🚫 Stripe webhook missing signature header")
            raise InvalidSignature("missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, tolerance=MAX_WEBHOOK_AGE_SECONDS
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            logger.warning(f"🚫 Stripe webhook signature mismatch: {e}")
            raise InvalidSignature(str(e)) from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            logger.error(f"Failed to parse Stripe webhook JSON: {e}")
            raise InvalidSignature("invalid JSON payload") from e

        return self.normalize_event(event)

    def normalize_event(self, event: dict) -> NormalizedPaymentEvent:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        event_ref = event.get("id") or f"{event_type}:{obj.get('id')}"
        occurred_at = _from_epoch(event.get("created"))

        logger.info(f"🔔 Stripe webhook received id={event.get('id')} type={event_type}")

        base = {
            "provider": self.provider,
            "occurred_at": occurred_at,
            "raw_type": event_type,
        }

        if event_type == "checkout.session.completed":
            metadata = obj.get("metadata") or {}
            return NormalizedPaymentEvent(
                kind=EventKind.CHECKOUT_COMPLETED,
                # Same reference as the redirect verification of this session
                reference=obj.get("id") or event_ref,
                user_id=metadata.get("userId") or obj.get("client_reference_id"),
                plan_id=metadata.get("planId"),
                plan_name=metadata.get("planName"),
                amount=_cents_to_amount(obj.get("amount_total")),
                external_customer_id=_object_id(obj.get("customer")),
                external_subscription_id=_object_id(obj.get("subscription")),
                **base,
            )

        if event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
            if event_type == "invoice.payment_succeeded" and obj.get("billing_reason") == "subscription_create":
                # The first invoice is already covered by checkout.session.completed
                return NormalizedPaymentEvent(kind=EventKind.IGNORED, reference=event_ref, **base)

            metadata = self._invoice_metadata(obj)
            succeeded = event_type == "invoice.payment_succeeded"
            return NormalizedPaymentEvent(
                kind=EventKind.PAYMENT_SUCCEEDED if succeeded else EventKind.PAYMENT_FAILED,
                reference=event_ref,
                user_id=metadata.get("userId"),
                plan_id=metadata.get("planId"),
                plan_name=metadata.get("planName"),
                amount=_cents_to_amount(obj.get("amount_paid" if succeeded else "amount_due")),
                external_customer_id=_object_id(obj.get("customer")),
                external_subscription_id=self._invoice_subscription_id(obj),
                **base,
            )

        if event_type == "customer.subscription.deleted":
            metadata = obj.get("metadata") or {}
            return NormalizedPaymentEvent(
                kind=EventKind.SUBSCRIPTION_CANCELED,
                reference=event_ref,
                user_id=metadata.get("userId"),
                plan_id=metadata.get("planId"),
                plan_name=metadata.get("planName"),
                external_customer_id=_object_id(obj.get("customer")),
                external_subscription_id=obj.get("id"),
                **base,
            )

        logger.info(f"Event {event_type} received and ignored (no handler)")
        return NormalizedPaymentEvent(kind=EventKind.IGNORED, reference=event_ref, **base)

    @staticmethod
    def _invoice_metadata(invoice: dict) -> dict:
        """Subscription metadata copied onto the invoice, across API versions"""
        details = invoice.get("subscription_details") or (invoice.get("parent") or {}).get(
            "subscription_details"
        ) or {}
        return details.get("metadata") or invoice.get("metadata") or {}

    @staticmethod
    def _invoice_subscription_id(invoice: dict) -> Optional[str]:
        subscription = invoice.get("subscription")
        if subscription:
            return _object_id(subscription)
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        return _object_id(details.get("subscription"))
