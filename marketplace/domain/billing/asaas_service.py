"""Asaas service - boleto and PIX subscriptions through the Asaas REST API"""

import json
import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

import httpx
from dateutil import parser as date_parser
from dateutil import tz
from dateutil.relativedelta import relativedelta

from ...config import (
    ASAAS_API_KEY,
    ASAAS_API_URL,
    ASAAS_WEBHOOK_TOKEN,
    PROVIDER_TIMEOUT_SECONDS,
)
from ...webhook_security import verify_shared_token
from .errors import (
    InvalidCustomerData,
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

# Asaas reports dates in Brasília time
SAO_PAULO = tz.gettz("America/Sao_Paulo")

BILLING_TYPES = {
    PaymentMethod.BOLETO: "BOLETO",
    PaymentMethod.PIX: "PIX",
    PaymentMethod.CARD: "CREDIT_CARD",
}
PAID_PAYMENT_STATUSES = {"RECEIVED", "CONFIRMED", "RECEIVED_IN_CASH"}

SUCCEEDED_EVENTS = {"PAYMENT_CONFIRMED", "PAYMENT_RECEIVED"}
FAILED_EVENTS = {"PAYMENT_OVERDUE", "PAYMENT_REPROVED_BY_RISK_ANALYSIS"}
CANCELED_EVENTS = {"SUBSCRIPTION_DELETED", "SUBSCRIPTION_INACTIVATED"}

MAX_PAYMENTS = 12


def _digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def _check_digit(digits: str, weights: list[int]) -> int:
    total = sum(int(d) * w for d, w in zip(digits, weights))
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cpf(value: str) -> bool:
    cpf = _digits(value)
    if len(cpf) != 11 or cpf == cpf[0] * 11:
        return False
    first = _check_digit(cpf[:9], list(range(10, 1, -1)))
    second = _check_digit(cpf[:10], list(range(11, 1, -1)))
    return cpf[-2:] == f"{first}{second}"


def is_valid_cnpj(value: str) -> bool:
    cnpj = _digits(value)
    if len(cnpj) != 14 or cnpj == cnpj[0] * 14:
        return False
    first = _check_digit(cnpj[:12], [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2])
    second = _check_digit(cnpj[:13], [6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2])
    return cnpj[-2:] == f"{first}{second}"


def validate_customer_data(user: UserRecord, customer: Optional[CustomerData]) -> CustomerData:
    """Local validation before any call to Asaas; returns digits-only data"""
    if customer is None:
        raise InvalidCustomerData("customer data is required", field="customer")
    if not customer.name or not customer.name.strip():
        raise InvalidCustomerData("name is required", field="name")
    if not user.email:
        raise InvalidCustomerData("email is required", field="email")

    document = _digits(customer.cpf_cnpj)
    if not (is_valid_cpf(document) or is_valid_cnpj(document)):
        raise InvalidCustomerData("invalid CPF/CNPJ", field="cpf_cnpj")

    phone = _digits(customer.phone)
    if not 10 <= len(phone) <= 13:
        raise InvalidCustomerData("phone must have 10 to 13 digits", field="phone")

    return CustomerData(name=customer.name.strip(), cpf_cnpj=document, phone=phone)


def build_external_reference(user_id: str, plan_id: str) -> str:
    return f"{user_id}:{plan_id}"


def parse_external_reference(value: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not value:
        return None, None
    user_id, _, plan_id = value.partition(":")
    return user_id or None, plan_id or None


def _parse_local_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an Asaas timestamp (São Paulo local time) into UTC"""
    if not value:
        return None
    parsed = date_parser.parse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=SAO_PAULO)
    return parsed.astimezone(timezone.utc)


def _parse_due_date(value: Optional[str]) -> Optional[datetime]:
    """Due dates are calendar days; midnight São Paulo time"""
    if not value:
        return None
    day = date_parser.parse(value).date()
    return datetime.combine(day, time.min, tzinfo=SAO_PAULO).astimezone(timezone.utc)


def next_due_date(now: Optional[datetime] = None) -> date:
    """First charge is due tomorrow, Brasília calendar"""
    now = now or datetime.now(timezone.utc)
    return (now.astimezone(SAO_PAULO) + timedelta(days=1)).date()


class AsaasService(PaymentProvider):
    """Service for Asaas customers, subscriptions and webhooks"""

    provider = Provider.BOLETO_PIX

    def __init__(
        self,
        api_key: Optional[str] = ASAAS_API_KEY,
        api_url: str = ASAAS_API_URL,
        webhook_token: Optional[str] = ASAAS_WEBHOOK_TOKEN,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.webhook_token = webhook_token
        self.client: Optional[httpx.AsyncClient] = None

        if not self.api_key:
            logger.warning("ASAAS_API_KEY not set; boleto/PIX checkout will fail until configured")
        else:
            self.client = httpx.AsyncClient(
                base_url=api_url.rstrip("/"),
                headers={
                    "access_token": self.api_key,
                    "Content-Type": "application/json",
                    "User-Agent": "marketplace-billing",
                },
                timeout=timeout,
                transport=transport,
            )
            logger.info(f"Asaas client initialized ({api_url})")

        if not self.webhook_token:
            logger.warning(
                "ASAAS_WEBHOOK_TOKEN not configured - webhook authentication will fail"
            )

    def is_available(self) -> bool:
        """Check if the Asaas client is available"""
        return self.client is not None

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"❌ Asaas {method} {path} timed out")
            raise ProviderUnavailable(f"asaas {method} {path} timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Asaas {method} {path} failed: {e}")
            raise ProviderUnavailable(f"asaas {method} {path} failed") from e

        if response.status_code >= 500 or response.status_code in (401, 403, 429):
            logger.error(f"❌ Asaas {method} {path} returned {response.status_code}: {response.text}")
            raise ProviderUnavailable(f"asaas {method} {path} returned {response.status_code}")
        return response

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            errors = response.json().get("errors") or []
        except ValueError:
            return response.text
        return "; ".join(e.get("description", "") for e in errors) or response.text

    async def _create_customer(self, user: UserRecord, customer: CustomerData) -> str:
        response = await self._request(
            "POST",
            "/customers",
            json={
                "name": customer.name,
                "email": user.email,
                "cpfCnpj": customer.cpf_cnpj,
                "mobilePhone": customer.phone,
                "externalReference": user.id,
                "notificationDisabled": False,
            },
        )
        if response.status_code == 400:
            detail = self._error_description(response)
            logger.warning(f"⚠️ Asaas rejected customer data for user {user.id}: {detail}")
            raise InvalidCustomerData(detail)
        if response.status_code not in (200, 201):
            raise ProviderUnavailable(f"asaas customer creation returned {response.status_code}")

        customer_id = response.json().get("id")
        logger.info(f"🆕 Created Asaas customer {customer_id} for user {user.id}")
        return customer_id

    async def _list_payments(self, subscription_id: str) -> list[dict]:
        response = await self._request("GET", f"/subscriptions/{subscription_id}/payments")
        if response.status_code != 200:
            logger.warning(
                f"⚠️ Could not list payments of subscription {subscription_id}: {response.status_code}"
            )
            return []
        return response.json().get("data") or []

    async def initiate_checkout(
        self,
        user: UserRecord,
        plan: Plan,
        payment_method: PaymentMethod,
        customer: Optional[CustomerData] = None,
    ) -> CheckoutResult:
        """Create customer and monthly subscription; redirect to the first invoice"""
        customer = validate_customer_data(user, customer)

        customer_id = await self._create_customer(user, customer)
        response = await self._request(
            "POST",
            "/subscriptions",
            json={
                "customer": customer_id,
                "billingType": BILLING_TYPES[payment_method],
                "value": plan.price,
                "nextDueDate": next_due_date().isoformat(),
                "cycle": "MONTHLY",
                "description": f"Assinatura do plano {plan.name}",
                "maxPayments": MAX_PAYMENTS,
                "externalReference": build_external_reference(user.id, plan.id),
            },
        )
        if response.status_code == 400:
            detail = self._error_description(response)
            logger.warning(f"⚠️ Asaas rejected subscription for user {user.id}: {detail}")
            raise InvalidCustomerData(detail)
        if response.status_code not in (200, 201):
            raise ProviderUnavailable(f"asaas subscription creation returned {response.status_code}")

        subscription_id = response.json().get("id")
        payments = await self._list_payments(subscription_id)
        invoice_url = next((p.get("invoiceUrl") for p in payments if p.get("invoiceUrl")), None)

        logger.info(
            f"✅ Created Asaas subscription {subscription_id} for user {user.id} "
            f"(plan={plan.id}, billingType={BILLING_TYPES[payment_method]})"
        )
        return CheckoutResult(
            provider=self.provider,
            redirect_url=invoice_url,
            session_id=subscription_id,
            external_customer_id=customer_id,
            external_subscription_id=subscription_id,
        )

    async def verify_completed_session(self, session_ref: str) -> NormalizedPaymentEvent:
        """session_ref is the Asaas subscription id returned at checkout"""
        response = await self._request("GET", f"/subscriptions/{session_ref}")
        if response.status_code == 404:
            raise SessionNotFound(session_ref)
        if response.status_code != 200:
            raise ProviderUnavailable(f"asaas subscription lookup returned {response.status_code}")

        subscription = response.json()
        if subscription.get("deleted"):
            raise SessionNotFound(session_ref)

        paid = [
            p for p in await self._list_payments(session_ref)
            if p.get("status") in PAID_PAYMENT_STATUSES
        ]
        if not paid:
            logger.info(f"⏳ Asaas subscription {session_ref} has no confirmed payment yet")
            raise SessionIncomplete(session_ref)

        payment = paid[0]
        user_id, plan_id = parse_external_reference(subscription.get("externalReference"))
        return NormalizedPaymentEvent(
            kind=EventKind.CHECKOUT_COMPLETED,
            provider=self.provider,
            # Same reference as the webhook confirming this payment
            reference=payment.get("id") or session_ref,
            occurred_at=datetime.now(timezone.utc),
            user_id=user_id,
            plan_id=plan_id,
            amount=payment.get("value"),
            external_customer_id=subscription.get("customer"),
            external_subscription_id=subscription.get("id") or session_ref,
            period_end=_parse_due_date(subscription.get("nextDueDate")),
            raw_type="subscription.verified",
        )

    # ==================== Webhooks ====================

    def parse_webhook(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> NormalizedPaymentEvent:
        """Authenticate with the asaas-access-token header, then normalize"""
        if not self.webhook_token:
            logger.error("❌ ASAAS_WEBHOOK_TOKEN not configured - rejecting webhook")
            raise WebhookNotConfigured("asaas webhook token missing")
        if not verify_shared_token(signature_header, self.webhook_token):
            raise InvalidSignature("asaas access token mismatch")

        try:
            event = json.loads(raw_body)
        except ValueError as e:
            logger.error(f"Failed to parse Asaas webhook JSON: {e}")
            raise InvalidSignature("invalid JSON payload") from e

        return self.normalize_event(event)

    def normalize_event(self, event: dict[str, Any]) -> NormalizedPaymentEvent:
        event_type = event.get("event")
        occurred_at = _parse_local_datetime(event.get("dateCreated")) or datetime.now(timezone.utc)
        logger.info(f"🔔 Asaas webhook received id={event.get('id')} event={event_type}")

        base = {
            "provider": self.provider,
            "occurred_at": occurred_at,
            "raw_type": event_type,
        }

        if event_type in SUCCEEDED_EVENTS or event_type in FAILED_EVENTS:
            payment = event.get("payment") or {}
            payment_id = payment.get("id")
            if not payment_id and not event.get("id"):
                return self._unreferenced(event_type, base)
            user_id, plan_id = parse_external_reference(payment.get("externalReference"))
            fields = {
                "user_id": user_id,
                "plan_id": plan_id,
                "amount": payment.get("value"),
                "external_customer_id": payment.get("customer"),
                "external_subscription_id": payment.get("subscription"),
            }

            if event_type in SUCCEEDED_EVENTS:
                due = _parse_due_date(payment.get("dueDate"))
                return NormalizedPaymentEvent(
                    kind=EventKind.PAYMENT_SUCCEEDED,
                    # CONFIRMED and RECEIVED of one payment count once
                    reference=payment_id or event.get("id"),
                    period_end=due + relativedelta(months=1) if due else None,
                    **fields,
                    **base,
                )
            return NormalizedPaymentEvent(
                kind=EventKind.PAYMENT_FAILED,
                reference=f"{payment_id}:{event_type}" if payment_id else event.get("id"),
                **fields,
                **base,
            )

        if event_type in CANCELED_EVENTS:
            subscription = event.get("subscription") or {}
            if not event.get("id") and not subscription.get("id"):
                return self._unreferenced(event_type, base)
            user_id, plan_id = parse_external_reference(subscription.get("externalReference"))
            return NormalizedPaymentEvent(
                kind=EventKind.SUBSCRIPTION_CANCELED,
                reference=event.get("id") or f"{subscription.get('id')}:{event_type}",
                user_id=user_id,
                plan_id=plan_id,
                external_customer_id=subscription.get("customer"),
                external_subscription_id=subscription.get("id"),
                **base,
            )

        logger.info(f"Event {event_type} received and ignored (no handler)")
        return NormalizedPaymentEvent(
            kind=EventKind.IGNORED,
            reference=event.get("id") or f"asaas:{event_type}",
            **base,
        )

    def _unreferenced(self, event_type: Optional[str], base: dict) -> NormalizedPaymentEvent:
        logger.warning(f"⚠️ Asaas {event_type} webhook carries no payment, subscription or event id; ignoring")
        return NormalizedPaymentEvent(kind=EventKind.IGNORED, reference=f"asaas:{event_type}", **base)
