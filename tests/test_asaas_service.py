"""Tests for the Asaas boleto/PIX adapter"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from marketplace.domain.billing.asaas_service import (
    AsaasService,
    build_external_reference,
    is_valid_cnpj,
    is_valid_cpf,
    next_due_date,
    parse_external_reference,
)
from marketplace.domain.billing.errors import (
    InvalidCustomerData,
    InvalidSignature,
    ProviderUnavailable,
    SessionIncomplete,
    SessionNotFound,
    WebhookNotConfigured,
)
from marketplace.domain.billing.schemas import (
    CustomerData,
    EventKind,
    PaymentMethod,
    Plan,
    Provider,
    UserRecord,
)

WEBHOOK_TOKEN = "asaas-webhook-token"
VALID_CPF = "529.982.247-25"


class FakeAsaasApi:
    """Routes requests of the mock transport and records them"""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], httpx.Response] = {}

    def add(self, method: str, path: str, status: int = 200, body=None):
        self.routes[(method, path)] = httpx.Response(status, json=body if body is not None else {})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/v3")
        response = self.routes.get((request.method, path))
        if response is None:
            return httpx.Response(404, json={"errors": [{"description": "not found"}]})
        return response

    def sent(self, method: str, path: str) -> dict:
        for request in self.requests:
            if request.method == method and request.url.path.endswith(path):
                return json.loads(request.content)
        raise AssertionError(f"{method} {path} was not called")


@pytest.fixture
def api():
    return FakeAsaasApi()


@pytest.fixture
def asaas(api):
    return AsaasService(
        api_key="aact_test_key",
        api_url="https://sandbox.asaas.com/api/v3",
        webhook_token=WEBHOOK_TOKEN,
        timeout=1,
        transport=httpx.MockTransport(api),
    )


@pytest.fixture
def user():
    return UserRecord(id="pro-1", email="ana@example.com", name="Ana", role="professional")


@pytest.fixture
def plan():
    return Plan(id="basic", name="Básico", price=29.9, active=True)


@pytest.fixture
def customer():
    return CustomerData(name="Ana Souza", cpf_cnpj=VALID_CPF, phone="(11) 98765-4321")


class TestDocumentValidation:
    def test_cpf_check_digits(self):
        assert is_valid_cpf("52998224725")
        assert is_valid_cpf(VALID_CPF)
        assert not is_valid_cpf("52998224724")
        assert not is_valid_cpf("11111111111")
        assert not is_valid_cpf("5299822472")

    def test_cnpj_check_digits(self):
        assert is_valid_cnpj("11.222.333/0001-81")
        assert not is_valid_cnpj("11.222.333/0001-80")

    def test_external_reference(self):
        assert parse_external_reference(build_external_reference("pro-1", "basic")) == ("pro-1", "basic")
        assert parse_external_reference("pro-1") == ("pro-1", None)
        assert parse_external_reference(None) == (None, None)

    def test_next_due_date_uses_brasilia_calendar(self):
        # 01:00 UTC is still the previous day in São Paulo
        now = datetime(2024, 6, 15, 1, 0, tzinfo=timezone.utc)
        assert next_due_date(now).isoformat() == "2024-06-15"


class TestInitiateCheckout:
    @pytest.mark.asyncio
    async def test_creates_customer_and_subscription(self, asaas, api, user, plan, customer):
        api.add("POST", "/customers", body={"id": "cus_000001"})
        api.add("POST", "/subscriptions", body={"id": "sub_000001", "status": "ACTIVE"})
        api.add(
            "GET",
            "/subscriptions/sub_000001/payments",
            body={"data": [{"id": "pay_1", "invoiceUrl": "https://sandbox.asaas.com/i/pay_1"}]},
        )

        result = await asaas.initiate_checkout(user, plan, PaymentMethod.PIX, customer)

        assert result.provider == Provider.BOLETO_PIX
        assert result.redirect_url == "https://sandbox.asaas.com/i/pay_1"
        assert result.external_customer_id == "cus_000001"
        assert result.external_subscription_id == "sub_000001"

        sent_customer = api.sent("POST", "/customers")
        assert sent_customer["cpfCnpj"] == "52998224725"
        assert sent_customer["mobilePhone"] == "11987654321"
        assert sent_customer["email"] == "ana@example.com"

        sent_subscription = api.sent("POST", "/subscriptions")
        assert sent_subscription["billingType"] == "PIX"
        assert sent_subscription["cycle"] == "MONTHLY"
        assert sent_subscription["maxPayments"] == 12
        assert sent_subscription["value"] == 29.9
        assert sent_subscription["description"] == "Assinatura do plano Básico"
        assert sent_subscription["externalReference"] == "pro-1:basic"

        assert api.requests[0].headers["access_token"] == "aact_test_key"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data, field",
        [
            ({"name": " ", "cpf_cnpj": VALID_CPF, "phone": "11987654321"}, "name"),
            ({"name": "Ana", "cpf_cnpj": "123.456.789-00", "phone": "11987654321"}, "cpf_cnpj"),
            ({"name": "Ana", "cpf_cnpj": VALID_CPF, "phone": "98765"}, "phone"),
        ],
    )
    async def test_local_validation_happens_before_any_call(self, asaas, api, user, plan, data, field):
        with pytest.raises(InvalidCustomerData) as exc_info:
            await asaas.initiate_checkout(user, plan, PaymentMethod.BOLETO, CustomerData(**data))

        assert exc_info.value.field == field
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_customer_data_is_required(self, asaas, user, plan):
        with pytest.raises(InvalidCustomerData):
            await asaas.initiate_checkout(user, plan, PaymentMethod.BOLETO, None)

    @pytest.mark.asyncio
    async def test_provider_rejection_is_invalid_customer_data(self, asaas, api, user, plan, customer):
        api.add("POST", "/customers", status=400, body={"errors": [{"description": "CPF inválido"}]})

        with pytest.raises(InvalidCustomerData):
            await asaas.initiate_checkout(user, plan, PaymentMethod.BOLETO, customer)

    @pytest.mark.asyncio
    async def test_server_error_is_provider_unavailable(self, asaas, api, user, plan, customer):
        api.add("POST", "/customers", status=502)

        with pytest.raises(ProviderUnavailable):
            await asaas.initiate_checkout(user, plan, PaymentMethod.BOLETO, customer)

    @pytest.mark.asyncio
    async def test_timeout_is_provider_unavailable(self, user, plan, customer):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        service = AsaasService(api_key="key", webhook_token=WEBHOOK_TOKEN, transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderUnavailable):
            await service.initiate_checkout(user, plan, PaymentMethod.BOLETO, customer)


class TestVerifyCompletedSession:
    @pytest.mark.asyncio
    async def test_confirmed_payment_completes(self, asaas, api):
        api.add(
            "GET",
            "/subscriptions/sub_1",
            body={"id": "sub_1", "customer": "cus_1", "nextDueDate": "2024-07-15", "externalReference": "pro-1:basic"},
        )
        api.add(
            "GET",
            "/subscriptions/sub_1/payments",
            body={"data": [{"id": "pay_1", "status": "CONFIRMED", "value": 29.9}]},
        )

        event = await asaas.verify_completed_session("sub_1")

        assert event.kind == EventKind.CHECKOUT_COMPLETED
        assert event.reference == "pay_1"
        assert event.user_id == "pro-1"
        assert event.plan_id == "basic"
        assert event.external_customer_id == "cus_1"
        assert event.period_end == datetime(2024, 7, 15, 3, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_pending_payment_is_incomplete(self, asaas, api):
        api.add("GET", "/subscriptions/sub_1", body={"id": "sub_1", "externalReference": "pro-1"})
        api.add("GET", "/subscriptions/sub_1/payments", body={"data": [{"id": "pay_1", "status": "PENDING"}]})

        with pytest.raises(SessionIncomplete):
            await asaas.verify_completed_session("sub_1")

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, asaas):
        with pytest.raises(SessionNotFound):
            await asaas.verify_completed_session("sub_missing")

    @pytest.mark.asyncio
    async def test_deleted_subscription(self, asaas, api):
        api.add("GET", "/subscriptions/sub_1", body={"id": "sub_1", "deleted": True})

        with pytest.raises(SessionNotFound):
            await asaas.verify_completed_session("sub_1")


def webhook_body(event: str, **payload) -> bytes:
    return json.dumps({"id": f"evt_{event.lower()}", "event": event, "dateCreated": "2024-06-15 09:00:00", **payload}).encode()


class TestParseWebhook:
    def test_payment_received(self, asaas):
        body = webhook_body(
            "PAYMENT_RECEIVED",
            payment={
                "id": "pay_1",
                "customer": "cus_1",
                "subscription": "sub_1",
                "value": 29.9,
                "dueDate": "2024-06-15",
                "externalReference": "pro-1:basic",
            },
        )

        event = asaas.parse_webhook(body, WEBHOOK_TOKEN)

        assert event.kind == EventKind.PAYMENT_SUCCEEDED
        assert event.reference == "pay_1"
        assert event.user_id == "pro-1"
        assert event.plan_id == "basic"
        assert event.occurred_at == datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
        assert event.period_end == datetime(2024, 7, 15, 3, 0, tzinfo=timezone.utc)

    def test_confirmed_and_received_share_reference(self, asaas):
        payment = {"id": "pay_1", "dueDate": "2024-06-15", "externalReference": "pro-1"}

        confirmed = asaas.parse_webhook(webhook_body("PAYMENT_CONFIRMED", payment=payment), WEBHOOK_TOKEN)
        received = asaas.parse_webhook(webhook_body("PAYMENT_RECEIVED", payment=payment), WEBHOOK_TOKEN)

        assert confirmed.reference == received.reference == "pay_1"

    def test_overdue_is_payment_failed(self, asaas):
        body = webhook_body("PAYMENT_OVERDUE", payment={"id": "pay_2", "externalReference": "pro-1"})

        event = asaas.parse_webhook(body, WEBHOOK_TOKEN)

        assert event.kind == EventKind.PAYMENT_FAILED
        assert event.reference == "pay_2:PAYMENT_OVERDUE"

    def test_subscription_deleted(self, asaas):
        body = webhook_body(
            "SUBSCRIPTION_DELETED", subscription={"id": "sub_1", "customer": "cus_1", "externalReference": "pro-1"}
        )

        event = asaas.parse_webhook(body, WEBHOOK_TOKEN)

        assert event.kind == EventKind.SUBSCRIPTION_CANCELED
        assert event.external_subscription_id == "sub_1"

    def test_unknown_event_is_ignored(self, asaas):
        event = asaas.parse_webhook(webhook_body("PAYMENT_CREATED", payment={"id": "pay_3"}), WEBHOOK_TOKEN)
        assert event.kind == EventKind.IGNORED

    @pytest.mark.parametrize(
        "event",
        [
            {"event": "PAYMENT_RECEIVED", "payment": {"customer": "cus_1"}},
            {"event": "PAYMENT_OVERDUE"},
            {"event": "SUBSCRIPTION_DELETED", "subscription": {"customer": "cus_1"}},
        ],
    )
    def test_event_without_any_id_is_ignored(self, asaas, event):
        body = json.dumps({"dateCreated": "2024-06-15 09:00:00", **event}).encode()

        normalized = asaas.parse_webhook(body, WEBHOOK_TOKEN)

        assert normalized.kind == EventKind.IGNORED
        assert normalized.reference == f"asaas:{event['event']}"

    @pytest.mark.parametrize("token", [None, "", "wrong-token"])
    def test_bad_token_is_rejected(self, asaas, token):
        with pytest.raises(InvalidSignature):
            asaas.parse_webhook(webhook_body("PAYMENT_RECEIVED", payment={"id": "pay_1"}), token)

    def test_missing_token_configuration(self):
        service = AsaasService(api_key=None, webhook_token=None)

        with pytest.raises(WebhookNotConfigured):
            service.parse_webhook(webhook_body("PAYMENT_RECEIVED"), WEBHOOK_TOKEN)
        assert service.is_available() is False
