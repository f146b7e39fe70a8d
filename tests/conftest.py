"""
Shared test fixtures.

The Firestore-backed repository is replaced by an in-memory fake that keeps
the same field-path update and precondition semantics, so service tests can
exercise reconciliation end to end without a document store.
"""

import os
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

os.environ.setdefault("FIREBASE_PROJECT_ID", "marketplace-test")
os.environ.pop("REDIS_URL", None)

from marketplace.domain.billing.errors import (  # noqa: E402
    ConcurrentUpdate,
    StoreReadFailure,
    StoreWriteFailure,
)
from marketplace.domain.billing.providers import PaymentProvider, ProviderRegistry  # noqa: E402
from marketplace.domain.billing.repository import (  # noqa: E402
    SUBSCRIPTION_FIELD,
    SubscriptionSnapshot,
)
from marketplace.domain.billing.schemas import (  # noqa: E402
    EventKind,
    Identity,
    NormalizedPaymentEvent,
    Plan,
    Provider,
    Role,
    SubscriptionState,
    UserRecord,
)
from marketplace.domain.billing.subscription_service import SubscriptionService  # noqa: E402

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class FakeRepository:
    """In-memory stand-in for SubscriptionRepository"""

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.plans: dict[str, dict] = {}
        self.professionals: dict[str, dict] = {}
        self.update_times: dict[str, datetime] = {}
        self.writes: list[tuple[str, dict]] = []
        self.fail_reads = False
        self.fail_writes = False
        # Number of guarded writes that lose to a concurrent writer
        self.conflicts = 0
        self._clock = count(1)

    def _touch(self, user_id: str):
        self.update_times[user_id] = NOW + timedelta(microseconds=next(self._clock))

    def _check_read(self):
        if self.fail_reads:
            raise StoreReadFailure("firestore unavailable")

    def add_user(self, user_id: str, role: str = "professional", email: Optional[str] = None):
        self.users[user_id] = {"email": email or f"{user_id}@example.com", "name": user_id, "userType": role}

    def add_plan(self, plan_id: str, name: str, price: float, active: bool = True, price_id: str = None):
        self.plans[plan_id] = {"name": name, "price": price, "active": active, "priceId": price_id}

    def set_state(self, user_id: str, **fields):
        self.professionals[user_id] = {SUBSCRIPTION_FIELD: fields}
        self._touch(user_id)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        self._check_read()
        if user_id not in self.users:
            return None
        return UserRecord.model_validate({**self.users[user_id], "id": user_id})

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        self._check_read()
        if plan_id not in self.plans:
            return None
        return Plan.model_validate({**self.plans[plan_id], "id": plan_id})

    def list_active_plans(self) -> list[Plan]:
        self._check_read()
        plans = [Plan.model_validate({**p, "id": pid}) for pid, p in self.plans.items() if p["active"]]
        return sorted(plans, key=lambda p: p.price)

    def get_subscription_snapshot(self, user_id: str) -> SubscriptionSnapshot:
        self._check_read()
        doc = self.professionals.get(user_id)
        if doc is None:
            return SubscriptionSnapshot(exists=False)
        raw = doc.get(SUBSCRIPTION_FIELD)
        state = SubscriptionState.model_validate(raw) if isinstance(raw, dict) else None
        return SubscriptionSnapshot(exists=True, state=state, update_time=self.update_times[user_id])

    def get_subscription_state(self, user_id: str) -> Optional[SubscriptionState]:
        return self.get_subscription_snapshot(user_id).state

    def _guard(self):
        if self.fail_writes:
            raise StoreWriteFailure("firestore unavailable")
        if self.conflicts:
            self.conflicts -= 1
            raise ConcurrentUpdate("document changed")

    def patch_subscription_state(self, user_id, changes, last_update_time=None):
        self._guard()
        if last_update_time is not None and self.update_times.get(user_id) != last_update_time:
            raise ConcurrentUpdate("precondition failed")
        doc = self.professionals.setdefault(user_id, {})
        doc.setdefault(SUBSCRIPTION_FIELD, {}).update(changes)
        self.writes.append((user_id, dict(changes)))
        self._touch(user_id)

    def create_subscription_state(self, user_id, changes):
        self._guard()
        if user_id in self.professionals:
            raise ConcurrentUpdate("already exists")
        self.professionals[user_id] = {SUBSCRIPTION_FIELD: dict(changes)}
        self.writes.append((user_id, dict(changes)))
        self._touch(user_id)

    def find_user_id_by_customer_id(self, customer_id: str) -> Optional[str]:
        self._check_read()
        for user_id, doc in self.professionals.items():
            if (doc.get(SUBSCRIPTION_FIELD) or {}).get("externalCustomerId") == customer_id:
                return user_id
        return None

    def update_profile_fields(self, user_id, fields):
        self.professionals.setdefault(user_id, {}).update(fields)


class FakeProvider(PaymentProvider):
    """Provider adapter whose behaviour each test configures"""

    def __init__(self, provider: Provider = Provider.CARD_CHECKOUT):
        self.provider = provider
        self.checkout_mock = AsyncMock()
        self.verify_mock = AsyncMock()
        self.webhook_mock = MagicMock()
        self.available = True

    def is_available(self) -> bool:
        return self.available

    async def initiate_checkout(self, user, plan, payment_method, customer=None):
        return await self.checkout_mock(user, plan, payment_method, customer)

    async def verify_completed_session(self, session_ref):
        return await self.verify_mock(session_ref)

    def parse_webhook(self, raw_body, signature_header):
        return self.webhook_mock(raw_body, signature_header)


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def card_provider():
    return FakeProvider(Provider.CARD_CHECKOUT)


@pytest.fixture
def boleto_provider():
    return FakeProvider(Provider.BOLETO_PIX)


@pytest.fixture
def registry(card_provider, boleto_provider):
    return ProviderRegistry([card_provider, boleto_provider])


@pytest.fixture
def service(repo, registry):
    return SubscriptionService(repo, registry)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def professional():
    return Identity(uid="pro-1", email="pro-1@example.com", role=Role.PROFESSIONAL)


@pytest.fixture
def client_identity():
    return Identity(uid="client-1", email="client-1@example.com", role=Role.CLIENT)


@pytest.fixture
def admin():
    return Identity(uid="admin-1", email="admin@example.com", role=Role.ADMIN)


@pytest.fixture
def make_event():
    """Factory for normalized events targeting pro-1 by default"""

    def _make(kind: EventKind, reference: str, occurred_at: datetime = NOW, **kwargs):
        kwargs.setdefault("user_id", "pro-1")
        kwargs.setdefault("provider", Provider.CARD_CHECKOUT)
        return NormalizedPaymentEvent(kind=kind, reference=reference, occurred_at=occurred_at, **kwargs)

    return _make
