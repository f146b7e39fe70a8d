"""Subscription service - Business logic for subscription management"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta
from fastapi import HTTPException

from .access_gate import classify_resource, decide_access, redirect_target
from .errors import ConcurrentUpdate, InvalidPlan, SessionNotFound, StaleEvent
from .providers import ProviderRegistry
from .reconciler import APPLIED, IGNORED, STALE, apply_changes, compute_transition
from .repository import SubscriptionRepository
from .schemas import (
    AccessDecision,
    AccessResponse,
    ActivatePlanRequest,
    CheckoutRequest,
    CheckoutResult,
    CurrentPlanResponse,
    EventKind,
    Identity,
    NormalizedPaymentEvent,
    Provider,
    ResourceClass,
    Role,
    VerifySessionResponse,
    WebhookAck,
)

logger = logging.getLogger(__name__)

MAX_RECONCILE_ATTEMPTS = 3
UNRESOLVED = "unresolved"


class SubscriptionService:
    """Service for subscription management"""

    def __init__(self, repo: SubscriptionRepository, registry: ProviderRegistry):
        self.repo = repo
        self.registry = registry

    def list_plans(self):
        """Active plans by ascending price"""
        return self.repo.list_active_plans()

    def get_current_plan(self, identity: Identity, now: Optional[datetime] = None) -> CurrentPlanResponse:
        """Get current plan information"""
        now = now or datetime.now(timezone.utc)
        state = self.repo.get_subscription_state(identity.uid)
        return CurrentPlanResponse(
            subscription=state,
            expired=state is None or state.is_expired(now),
        )

    async def create_checkout(self, request: CheckoutRequest, identity: Identity) -> CheckoutResult:
        """Start a checkout with the provider matching the payment method"""
        user = self.repo.get_user(identity.uid)
        if user is None:
            raise HTTPException(status_code=404, detail="Usuário não encontrado")

        plan = self.repo.get_plan(request.plan_id)
        if plan is None or not plan.active:
            logger.warning(f"⚠️ Checkout requested for unknown or inactive plan {request.plan_id}")
            raise InvalidPlan(f"plan {request.plan_id} not available")

        provider = self.registry.get(request.resolved_provider())
        result = await provider.initiate_checkout(
            user, plan, request.payment_method, request.customer
        )
        logger.info(
            f"✅ Checkout started for user {user.id}: provider={result.provider.value} "
            f"plan={plan.id} session={result.session_id}"
        )
        return result

    # ==================== Reconciliation ====================

    def _resolve_user_id(self, event: NormalizedPaymentEvent) -> Optional[str]:
        if event.user_id:
            return event.user_id
        if event.external_customer_id:
            return self.repo.find_user_id_by_customer_id(event.external_customer_id)
        return None

    def _owns_external_subscription(self, user_id: str, event: NormalizedPaymentEvent) -> bool:
        """An ownerless session counts only when it matches ids already stored for the caller"""
        state = self.repo.get_subscription_state(user_id)
        if state is None:
            return False
        if event.external_subscription_id and state.external_subscription_id == event.external_subscription_id:
            return True
        return bool(event.external_customer_id) and state.external_customer_id == event.external_customer_id

    def _with_plan_name(self, event: NormalizedPaymentEvent) -> NormalizedPaymentEvent:
        if not event.plan_id or event.plan_name:
            return event
        plan = self.repo.get_plan(event.plan_id)
        if plan is None:
            return event
        return event.model_copy(update={"plan_name": plan.name})

    def reconcile_event(self, event: NormalizedPaymentEvent, now: Optional[datetime] = None) -> str:
        """Apply one normalized event to the target's subscriptionStatus.

        Returns the outcome. Store and precondition failures propagate so the
        webhook is redelivered.
        """
        if event.kind == EventKind.IGNORED:
            logger.info(f"Event {event.raw_type} ({event.reference}) ignored")
            return IGNORED

        user_id = self._resolve_user_id(event)
        if not user_id:
            logger.warning(
                f"⚠️ No professional found for {event.provider.value} event {event.reference} "
                f"(customer={event.external_customer_id}); acknowledging"
            )
            return UNRESOLVED

        event = self._with_plan_name(event)

        for attempt in range(1, MAX_RECONCILE_ATTEMPTS + 1):
            snapshot = self.repo.get_subscription_snapshot(user_id)
            current_time = now or datetime.now(timezone.utc)
            try:
                transition = compute_transition(snapshot.state, event, current_time)
            except StaleEvent as e:
                logger.warning(f"⏪ Stale event discarded for user {user_id}: {e.detail}")
                return STALE

            if not transition.writes:
                logger.info(
                    f"Event {event.reference} for user {user_id}: {transition.outcome}, no write"
                )
                return transition.outcome

            try:
                if snapshot.exists:
                    self.repo.patch_subscription_state(
                        user_id, transition.changes, last_update_time=snapshot.update_time
                    )
                else:
                    self.repo.create_subscription_state(user_id, transition.changes)
            except ConcurrentUpdate:
                if attempt == MAX_RECONCILE_ATTEMPTS:
                    logger.error(
                        f"❌ Gave up on event {event.reference} for user {user_id} "
                        f"after {attempt} conflicting writes"
                    )
                    raise
                logger.info(f"🔄 Retrying event {event.reference} for user {user_id} (attempt {attempt + 1})")
                continue

            new_state = apply_changes(snapshot.state, transition.changes)
            logger.info(
                f"✅ Applied {event.kind.value} ({event.reference}) for user {user_id}: "
                f"active={new_state.active} periodEnd={new_state.current_period_end}"
            )
            return APPLIED

    async def reconcile_webhook(
        self, provider: Provider, raw_body: bytes, signature_header: Optional[str]
    ) -> WebhookAck:
        """Authenticate, normalize and apply one webhook delivery"""
        adapter = self.registry.get(provider, require_client=False)
        event = adapter.parse_webhook(raw_body, signature_header)
        outcome = self.reconcile_event(event)
        return WebhookAck(acknowledged=True, status=outcome)

    async def reconcile_from_redirect(
        self, session_ref: str, provider: Provider, identity: Identity
    ) -> VerifySessionResponse:
        """Verify a checkout on the payment-return page and apply it"""
        adapter = self.registry.get(provider)
        event = await adapter.verify_completed_session(session_ref)

        if event.user_id and event.user_id != identity.uid and identity.role != Role.ADMIN:
            logger.warning(
                f"🚫 User {identity.uid} tried to verify session {session_ref} of {event.user_id}"
            )
            raise SessionNotFound(session_ref)
        if not event.user_id:
            if not self._owns_external_subscription(identity.uid, event):
                logger.warning(
                    f"🚫 Session {session_ref} carries no owner and does not match the stored "
                    f"subscription of {identity.uid}"
                )
                raise SessionNotFound(session_ref)
            event = event.model_copy(update={"user_id": identity.uid})

        outcome = self.reconcile_event(event)
        return VerifySessionResponse(ok=True, status=outcome)

    def activate_plan_manually(
        self, request: ActivatePlanRequest, admin: Identity, now: Optional[datetime] = None
    ) -> dict:
        """Grant a plan without a payment (admin function)"""
        now = now or datetime.now(timezone.utc)
        plan = self.repo.get_plan(request.plan_id)
        if plan is None:
            raise InvalidPlan(f"plan {request.plan_id} not found")
        if self.repo.get_user(request.user_id) is None:
            raise HTTPException(status_code=404, detail="Usuário não encontrado")

        event = NormalizedPaymentEvent(
            kind=EventKind.CHECKOUT_COMPLETED,
            provider=Provider.MANUAL,
            reference=f"manual:{uuid.uuid4()}",
            occurred_at=now,
            user_id=request.user_id,
            plan_id=plan.id,
            plan_name=plan.name,
            amount=0,
            period_end=now + relativedelta(months=request.months),
            raw_type="manual.activation",
        )
        outcome = self.reconcile_event(event, now=now)
        logger.info(
            f"🛠️ Admin {admin.uid} activated plan {plan.id} for user {request.user_id} "
            f"({request.months} month(s)): {outcome}"
        )
        return {"success": outcome == APPLIED, "status": outcome, "plan": plan.id}

    # ==================== Access gate ====================

    def decide_access_for(
        self, identity: Optional[Identity], path: str, now: Optional[datetime] = None
    ) -> AccessResponse:
        """Gate decision for a navigation target. Never raises."""
        now = now or datetime.now(timezone.utc)
        resource_class = classify_resource(path)

        state = None
        if (
            resource_class == ResourceClass.PROTECTED
            and identity is not None
            and identity.role == Role.PROFESSIONAL
        ):
            try:
                state = self.repo.get_subscription_state(identity.uid)
            except Exception as e:
                logger.warning(f"⚠️ Could not read subscription of {identity.uid}, failing closed: {e}")
                decision = AccessDecision.REDIRECT_TO_PLAN_SELECTION
                return AccessResponse(
                    decision=decision,
                    resource_class=resource_class,
                    redirect_to=redirect_target(decision),
                )

        decision = decide_access(identity, state, resource_class, now)
        return AccessResponse(
            decision=decision,
            resource_class=resource_class,
            redirect_to=redirect_target(decision),
        )
