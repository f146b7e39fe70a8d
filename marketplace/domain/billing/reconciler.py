"""Subscription reconciler - turns one payment event into subscriptionStatus changes.

compute_transition never touches the store. It returns the outcome together with
the field changes (keys relative to the subscriptionStatus sub-document) that the
service writes as a single field-path update.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from .errors import StaleEvent
from .schemas import (
    EventKind,
    NormalizedPaymentEvent,
    PaymentStatus,
    SubscriptionState,
    ensure_utc,
)

logger = logging.getLogger(__name__)

BILLING_CYCLE = relativedelta(months=1)
RECENT_EVENT_REFS_LIMIT = 20

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNCHANGED = "unchanged"
STALE = "stale"


@dataclass
class Transition:
    outcome: str
    changes: dict = field(default_factory=dict)

    @property
    def writes(self) -> bool:
        return self.outcome == APPLIED and bool(self.changes)


def _activation_changes(event: NormalizedPaymentEvent, now: datetime) -> dict:
    if event.period_end and event.period_end > now:
        period_end = event.period_end
    else:
        period_end = now + BILLING_CYCLE

    changes = {
        "active": True,
        "provider": event.provider.value,
        "currentPeriodStart": now,
        "currentPeriodEnd": period_end,
        "lastPaymentStatus": PaymentStatus.SUCCEEDED.value,
        "canceledAt": None,
    }
    # Keep what is already on record when the event does not carry it
    optional = {
        "planId": event.plan_id,
        "planName": event.plan_name,
        "externalCustomerId": event.external_customer_id,
        "externalSubscriptionId": event.external_subscription_id,
    }
    for key, value in optional.items():
        if value is not None:
            changes[key] = value
    return changes


def _is_new_subscription(state: SubscriptionState, event: NormalizedPaymentEvent) -> bool:
    return bool(
        event.external_subscription_id
        and event.external_subscription_id != state.external_subscription_id
    )


def _bookkeeping(
    state: Optional[SubscriptionState], event: NormalizedPaymentEvent, now: datetime
) -> dict:
    recent = list(state.recent_event_refs) if state else []
    recent.append(event.reference)
    return {
        "lastEventAt": event.occurred_at,
        "lastEventRef": event.reference,
        "recentEventRefs": recent[-RECENT_EVENT_REFS_LIMIT:],
        "updatedAt": now,
    }


def compute_transition(
    state: Optional[SubscriptionState], event: NormalizedPaymentEvent, now: datetime
) -> Transition:
    """Compute the effect of one event on the stored state.

    Raises StaleEvent when the event is strictly older than the last applied one.
    """
    now = ensure_utc(now)

    if event.kind == EventKind.IGNORED:
        return Transition(IGNORED)

    if state is not None:
        if state.has_applied(event.reference):
            return Transition(DUPLICATE)
        if state.last_event_at and event.occurred_at < state.last_event_at:
            raise StaleEvent(
                f"event {event.reference} at {event.occurred_at.isoformat()} is older than "
                f"last applied {state.last_event_ref} at {state.last_event_at.isoformat()}"
            )

    if event.kind == EventKind.CHECKOUT_COMPLETED:
        changes = _activation_changes(event, now)

    elif event.kind == EventKind.PAYMENT_SUCCEEDED:
        if state is None or _is_new_subscription(state, event):
            # First payment of a subscription we have no record of yet
            changes = _activation_changes(event, now)
        else:
            base = max(state.current_period_end or now, now)
            changes = {
                "active": True,
                "currentPeriodEnd": base + BILLING_CYCLE,
                "lastPaymentStatus": PaymentStatus.SUCCEEDED.value,
            }

    elif event.kind == EventKind.PAYMENT_FAILED:
        if state is None:
            return Transition(UNCHANGED)
        changes = {
            "active": False,
            "lastPaymentStatus": PaymentStatus.FAILED.value,
        }

    elif event.kind == EventKind.SUBSCRIPTION_CANCELED:
        if state is None or (state.canceled_at is not None and not state.active):
            return Transition(UNCHANGED)
        changes = {
            "active": False,
            "canceledAt": event.occurred_at,
        }

    else:
        logger.warning(f"⚠️ Unhandled event kind {event.kind}; ignoring")
        return Transition(IGNORED)

    changes.update(_bookkeeping(state, event, now))
    return Transition(APPLIED, changes)


def apply_changes(
    state: Optional[SubscriptionState], changes: dict
) -> SubscriptionState:
    """State as it reads after the field changes are written"""
    current = state.model_dump(by_alias=True) if state else {}
    current.update(changes)
    return SubscriptionState.model_validate(current)
