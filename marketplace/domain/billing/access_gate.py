"""Access gate - route-level entitlement decision.

decide_access is a pure function of its inputs; reading the subscription state
is the caller's job (see SubscriptionService.decide_access_for).
"""

from datetime import datetime
from typing import Optional

from .schemas import AccessDecision, Identity, ResourceClass, Role, SubscriptionState

PLAN_SELECTION_PATH = "/plans"
LOGIN_PATH = "/login"

# Reachable even when the plan has expired, otherwise nobody could renew
PLAN_SELECTION_PATHS = ("/plans", "/expired-plan", "/payment-success")
PROTECTED_PREFIXES = ("/marketplace", "/principal")

REDIRECT_TARGETS = {
    AccessDecision.ALLOW: None,
    AccessDecision.REDIRECT_TO_PLAN_SELECTION: PLAN_SELECTION_PATH,
    AccessDecision.REDIRECT_TO_LOGIN: LOGIN_PATH,
}


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def classify_resource(path: str) -> ResourceClass:
    """Map a frontend path to the resource class the gate understands"""
    normalized = "/" + (path or "").split("?", 1)[0].strip().strip("/")

    if any(_matches(normalized, p) for p in PLAN_SELECTION_PATHS):
        return ResourceClass.PLAN_SELECTION
    if any(_matches(normalized, p) for p in PROTECTED_PREFIXES):
        return ResourceClass.PROTECTED
    return ResourceClass.PUBLIC


def decide_access(
    identity: Optional[Identity],
    subscription: Optional[SubscriptionState],
    resource_class: ResourceClass,
    now: datetime,
) -> AccessDecision:
    if resource_class == ResourceClass.PUBLIC:
        return AccessDecision.ALLOW
    if identity is None:
        return AccessDecision.REDIRECT_TO_LOGIN
    if identity.role == Role.ADMIN:
        return AccessDecision.ALLOW
    if resource_class == ResourceClass.PLAN_SELECTION:
        return AccessDecision.ALLOW
    if identity.role_lookup_failed:
        return AccessDecision.REDIRECT_TO_PLAN_SELECTION
    if identity.role == Role.CLIENT:
        return AccessDecision.ALLOW
    if identity.role == Role.PROFESSIONAL:
        if subscription is None or subscription.is_expired(now):
            return AccessDecision.REDIRECT_TO_PLAN_SELECTION
        return AccessDecision.ALLOW
    # Signed in but registration never completed (no users/{uid} record)
    return AccessDecision.REDIRECT_TO_LOGIN


def redirect_target(decision: AccessDecision) -> Optional[str]:
    return REDIRECT_TARGETS[decision]
