"""Billing router - FastAPI endpoints for billing operations"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ...auth import get_current_identity, get_gate_identity, get_optional_gate_identity, require_admin
from ...database import get_db
from ...rate_limiter import rate_limit_billing_webhook
from .access_gate import PLAN_SELECTION_PATH
from .errors import BillingError, InvalidSignature, SessionIncomplete, SessionNotFound
from .repository import SubscriptionRepository
from .schemas import (
    AccessDecision,
    AccessResponse,
    ActivatePlanRequest,
    CheckoutRequest,
    CheckoutResult,
    CurrentPlanResponse,
    Identity,
    PlansResponse,
    Provider,
    VerifySessionResponse,
    WebhookAck,
)
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])
access_router = APIRouter(tags=["Access"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def get_subscription_service(request: Request, db=Depends(get_db)) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(SubscriptionRepository(db), request.app.state.providers)


async def require_entitlement(
    identity: Identity = Depends(get_gate_identity),
    service: SubscriptionService = Depends(get_subscription_service),
) -> Identity:
    """
    Guard for API routes behind the plan paywall.
    Same decision as the page gate: 401 for login, 402 for plan selection.
    """
    result = service.decide_access_for(identity, "/marketplace")
    if result.decision == AccessDecision.REDIRECT_TO_LOGIN:
        raise HTTPException(status_code=401, detail="Cadastro incompleto. Faça login novamente.")
    if result.decision == AccessDecision.REDIRECT_TO_PLAN_SELECTION:
        logger.warning(f"⚠️ User {identity.uid} attempted to access protected route without a plan")
        raise HTTPException(
            status_code=402,
            detail="Plano expirado ou inexistente. Escolha um plano para continuar.",
            headers={"X-Plan-Required": "true", "Location": PLAN_SELECTION_PATH},
        )
    return identity


# ============================================================================
# PLANS & SUBSCRIPTION
# ============================================================================


@router.get("/plans", response_model=PlansResponse)
async def list_plans(service: SubscriptionService = Depends(get_subscription_service)):
    """List active plans, cheapest first"""
    return PlansResponse(plans=service.list_plans())


@router.get("/current-plan", response_model=CurrentPlanResponse)
async def get_current_plan(
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Get current plan information"""
    return service.get_current_plan(identity)


@router.post("/checkout", response_model=CheckoutResult)
async def create_checkout(
    body: CheckoutRequest,
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create a checkout session"""
    return await service.create_checkout(body, identity)


@router.get("/verify-session", response_model=VerifySessionResponse)
async def verify_session(
    session_id: str = Query(..., min_length=1),
    provider: Provider = Query(Provider.CARD_CHECKOUT),
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Confirm a checkout from the payment-return page"""
    try:
        return await service.reconcile_from_redirect(session_id, provider, identity)
    except (SessionNotFound, SessionIncomplete) as e:
        return JSONResponse(
            status_code=e.status_code,
            content=VerifySessionResponse(ok=False, error=e.user_message, status=e.code).model_dump(),
        )


@router.post("/activate-plan")
async def manually_activate_plan(
    body: ActivatePlanRequest,
    admin: Identity = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Manually activate a plan (admin function)"""
    return service.activate_plan_manually(body, admin)


# ============================================================================
# ACCESS GATE
# ============================================================================


@access_router.get("/access", response_model=AccessResponse)
async def check_access(
    path: str = Query("/"),
    identity: Optional[Identity] = Depends(get_optional_gate_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Decide whether the caller may open a frontend route"""
    return service.decide_access_for(identity, path)


# ============================================================================
# WEBHOOKS
# ============================================================================


async def _handle_webhook(
    service: SubscriptionService, provider: Provider, raw_body: bytes, signature: Optional[str]
) -> JSONResponse:
    try:
        ack = await service.reconcile_webhook(provider, raw_body, signature)
    except InvalidSignature as e:
        return JSONResponse(
            status_code=e.status_code,
            content=WebhookAck(acknowledged=False, status=e.code).model_dump(),
        )
    except BillingError as e:
        if e.transient:
            logger.error(f"❌ {provider.value} webhook failed, asking for redelivery: {e.code}")
        else:
            logger.error(f"❌ {provider.value} webhook rejected: {e.code}")
        return JSONResponse(
            status_code=e.status_code,
            content=WebhookAck(acknowledged=e.status_code < 300, status=e.code).model_dump(),
        )
    return JSONResponse(status_code=200, content=ack.model_dump())


@webhooks_router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    service: SubscriptionService = Depends(get_subscription_service),
    _: None = Depends(rate_limit_billing_webhook),
):
    """Handle Stripe webhook events"""
    raw_body = await request.body()
    return await _handle_webhook(service, Provider.CARD_CHECKOUT, raw_body, stripe_signature)


@webhooks_router.post("/asaas", response_model=WebhookAck)
async def asaas_webhook(
    request: Request,
    asaas_access_token: Optional[str] = Header(None, alias="asaas-access-token"),
    service: SubscriptionService = Depends(get_subscription_service),
    _: None = Depends(rate_limit_billing_webhook),
):
    """Handle Asaas webhook events"""
    raw_body = await request.body()
    return await _handle_webhook(service, Provider.BOLETO_PIX, raw_body, asaas_access_token)
