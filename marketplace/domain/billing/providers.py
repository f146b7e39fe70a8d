"""Payment provider interface and the registry built at application startup"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from .errors import ProviderUnavailable
from .schemas import (
    CheckoutResult,
    CustomerData,
    NormalizedPaymentEvent,
    PaymentMethod,
    Plan,
    Provider,
    UserRecord,
)

logger = logging.getLogger(__name__)


class PaymentProvider(ABC):
    """One external billing provider.

    parse_webhook must authenticate the payload before reading it and raise
    InvalidSignature when it cannot.
    """

    provider: Provider

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    async def initiate_checkout(
        self,
        user: UserRecord,
        plan: Plan,
        payment_method: PaymentMethod,
        customer: Optional[CustomerData] = None,
    ) -> CheckoutResult:
        ...

    @abstractmethod
    async def verify_completed_session(self, session_ref: str) -> NormalizedPaymentEvent:
        ...

    @abstractmethod
    def parse_webhook(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> NormalizedPaymentEvent:
        ...

    async def aclose(self) -> None:
        return None


class ProviderRegistry:
    """Provider adapters keyed by provider name"""

    def __init__(self, providers: list[PaymentProvider]):
        self._providers = {p.provider: p for p in providers}

    def get(self, provider: Provider, require_client: bool = True) -> PaymentProvider:
        """Adapter for a provider.

        Webhook parsing only needs the webhook secret, so it passes
        require_client=False.
        """
        adapter = self._providers.get(provider)
        if adapter is None or (require_client and not adapter.is_available()):
            logger.error(f"❌ Payment provider {provider.value} is not configured")
            raise ProviderUnavailable(f"provider {provider.value} not configured")
        return adapter

    async def aclose(self) -> None:
        for adapter in self._providers.values():
            try:
                await adapter.aclose()
            except Exception as e:
                logger.warning(f"⚠️ Failed to close {adapter.provider.value} client: {e}")


def build_provider_registry() -> ProviderRegistry:
    """Create both provider adapters from configuration"""
    from .asaas_service import AsaasService
    from .stripe_service import StripeCheckoutService

    return ProviderRegistry([StripeCheckoutService(), AsaasService()])
