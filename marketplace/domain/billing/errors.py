"""Billing errors - typed failures raised by providers, the store and the reconciler.

Every error carries the HTTP status it maps to and a localized message that is
safe to show to the user. Provider error text goes to the logs only.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for billing failures"""

    status_code = 500
    code = "billing_error"
    user_message = "Erro ao processar pagamento. Tente novamente."
    # Transient failures ask the payment provider to redeliver the webhook
    transient = False

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.code)
        self.detail = detail


class InvalidSignature(BillingError):
    status_code = 400
    code = "invalid_signature"
    user_message = "Assinatura do webhook inválida."


class WebhookNotConfigured(BillingError):
    status_code = 500
    code = "webhook_not_configured"
    user_message = "Webhook não configurado."


class SessionNotFound(BillingError):
    status_code = 404
    code = "session_not_found"
    user_message = "Pagamento ainda não confirmado. Tente novamente em instantes."


class SessionIncomplete(BillingError):
    status_code = 409
    code = "session_incomplete"
    user_message = "Pagamento ainda não confirmado. Tente novamente em instantes."


class InvalidPlan(BillingError):
    status_code = 422
    code = "invalid_plan"
    user_message = "Plano inválido ou indisponível."


class InvalidCustomerData(BillingError):
    status_code = 422
    code = "invalid_customer_data"
    user_message = "Dados de cadastro inválidos. Verifique nome, CPF/CNPJ e telefone."

    def __init__(self, detail: Optional[str] = None, field: Optional[str] = None):
        super().__init__(detail)
        self.field = field


class ProviderUnavailable(BillingError):
    status_code = 503
    code = "provider_unavailable"
    user_message = "Serviço de pagamento indisponível no momento. Tente novamente."
    transient = True


class StoreReadFailure(BillingError):
    status_code = 503
    code = "store_read_failure"
    user_message = "Serviço temporariamente indisponível. Tente novamente."
    transient = True


class StoreWriteFailure(BillingError):
    status_code = 503
    code = "store_write_failure"
    user_message = "Serviço temporariamente indisponível. Tente novamente."
    transient = True


class ConcurrentUpdate(StoreWriteFailure):
    """The document changed between read and guarded write"""

    code = "concurrent_update"


class StaleEvent(BillingError):
    """Event older than the stored state; discarded and acknowledged"""

    status_code = 200
    code = "stale_event"
