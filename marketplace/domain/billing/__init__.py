"""
Billing Domain

Subscription lifecycle for professionals: plans, checkout with the card
(Stripe) and boleto/PIX (Asaas) providers, webhook reconciliation of
subscriptionStatus and the access gate that enforces it.

Routers live in billing.router and are mounted by marketplace.main.
"""
