"""
Quota Ledger - Billing Module

Turns money and promotions into quota grants:
- Price table for AI vendors and purchasable products
- Settlement gateway (payment state machine, purchase crediting)
- Outbox processor for payment_completed events
- Gift grants (signup, phone binding, invitations)
- Stripe Checkout integration
"""

from .pricing import PriceTable, Product, ExpirePolicy, price_to_coins
from .settlement import SettlementGateway
from .outbox import OutboxProcessor
from .gifts import GiftService
from .stripe_integration import (
    StripeIntegration,
    CheckoutSession,
    StripeIntegrationError,
)

__all__ = [
    "PriceTable",
    "Product",
    "ExpirePolicy",
    "price_to_coins",
    "SettlementGateway",
    "OutboxProcessor",
    "GiftService",
    "StripeIntegration",
    "CheckoutSession",
    "StripeIntegrationError",
]
