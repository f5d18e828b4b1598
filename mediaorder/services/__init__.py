# Service Layer

from mediaorder.services.pricing_service import (
    InvalidTierTableError,
    PricingEngine,
    PricingResult,
    PricingTier,
    TierCalculation,
    price,
    tier_for,
)
from mediaorder.services.order_service import OrderNotFoundError, OrderService

__all__ = [
    "InvalidTierTableError",
    "PricingEngine",
    "PricingResult",
    "PricingTier",
    "TierCalculation",
    "price",
    "tier_for",
    "OrderNotFoundError",
    "OrderService",
]
