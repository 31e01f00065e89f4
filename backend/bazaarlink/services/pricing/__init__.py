from bazaarlink.services.pricing.delivery_pricing import (
    DeliveryQuote,
    normalize_vehicle_tier,
    quote,
    quote_delivery,
    split_delivery,
)

__all__ = ["DeliveryQuote", "normalize_vehicle_tier", "quote", "quote_delivery", "split_delivery"]
