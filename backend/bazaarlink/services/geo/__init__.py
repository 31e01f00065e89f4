from bazaarlink.services.geo.distance import (
    Coordinate,
    coerce_coordinate,
    distance_and_time,
    haversine_km,
    is_valid_coordinate,
)

__all__ = [
    "Coordinate",
    "coerce_coordinate",
    "distance_and_time",
    "haversine_km",
    "is_valid_coordinate",
]
