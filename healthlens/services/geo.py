"""Great-circle distance and facility ranking. Distance is never taken from the model."""
import math
from collections.abc import Iterable

from healthlens.schemas.analysis import Facility

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def format_distance(km: float) -> str:
    """'850 m' below 1 km, '2.4 km' from 1 km up."""
    if km < 1:
        return f"{km * 1000:.0f} m"
    return f"{km:.1f} km"


def rank_facilities(lat: float, lng: float, facilities: Iterable[Facility]) -> list[Facility]:
    """Copies of facilities with distance filled in, nearest first."""
    ranked = []
    for facility in facilities:
        km = haversine_km(lat, lng, facility.lat, facility.lng)
        ranked.append(facility.model_copy(update={"distance_km": km, "distance": format_distance(km)}))
    ranked.sort(key=lambda f: f.distance_km)
    return ranked
