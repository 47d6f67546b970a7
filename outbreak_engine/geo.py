"""Geographic helpers for outbreak clustering"""

import math
from typing import Tuple

EARTH_RADIUS_KM = 6371.0
CELL_PRECISION = 1  # decimal places, ~11 km cells


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometers"""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2)
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def round_half_up(value: float, precision: int = CELL_PRECISION) -> float:
    # round() is banker's rounding; cells must round .x5 away from the lower cell
    factor = 10 ** precision
    return math.floor(value * factor + 0.5) / factor


def cell_of(lat: float, lon: float, precision: int = CELL_PRECISION) -> Tuple[float, float]:
    """Coarse grid cell containing a point"""
    return round_half_up(lat, precision), round_half_up(lon, precision)
