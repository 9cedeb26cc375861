"""Fare estimation for on-demand rides (prices in INR)."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, Tuple

from src.api.models.driver import VehicleType

CURRENCY = "INR"

# ride type -> (base fare, rate per km)
RATES: Dict[VehicleType, Tuple[float, float]] = {
    VehicleType.economy: (50.0, 15.0),
    VehicleType.comfort: (80.0, 20.0),
    VehicleType.premium: (120.0, 30.0),
    VehicleType.suv: (100.0, 25.0),
}
TIME_RATE_PER_KM = 2.5
TAX_RATE = 0.05


@dataclass(frozen=True)
class FareBreakdown:
    base_fare: float
    distance_fare: float
    time_fare: float
    surge: float
    tax: float
    total: float

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


# PUBLIC_INTERFACE
def calculate_fare(distance_km: float, ride_type: VehicleType | str = VehicleType.economy) -> FareBreakdown:
    """
    Estimate the fare of an on-demand ride.

    total = base + distance * rate + distance * time rate, plus 5% tax on that
    subtotal. Every component is rounded to 2 decimals.

    Raises:
        ValueError: negative distance or unknown ride type.
    """
    if distance_km < 0:
        raise ValueError("distance_km must be non-negative")
    try:
        base, per_km = RATES[VehicleType(ride_type)]
    except ValueError:
        raise ValueError(f"Unknown ride type: {ride_type}")

    distance_fare = distance_km * per_km
    time_fare = distance_km * TIME_RATE_PER_KM
    subtotal = base + distance_fare + time_fare
    tax = subtotal * TAX_RATE

    return FareBreakdown(
        base_fare=round(base, 2),
        distance_fare=round(distance_fare, 2),
        time_fare=round(time_fare, 2),
        surge=0.0,
        tax=round(tax, 2),
        total=round(subtotal + tax, 2),
    )
