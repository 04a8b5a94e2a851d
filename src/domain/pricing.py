"""
Fare & Surge Pricing Engine
===========================

Formula
-------
Base_Fare  = max(Minimum_Fare, Base + Distance x Per_KM + Duration x Per_Minute)
Final_Fare = round_half_up(Base_Fare x Surge_Multiplier, 2)   -- in USD,
             then converted to the requested display currency.

* **Surge_Multiplier** = clamp(tier(active_rides / available_drivers)
  x peak_multiplier x event_multiplier, 1.0, surge_cap).  With no available
  drivers the policy's ``no_driver_surge`` applies directly.
* **tier(ratio)** walks the configured ladder from the highest threshold
  down and returns the first multiplier whose threshold the ratio
  *exceeds*; a balanced market (ratio == 1) is not surged.

The breakdown stays in USD regardless of display currency so that it can
be audited against the pricing table.

All tables live in a ``FarePolicy`` injected into ``FareEngine``; nothing
here reads module-level state at call time.

Complexity: O(1) per quote (ladder and peak windows are tiny).
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Mapping, Optional, Sequence, Union

from .currency import (
    CANONICAL_CURRENCY,
    RateProvider,
    StaticRateTable,
    convert_currency,
    to_money,
)
from .distance import DEFAULT_AVERAGE_SPEED_KMH, estimate_distance, estimate_duration
from .entities import Coordinate, FareBreakdown, FareQuote
from .enums import VehicleClass
from .errors import UnknownVehicleClassError


# ── Policy tables ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class VehiclePricing:
    base_fare: Decimal
    per_km_rate: Decimal
    per_minute_rate: Decimal
    minimum_fare: Decimal


@dataclass(frozen=True)
class PeakWindow:
    start_hour: int
    end_hour: int
    multiplier: float = 1.3

    def __post_init__(self) -> None:
        if not 0 <= self.start_hour < self.end_hour <= 24:
            raise ValueError(
                f"Invalid peak window {self.start_hour}-{self.end_hour}"
            )
        if self.multiplier < 1.0:
            raise ValueError("Peak multiplier must be >= 1.0")

    def contains(self, now: datetime) -> bool:
        return self.start_hour <= now.hour < self.end_hour


@dataclass(frozen=True)
class SurgeTier:
    """Applies *multiplier* once the demand ratio exceeds *min_ratio*."""

    min_ratio: float
    multiplier: float


def _d(value: str) -> Decimal:
    return Decimal(value)


DEFAULT_VEHICLE_PRICING: dict[VehicleClass, VehiclePricing] = {
    VehicleClass.STANDARD: VehiclePricing(_d("5.00"), _d("2.50"), _d("0.50"), _d("10.00")),
    VehicleClass.SEDAN: VehiclePricing(_d("5.50"), _d("2.75"), _d("0.55"), _d("11.00")),
    VehicleClass.ELECTRIC: VehiclePricing(_d("4.50"), _d("2.25"), _d("0.45"), _d("9.00")),
    VehicleClass.SUV: VehiclePricing(_d("7.00"), _d("3.50"), _d("0.75"), _d("15.00")),
    VehicleClass.VAN: VehiclePricing(_d("8.00"), _d("3.75"), _d("0.80"), _d("18.00")),
    VehicleClass.LUXURY: VehiclePricing(_d("10.00"), _d("5.00"), _d("1.00"), _d("20.00")),
}

DEFAULT_PEAK_WINDOWS: tuple[PeakWindow, ...] = (
    PeakWindow(7, 9, 1.3),  # morning rush
    PeakWindow(17, 19, 1.3),  # evening rush
)

DEFAULT_SURGE_TIERS: tuple[SurgeTier, ...] = (
    SurgeTier(2.0, 2.0),
    SurgeTier(1.5, 1.5),
    SurgeTier(1.0, 1.2),
)

DEFAULT_SURGE_CAP = 3.0


@dataclass(frozen=True)
class FarePolicy:
    vehicle_pricing: Mapping[VehicleClass, VehiclePricing] = field(
        default_factory=lambda: dict(DEFAULT_VEHICLE_PRICING)
    )
    peak_windows: Sequence[PeakWindow] = DEFAULT_PEAK_WINDOWS
    surge_tiers: Sequence[SurgeTier] = DEFAULT_SURGE_TIERS
    surge_cap: float = DEFAULT_SURGE_CAP
    no_driver_surge: Optional[float] = None  # None -> surge_cap
    average_speed_kmh: float = DEFAULT_AVERAGE_SPEED_KMH
    canonical_currency: str = CANONICAL_CURRENCY

    def __post_init__(self) -> None:
        if self.surge_cap < 1.0:
            raise ValueError("surge_cap must be >= 1.0")
        if self.no_driver_surge is not None and not (
            1.0 <= self.no_driver_surge <= self.surge_cap
        ):
            raise ValueError("no_driver_surge must lie within [1.0, surge_cap]")
        if any(t.multiplier < 1.0 for t in self.surge_tiers):
            raise ValueError("Surge tier multipliers must be >= 1.0")
        if self.average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be positive")
        # Highest threshold first so the ladder can stop at the first hit.
        object.__setattr__(
            self,
            "surge_tiers",
            tuple(sorted(self.surge_tiers, key=lambda t: t.min_ratio, reverse=True)),
        )
        object.__setattr__(self, "peak_windows", tuple(self.peak_windows))

    @property
    def effective_no_driver_surge(self) -> float:
        if self.no_driver_surge is None:
            return self.surge_cap
        return self.no_driver_surge

    @classmethod
    def from_settings(cls, settings) -> "FarePolicy":
        """Build a policy from ``Settings``; unset tables keep the defaults.

        ``vehicle_pricing`` entries are merged field by field over the
        default row for that class, so an override may name only the
        rates it changes.
        """
        pricing = dict(DEFAULT_VEHICLE_PRICING)
        for name, fields in (settings.vehicle_pricing or {}).items():
            vc = resolve_vehicle_class(name)
            overrides = {key: Decimal(str(value)) for key, value in fields.items()}
            if vc in pricing:
                pricing[vc] = dataclasses.replace(pricing[vc], **overrides)
            else:
                pricing[vc] = VehiclePricing(**overrides)

        tiers = DEFAULT_SURGE_TIERS
        if settings.surge_tiers is not None:
            tiers = tuple(SurgeTier(*row) for row in settings.surge_tiers)
        windows = DEFAULT_PEAK_WINDOWS
        if settings.peak_windows is not None:
            windows = tuple(PeakWindow(*row) for row in settings.peak_windows)

        return cls(
            vehicle_pricing=pricing,
            peak_windows=windows,
            surge_tiers=tiers,
            surge_cap=settings.surge_cap,
            no_driver_surge=settings.no_driver_surge,
            average_speed_kmh=settings.average_speed_kmh,
            canonical_currency=settings.canonical_currency,
        )


# ── Pure helpers ──────────────────────────────────────────────────────


def is_peak_hour(
    now: datetime, peak_windows: Iterable[PeakWindow] = DEFAULT_PEAK_WINDOWS
) -> bool:
    """True when ``now``'s local hour falls in any ``[start, end)`` window."""
    return any(window.contains(now) for window in peak_windows)


def peak_multiplier(
    now: datetime, peak_windows: Iterable[PeakWindow] = DEFAULT_PEAK_WINDOWS
) -> float:
    for window in peak_windows:
        if window.contains(now):
            return window.multiplier
    return 1.0


def tier_multiplier(ratio: float, tiers: Sequence[SurgeTier]) -> float:
    for tier in tiers:
        if ratio > tier.min_ratio:
            return tier.multiplier
    return 1.0


def resolve_vehicle_class(value: Union[VehicleClass, str]) -> VehicleClass:
    if isinstance(value, VehicleClass):
        return value
    try:
        return VehicleClass(str(value).strip().lower())
    except ValueError:
        raise UnknownVehicleClassError(f"Unknown vehicle class: {value!r}") from None


# ── Engine facade ─────────────────────────────────────────────────────


class FareEngine:
    """High-level API used by the ride endpoints and the seed script.

    Stateless apart from its injected policy, rate provider and clock, so a
    single instance is safe to share between concurrent requests.
    """

    def __init__(
        self,
        policy: FarePolicy | None = None,
        rates: RateProvider | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.policy = policy or FarePolicy()
        self.rates = rates or StaticRateTable(pivot=self.policy.canonical_currency)
        self.clock = clock

    def pricing_for(self, vehicle_class: Union[VehicleClass, str]) -> VehiclePricing:
        vc = resolve_vehicle_class(vehicle_class)
        try:
            return self.policy.vehicle_pricing[vc]
        except KeyError:
            raise UnknownVehicleClassError(
                f"No pricing configured for vehicle class {vc.value!r}"
            ) from None

    def compute_surge_multiplier(
        self,
        active_rides: int,
        available_drivers: int,
        event_multiplier: float = 1.0,
        now: datetime | None = None,
    ) -> float:
        if active_rides < 0 or available_drivers < 0:
            raise ValueError("Ride and driver counts must not be negative")
        if event_multiplier <= 0:
            raise ValueError("event_multiplier must be positive")

        cap = self.policy.surge_cap
        if available_drivers == 0:
            return min(self.policy.effective_no_driver_surge, cap)

        ratio = active_rides / available_drivers
        surge = tier_multiplier(ratio, self.policy.surge_tiers)
        surge *= peak_multiplier(now or self.clock(), self.policy.peak_windows)
        surge *= event_multiplier
        return round(min(max(surge, 1.0), cap), 4)

    def calculate_base_fare(
        self,
        distance_km: float,
        duration_min: float,
        vehicle_class: Union[VehicleClass, str],
    ) -> Decimal:
        if distance_km < 0 or duration_min < 0:
            raise ValueError("Distance and duration must not be negative")
        pricing = self.pricing_for(vehicle_class)
        raw = (
            pricing.base_fare
            + Decimal(str(distance_km)) * pricing.per_km_rate
            + Decimal(str(duration_min)) * pricing.per_minute_rate
        )
        return to_money(max(raw, pricing.minimum_fare))

    def quote_fare(
        self,
        origin: Coordinate,
        destination: Coordinate,
        vehicle_class: Union[VehicleClass, str] = VehicleClass.STANDARD,
        active_rides: int = 0,
        available_drivers: int = 1,
        currency: str = CANONICAL_CURRENCY,
        event_multiplier: float = 1.0,
        now: datetime | None = None,
    ) -> FareQuote:
        vc = resolve_vehicle_class(vehicle_class)
        pricing = self.pricing_for(vc)
        canonical = self.policy.canonical_currency

        distance = estimate_distance(origin, destination)
        duration = estimate_duration(distance, self.policy.average_speed_kmh)
        base_fare = self.calculate_base_fare(distance, duration, vc)
        surge = self.compute_surge_multiplier(
            active_rides, available_drivers, event_multiplier, now
        )

        final_usd = to_money(base_fare * Decimal(str(surge)))
        final_fare = convert_currency(final_usd, canonical, currency, self.rates)

        breakdown = FareBreakdown(
            base_charge=to_money(pricing.base_fare),
            distance_charge=to_money(Decimal(str(distance)) * pricing.per_km_rate),
            time_charge=to_money(Decimal(str(duration)) * pricing.per_minute_rate),
            surge_charge=final_usd - base_fare,
        )
        return FareQuote(
            distance_km=distance,
            duration_min=duration,
            base_fare=base_fare,
            surge_multiplier=surge,
            final_fare=final_fare,
            currency=currency.upper(),
            vehicle_class=vc,
            breakdown=breakdown,
        )
