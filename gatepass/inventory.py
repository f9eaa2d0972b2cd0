# inventory.py
"""
Seat accounting per ticket tier, computed from an event's bookings.

sold      = sum(quantity) over bookings that are neither PENDING nor FAILED
held      = sum(quantity) over PENDING bookings whose seat hold is still live
remaining = max(0, total_seats - sold)
available = max(0, total_seats - sold - held)

`remaining` is what buyers see. `available` is what a checkout commit may
claim: a buyer who is still on the gateway's page keeps their seats until the
hold runs out, an orphaned booking does not.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from .model.booking import Booking, Event, PaymentStatus, TicketTier


def sold_count(tier_id: str, bookings: Iterable[Booking]) -> int:
    return sum(
        b.quantity for b in bookings
        if b.tier_id == tier_id
        and b.status not in (PaymentStatus.FAILED, PaymentStatus.PENDING)
    )


def held_count(tier_id: str, bookings: Iterable[Booking], now: float) -> int:
    return sum(
        b.quantity for b in bookings
        if b.tier_id == tier_id and b.holds_seats(now)
    )


def remaining(tier: TicketTier, bookings: Iterable[Booking]) -> int:
    return max(0, tier.total_seats - sold_count(tier.id, bookings))


@dataclass(frozen=True)
class Availability:
    """
    Seat counts for one tier. `known` is False when the bookings could not be
    read; the counts are then meaningless and must not be used as 0 or as
    unlimited.
    """
    tier_id: str
    total_seats: int
    known: bool = True
    sold: int = 0
    held: int = 0

    @property
    def remaining(self) -> Optional[int]:
        if not self.known:
            return None
        return max(0, self.total_seats - self.sold)

    @property
    def available(self) -> Optional[int]:
        if not self.known:
            return None
        return max(0, self.total_seats - self.sold - self.held)

    @property
    def overbooked(self) -> bool:
        return self.known and self.sold > self.total_seats

    def admits(self, quantity: int) -> bool:
        """Degraded reads admit up to the tier's static capacity."""
        if not self.known:
            return quantity <= self.total_seats
        return quantity <= self.available

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier_id": self.tier_id,
            "total_seats": self.total_seats,
            "known": self.known,
            "sold": self.sold if self.known else None,
            "held": self.held if self.known else None,
            "remaining": self.remaining,
            "available": self.available,
            "sold_out": self.known and self.available == 0,
        }


def tier_availability(
    tier: TicketTier, bookings: Iterable[Booking], now: float
) -> Availability:
    bookings = list(bookings)
    return Availability(
        tier_id=tier.id,
        total_seats=tier.total_seats,
        sold=sold_count(tier.id, bookings),
        held=held_count(tier.id, bookings, now),
    )


def unknown_availability(tier: TicketTier) -> Availability:
    return Availability(
        tier_id=tier.id, total_seats=tier.total_seats, known=False
    )


def compute_inventory(
    event: Event, bookings: Iterable[Booking], now: float
) -> Dict[str, Dict[str, Any]]:
    bookings = list(bookings)
    return {
        t.id: tier_availability(t, bookings, now).to_dict()
        for t in event.tiers
    }
