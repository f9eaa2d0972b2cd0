"""
Domain records and the booking payment-status lifecycle.

A booking is created PENDING at checkout start and reaches exactly one of the
terminal states COMPLETED or FAILED. Records written before status tracking
existed carry no status at all and count as COMPLETED.

    PENDING --> COMPLETED --> (redeemed)
        \\
         `---> FAILED
"""
from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, List, Optional


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


TERMINAL = frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED})


@dataclass(frozen=True)
class TicketTier:
    id: str
    name: str
    price: int  # minor units
    total_seats: int


@dataclass(frozen=True)
class Event:
    id: str
    admin_id: str
    name: str
    venue: str
    date: str
    description: str = ""
    image: str = ""
    tiers: List[TicketTier] = field(default_factory=list)
    created_at: float = 0.0

    def tier(self, tier_id: str) -> Optional[TicketTier]:
        for t in self.tiers:
            if t.id == tier_id:
                return t
        return None

    def tiers_json(self) -> str:
        return json.dumps([asdict(t) for t in self.tiers])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "admin_id": self.admin_id,
            "name": self.name,
            "venue": self.venue,
            "date": self.date,
            "description": self.description,
            "image": self.image,
            "tiers": [asdict(t) for t in self.tiers],
            "created_at": self.created_at,
        }


def tiers_from_json(raw: str | None) -> List[TicketTier]:
    if not raw:
        return []
    return [TicketTier(**t) for t in json.loads(raw)]


@dataclass(frozen=True)
class Booking:
    id: str
    event_id: str
    tier_id: str
    buyer_name: str
    phone: str
    quantity: int
    ticket_amount: int
    service_fee: int
    total_amount: int
    created_at: float
    # None only for legacy records
    payment_status: Optional[PaymentStatus] = PaymentStatus.PENDING
    payment_ref: Optional[str] = None
    payment_id: Optional[str] = None
    hold_expires_at: Optional[float] = None
    completed_at: Optional[float] = None
    failed_at: Optional[float] = None
    failure_reason: Optional[str] = None
    redeemed: bool = False
    redeemed_at: Optional[float] = None

    @property
    def status(self) -> PaymentStatus:
        return effective_status(self.payment_status)

    def holds_seats(self, now: float) -> bool:
        """True while a PENDING booking still keeps its seats reserved."""
        return (
            self.status is PaymentStatus.PENDING
            and self.hold_expires_at is not None
            and self.hold_expires_at > now
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["payment_status"] = (
            self.payment_status.value if self.payment_status else None
        )
        return d


def effective_status(stored: Optional[PaymentStatus | str]) -> PaymentStatus:
    # legacy records have no status field: they were paid bookings
    if stored is None or stored == "":
        return PaymentStatus.COMPLETED
    return PaymentStatus(stored)


def resolve_transition(
    current: Optional[PaymentStatus | str],
    reported: PaymentStatus | str,
) -> Optional[PaymentStatus]:
    """
    Returns the status to write, or None when the report must be dropped.

    Only PENDING -> COMPLETED and PENDING -> FAILED are writes. Non-terminal
    reports never overwrite, and the first terminal write wins.
    """
    reported = PaymentStatus(reported)
    if not reported.terminal:
        return None
    if effective_status(current).terminal:
        return None
    return reported


def can_redeem(booking: Booking) -> bool:
    return booking.status is PaymentStatus.COMPLETED and not booking.redeemed


def mark_terminal(
    booking: Booking,
    status: PaymentStatus,
    now: float,
    payment_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
) -> Booking:
    if status is PaymentStatus.COMPLETED:
        return replace(
            booking,
            payment_status=status,
            payment_id=payment_id or booking.payment_id,
            completed_at=now,
            hold_expires_at=None,
        )
    return replace(
        booking,
        payment_status=status,
        failed_at=now,
        failure_reason=failure_reason,
        hold_expires_at=None,
    )
