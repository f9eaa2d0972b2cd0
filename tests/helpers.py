"""Builders for events and bookings used across the tests."""

import uuid
from typing import Optional

from gatepass.model.booking import Booking, Event, PaymentStatus, TicketTier

NOW = 1_750_000_000.0
HOLD = 900.0


def make_event(*tiers, admin_id: str = "organizer",
               event_id: Optional[str] = None) -> Event:
    """`tiers` are (id, price, total_seats) tuples; default one GA tier of 2."""
    tiers = tiers or (("ga", 50000, 2),)
    return Event(
        id=event_id or uuid.uuid4().hex,
        admin_id=admin_id,
        name="Night Market Live",
        venue="Riverside Hall",
        date="2026-12-31T19:00:00+05:30",
        description="An evening of music by the river.",
        tiers=[TicketTier(id=t, name=t.upper(), price=p, total_seats=s)
               for t, p, s in tiers],
        created_at=NOW,
    )


def make_booking(event: Event, tier_id: str = "ga", quantity: int = 1,
                 status: Optional[PaymentStatus] = PaymentStatus.PENDING,
                 now: float = NOW, hold: Optional[float] = HOLD,
                 **kw) -> Booking:
    price = event.tier(tier_id).price if event.tier(tier_id) else 0
    fields = dict(
        id=uuid.uuid4().hex,
        event_id=event.id,
        tier_id=tier_id,
        buyer_name="Asha Rao",
        phone="9876543210",
        quantity=quantity,
        ticket_amount=price * quantity,
        service_fee=0,
        total_amount=price * quantity,
        created_at=now,
        payment_status=status,
        hold_expires_at=(now + hold) if hold is not None else None,
    )
    fields.update(kw)
    return Booking(**fields)


async def completed_booking(store, event: Event, tier_id: str = "ga",
                            quantity: int = 1, now: float = NOW) -> Booking:
    """Reserve a booking and settle it as paid."""
    b = make_booking(event, tier_id, quantity, now=now)
    await store.reserve_booking(b, now)
    ref = f"order_{b.id}"
    await store.attach_payment_ref(event.id, b.id, ref)
    write = await store.apply_payment_status(ref, PaymentStatus.COMPLETED,
                                             now + 1, payment_id="pay_1")
    return write.booking
