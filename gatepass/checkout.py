"""
Checkout: reserve a PENDING booking, open a gateway session for it and bind
the gateway's transaction reference to the booking.

The seat check happens twice. A cheap read up front turns away buyers that
clearly do not fit without touching the gateway; the store's conditional
commit then decides for real.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from typing import List, Optional

from loguru import logger

from .catalog import validate_buyer
from .config import HOLD_TTL_SECONDS, SERVICE_FEE_BPS
from .gateway import BuyerInfo, GatewayError, PaymentAdapter, PaymentSession
from .helpers import clean_phone, now_ts
from .inventory import Availability, tier_availability, unknown_availability
from .model.booking import Booking, PaymentStatus
from .model.results import ReserveStatus, StoreUnavailable


class CheckoutStatus(str, enum.Enum):
    OK = "OK"
    INVALID = "INVALID"
    NOT_FOUND = "NOT_FOUND"
    SOLD_OUT = "SOLD_OUT"
    CONFLICT = "CONFLICT"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


@dataclass(frozen=True)
class CheckoutRequest:
    event_id: str
    tier_id: str
    quantity: int
    buyer_name: str
    phone: str
    email: Optional[str] = None


@dataclass(frozen=True)
class CheckoutOutcome:
    status: CheckoutStatus
    booking: Optional[Booking] = None
    session: Optional[PaymentSession] = None
    availability: Optional[Availability] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is CheckoutStatus.OK


def service_fee(amount: int, bps: int) -> int:
    """`bps` basis points of `amount`, rounded half-up."""
    return (amount * bps + 5000) // 10000


class CheckoutService:
    def __init__(self, store, gateway: PaymentAdapter,
                 hold_ttl: int = HOLD_TTL_SECONDS,
                 fee_bps: int = SERVICE_FEE_BPS) -> None:
        self.store = store
        self.gateway = gateway
        self.hold_ttl = hold_ttl
        self.fee_bps = fee_bps

    async def _precheck(self, tier, event_id: str, now: float) -> Availability:
        try:
            rows = await self.store.list_bookings(event_id, tier.id)
        except StoreUnavailable as e:
            logger.warning("bookings of {}/{} unreadable: {}",
                           event_id, tier.id, e)
            return unknown_availability(tier)
        return tier_availability(tier, rows, now)

    async def _release(self, booking: Booking, now: float) -> None:
        try:
            await self.store.release_hold(booking.event_id, booking.id, now)
        except StoreUnavailable as e:
            # hold runs out on its own
            logger.warning("could not release hold of {}: {}", booking.id, e)

    async def checkout(self, req: CheckoutRequest,
                       now: Optional[float] = None) -> CheckoutOutcome:
        errors = validate_buyer(req.buyer_name, req.phone, req.quantity)
        if errors:
            return CheckoutOutcome(CheckoutStatus.INVALID, errors=errors)
        now = now_ts() if now is None else now

        try:
            ev = await self.store.get_event(req.event_id)
        except StoreUnavailable:
            return CheckoutOutcome(CheckoutStatus.STORE_UNAVAILABLE)
        tier = ev.tier(req.tier_id) if ev else None
        if tier is None:
            return CheckoutOutcome(CheckoutStatus.NOT_FOUND)

        avail = await self._precheck(tier, req.event_id, now)
        if not avail.admits(req.quantity):
            return CheckoutOutcome(CheckoutStatus.SOLD_OUT,
                                   availability=avail)

        ticket_amount = tier.price * req.quantity
        fee = service_fee(ticket_amount, self.fee_bps)
        booking = Booking(
            id=uuid.uuid4().hex,
            event_id=req.event_id,
            tier_id=req.tier_id,
            buyer_name=req.buyer_name.strip(),
            phone=clean_phone(req.phone),
            quantity=req.quantity,
            ticket_amount=ticket_amount,
            service_fee=fee,
            total_amount=ticket_amount + fee,
            created_at=now,
            payment_status=PaymentStatus.PENDING,
            hold_expires_at=now + self.hold_ttl,
        )

        try:
            reserved = await self.store.reserve_booking(booking, now)
        except StoreUnavailable as e:
            logger.warning("checkout commit failed: {}", e)
            return CheckoutOutcome(CheckoutStatus.STORE_UNAVAILABLE)
        if reserved.status is ReserveStatus.SOLD_OUT:
            return CheckoutOutcome(CheckoutStatus.SOLD_OUT,
                                   availability=reserved.availability)
        if reserved.status is ReserveStatus.UNKNOWN_TIER:
            return CheckoutOutcome(CheckoutStatus.NOT_FOUND)
        if reserved.status is ReserveStatus.CONFLICT:
            logger.warning("checkout on {}/{} gave up after {} attempts",
                           req.event_id, req.tier_id, reserved.attempts)
            return CheckoutOutcome(CheckoutStatus.CONFLICT)
        logger.info("booking {} created PENDING ({} x {}/{})", booking.id,
                    booking.quantity, booking.event_id, booking.tier_id)

        buyer = BuyerInfo(name=booking.buyer_name, phone=booking.phone,
                          email=req.email, booking_id=booking.id,
                          event_id=booking.event_id)
        try:
            session = await self.gateway.initiate_payment(
                f"order_{booking.id}", booking.total_amount, buyer
            )
        except GatewayError as e:
            logger.warning("gateway refused booking {}: {}", booking.id, e)
            await self._release(booking, now)
            return CheckoutOutcome(CheckoutStatus.GATEWAY_UNAVAILABLE,
                                   booking=booking)

        try:
            await self.store.attach_payment_ref(
                booking.event_id, booking.id, session.transaction_ref
            )
        except StoreUnavailable as e:
            logger.warning("could not bind {} to booking {}: {}",
                           session.transaction_ref, booking.id, e)
            await self._release(booking, now)
            return CheckoutOutcome(CheckoutStatus.STORE_UNAVAILABLE,
                                   booking=booking)

        booking = replace(booking, payment_ref=session.transaction_ref)
        return CheckoutOutcome(CheckoutStatus.OK, booking=booking,
                               session=session,
                               availability=reserved.availability)
