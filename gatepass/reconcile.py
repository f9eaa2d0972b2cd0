"""
Payment reconciliation.

Three channels report on a payment: the buyer returning from the gateway, the
gateway's webhook and an explicit status poll. They may arrive in any order,
twice, or never. Every terminal report goes through the same conditional write,
so the first terminal report wins and the rest are no-ops.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Mapping, Optional

from loguru import logger

from .config import (
    RETURN_POLL_INTERVAL, RETURN_POLL_MAX_ATTEMPTS, RETURN_POLL_TIMEOUT,
)
from .gateway import GatewayError, PaymentAdapter
from .helpers import now_ts
from .inventory import sold_count
from .model.booking import Booking, PaymentStatus
from .model.results import StoreUnavailable, WriteStatus


class ReconcileStatus(str, enum.Enum):
    APPLIED = "APPLIED"
    NOOP = "NOOP"
    NOT_FOUND = "NOT_FOUND"
    BAD_PAYLOAD = "BAD_PAYLOAD"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    TIMED_OUT = "TIMED_OUT"


@dataclass(frozen=True)
class ReconcileOutcome:
    status: ReconcileStatus
    booking: Optional[Booking] = None
    reported: Optional[PaymentStatus] = None
    verified: bool = True

    @property
    def payment_status(self) -> Optional[PaymentStatus]:
        return self.booking.status if self.booking else None


@dataclass(frozen=True)
class BoundedPoll:
    interval: float = RETURN_POLL_INTERVAL
    timeout: float = RETURN_POLL_TIMEOUT
    max_attempts: int = RETURN_POLL_MAX_ATTEMPTS


class PaymentReconciler:
    def __init__(self, store, gateway: PaymentAdapter,
                 poll: BoundedPoll = BoundedPoll()) -> None:
        self.store = store
        self.gateway = gateway
        self.poll = poll

    async def apply(
        self,
        ref: str,
        reported: PaymentStatus,
        payment_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        now: Optional[float] = None,
    ) -> ReconcileOutcome:
        if not reported.terminal:
            booking = await self.store.find_by_payment_ref(ref)
            if booking is None:
                return ReconcileOutcome(ReconcileStatus.NOT_FOUND,
                                        reported=reported)
            return ReconcileOutcome(ReconcileStatus.NOOP, booking, reported)

        now = now_ts() if now is None else now
        write = await self.store.apply_payment_status(
            ref, reported, now, payment_id=payment_id,
            failure_reason=failure_reason,
        )
        if write.status is WriteStatus.NOT_FOUND:
            logger.warning("payment report for unknown reference {}", ref)
            return ReconcileOutcome(ReconcileStatus.NOT_FOUND,
                                    reported=reported)
        if write.status is WriteStatus.NOOP:
            logger.debug("{} for {} ignored, booking already {}",
                         reported.value, ref,
                         write.booking.status.value if write.booking else "?")
            return ReconcileOutcome(ReconcileStatus.NOOP, write.booking,
                                    reported)

        booking = write.booking
        logger.info("booking {} is now {}", booking.id, booking.status.value)
        if booking.status is PaymentStatus.COMPLETED:
            await self._check_overbooking(booking)
        return ReconcileOutcome(ReconcileStatus.APPLIED, booking, reported)

    async def _check_overbooking(self, booking: Booking) -> None:
        # a COMPLETED report for an expired hold can push a tier over capacity
        try:
            ev = await self.store.get_event(booking.event_id)
            tier = ev.tier(booking.tier_id) if ev else None
            if tier is None:
                return
            rows = await self.store.list_bookings(booking.event_id,
                                                  booking.tier_id)
        except StoreUnavailable as e:
            logger.debug("overbooking check skipped: {}", e)
            return
        sold = sold_count(tier.id, rows)
        if sold > tier.total_seats:
            logger.warning(
                "tier {}/{} overbooked: {} sold of {} after booking {}",
                booking.event_id, tier.id, sold, tier.total_seats, booking.id,
            )

    async def on_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> ReconcileOutcome:
        event = self.gateway.parse_event(payload)
        if event is None:
            return ReconcileOutcome(ReconcileStatus.BAD_PAYLOAD)
        if not self.gateway.verify_webhook(payload, headers):
            logger.warning(
                "unverified webhook for {} (claims {}), asking the gateway",
                event.transaction_ref, event.status.value,
            )
            out = await self.poll_once(event.transaction_ref)
            return ReconcileOutcome(out.status, out.booking, out.reported,
                                    verified=False)
        return await self.apply(
            event.transaction_ref, event.status,
            payment_id=event.payment_id, failure_reason=event.failure_reason,
        )

    async def poll_once(self, ref: str) -> ReconcileOutcome:
        booking = await self.store.find_by_payment_ref(ref)
        if booking is None:
            return ReconcileOutcome(ReconcileStatus.NOT_FOUND)
        if booking.status.terminal:
            return ReconcileOutcome(ReconcileStatus.NOOP, booking)
        try:
            reported = await self.gateway.check_status(ref)
        except GatewayError as e:
            logger.warning("status check for {} failed: {}", ref, e)
            return ReconcileOutcome(ReconcileStatus.GATEWAY_UNAVAILABLE,
                                    booking)
        failure = None
        if reported is PaymentStatus.FAILED:
            failure = "gateway reported failure"
        return await self.apply(ref, reported, failure_reason=failure)

    async def _poll_until_terminal(self, ref: str) -> ReconcileOutcome:
        last = ReconcileOutcome(ReconcileStatus.TIMED_OUT)
        for attempt in range(1, self.poll.max_attempts + 1):
            last = await self.poll_once(ref)
            if last.status is ReconcileStatus.NOT_FOUND:
                return last
            if last.booking is not None and last.booking.status.terminal:
                return last
            if attempt < self.poll.max_attempts:
                await asyncio.sleep(self.poll.interval)
        return ReconcileOutcome(ReconcileStatus.TIMED_OUT, last.booking,
                                last.reported)

    async def on_return(self, ref: str) -> ReconcileOutcome:
        """
        Bounded poll for the buyer coming back from the gateway. Running out
        of time is reported as TIMED_OUT; the booking stays PENDING so a late
        webhook can still settle it.
        """
        try:
            return await asyncio.wait_for(self._poll_until_terminal(ref),
                                          timeout=self.poll.timeout)
        except asyncio.TimeoutError:
            booking = await self.store.find_by_payment_ref(ref)
            logger.info("return poll for {} timed out", ref)
            return ReconcileOutcome(ReconcileStatus.TIMED_OUT, booking)
