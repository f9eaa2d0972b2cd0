# model/bookings/_redis.py
"""
Redis booking store: one hash per event and per booking.

Conditional writes use optimistic transactions: WATCH the documents a decision
was based on, queue the write inside MULTI, and start over on WatchError. A
checkout commit watches the tier's version counter, so two buyers who counted
the same bookings cannot both commit.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import ConnectionError, TimeoutError, WatchError

from ..booking import (
    Booking, Event, PaymentStatus, mark_terminal, resolve_transition,
    tiers_from_json,
)
from ..results import (
    RedeemStatus, RedeemWrite, ReserveResult, ReserveStatus, StatusWrite,
    StoreUnavailable, WriteStatus,
)
from ...inventory import tier_availability


# ---- keys
def k_event(eid: str) -> str: return f"event:{eid}"
def k_booking(bid: str) -> str: return f"booking:{bid}"
def k_event_bookings(eid: str) -> str: return f"bookings:{eid}"
def k_payref(ref: str) -> str: return f"payref:{ref}"
def k_tierver(eid: str, tid: str) -> str: return f"tierver:{eid}:{tid}"


EVENTS_INDEX = "events"

_FLOATS = ("created_at", "hold_expires_at", "completed_at", "failed_at",
           "redeemed_at")
_INTS = ("quantity", "ticket_amount", "service_fee", "total_amount")


def _to_mapping(b: Booking) -> Dict[str, str]:
    # decode_responses=True: everything goes in and out as str
    out = {}
    for k, v in b.to_dict().items():
        if v is None:
            continue
        if isinstance(v, bool):
            v = "1" if v else "0"
        out[k] = str(v)
    return out


def _from_mapping(h: Dict[str, str]) -> Booking:
    kw: Dict[str, Any] = dict(h)
    for k in _FLOATS:
        kw[k] = float(h[k]) if h.get(k) else None
    for k in _INTS:
        kw[k] = int(h[k])
    kw["redeemed"] = h.get("redeemed") == "1"
    status = h.get("payment_status")
    kw["payment_status"] = PaymentStatus(status) if status else None
    for k in ("payment_ref", "payment_id", "failure_reason"):
        kw.setdefault(k, None)
    return Booking(**kw)


def _event_mapping(ev: Event) -> Dict[str, str]:
    return {
        "id": ev.id,
        "admin_id": ev.admin_id,
        "name": ev.name,
        "venue": ev.venue,
        "date": ev.date,
        "description": ev.description,
        "image": ev.image,
        "tiers": ev.tiers_json(),
        "created_at": str(ev.created_at),
    }


def _event(h: Dict[str, str]) -> Event:
    return Event(
        id=h["id"], admin_id=h["admin_id"], name=h["name"],
        venue=h["venue"], date=h["date"],
        description=h.get("description", ""), image=h.get("image", ""),
        tiers=tiers_from_json(h.get("tiers")),
        created_at=float(h.get("created_at", "0")),
    )


class BookingStore:
    def __init__(self, r: redis.Redis, max_attempts: int = 8) -> None:
        self.r = r
        self.max_attempts = max_attempts

    async def _call(self, coro):
        try:
            return await coro
        except (ConnectionError, TimeoutError, OSError) as e:
            raise StoreUnavailable(str(e)) from e

    async def init_schema(self) -> None:
        await self._call(self.r.ping())

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def save_event(self, ev: Event) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_event(ev.id), mapping=_event_mapping(ev))
        pipe.zadd(EVENTS_INDEX, {ev.id: ev.created_at})
        await self._call(pipe.execute())

    async def update_event(self, ev: Event) -> bool:
        if not await self._call(self.r.exists(k_event(ev.id))):
            return False
        mapping = _event_mapping(ev)
        mapping.pop("created_at")
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_event(ev.id), mapping=mapping)
        # bump versions so in-flight commits re-check
        for t in ev.tiers:
            pipe.incr(k_tierver(ev.id, t.id))
        await self._call(pipe.execute())
        return True

    async def delete_event(self, event_id: str) -> bool:
        # bookings stay behind on purpose
        pipe = self.r.pipeline(transaction=True)
        pipe.delete(k_event(event_id))
        pipe.zrem(EVENTS_INDEX, event_id)
        deleted, _ = await self._call(pipe.execute())
        return bool(deleted)

    async def get_event(self, event_id: str) -> Optional[Event]:
        h = await self._call(self.r.hgetall(k_event(event_id)))
        return _event(h) if h else None

    async def list_events(self, limit: int = 200) -> List[Event]:
        ids = await self._call(
            self.r.zrevrange(EVENTS_INDEX, 0, max(0, min(limit, 500) - 1))
        )
        pipe = self.r.pipeline()
        for eid in ids:
            pipe.hgetall(k_event(eid))
        rows = await self._call(pipe.execute())
        return [_event(h) for h in rows if h]

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------
    async def _read_bookings(self, conn, event_id: str) -> List[Booking]:
        ids = await conn.smembers(k_event_bookings(event_id))
        out = []
        for bid in ids:
            h = await conn.hgetall(k_booking(bid))
            if h:
                out.append(_from_mapping(h))
        return out

    async def list_bookings(
        self, event_id: str, tier_id: Optional[str] = None
    ) -> List[Booking]:
        rows = await self._call(self._read_bookings(self.r, event_id))
        if tier_id is not None:
            rows = [b for b in rows if b.tier_id == tier_id]
        return sorted(rows, key=lambda b: b.created_at)

    async def get_booking(
        self, event_id: str, booking_id: str
    ) -> Optional[Booking]:
        h = await self._call(self.r.hgetall(k_booking(booking_id)))
        if not h or h.get("event_id") != event_id:
            return None
        return _from_mapping(h)

    async def find_by_payment_ref(self, ref: str) -> Optional[Booking]:
        bid = await self._call(self.r.get(k_payref(ref)))
        if not bid:
            return None
        h = await self._call(self.r.hgetall(k_booking(bid)))
        return _from_mapping(h) if h else None

    async def reserve_booking(self, booking: Booking, now: float) -> ReserveResult:
        eid, tid = booking.event_id, booking.tier_id
        ver_key = k_tierver(eid, tid)
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                for attempt in range(1, self.max_attempts + 1):
                    try:
                        await pipe.watch(ver_key, k_event(eid))
                        h = await pipe.hgetall(k_event(eid))
                        ev = _event(h) if h else None
                        tier = ev.tier(tid) if ev else None
                        if tier is None:
                            return ReserveResult(ReserveStatus.UNKNOWN_TIER,
                                                 attempts=attempt)
                        rows = [
                            b for b in await self._read_bookings(pipe, eid)
                            if b.tier_id == tid
                        ]
                        avail = tier_availability(tier, rows, now)
                        if not avail.admits(booking.quantity):
                            return ReserveResult(
                                ReserveStatus.SOLD_OUT,
                                availability=avail, attempts=attempt,
                            )
                        pipe.multi()
                        pipe.incr(ver_key)
                        pipe.hset(k_booking(booking.id),
                                  mapping=_to_mapping(booking))
                        pipe.sadd(k_event_bookings(eid), booking.id)
                        await pipe.execute()
                        return ReserveResult(
                            ReserveStatus.RESERVED, booking=booking,
                            availability=avail, attempts=attempt,
                        )
                    except WatchError:
                        logger.debug(
                            "checkout commit lost race on {}/{} (attempt {})",
                            eid, tid, attempt,
                        )
                        continue
        except (ConnectionError, TimeoutError, OSError) as e:
            raise StoreUnavailable(str(e)) from e
        return ReserveResult(ReserveStatus.CONFLICT, attempts=self.max_attempts)

    async def attach_payment_ref(
        self, event_id: str, booking_id: str, ref: str
    ) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_booking(booking_id), "payment_ref", ref)
        pipe.set(k_payref(ref), booking_id, nx=True)
        await self._call(pipe.execute())

    async def release_hold(
        self, event_id: str, booking_id: str, now: float
    ) -> None:
        h = await self._call(self.r.hgetall(k_booking(booking_id)))
        if not h or h.get("payment_status") != PaymentStatus.PENDING.value:
            return
        await self._call(self.r.hset(
            k_booking(booking_id), "hold_expires_at", h["created_at"]
        ))

    async def _watched_update(self, key: str, decide):
        """
        WATCH `key`, let `decide(current)` return (mapping, result) and write
        the mapping if it is not None. Retries on WatchError.
        """
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                for _ in range(self.max_attempts):
                    try:
                        await pipe.watch(key)
                        current = await pipe.hgetall(key)
                        mapping, result = decide(current)
                        if mapping is None:
                            return result
                        pipe.multi()
                        pipe.hset(key, mapping=mapping)
                        await pipe.execute()
                        return result
                    except WatchError:
                        continue
        except (ConnectionError, TimeoutError, OSError) as e:
            raise StoreUnavailable(str(e)) from e
        raise StoreUnavailable(f"gave up on contended key {key}")

    async def apply_payment_status(
        self,
        ref: str,
        status: PaymentStatus,
        now: float,
        payment_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> StatusWrite:
        bid = await self._call(self.r.get(k_payref(ref)))
        if not bid:
            return StatusWrite(WriteStatus.NOT_FOUND)

        def decide(h):
            if not h:
                return None, StatusWrite(WriteStatus.NOT_FOUND)
            current = _from_mapping(h)
            target = resolve_transition(current.payment_status, status)
            if target is None:
                return None, StatusWrite(WriteStatus.NOOP, current)
            updated = mark_terminal(current, target, now,
                                    payment_id=payment_id,
                                    failure_reason=failure_reason)
            mapping = _to_mapping(updated)
            # hold is gone once terminal
            mapping["hold_expires_at"] = ""
            return mapping, StatusWrite(WriteStatus.APPLIED, updated)

        return await self._watched_update(k_booking(bid), decide)

    async def mark_redeemed(
        self, event_id: str, booking_id: str, now: float
    ) -> RedeemWrite:
        def decide(h):
            if not h or h.get("event_id") != event_id:
                return None, RedeemWrite(RedeemStatus.NOT_FOUND)
            current = _from_mapping(h)
            if current.redeemed:
                return None, RedeemWrite(RedeemStatus.ALREADY_REDEEMED,
                                         current)
            if current.status is not PaymentStatus.COMPLETED:
                return None, RedeemWrite(RedeemStatus.NOT_PAID, current)
            mapping = {"redeemed": "1", "redeemed_at": str(now)}
            updated = _from_mapping({**h, **mapping})
            return mapping, RedeemWrite(RedeemStatus.REDEEMED, updated)

        return await self._watched_update(k_booking(booking_id), decide)

    async def export_unredeemed(self, event_id: str) -> List[Tuple[str, str]]:
        rows = await self.list_bookings(event_id)
        return [
            (b.id, b.event_id) for b in rows
            if b.status is PaymentStatus.COMPLETED and not b.redeemed
        ]
