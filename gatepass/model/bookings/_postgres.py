# model/bookings/_postgres.py
"""
SQL booking store (PostgreSQL via asyncpg, SQLite via aiosqlite).

Two writes must never be plain read-then-write:

- the checkout commit: bookings are read and counted outside of any
  transaction, then the tier row's `version` is bumped with
  `UPDATE ... WHERE version = :seen`. Only one of several concurrent commits
  that counted the same snapshot gets a row back; the others re-count and
  either fit or are told the tier is sold out.
- the redemption flip: `UPDATE ... WHERE redeemed = false`.

Terminal payment writes use `WHERE payment_status = 'PENDING'` so the first
terminal write wins and every later one is a no-op.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, List, Mapping, Optional, Tuple

from loguru import logger
from sqlalchemy import delete, text
from sqlalchemy.exc import (
    DisconnectionError, InterfaceError, OperationalError
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..booking import (
    Booking, Event, PaymentStatus, TicketTier, resolve_transition
)
from ..db import Base, BookingRow, EventRow, TierRow
from ..results import (
    RedeemStatus, RedeemWrite, ReserveResult, ReserveStatus, StatusWrite,
    StoreUnavailable, WriteStatus,
)
from ...infra.sql import Gated
from ...inventory import tier_availability


_UNREACHABLE = (OperationalError, InterfaceError, DisconnectionError, OSError)


def _booking(row: Mapping[str, Any]) -> Booking:
    status = row["payment_status"]
    return Booking(
        id=row["id"],
        event_id=row["event_id"],
        tier_id=row["tier_id"],
        buyer_name=row["buyer_name"],
        phone=row["phone"],
        quantity=int(row["quantity"]),
        ticket_amount=int(row["ticket_amount"]),
        service_fee=int(row["service_fee"]),
        total_amount=int(row["total_amount"]),
        created_at=float(row["created_at"]),
        payment_status=PaymentStatus(status) if status else None,
        payment_ref=row["payment_ref"],
        payment_id=row["payment_id"],
        hold_expires_at=row["hold_expires_at"],
        completed_at=row["completed_at"],
        failed_at=row["failed_at"],
        failure_reason=row["failure_reason"],
        redeemed=bool(row["redeemed"]),
        redeemed_at=row["redeemed_at"],
    )


def _booking_row(b: Booking) -> BookingRow:
    fields = b.to_dict()
    return BookingRow(**fields)


class BookingStore:
    def __init__(
        self, *, engine: AsyncEngine,
        sessions: async_sessionmaker[AsyncSession],
        gated: Gated,
        max_attempts: int = 8,
    ) -> None:
        self.engine = engine
        self.sessions = sessions
        self.gated = gated
        self.max_attempts = max_attempts

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.gated():
                async with self.sessions() as session:
                    yield session
        except _UNREACHABLE as e:
            raise StoreUnavailable(str(e)) from e

    async def init_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except _UNREACHABLE as e:
            raise StoreUnavailable(str(e)) from e

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def save_event(self, ev: Event) -> None:
        async with self._session() as db:
            async with db.begin():
                db.add(EventRow(
                    id=ev.id, admin_id=ev.admin_id, name=ev.name,
                    venue=ev.venue, date=ev.date,
                    description=ev.description, image=ev.image,
                    created_at=ev.created_at,
                ))
                for pos, t in enumerate(ev.tiers):
                    db.add(TierRow(
                        event_id=ev.id, id=t.id, position=pos, name=t.name,
                        price=t.price, total_seats=t.total_seats, version=0,
                    ))

    async def update_event(self, ev: Event) -> bool:
        async with self._session() as db:
            async with db.begin():
                row = (await db.execute(text("""
                    UPDATE events
                    SET name=:name, venue=:venue, date=:date,
                        description=:description, image=:image
                    WHERE id=:id
                    RETURNING id
                """), {
                    "id": ev.id, "name": ev.name, "venue": ev.venue,
                    "date": ev.date, "description": ev.description,
                    "image": ev.image,
                })).first()
                if row is None:
                    return False

                keep = [t.id for t in ev.tiers]
                existing = {
                    r[0] for r in (await db.execute(text(
                        "SELECT id FROM ticket_tiers WHERE event_id=:e"
                    ), {"e": ev.id})).all()
                }
                for pos, t in enumerate(ev.tiers):
                    if t.id in existing:
                        # bump version so in-flight commits re-check
                        await db.execute(text("""
                            UPDATE ticket_tiers
                            SET name=:n, price=:p, total_seats=:s,
                                position=:pos, version=version + 1
                            WHERE event_id=:e AND id=:t
                        """), {
                            "n": t.name, "p": t.price, "s": t.total_seats,
                            "pos": pos, "e": ev.id, "t": t.id,
                        })
                    else:
                        db.add(TierRow(
                            event_id=ev.id, id=t.id, position=pos,
                            name=t.name, price=t.price,
                            total_seats=t.total_seats, version=0,
                        ))
                for tid in existing - set(keep):
                    await db.execute(text(
                        "DELETE FROM ticket_tiers WHERE event_id=:e AND id=:t"
                    ), {"e": ev.id, "t": tid})
        return True

    async def delete_event(self, event_id: str) -> bool:
        # bookings stay behind on purpose
        async with self._session() as db:
            async with db.begin():
                res = await db.execute(
                    delete(EventRow).where(EventRow.id == event_id)
                )
                await db.execute(
                    delete(TierRow).where(TierRow.event_id == event_id)
                )
        return bool(res.rowcount)

    async def _tiers(self, db: AsyncSession, event_id: str) -> List[TicketTier]:
        rows = (await db.execute(text("""
            SELECT id, name, price, total_seats FROM ticket_tiers
            WHERE event_id=:e ORDER BY position
        """), {"e": event_id})).mappings().all()
        return [
            TicketTier(
                id=r["id"], name=r["name"], price=int(r["price"]),
                total_seats=int(r["total_seats"]),
            )
            for r in rows
        ]

    async def get_event(self, event_id: str) -> Optional[Event]:
        async with self._session() as db:
            row = (await db.execute(
                text("SELECT * FROM events WHERE id=:id"), {"id": event_id}
            )).mappings().first()
            if row is None:
                return None
            tiers = await self._tiers(db, event_id)
        return Event(
            id=row["id"], admin_id=row["admin_id"], name=row["name"],
            venue=row["venue"], date=row["date"],
            description=row["description"], image=row["image"],
            tiers=tiers, created_at=float(row["created_at"]),
        )

    async def list_events(self, limit: int = 200) -> List[Event]:
        async with self._session() as db:
            ids = [r[0] for r in (await db.execute(text("""
                SELECT id FROM events ORDER BY created_at DESC LIMIT :lim
            """), {"lim": max(1, min(limit, 500))})).all()]
        out = []
        for eid in ids:
            ev = await self.get_event(eid)
            if ev is not None:
                out.append(ev)
        return out

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------
    async def list_bookings(
        self, event_id: str, tier_id: Optional[str] = None
    ) -> List[Booking]:
        sql = "SELECT * FROM bookings WHERE event_id=:e"
        params = {"e": event_id}
        if tier_id is not None:
            sql += " AND tier_id=:t"
            params["t"] = tier_id
        async with self._session() as db:
            rows = (await db.execute(
                text(sql + " ORDER BY created_at"), params
            )).mappings().all()
        return [_booking(r) for r in rows]

    async def get_booking(
        self, event_id: str, booking_id: str
    ) -> Optional[Booking]:
        async with self._session() as db:
            row = (await db.execute(text("""
                SELECT * FROM bookings WHERE id=:id AND event_id=:e
            """), {"id": booking_id, "e": event_id})).mappings().first()
        return _booking(row) if row else None

    async def find_by_payment_ref(self, ref: str) -> Optional[Booking]:
        async with self._session() as db:
            row = (await db.execute(text(
                "SELECT * FROM bookings WHERE payment_ref=:ref"
            ), {"ref": ref})).mappings().first()
        return _booking(row) if row else None

    async def reserve_booking(self, booking: Booking, now: float) -> ReserveResult:
        """
        Insert `booking` (PENDING, with a live hold) only if its quantity
        still fits into the tier: capacity - sold - live holds.
        """
        for attempt in range(1, self.max_attempts + 1):
            async with self._session() as db:
                tier = (await db.execute(text("""
                    SELECT total_seats, version FROM ticket_tiers
                    WHERE event_id=:e AND id=:t
                """), {"e": booking.event_id, "t": booking.tier_id})).first()
                if tier is None:
                    return ReserveResult(ReserveStatus.UNKNOWN_TIER,
                                         attempts=attempt)
                seats, seen = int(tier[0]), int(tier[1])
                rows = (await db.execute(text("""
                    SELECT * FROM bookings WHERE event_id=:e AND tier_id=:t
                """), {"e": booking.event_id, "t": booking.tier_id}
                )).mappings().all()

            avail = tier_availability(
                TicketTier(booking.tier_id, "", 0, seats),
                [_booking(r) for r in rows],
                now,
            )
            if not avail.admits(booking.quantity):
                return ReserveResult(ReserveStatus.SOLD_OUT,
                                     availability=avail, attempts=attempt)

            async with self._session() as db:
                async with db.begin():
                    won = (await db.execute(text("""
                        UPDATE ticket_tiers SET version = version + 1
                        WHERE event_id=:e AND id=:t AND version=:v
                        RETURNING version
                    """), {
                        "e": booking.event_id, "t": booking.tier_id,
                        "v": seen,
                    })).first()
                    if won is not None:
                        db.add(_booking_row(booking))
            if won is not None:
                return ReserveResult(ReserveStatus.RESERVED, booking=booking,
                                     availability=avail, attempts=attempt)
            logger.debug(
                "checkout commit lost race on {}/{} (attempt {})",
                booking.event_id, booking.tier_id, attempt,
            )
        return ReserveResult(ReserveStatus.CONFLICT, attempts=self.max_attempts)

    async def attach_payment_ref(
        self, event_id: str, booking_id: str, ref: str
    ) -> None:
        async with self._session() as db:
            async with db.begin():
                await db.execute(text("""
                    UPDATE bookings SET payment_ref=:ref
                    WHERE id=:id AND event_id=:e AND payment_ref IS NULL
                """), {"ref": ref, "id": booking_id, "e": event_id})

    async def release_hold(
        self, event_id: str, booking_id: str, now: float
    ) -> None:
        async with self._session() as db:
            async with db.begin():
                await db.execute(text("""
                    UPDATE bookings SET hold_expires_at=created_at
                    WHERE id=:id AND event_id=:e
                      AND payment_status='PENDING'
                """), {"id": booking_id, "e": event_id})

    async def apply_payment_status(
        self,
        ref: str,
        status: PaymentStatus,
        now: float,
        payment_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> StatusWrite:
        if resolve_transition(PaymentStatus.PENDING, status) is None:
            return StatusWrite(WriteStatus.NOOP,
                               await self.find_by_payment_ref(ref))

        if status is PaymentStatus.COMPLETED:
            sql = """
                UPDATE bookings
                SET payment_status='COMPLETED', completed_at=:now,
                    payment_id=COALESCE(:pid, payment_id),
                    hold_expires_at=NULL
                WHERE payment_ref=:ref AND payment_status='PENDING'
                RETURNING id
            """
        else:
            sql = """
                UPDATE bookings
                SET payment_status='FAILED', failed_at=:now,
                    failure_reason=:reason, hold_expires_at=NULL
                WHERE payment_ref=:ref AND payment_status='PENDING'
                RETURNING id
            """
        async with self._session() as db:
            async with db.begin():
                row = (await db.execute(text(sql), {
                    "now": now, "pid": payment_id, "reason": failure_reason,
                    "ref": ref,
                })).first()

        booking = await self.find_by_payment_ref(ref)
        if booking is None:
            return StatusWrite(WriteStatus.NOT_FOUND)
        if row is None:
            return StatusWrite(WriteStatus.NOOP, booking)
        return StatusWrite(WriteStatus.APPLIED, booking)

    async def mark_redeemed(
        self, event_id: str, booking_id: str, now: float
    ) -> RedeemWrite:
        async with self._session() as db:
            async with db.begin():
                row = (await db.execute(text("""
                    UPDATE bookings SET redeemed=:t, redeemed_at=:now
                    WHERE id=:id AND event_id=:e AND redeemed=:f
                      AND (payment_status='COMPLETED'
                           OR payment_status IS NULL)
                    RETURNING id
                """), {
                    "t": True, "f": False, "now": now,
                    "id": booking_id, "e": event_id,
                })).first()

        booking = await self.get_booking(event_id, booking_id)
        if booking is None:
            return RedeemWrite(RedeemStatus.NOT_FOUND)
        if row is not None:
            return RedeemWrite(RedeemStatus.REDEEMED, booking)
        if booking.redeemed:
            return RedeemWrite(RedeemStatus.ALREADY_REDEEMED, booking)
        return RedeemWrite(RedeemStatus.NOT_PAID, booking)

    async def export_unredeemed(self, event_id: str) -> List[Tuple[str, str]]:
        async with self._session() as db:
            rows = (await db.execute(text("""
                SELECT id, event_id FROM bookings
                WHERE event_id=:e AND redeemed=:f
                  AND (payment_status='COMPLETED' OR payment_status IS NULL)
                ORDER BY created_at
            """), {"e": event_id, "f": False})).all()
        return [(r[0], r[1]) for r in rows]
