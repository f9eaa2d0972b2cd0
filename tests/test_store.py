"""Booking store behaviour, run against the SQL and the Redis backend."""

import asyncio
from dataclasses import replace

import pytest

from gatepass.inventory import sold_count
from gatepass.model.booking import PaymentStatus, TicketTier
from gatepass.model.results import RedeemStatus, ReserveStatus, WriteStatus

from tests.helpers import NOW, completed_booking, make_booking, make_event


class TestEvents:
    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        ev = make_event(("ga", 1000, 10), ("vip", 5000, 2))
        await store.save_event(ev)

        got = await store.get_event(ev.id)

        assert got == ev
        assert [t.id for t in got.tiers] == ["ga", "vip"]

    @pytest.mark.asyncio
    async def test_update_replaces_tiers(self, store):
        ev = make_event(("ga", 1000, 10), ("vip", 5000, 2))
        await store.save_event(ev)
        edited = replace(ev, name="Night Market Encore",
                         tiers=[TicketTier("ga", "GA", 1200, 20)])

        assert await store.update_event(edited)

        got = await store.get_event(ev.id)
        assert got.name == "Night Market Encore"
        assert got.tiers == [TicketTier("ga", "GA", 1200, 20)]

    @pytest.mark.asyncio
    async def test_update_missing_event(self, store):
        assert not await store.update_event(make_event())

    @pytest.mark.asyncio
    async def test_delete_keeps_bookings(self, store):
        ev = make_event()
        await store.save_event(ev)
        b = await completed_booking(store, ev)

        assert await store.delete_event(ev.id)

        assert await store.get_event(ev.id) is None
        assert await store.get_booking(ev.id, b.id) is not None
        assert not await store.delete_event(ev.id)

    @pytest.mark.asyncio
    async def test_list_events_newest_first(self, store):
        old = replace(make_event(), created_at=NOW + 10_000)
        new = replace(make_event(), created_at=NOW + 20_000)
        await store.save_event(old)
        await store.save_event(new)

        ids = [e.id for e in await store.list_events(limit=500)]

        assert ids.index(new.id) < ids.index(old.id)


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_within_capacity(self, store):
        ev = make_event(("ga", 1000, 2))
        await store.save_event(ev)
        b = make_booking(ev, quantity=2)

        res = await store.reserve_booking(b, NOW)

        assert res.status is ReserveStatus.RESERVED
        assert (await store.get_booking(ev.id, b.id)).status \
            is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_live_hold_blocks_expired_hold_does_not(self, store):
        ev = make_event(("ga", 1000, 2))
        await store.save_event(ev)
        await store.reserve_booking(make_booking(ev, quantity=2), NOW)

        blocked = await store.reserve_booking(make_booking(ev), NOW + 10)
        later = await store.reserve_booking(make_booking(ev, now=NOW + 1000),
                                            NOW + 1000)

        assert blocked.status is ReserveStatus.SOLD_OUT
        assert blocked.availability.held == 2
        assert later.status is ReserveStatus.RESERVED

    @pytest.mark.asyncio
    async def test_unknown_tier(self, store):
        ev = make_event()
        await store.save_event(ev)

        res = await store.reserve_booking(make_booking(ev, "balcony"), NOW)

        assert res.status is ReserveStatus.UNKNOWN_TIER

    @pytest.mark.asyncio
    async def test_concurrent_commits_do_not_oversell(self, store):
        ev = make_event(("ga", 1000, 2))
        await store.save_event(ev)

        results = await asyncio.gather(
            store.reserve_booking(make_booking(ev, quantity=2), NOW),
            store.reserve_booking(make_booking(ev, quantity=2), NOW),
        )

        statuses = sorted(r.status.value for r in results)
        assert statuses == ["RESERVED", "SOLD_OUT"]

    @pytest.mark.asyncio
    async def test_many_concurrent_commits(self, store):
        ev = make_event(("ga", 1000, 5))
        await store.save_event(ev)

        results = await asyncio.gather(*[
            store.reserve_booking(make_booking(ev), NOW) for _ in range(12)
        ])

        reserved = [r for r in results
                    if r.status is ReserveStatus.RESERVED]
        assert len(reserved) <= 5
        rows = await store.list_bookings(ev.id, "ga")
        assert sum(b.quantity for b in rows) <= 5

    @pytest.mark.asyncio
    async def test_release_hold_frees_seats(self, store):
        ev = make_event(("ga", 1000, 1))
        await store.save_event(ev)
        b = make_booking(ev)
        await store.reserve_booking(b, NOW)

        await store.release_hold(ev.id, b.id, NOW)

        res = await store.reserve_booking(make_booking(ev), NOW + 1)
        assert res.status is ReserveStatus.RESERVED
        assert (await store.get_booking(ev.id, b.id)).status \
            is PaymentStatus.PENDING


class TestPaymentStatus:
    async def _pending(self, store, ev):
        b = make_booking(ev)
        await store.reserve_booking(b, NOW)
        ref = f"order_{b.id}"
        await store.attach_payment_ref(ev.id, b.id, ref)
        return b, ref

    @pytest.mark.asyncio
    async def test_first_terminal_write_wins(self, store):
        ev = make_event()
        await store.save_event(ev)
        b, ref = await self._pending(store, ev)

        first = await store.apply_payment_status(
            ref, PaymentStatus.COMPLETED, NOW + 1, payment_id="pay_1")
        again = await store.apply_payment_status(
            ref, PaymentStatus.COMPLETED, NOW + 2, payment_id="pay_2")
        conflicting = await store.apply_payment_status(
            ref, PaymentStatus.FAILED, NOW + 3, failure_reason="late")

        assert first.status is WriteStatus.APPLIED
        assert again.status is WriteStatus.NOOP
        assert conflicting.status is WriteStatus.NOOP
        stored = await store.find_by_payment_ref(ref)
        assert stored.status is PaymentStatus.COMPLETED
        assert stored.completed_at == NOW + 1
        assert stored.payment_id == "pay_1"
        assert stored.failure_reason is None
        assert stored.hold_expires_at is None

    @pytest.mark.asyncio
    async def test_pending_report_never_overwrites(self, store):
        ev = make_event()
        await store.save_event(ev)
        b, ref = await self._pending(store, ev)
        await store.apply_payment_status(ref, PaymentStatus.FAILED, NOW + 1,
                                         failure_reason="USER_DROPPED")

        res = await store.apply_payment_status(ref, PaymentStatus.PENDING,
                                               NOW + 2)

        assert res.status is WriteStatus.NOOP
        stored = await store.find_by_payment_ref(ref)
        assert stored.status is PaymentStatus.FAILED
        assert stored.failure_reason == "USER_DROPPED"

    @pytest.mark.asyncio
    async def test_concurrent_terminal_writes(self, store):
        ev = make_event()
        await store.save_event(ev)
        b, ref = await self._pending(store, ev)

        results = await asyncio.gather(
            store.apply_payment_status(ref, PaymentStatus.COMPLETED, NOW + 1),
            store.apply_payment_status(ref, PaymentStatus.FAILED, NOW + 1),
        )

        assert sorted(r.status.value for r in results) == ["APPLIED", "NOOP"]
        winner = next(r for r in results if r.status is WriteStatus.APPLIED)
        stored = await store.find_by_payment_ref(ref)
        assert stored.status is winner.booking.status

    @pytest.mark.asyncio
    async def test_unknown_reference(self, store):
        res = await store.apply_payment_status("order_nope",
                                               PaymentStatus.COMPLETED, NOW)

        assert res.status is WriteStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_completed_booking_counts_as_sold(self, store):
        ev = make_event(("ga", 1000, 3))
        await store.save_event(ev)
        await completed_booking(store, ev, quantity=2)

        rows = await store.list_bookings(ev.id)

        assert sold_count("ga", rows) == 2


class TestRedeem:
    @pytest.mark.asyncio
    async def test_redeem_once(self, store):
        ev = make_event()
        await store.save_event(ev)
        b = await completed_booking(store, ev)

        first = await store.mark_redeemed(ev.id, b.id, NOW + 100)
        second = await store.mark_redeemed(ev.id, b.id, NOW + 200)

        assert first.status is RedeemStatus.REDEEMED
        assert second.status is RedeemStatus.ALREADY_REDEEMED
        assert second.booking.redeemed_at == NOW + 100

    @pytest.mark.asyncio
    async def test_concurrent_redeem_admits_once(self, store):
        ev = make_event()
        await store.save_event(ev)
        b = await completed_booking(store, ev)

        results = await asyncio.gather(*[
            store.mark_redeemed(ev.id, b.id, NOW + 100) for _ in range(5)
        ])

        statuses = [r.status for r in results]
        assert statuses.count(RedeemStatus.REDEEMED) == 1
        assert statuses.count(RedeemStatus.ALREADY_REDEEMED) == 4

    @pytest.mark.asyncio
    async def test_pending_booking_is_not_redeemable(self, store):
        ev = make_event()
        await store.save_event(ev)
        b = make_booking(ev)
        await store.reserve_booking(b, NOW)

        res = await store.mark_redeemed(ev.id, b.id, NOW)

        assert res.status is RedeemStatus.NOT_PAID
        assert not (await store.get_booking(ev.id, b.id)).redeemed

    @pytest.mark.asyncio
    async def test_legacy_booking_is_redeemable(self, store):
        ev = make_event()
        await store.save_event(ev)
        legacy = make_booking(ev, status=None, hold=None)
        await store.reserve_booking(legacy, NOW)

        res = await store.mark_redeemed(ev.id, legacy.id, NOW)

        assert res.status is RedeemStatus.REDEEMED

    @pytest.mark.asyncio
    async def test_wrong_event(self, store):
        ev = make_event()
        await store.save_event(ev)
        b = await completed_booking(store, ev)

        res = await store.mark_redeemed("other-event", b.id, NOW)

        assert res.status is RedeemStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_export_lists_paid_unredeemed(self, store):
        ev = make_event(("ga", 1000, 10))
        await store.save_event(ev)
        paid = await completed_booking(store, ev)
        used = await completed_booking(store, ev)
        await store.mark_redeemed(ev.id, used.id, NOW)
        await store.reserve_booking(make_booking(ev), NOW)  # pending

        rows = await store.export_unredeemed(ev.id)

        assert rows == [(paid.id, ev.id)]
