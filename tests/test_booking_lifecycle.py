import pytest

from gatepass.model.booking import (
    PaymentStatus, can_redeem, effective_status, mark_terminal,
    resolve_transition,
)

from tests.helpers import NOW, make_booking, make_event

P, C, F = PaymentStatus.PENDING, PaymentStatus.COMPLETED, PaymentStatus.FAILED


class TestResolveTransition:
    @pytest.mark.parametrize("reported, expected", [(C, C), (F, F), (P, None)])
    def test_from_pending(self, reported, expected):
        assert resolve_transition(P, reported) is expected

    @pytest.mark.parametrize("current", [C, F, None])
    @pytest.mark.parametrize("reported", [P, C, F])
    def test_terminal_is_final(self, current, reported):
        assert resolve_transition(current, reported) is None

    def test_accepts_raw_strings(self):
        assert resolve_transition("PENDING", "COMPLETED") is C


class TestEffectiveStatus:
    def test_missing_status_is_completed(self):
        assert effective_status(None) is C
        assert effective_status("") is C

    def test_stored_status_wins(self):
        assert effective_status("FAILED") is F


class TestMarkTerminal:
    def test_completed_sets_metadata_and_drops_hold(self):
        b = make_booking(make_event())

        done = mark_terminal(b, C, NOW + 5, payment_id="pay_9")

        assert done.status is C
        assert done.completed_at == NOW + 5
        assert done.payment_id == "pay_9"
        assert done.hold_expires_at is None
        assert b.status is P  # original untouched

    def test_failed_keeps_reason(self):
        b = make_booking(make_event())

        failed = mark_terminal(b, F, NOW + 5, failure_reason="USER_DROPPED")

        assert failed.status is F
        assert failed.failed_at == NOW + 5
        assert failed.failure_reason == "USER_DROPPED"


class TestCanRedeem:
    def test_only_completed_and_unredeemed(self):
        ev = make_event()

        assert can_redeem(make_booking(ev, status=C))
        assert can_redeem(make_booking(ev, status=None))
        assert not can_redeem(make_booking(ev, status=P))
        assert not can_redeem(make_booking(ev, status=F))
        assert not can_redeem(make_booking(ev, status=C, redeemed=True))
