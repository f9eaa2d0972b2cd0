import json

import httpx
import pytest

from gatepass.config import GatewayConfig
from gatepass.gateway import (
    BuyerInfo, Cashfree, GatewayError, MockPay, new_gateway, sign_payload,
    verify_signature,
)
from gatepass.model.booking import PaymentStatus

T0 = 1_750_000_000


def cashfree_config(**kw):
    fields = dict(
        app_id="app-123", secret_key="cf-secret",
        return_url="https://tix.example/events/[eventId]/bookings/[bookingId]",
        notify_url="https://tix.example/payments/webhook",
        sandbox=True,
    )
    fields.update(kw)
    return GatewayConfig(**fields)


def cashfree_with(handler, **kw) -> Cashfree:
    cfg = cashfree_config(**kw)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler),
                               base_url="https://sandbox.cashfree.com/pg")
    return Cashfree(cfg, client=client)


class TestSignatures:
    def test_valid_signature(self):
        body = b'{"a":1}'
        sig = sign_payload("s3cret", str(T0), body)
        headers = {"X-Webhook-Signature": sig, "X-Webhook-Timestamp": str(T0)}

        assert verify_signature("s3cret", body, headers, 300, now=T0 + 10)

    def test_wrong_secret_or_body(self):
        sig = sign_payload("s3cret", str(T0), b"{}")
        headers = {"x-webhook-signature": sig, "x-webhook-timestamp": str(T0)}

        assert not verify_signature("other", b"{}", headers, 300, now=T0)
        assert not verify_signature("s3cret", b"{ }", headers, 300, now=T0)

    def test_missing_headers(self):
        assert not verify_signature("s3cret", b"{}", {}, 300, now=T0)

    def test_replay_window(self):
        sig = sign_payload("s3cret", str(T0), b"{}")
        headers = {"x-webhook-signature": sig, "x-webhook-timestamp": str(T0)}

        assert not verify_signature("s3cret", b"{}", headers, 300,
                                    now=T0 + 301)

    def test_millisecond_timestamps(self):
        ts = str(T0 * 1000)
        sig = sign_payload("s3cret", ts, b"{}")
        headers = {"x-webhook-signature": sig, "x-webhook-timestamp": ts}

        assert verify_signature("s3cret", b"{}", headers, 300, now=T0 + 1)


class TestMockPay:
    @pytest.mark.asyncio
    async def test_first_outcome_sticks(self, mockpay):
        await mockpay.initiate_payment("order_1", 500,
                                       BuyerInfo("Asha", "9876543210"))

        mockpay.emit("order_1", "succeeded")
        mockpay.emit("order_1", "failed")

        assert await mockpay.check_status("order_1") is PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_session(self, mockpay):
        with pytest.raises(GatewayError):
            await mockpay.check_status("order_nope")
        with pytest.raises(GatewayError):
            mockpay.emit("order_nope", "succeeded")

    def test_parse_event(self, mockpay):
        ev = mockpay.parse_event(json.dumps({
            "type": "payment.canceled", "transaction_ref": "order_1",
        }).encode())

        assert ev.status is PaymentStatus.FAILED
        assert ev.failure_reason == "canceled"
        assert mockpay.parse_event(b"[]") is None


class TestCashfree:
    @pytest.mark.asyncio
    async def test_initiate_payment(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            seen["body"] = json.loads(request.read())
            return httpx.Response(200, json={
                "order_id": "order_b1", "payment_session_id": "sess_abc",
            })

        cf = cashfree_with(handler)
        session = await cf.initiate_payment(
            "order_b1", 102550,
            BuyerInfo("Asha Rao", "98765-43210", booking_id="b1",
                      event_id="e1"),
        )

        req = seen["request"]
        body = seen["body"]
        assert req.method == "POST"
        assert req.url.path == "/pg/orders"
        assert req.headers["x-client-id"] == "app-123"
        assert req.headers["x-client-secret"] == "cf-secret"
        assert req.headers["x-api-version"] == "2023-08-01"
        assert body["order_amount"] == 1025.5
        assert body["customer_details"]["customer_phone"] == "9876543210"
        assert body["customer_details"]["customer_id"] == "booking_b1"
        assert body["order_meta"]["return_url"] == (
            "https://tix.example/events/e1/bookings/b1?order_id=order_b1"
        )
        assert session.session_ref == "sess_abc"
        assert session.transaction_ref == "order_b1"
        assert session.mode == "sandbox"

    @pytest.mark.asyncio
    async def test_missing_session_id_is_an_error(self):
        cf = cashfree_with(lambda r: httpx.Response(
            200, json={"message": "order exists"}))

        with pytest.raises(GatewayError, match="order exists"):
            await cf.initiate_payment("o", 100, BuyerInfo("Asha", "1"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order_status, expected", [
        ("PAID", PaymentStatus.COMPLETED),
        ("ACTIVE", PaymentStatus.PENDING),
        ("EXPIRED", PaymentStatus.FAILED),
        ("TERMINATED", PaymentStatus.FAILED),
    ])
    async def test_check_status_mapping(self, order_status, expected):
        cf = cashfree_with(lambda r: httpx.Response(
            200, json={"order_status": order_status}))

        assert await cf.check_status("order_b1") is expected

    @pytest.mark.asyncio
    async def test_http_failures_become_gateway_errors(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        down = cashfree_with(refuse)
        broken = cashfree_with(lambda r: httpx.Response(500, text="oops"))

        with pytest.raises(GatewayError):
            await down.check_status("order_b1")
        with pytest.raises(GatewayError):
            await broken.check_status("order_b1")

    @pytest.mark.parametrize("kind, payment, status, reason", [
        ("PAYMENT_SUCCESS_WEBHOOK", {"payment_status": "SUCCESS",
                                     "cf_payment_id": 991},
         PaymentStatus.COMPLETED, None),
        ("PAYMENT_FAILED_WEBHOOK", {"payment_status": "FAILED",
                                    "payment_message": "card declined"},
         PaymentStatus.FAILED, "card declined"),
        ("PAYMENT_USER_DROPPED_WEBHOOK", {"payment_status": "USER_DROPPED"},
         PaymentStatus.FAILED, "USER_DROPPED"),
    ])
    def test_parse_event(self, kind, payment, status, reason):
        cf = Cashfree(cashfree_config())
        body = json.dumps({
            "type": kind,
            "data": {"order": {"order_id": "order_b1"}, "payment": payment},
        }).encode()

        ev = cf.parse_event(body)

        assert ev.transaction_ref == "order_b1"
        assert ev.status is status
        assert ev.failure_reason == reason

    def test_parse_event_without_order(self):
        cf = Cashfree(cashfree_config())

        assert cf.parse_event(b'{"type": "PAYMENT_SUCCESS_WEBHOOK"}') is None


def test_new_gateway():
    assert isinstance(new_gateway("mock"), MockPay)
    with pytest.raises(RuntimeError):
        new_gateway("paypal")
