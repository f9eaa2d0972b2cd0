from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import quote

import httpx
from loguru import logger

from .config import GatewayConfig
from .helpers import clean_phone, now_ts
from .model.booking import PaymentStatus


class GatewayError(Exception):
    """The gateway could not be reached or refused the request."""


@dataclass(frozen=True)
class BuyerInfo:
    name: str
    phone: str
    email: Optional[str] = None
    booking_id: Optional[str] = None
    event_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentSession:
    transaction_ref: str
    session_ref: Optional[str] = None
    redirect_url: Optional[str] = None
    mode: str = "sandbox"


@dataclass(frozen=True)
class GatewayEvent:
    transaction_ref: str
    status: PaymentStatus
    payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    idempotency_key: Optional[str] = None


# ----------------------------
# Webhook signatures
# ----------------------------
def sign_payload(secret: str, timestamp: str, payload: bytes) -> str:
    mac = hmac.new(
        secret.encode(), timestamp.encode() + payload, hashlib.sha256
    ).digest()
    return base64.b64encode(mac).decode()


def verify_signature(
    secret: str,
    payload: bytes,
    headers: Mapping[str, str],
    tolerance_seconds: int,
    now: Optional[float] = None,
) -> bool:
    h = {k.lower(): v for k, v in headers.items()}
    sig = h.get("x-webhook-signature")
    ts = h.get("x-webhook-timestamp")
    if not sig or not ts:
        return False
    try:
        ts_val = float(ts)
    except ValueError:
        return False
    if ts_val > 1e12:
        # milliseconds
        ts_val /= 1000.0
    now = now_ts() if now is None else now
    if abs(now - ts_val) > tolerance_seconds:
        return False
    expected = sign_payload(secret, ts, payload)
    return hmac.compare_digest(expected, sig)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    def __init__(self, config: GatewayConfig) -> None:
        self.config = config

    @abstractmethod
    async def initiate_payment(
        self, order_ref: str, amount: int, buyer: BuyerInfo
    ) -> PaymentSession: ...

    @abstractmethod
    async def check_status(self, transaction_ref: str) -> PaymentStatus: ...

    @abstractmethod
    def parse_event(self, payload: bytes) -> Optional[GatewayEvent]:
        """Reads a webhook body. Says nothing about its authenticity."""

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        return verify_signature(
            self.config.secret_key, payload, headers,
            self.config.tolerance_seconds,
        )

    async def aclose(self) -> None:
        return None


# ----------------------------
# MockPay implementation
# ----------------------------
MOCK_KINDS = {
    "succeeded": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}


class MockPay(PaymentAdapter):
    """
    In-process gateway. Sessions live in this object, so one server process
    is the whole gateway; the hosted page is served under /mockpay/.
    """

    def __init__(self, config: GatewayConfig) -> None:
        super().__init__(config)
        self._sessions: Dict[str, Dict[str, Any]] = {}

    async def initiate_payment(
        self, order_ref: str, amount: int, buyer: BuyerInfo
    ) -> PaymentSession:
        psid = f"mock_{uuid.uuid4().hex}"
        self._sessions[order_ref] = {
            "psid": psid,
            "amount": amount,
            "buyer": buyer,
            "status": PaymentStatus.PENDING,
            "created_at": now_ts(),
        }
        return PaymentSession(
            transaction_ref=order_ref,
            session_ref=psid,
            redirect_url=f"/mockpay/{order_ref}",
        )

    async def check_status(self, transaction_ref: str) -> PaymentStatus:
        ps = self._sessions.get(transaction_ref)
        if ps is None:
            raise GatewayError(f"unknown transaction {transaction_ref}")
        return ps["status"]

    def session(self, transaction_ref: str) -> Optional[Dict[str, Any]]:
        return self._sessions.get(transaction_ref)

    def emit(self, transaction_ref: str, kind: str) -> Tuple[bytes, Dict[str, str]]:
        """Records the buyer's choice and builds the signed webhook for it."""
        ps = self._sessions.get(transaction_ref)
        if ps is None:
            raise GatewayError(f"unknown transaction {transaction_ref}")
        if kind not in MOCK_KINDS:
            raise ValueError(f"invalid kind: {kind}")
        if not ps["status"].terminal:
            ps["status"] = MOCK_KINDS[kind]

        event = {
            "type": f"payment.{kind}",
            "transaction_ref": transaction_ref,
            "payment_id": f"pay_{uuid.uuid4().hex[:12]}",
            "amount": int(ps["amount"]),
            "created_at": int(now_ts()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        payload = json.dumps(event).encode()
        ts = str(int(now_ts()))
        headers = {
            "x-webhook-signature": sign_payload(
                self.config.secret_key, ts, payload
            ),
            "x-webhook-timestamp": ts,
            "content-type": "application/json",
        }
        return payload, headers

    def parse_event(self, payload: bytes) -> Optional[GatewayEvent]:
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(event, dict):
            return None
        ref = event.get("transaction_ref")
        kind = str(event.get("type", "")).split(".")[-1]
        if not ref:
            return None
        status = MOCK_KINDS.get(kind, PaymentStatus.PENDING)
        return GatewayEvent(
            transaction_ref=ref,
            status=status,
            payment_id=event.get("payment_id"),
            failure_reason=kind if status is PaymentStatus.FAILED else None,
            idempotency_key=event.get("idempotency_key"),
        )


# ----------------------------
# Cashfree implementation
# ----------------------------
CASHFREE_API_BASE = "https://api.cashfree.com/pg"
CASHFREE_SANDBOX_BASE = "https://sandbox.cashfree.com/pg"


class Cashfree(PaymentAdapter):
    def __init__(self, config: GatewayConfig,
                 client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(config)
        base = CASHFREE_SANDBOX_BASE if config.sandbox else CASHFREE_API_BASE
        self._own_client = client is None
        self.http = client or httpx.AsyncClient(
            base_url=base, timeout=config.timeout_seconds
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-client-id": self.config.app_id,
            "x-client-secret": self.config.secret_key,
            "x-api-version": self.config.api_version,
        }

    def build_return_url(self, order_ref: str, buyer: BuyerInfo) -> str:
        url = self.config.return_url
        if buyer.event_id:
            url = url.replace("[eventId]", quote(buyer.event_id, safe=""))
        if buyer.booking_id:
            url = url.replace("[bookingId]", quote(buyer.booking_id, safe=""))
        if "order_id=" not in url:
            sep = "&" if "?" in url else "?"
            url = f"{url}{sep}order_id={quote(order_ref, safe='')}"
        return url

    async def _request(self, method: str, path: str, **kw) -> Dict[str, Any]:
        try:
            r = await self.http.request(method, path, headers=self._headers(),
                                        **kw)
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} {path}: {e}") from e
        try:
            data = r.json()
        except ValueError:
            data = {}
        if r.status_code >= 400:
            raise GatewayError(
                data.get("message") or f"{method} {path}: HTTP {r.status_code}"
            )
        return data

    async def initiate_payment(
        self, order_ref: str, amount: int, buyer: BuyerInfo
    ) -> PaymentSession:
        customer_id = (
            f"booking_{buyer.booking_id}" if buyer.booking_id
            else f"cust_{int(now_ts() * 1000)}"
        )
        customer = {
            "customer_id": customer_id,
            "customer_name": buyer.name,
            "customer_phone": clean_phone(buyer.phone),
        }
        if buyer.email:
            customer["customer_email"] = buyer.email
        body = {
            "order_id": order_ref,
            "order_amount": round(amount / 100, 2),
            "order_currency": "INR",
            "customer_details": customer,
            "order_meta": {
                "return_url": self.build_return_url(order_ref, buyer),
                "notify_url": self.config.notify_url,
            },
            "order_note": f"Payment for {order_ref}",
        }
        data = await self._request("POST", "/orders", json=body)
        if not data.get("payment_session_id"):
            raise GatewayError(
                data.get("message") or "Failed to create Cashfree order"
            )
        return PaymentSession(
            transaction_ref=data.get("order_id") or order_ref,
            session_ref=data["payment_session_id"],
            mode="sandbox" if self.config.sandbox else "production",
        )

    async def check_status(self, transaction_ref: str) -> PaymentStatus:
        data = await self._request(
            "GET", f"/orders/{quote(transaction_ref, safe='')}"
        )
        status = data.get("order_status") or "ACTIVE"
        if status == "PAID":
            return PaymentStatus.COMPLETED
        if status == "ACTIVE":
            return PaymentStatus.PENDING
        return PaymentStatus.FAILED

    def parse_event(self, payload: bytes) -> Optional[GatewayEvent]:
        try:
            body = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(body, dict):
            return None
        data = body.get("data") or {}
        kind = body.get("type")
        ref = (data.get("order") or {}).get("order_id")
        payment = data.get("payment") or {}
        errors = data.get("error_details") or {}
        if not kind or not ref:
            return None

        pay_status = payment.get("payment_status")
        if kind == "PAYMENT_SUCCESS_WEBHOOK" or pay_status == "SUCCESS":
            status, reason = PaymentStatus.COMPLETED, None
        elif kind == "PAYMENT_FAILED_WEBHOOK" or pay_status == "FAILED":
            status = PaymentStatus.FAILED
            reason = (
                payment.get("payment_message")
                or errors.get("error_description")
                or errors.get("error_reason")
            )
        elif (kind == "PAYMENT_USER_DROPPED_WEBHOOK"
              or pay_status == "USER_DROPPED"):
            status, reason = PaymentStatus.FAILED, "USER_DROPPED"
        else:
            status, reason = PaymentStatus.PENDING, None
        cf_payment_id = payment.get("cf_payment_id")
        return GatewayEvent(
            transaction_ref=ref,
            status=status,
            payment_id=str(cf_payment_id) if cf_payment_id else None,
            failure_reason=reason,
        )

    async def aclose(self) -> None:
        if self._own_client:
            await self.http.aclose()


def new_gateway(kind: str) -> PaymentAdapter:
    if kind == "cashfree":
        return Cashfree(GatewayConfig.cashfree_from_env())
    if kind == "mock":
        return MockPay(GatewayConfig.mock_from_env())
    logger.error("unknown PAYMENT_GATEWAY {}", kind)
    raise RuntimeError(f"unknown PAYMENT_GATEWAY: {kind}")
