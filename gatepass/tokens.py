"""
Ticket credentials: the signed string printed into a ticket's QR code.

A credential is an HS256 JWT carrying `bookingId`, `eventId` and `iat`. It is
never stored; it can be minted again from the booking at any time.
"""
from __future__ import annotations

import io
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import jwt
import qrcode
import qrcode.image.svg
from loguru import logger

from .config import TICKET_LIFETIME_DAYS, TICKET_SECRET
from .helpers import now_ts


@dataclass(frozen=True)
class TicketClaims:
    booking_id: str
    event_id: str
    issued_at: int


class TicketCodec:
    algorithm = "HS256"

    def __init__(self, secret: str = TICKET_SECRET,
                 lifetime: timedelta = timedelta(days=TICKET_LIFETIME_DAYS)):
        self.secret = secret
        self.lifetime = lifetime

    def mint(self, booking_id: str, event_id: str,
             now: Optional[float] = None) -> str:
        iat = int(now if now is not None else now_ts())
        payload = {
            "bookingId": booking_id,
            "eventId": event_id,
            "iat": iat,
            "exp": iat + int(self.lifetime.total_seconds()),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> Optional[TicketClaims]:
        """Returns None for anything that is not a valid credential."""
        try:
            data = jwt.decode(
                token.strip(), self.secret, algorithms=[self.algorithm],
                options={"require": ["iat", "exp"]},
            )
        except jwt.InvalidTokenError as e:
            logger.debug("ticket credential rejected: {}", e)
            return None
        booking_id = data.get("bookingId")
        event_id = data.get("eventId")
        if not isinstance(booking_id, str) or not isinstance(event_id, str):
            return None
        return TicketClaims(booking_id, event_id, int(data["iat"]))


def render_qr_svg(data: str) -> str:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
        image_factory=qrcode.image.svg.SvgPathImage,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image()
    buffered = io.BytesIO()
    img.save(buffered)
    return buffered.getvalue().decode("utf-8")
