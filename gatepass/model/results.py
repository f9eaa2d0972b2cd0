from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from .booking import Booking
from ..inventory import Availability


class StoreUnavailable(Exception):
    """The booking store could not be reached or answered with an error."""


class ReserveStatus(str, enum.Enum):
    RESERVED = "RESERVED"
    SOLD_OUT = "SOLD_OUT"
    UNKNOWN_TIER = "UNKNOWN_TIER"
    CONFLICT = "CONFLICT"  # gave up after repeated lost races


@dataclass(frozen=True)
class ReserveResult:
    status: ReserveStatus
    booking: Optional[Booking] = None
    availability: Optional[Availability] = None
    attempts: int = 1


class WriteStatus(str, enum.Enum):
    APPLIED = "APPLIED"
    NOOP = "NOOP"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class StatusWrite:
    status: WriteStatus
    booking: Optional[Booking] = None


class RedeemStatus(str, enum.Enum):
    REDEEMED = "REDEEMED"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"
    NOT_PAID = "NOT_PAID"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class RedeemWrite:
    status: RedeemStatus
    booking: Optional[Booking] = None
