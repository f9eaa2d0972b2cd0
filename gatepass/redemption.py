"""
Gate-side redemption.

Online, a scanned credential is checked against the booking and flipped to
redeemed with a conditional write, so a ticket is admitted at most once no
matter how many stations scan it at the same moment.

Offline, a station works from an export of unredeemed bookings. It marks a
ticket consumed in its own memory before doing anything else and pushes the
scan to the server later. Two stations that are both offline can each admit
the same ticket once; the server reports the second one as ALREADY_REDEEMED
when the scans are synced.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import httpx
from loguru import logger

from .helpers import now_ts
from .model.booking import Booking, PaymentStatus
from .model.results import RedeemStatus
from .tokens import TicketCodec


class Verdict(str, enum.Enum):
    VALID = "VALID"
    INVALID = "INVALID"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"


@dataclass(frozen=True)
class RedemptionResult:
    verdict: Verdict
    booking_id: Optional[str] = None
    event_id: Optional[str] = None
    redeemed_at: Optional[float] = None
    reason: Optional[str] = None
    booking: Optional[Booking] = None

    def to_dict(self) -> Dict:
        d = {
            "verdict": self.verdict.value,
            "booking_id": self.booking_id,
            "event_id": self.event_id,
            "redeemed_at": self.redeemed_at,
            "reason": self.reason,
        }
        if self.booking is not None:
            d["buyer_name"] = self.booking.buyer_name
            d["tier_id"] = self.booking.tier_id
            d["quantity"] = self.booking.quantity
        return d


def _invalid(reason: str, booking_id=None, event_id=None) -> RedemptionResult:
    return RedemptionResult(Verdict.INVALID, booking_id, event_id,
                            reason=reason)


class RedemptionService:
    def __init__(self, store, codec: TicketCodec) -> None:
        self.store = store
        self.codec = codec

    async def redeem(self, credential: str,
                     now: Optional[float] = None) -> RedemptionResult:
        claims = self.codec.decode(credential)
        if claims is None:
            return _invalid("bad credential")
        return await self.redeem_ids(claims.event_id, claims.booking_id, now)

    async def redeem_ids(self, event_id: str, booking_id: str,
                         now: Optional[float] = None) -> RedemptionResult:
        now = now_ts() if now is None else now
        ev = await self.store.get_event(event_id)
        if ev is None:
            return _invalid("event not found", booking_id, event_id)
        booking = await self.store.get_booking(event_id, booking_id)
        if booking is None:
            return _invalid("booking not found", booking_id, event_id)
        if booking.redeemed:
            return RedemptionResult(Verdict.ALREADY_REDEEMED, booking_id,
                                    event_id, booking.redeemed_at,
                                    booking=booking)
        if booking.status is not PaymentStatus.COMPLETED:
            return _invalid("payment not completed", booking_id, event_id)

        write = await self.store.mark_redeemed(event_id, booking_id, now)
        if write.status is RedeemStatus.REDEEMED:
            logger.info("booking {} redeemed", booking_id)
            return RedemptionResult(Verdict.VALID, booking_id, event_id,
                                    write.booking.redeemed_at,
                                    booking=write.booking)
        if write.status is RedeemStatus.ALREADY_REDEEMED:
            return RedemptionResult(Verdict.ALREADY_REDEEMED, booking_id,
                                    event_id, write.booking.redeemed_at,
                                    booking=write.booking)
        if write.status is RedeemStatus.NOT_PAID:
            return _invalid("payment not completed", booking_id, event_id)
        return _invalid("booking not found", booking_id, event_id)

    async def export(self, event_id: str) -> List[Dict[str, str]]:
        rows = await self.store.export_unredeemed(event_id)
        return [{"booking_id": b, "event_id": e} for b, e in rows]


# ----------------------------
# Offline stations
# ----------------------------
@dataclass(frozen=True)
class Scan:
    booking_id: str
    event_id: str
    scanned_at: float

    def to_dict(self) -> Dict:
        return {"booking_id": self.booking_id, "event_id": self.event_id,
                "scanned_at": self.scanned_at}


class StationSyncError(Exception):
    """The server could not be reached to sync scans."""


# takes scans, returns booking_id -> the server's result for that scan
Uplink = Callable[[List[Scan]], Awaitable[Dict[str, RedemptionResult]]]


def _own_scan(scan: Scan, res: RedemptionResult) -> bool:
    """The server's redemption is this scan, applied by an earlier sync."""
    return (res.verdict is Verdict.ALREADY_REDEEMED
            and res.redeemed_at is not None
            and abs(res.redeemed_at - scan.scanned_at) < 1e-3)


class OfflineStation:
    def __init__(self, codec: TicketCodec, uplink: Uplink,
                 manifest: Iterable[Tuple[str, str]] = (),
                 station_id: str = "station") -> None:
        self.codec = codec
        self.uplink = uplink
        self.station_id = station_id
        self._admissible: Dict[str, str] = {}
        self._consumed: Dict[str, float] = {}
        self._unsynced: List[Scan] = []
        self._conflicts: List[str] = []
        self._tasks: set = set()
        self._lock = asyncio.Lock()
        self.load(manifest)

    def load(self, manifest: Iterable[Tuple[str, str]]) -> None:
        for booking_id, event_id in manifest:
            self._admissible[booking_id] = event_id

    @property
    def unsynced(self) -> List[Scan]:
        return list(self._unsynced)

    @property
    def conflicts(self) -> List[str]:
        """Bookings this station admitted that the server had seen before."""
        return list(self._conflicts)

    async def scan(self, credential: str,
                   now: Optional[float] = None) -> RedemptionResult:
        now = now_ts() if now is None else now
        claims = self.codec.decode(credential)
        if claims is None:
            return _invalid("bad credential")
        bid, eid = claims.booking_id, claims.event_id
        if self._admissible.get(bid) != eid:
            return _invalid("not in station manifest", bid, eid)
        if bid in self._consumed:
            return RedemptionResult(Verdict.ALREADY_REDEEMED, bid, eid,
                                    self._consumed[bid])

        self._consumed[bid] = now
        self._unsynced.append(Scan(bid, eid, now))
        task = asyncio.create_task(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return RedemptionResult(Verdict.VALID, bid, eid, now)

    async def flush(self) -> Dict[str, Verdict]:
        """Push unsynced scans. Scans stay queued if the uplink fails."""
        async with self._lock:
            batch = list(self._unsynced)
            if not batch:
                return {}
            try:
                results = await self.uplink(batch)
            except StationSyncError as e:
                logger.warning("station {}: {} scans not synced: {}",
                               self.station_id, len(batch), e)
                return {}
            sent = {s.booking_id for s in batch}
            self._unsynced = [
                s for s in self._unsynced if s.booking_id not in sent
            ]
            verdicts: Dict[str, Verdict] = {}
            for scan in batch:
                res = results.get(scan.booking_id)
                if res is None:
                    continue
                if _own_scan(scan, res):
                    verdicts[scan.booking_id] = Verdict.VALID
                    continue
                verdicts[scan.booking_id] = res.verdict
                if res.verdict is not Verdict.VALID:
                    self._conflicts.append(scan.booking_id)
                    logger.warning("station {}: server answered {} for {}",
                                   self.station_id, res.verdict.value,
                                   scan.booking_id)
            return verdicts

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))


def http_uplink(client: httpx.AsyncClient, url: str,
                station_id: str = "station") -> Uplink:
    """Uplink that posts scans to the server's sync endpoint."""

    async def send(scans: List[Scan]) -> Dict[str, RedemptionResult]:
        try:
            r = await client.post(url, json={
                "station_id": station_id,
                "scans": [s.to_dict() for s in scans],
            })
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise StationSyncError(str(e)) from e
        return {
            item["booking_id"]: RedemptionResult(
                Verdict(item["verdict"]), item["booking_id"],
                item.get("event_id"), item.get("redeemed_at"),
                item.get("reason"),
            )
            for item in r.json().get("results", [])
        }

    return send
