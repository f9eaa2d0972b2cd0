"""
Event catalog: organizer-owned events with their ticket tiers.

Payloads are validated here, before anything reaches the store. Only the
organizer that created an event may edit or delete it.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from .helpers import is_valid_phone, now_ts
from .inventory import compute_inventory, unknown_availability
from .model.booking import Event, TicketTier
from .model.results import StoreUnavailable


class ValidationError(ValueError):
    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


def _text(payload: Dict[str, Any], key: str) -> str:
    v = payload.get(key)
    return v.strip() if isinstance(v, str) else ""


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def parse_tiers(raw: Any, errors: List[str]) -> List[TicketTier]:
    if not isinstance(raw, list) or not raw:
        errors.append("at least one ticket tier is required")
        return []
    tiers: List[TicketTier] = []
    seen = set()
    for i, t in enumerate(raw):
        if not isinstance(t, dict):
            errors.append(f"tiers[{i}] must be an object")
            continue
        tid = _text(t, "id") or uuid.uuid4().hex[:8]
        name = _text(t, "name")
        price = t.get("price")
        seats = t.get("total_seats")
        if tid in seen:
            errors.append(f"tiers[{i}].id {tid!r} is not unique")
        seen.add(tid)
        if not name:
            errors.append(f"tiers[{i}].name is required")
        if not _is_int(price) or price < 0:
            errors.append(f"tiers[{i}].price must be a non-negative integer")
        if not _is_int(seats) or seats <= 0:
            errors.append(f"tiers[{i}].total_seats must be a positive integer")
        tiers.append(TicketTier(id=tid, name=name, price=price,
                                total_seats=seats))
    return tiers


def parse_event(
    payload: Dict[str, Any], *, event_id: str, admin_id: str,
    created_at: float,
) -> Event:
    errors: List[str] = []
    name = _text(payload, "name")
    venue = _text(payload, "venue")
    date = _text(payload, "date")
    description = _text(payload, "description")
    if len(name) < 3:
        errors.append("name must be at least 3 characters")
    if len(venue) < 3:
        errors.append("venue must be at least 3 characters")
    if not date:
        errors.append("date is required")
    if len(description) < 10:
        errors.append("description must be at least 10 characters")
    tiers = parse_tiers(payload.get("tiers"), errors)
    if errors:
        raise ValidationError(errors)
    return Event(
        id=event_id, admin_id=admin_id, name=name, venue=venue, date=date,
        description=description, image=_text(payload, "image"),
        tiers=tiers, created_at=created_at,
    )


def validate_buyer(name: Any, phone: Any, quantity: Any) -> List[str]:
    errors = []
    if not isinstance(name, str) or len(name.strip()) < 2:
        errors.append("name must be at least 2 characters")
    if not isinstance(phone, str) or not is_valid_phone(phone):
        errors.append("phone must have 10 digits")
    if not _is_int(quantity) or quantity < 1:
        errors.append("quantity must be at least 1")
    return errors


class CatalogStatus(str, enum.Enum):
    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    NOT_OWNER = "NOT_OWNER"


@dataclass(frozen=True)
class CatalogResult:
    status: CatalogStatus
    event: Optional[Event] = None


@dataclass(frozen=True)
class EventView:
    event: Event
    inventory: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = self.event.to_dict()
        for t in d["tiers"]:
            t["inventory"] = self.inventory.get(t["id"])
        return d


class EventCatalog:
    def __init__(self, store) -> None:
        self.store = store

    async def create(self, admin_id: str, payload: Dict[str, Any]) -> Event:
        ev = parse_event(payload, event_id=uuid.uuid4().hex,
                         admin_id=admin_id, created_at=now_ts())
        await self.store.save_event(ev)
        logger.info("event {} created by {}", ev.id, admin_id)
        return ev

    async def owned(self, admin_id: str, event_id: str) -> CatalogResult:
        ev = await self.store.get_event(event_id)
        if ev is None:
            return CatalogResult(CatalogStatus.NOT_FOUND)
        if ev.admin_id != admin_id:
            return CatalogResult(CatalogStatus.NOT_OWNER, ev)
        return CatalogResult(CatalogStatus.OK, ev)

    async def update(
        self, admin_id: str, event_id: str, payload: Dict[str, Any]
    ) -> CatalogResult:
        found = await self.owned(admin_id, event_id)
        if found.status is not CatalogStatus.OK:
            return found
        ev = parse_event(payload, event_id=event_id, admin_id=admin_id,
                         created_at=found.event.created_at)
        if not await self.store.update_event(ev):
            return CatalogResult(CatalogStatus.NOT_FOUND)
        logger.info("event {} updated by {}", event_id, admin_id)
        return CatalogResult(CatalogStatus.OK, ev)

    async def delete(self, admin_id: str, event_id: str) -> CatalogResult:
        found = await self.owned(admin_id, event_id)
        if found.status is not CatalogStatus.OK:
            return found
        if not await self.store.delete_event(event_id):
            return CatalogResult(CatalogStatus.NOT_FOUND)
        logger.info("event {} deleted by {}", event_id, admin_id)
        return found

    async def list_events(self, limit: int = 200) -> List[Event]:
        return await self.store.list_events(limit=limit)

    async def view(self, event_id: str,
                   now: Optional[float] = None) -> Optional[EventView]:
        ev = await self.store.get_event(event_id)
        if ev is None:
            return None
        now = now_ts() if now is None else now
        try:
            bookings = await self.store.list_bookings(event_id)
        except StoreUnavailable as e:
            logger.warning("inventory for {} unknown: {}", event_id, e)
            return EventView(ev, {
                t.id: unknown_availability(t).to_dict() for t in ev.tiers
            })
        return EventView(ev, compute_inventory(ev, bookings, now))
