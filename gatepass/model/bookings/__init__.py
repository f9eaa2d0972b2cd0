# model/bookings/__init__.py
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
import redis.asyncio as redis

from ...config import BOOKING_BACKEND
from ...infra.sql import Gated
from ._postgres import BookingStore as SqlBookingStore
from ._redis import BookingStore as RedisBookingStore

BACKEND = BOOKING_BACKEND  # 'pg' | 'redis'


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, engine: Optional[AsyncEngine] = None,
              sessions: Optional[async_sessionmaker[AsyncSession]] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              backend: str = BACKEND):
    if backend == "pg":
        if engine is None or sessions is None:
            raise RuntimeError(
                "BookingStore(pg) requires engine= and sessions="
            )
        if gated is None:
            raise RuntimeError("BookingStore(pg) requires gated=Gated")
        return SqlBookingStore(engine=engine, sessions=sessions, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError("BookingStore(redis) requires r=redis.Redis")
        return RedisBookingStore(r=r)
    raise RuntimeError(f"unknown BOOKING_BACKEND: {backend}")


BookingStore = SqlBookingStore | RedisBookingStore
__all__ = [
    "BookingStore", "SqlBookingStore", "RedisBookingStore", "new_store",
    "BACKEND",
]
