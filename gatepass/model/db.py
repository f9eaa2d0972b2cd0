from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Index,
    PrimaryKeyConstraint,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class EventRow(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    admin_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    venue = Column(String, nullable=False)
    date = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    image = Column(String, nullable=False, default="")
    created_at = Column(Float, nullable=False)


class TierRow(Base):
    __tablename__ = "ticket_tiers"
    __table_args__ = (PrimaryKeyConstraint("event_id", "id"),)
    event_id = Column(String, nullable=False)
    id = Column(String, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # minor units
    total_seats = Column(Integer, nullable=False)
    # bumped by every checkout commit against this tier
    version = Column(Integer, nullable=False, default=0)


class BookingRow(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("bookings_event_tier_idx", "event_id", "tier_id"),
    )
    id = Column(String, primary_key=True)
    # no FK: deleting an event leaves its bookings in place
    event_id = Column(String, nullable=False)
    tier_id = Column(String, nullable=False)
    buyer_name = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    ticket_amount = Column(Integer, nullable=False)
    service_fee = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)

    # PENDING | COMPLETED | FAILED, NULL on legacy rows
    payment_status = Column(String, nullable=True)
    payment_ref = Column(String, nullable=True, unique=True)
    payment_id = Column(String, nullable=True)
    hold_expires_at = Column(Float, nullable=True)
    completed_at = Column(Float, nullable=True)
    failed_at = Column(Float, nullable=True)
    failure_reason = Column(String, nullable=True)

    redeemed = Column(Boolean, nullable=False, default=False)
    redeemed_at = Column(Float, nullable=True)
