from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    ForeignKey,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    # provider price used when creating checkout sessions
    stripe_price_id = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Customer(Base):
    __tablename__ = "customers"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # case-sensitive as stored
    email = Column(String, nullable=False, unique=True)
    stripe_customer_id = Column(String, nullable=False, default="")
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    # uuid4, doubles as the scannable payload
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    student_name = Column(String, nullable=True)
    # NULL = unused
    scanned_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_tickets_student_name", "student_name"),
        Index("idx_tickets_event_id", "event_id"),
        Index("idx_tickets_created_at", "created_at"),
    )


class LedgerEntry(Base):
    """Expiring key/value row, used by the SQL ledger backend."""
    __tablename__ = "ledger_entries"
    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    expires_at = Column(Float, nullable=False)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
