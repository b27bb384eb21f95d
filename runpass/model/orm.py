from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_tickets_stock"),
        CheckConstraint("sold >= 0 AND sold <= stock", name="ck_tickets_sold"),
        CheckConstraint("unit_price >= 0", name="ck_tickets_price"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    unit_price = Column(Integer, nullable=False)  # whole currency units
    stock = Column(Integer, nullable=False, default=0)
    sold = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    sale_start = Column(Float, nullable=True)
    sale_end = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String, nullable=False, unique=True)
    bib_number = Column(String, nullable=True, unique=True)
    ticket_id = Column(
        Integer, ForeignKey("tickets.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)

    # awaiting_payment | pending | paid | cancelled | expired | denied
    # | challenge
    status = Column(String, nullable=False, index=True)
    payment_method = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    paid_at = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)

    race_pack_collected = Column(Boolean, nullable=False, default=False)
    race_pack_collected_at = Column(Float, nullable=True)
    race_pack_collected_by = Column(String, nullable=True)

    form_data = Column(JSON, nullable=False, default=dict)
    identity_value = Column(String, nullable=True, index=True)

    # does this order currently count against tickets.sold
    stock_held = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class IdentityClaim(Base):
    # one row per identity value backing a live (non-terminal) order
    __tablename__ = "identity_claims"
    identity_value = Column(String, primary_key=True)
    order_id = Column(Integer, nullable=False)


class PaymentNotification(Base):
    __tablename__ = "payment_notifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String, nullable=False, index=True)
    external_status = Column(String, nullable=False)
    fraud_status = Column(String, nullable=True)
    payment_type = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    # applied | unchanged | stale | unmapped | order_not_found | failed
    outcome = Column(String, nullable=False)
    received_at = Column(Float, nullable=False)


async def create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
