from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String, Text

from commerce.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Record:
    # columns a patch may never touch once the row exists
    immutable = ("id", "created_at")

    def to_dict(self):
        return {column.key: getattr(self, column.key) for column in self.__mapper__.column_attrs}


class OrderRecord(Record, Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    items = Column(JSON, nullable=False)
    shipping_address = Column(JSON, nullable=False)
    billing_address = Column(JSON, nullable=False)
    status = Column(String, nullable=False, index=True)          # see OrderStatus
    total_price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="USD")
    payment_method = Column(String)
    notes = Column(Text)
    shipped_at = Column(DateTime)
    delivered_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False, default=1)


class PaymentRecord(Record, Base):
    __tablename__ = "payments"
    immutable = ("id", "created_at", "order_id", "user_id", "amount", "currency")

    id = Column(String, primary_key=True)          # Stripe PaymentIntent ID
    order_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)          # see PaymentStatus
    intent_id = Column(String, nullable=False, unique=True, index=True)
    payment_metadata = Column("metadata", JSON, nullable=False, default=dict)
    completed_at = Column(DateTime)
    failed_at = Column(DateTime)
    refunded_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False, default=1)


class RefundRecord(Record, Base):
    __tablename__ = "refunds"

    id = Column(String, primary_key=True)          # Stripe Refund ID
    payment_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False)
    reason = Column(String, nullable=False, default="requested_by_customer")
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class ProcessedEventRecord(Record, Base):
    __tablename__ = "processed_webhook_events"

    id = Column(String, primary_key=True)          # Stripe Event ID
    event_type = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
