import enum
import uuid

from sqlalchemy import Column, String, DateTime, JSON, Numeric, Index
from sqlalchemy.sql import func

from storefront.infrastructure.database import Base


class OrderStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentRail(str, enum.Enum):
    CARD = "card"
    BLOCKCHAIN = "blockchain"
    FREE = "free"


class VerificationStatus(str, enum.Enum):
    VERIFIED = "verified"
    FAILED = "failed"


# Statuses the Confirmation Engine may move to CONFIRMED
CONFIRMABLE_STATUSES = (OrderStatus.DRAFT.value, OrderStatus.PENDING_PAYMENT.value)

# CONFIRMED and everything the merchant does afterwards
CONFIRMED_OR_LATER = (
    OrderStatus.CONFIRMED.value,
    OrderStatus.PREPARING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)

TERMINAL_STATUSES = (OrderStatus.DELIVERED.value,)

# Merchant-facing transitions. Payment transitions belong to the engine.
MERCHANT_TRANSITIONS = {
    OrderStatus.CONFIRMED.value: {OrderStatus.PREPARING.value, OrderStatus.SHIPPED.value,
                                  OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value},
    OrderStatus.PREPARING.value: {OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value,
                                  OrderStatus.CANCELLED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.DRAFT.value: {OrderStatus.CANCELLED.value},
    OrderStatus.PENDING_PAYMENT.value: {OrderStatus.CANCELLED.value},
    # Reversal out of cancellation lands on a post-payment status
    OrderStatus.CANCELLED.value: set(CONFIRMED_OR_LATER),
}


def is_confirmed_or_later(status: str) -> bool:
    return status in CONFIRMED_OR_LATER


def can_transition(current: str, new: str) -> bool:
    return new in MERCHANT_TRANSITIONS.get(current, set())


def parse_rail(value) -> PaymentRail:
    """Raises ValueError for anything that is not a known rail."""
    if isinstance(value, PaymentRail):
        return value
    return PaymentRail(str(value).strip().lower())


def new_id() -> str:
    return str(uuid.uuid4())


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    order_number = Column(String(40), unique=True, nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.DRAFT.value, index=True)

    # All orders from one checkout share a batch id
    batch_id = Column(String(36), index=True, nullable=True)

    rail = Column(String(16), nullable=True)
    payment_reference = Column(String(128), index=True, nullable=True)
    payment_metadata = Column(JSON, nullable=False, default=dict)

    # Blockchain rail only
    amount_expected = Column(Numeric(18, 9), nullable=True)
    payer_identity_expected = Column(String(64), nullable=True)
    verification_status = Column(String(16), nullable=True)

    # Set once, when the order enters pending_payment
    pending_since = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_status_updated", "status", "updated_at"),
        Index("ix_orders_status_pending_since", "status", "pending_since"),
    )

    def __repr__(self):
        return f"<Order {self.order_number} {self.status} ref={self.payment_reference}>"

    @property
    def pending_started_at(self):
        return self.pending_since or self.created_at
