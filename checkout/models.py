"""
SQLAlchemy Database Models

Orders are written only once their payment session has completed, either
verified by the provider ("paid") or self-reported by the customer
("manual_check", pending reconciliation).
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Text, Enum
from sqlalchemy.sql import func
from checkout.database import Base
import enum


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    """How the payment behind the order was verified."""
    PAID = "paid"
    MANUAL_CHECK = "manual_check"


class Order(Base):
    """
    Main Order table - one row per completed checkout.
    """
    __tablename__ = "orders"

    # Primary Key
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # =========================================================================
    # RESTAURANT
    # =========================================================================
    restaurant_id = Column(String(100), nullable=False, index=True)
    restaurant_name = Column(String(150), nullable=False)

    # =========================================================================
    # CUSTOMER INFORMATION
    # =========================================================================
    customer_id = Column(String(100), nullable=True, index=True)
    customer_name = Column(String(100), nullable=False)
    customer_phone = Column(String(20), nullable=True)
    delivery_address = Column(String(255), nullable=True)
    city = Column(String(50), nullable=True, default="Kinshasa")
    delivery_instructions = Column(Text, nullable=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(Text, nullable=False)  # JSON string of ordered items

    # =========================================================================
    # PRICING (minor currency units)
    # =========================================================================
    subtotal = Column(Float, nullable=False)
    delivery_fee = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=False, default=0.0)
    promo_code = Column(String(50), nullable=True)
    total_amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="CDF")

    # =========================================================================
    # PAYMENT INFO
    # =========================================================================
    payment_session_id = Column(String(64), nullable=False, unique=True)
    payment_method = Column(String(50), nullable=False)
    payment_phone = Column(String(30), nullable=True)
    payment_reference = Column(String(100), nullable=True, index=True)
    payment_status = Column(
        Enum(PaymentStatus),
        default=PaymentStatus.PAID,
        nullable=False,
        index=True
    )

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<Order #{self.id} - {self.restaurant_name} - {self.payment_status.value} - {self.status.value}>"
