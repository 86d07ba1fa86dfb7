"""
Pydantic Schemas for Request/Response Validation

Checkout requests carry the basket, the customer and the chosen payment
method; responses expose the payment session as the mobile app renders it
(processing spinner, waiting panel, manual confirmation button, result).
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum


# =============================================================================
# ENUMS
# =============================================================================

class OperatorEnum(str, Enum):
    AIRTEL = "airtel"
    MPESA = "mpesa"
    ORANGE = "orange"
    VISA = "visa"


class CountryCodeEnum(str, Enum):
    DRC = "DRC"
    KE = "KE"
    UG = "UG"


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderItemCreate(BaseModel):
    """Single dish in the basket."""
    id: str = Field(..., min_length=1, max_length=100, examples=["dish_42"])
    name: str = Field(..., min_length=1, max_length=100, examples=["Poulet Mayo"])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    unit_price: float = Field(..., gt=0, allow_inf_nan=False, examples=[7500])

    @property
    def total_price(self) -> float:
        return round(self.quantity * self.unit_price, 2)


class PaymentDetails(BaseModel):
    """Payment method chosen by the customer."""
    operator: OperatorEnum = Field(default=OperatorEnum.AIRTEL, examples=["mpesa"])
    phone_number: Optional[str] = Field(None, max_length=20, examples=["081 234 5678"])
    country_code: Optional[CountryCodeEnum] = Field(None, examples=["DRC"])

    # Card payments only
    card_number: Optional[str] = Field(None, max_length=23)
    expiry: Optional[str] = Field(None, max_length=7, examples=["12/27"])
    cvc: Optional[str] = Field(None, max_length=4)


class CheckoutCreate(BaseModel):
    """Request schema for starting a checkout."""

    # Restaurant
    restaurant_id: str = Field(..., min_length=1, max_length=100)
    restaurant_name: str = Field(..., min_length=1, max_length=150)

    # Customer Info
    customer_id: Optional[str] = Field(None, max_length=100)
    customer_name: str = Field(..., min_length=2, max_length=100, examples=["Grace Mbuyi"])
    customer_phone: Optional[str] = Field(None, max_length=20)
    delivery_address: Optional[str] = Field(None, max_length=255, examples=["12 Avenue de la Paix, Gombe"])
    city: Optional[str] = Field(None, max_length=50, examples=["Kinshasa"])
    delivery_instructions: Optional[str] = Field(None, max_length=500)

    # Basket
    items: List[OrderItemCreate] = Field(..., min_length=1)
    delivery_fee: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    discount_amount: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    promo_code: Optional[str] = Field(None, max_length=50)

    # Payment
    payment: PaymentDetails

    @field_validator("delivery_instructions")
    @classmethod
    def strip_instructions(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip() or None

    @property
    def subtotal(self) -> float:
        return round(sum(item.total_price for item in self.items), 2)

    @property
    def total_amount(self) -> float:
        return round(self.subtotal + self.delivery_fee - self.discount_amount, 2)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class PaymentSessionResponse(BaseModel):
    """Checkout session as seen by the mobile app."""
    session_id: str
    state: str
    operator: str
    amount: float
    country_code: str
    phone_number: Optional[str] = None
    transaction_id: Optional[str] = None
    manual_override_eligible: bool = False
    status_checks_blocked: bool = False
    cancelled: bool = False
    finalized: bool = False
    verification_status: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    waiting_since: Optional[datetime] = None


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    restaurant_id: str
    restaurant_name: str
    customer_id: Optional[str]
    customer_name: str
    customer_phone: Optional[str]
    delivery_address: Optional[str]
    city: Optional[str]
    delivery_instructions: Optional[str]
    items: str
    subtotal: float
    delivery_fee: float
    discount_amount: float
    promo_code: Optional[str]
    total_amount: float
    currency: str
    payment_session_id: str
    payment_method: str
    payment_phone: Optional[str]
    payment_reference: Optional[str]
    payment_status: str
    status: str
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @field_validator("payment_status", "status", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    payment_gateway: str
    active_sessions: int
    blocked_sessions: int = 0
    timestamp: datetime
