"""
Order Recorder

Completion callback of the checkout flow: writes the order once its
payment session has completed. Nothing is written for sessions that fail,
time out or are cancelled.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout.models import Order, OrderStatus, PaymentStatus
from checkout.services.orchestrator import CompletionResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderDraft:
    """Basket and customer details held until the payment completes."""
    restaurant_id: str
    restaurant_name: str
    customer_name: str
    items: list[dict] = field(default_factory=list)
    subtotal: float = 0.0
    delivery_fee: float = 0.0
    discount_amount: float = 0.0
    promo_code: Optional[str] = None
    currency: str = "CDF"
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    delivery_address: Optional[str] = None
    city: Optional[str] = None
    delivery_instructions: Optional[str] = None

    @property
    def total_amount(self) -> float:
        return round(self.subtotal + self.delivery_fee - self.discount_amount, 2)


class OrderRecorder:
    """Persists completed checkouts as orders."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def record(
        self,
        payment_session_id: str,
        draft: OrderDraft,
        result: CompletionResult,
    ) -> Order:
        """
        Write the order for a completed payment session.

        Raises:
            SQLAlchemyError: If the order could not be written
        """
        order = Order(
            restaurant_id=draft.restaurant_id,
            restaurant_name=draft.restaurant_name,
            customer_id=draft.customer_id,
            customer_name=draft.customer_name,
            customer_phone=draft.customer_phone,
            delivery_address=draft.delivery_address,
            city=draft.city,
            delivery_instructions=draft.delivery_instructions,
            items=json.dumps(draft.items),
            subtotal=draft.subtotal,
            delivery_fee=draft.delivery_fee,
            discount_amount=draft.discount_amount,
            promo_code=draft.promo_code,
            total_amount=draft.total_amount,
            currency=draft.currency,
            payment_session_id=payment_session_id,
            payment_method=result.operator,
            payment_phone=result.phone_number,
            payment_reference=result.transaction_ref,
            payment_status=PaymentStatus(result.verification_status.value),
            status=OrderStatus.PENDING,
        )

        async with self._session_maker() as db:
            db.add(order)
            await db.commit()
            await db.refresh(order)

        if order.payment_status == PaymentStatus.MANUAL_CHECK:
            logger.warning(
                f"Order #{order.id} recorded with a self-reported payment "
                f"(ref={order.payment_reference}), needs manual check"
            )
        else:
            logger.info(f"Order #{order.id} recorded (ref={order.payment_reference})")

        return order

    def callback_for(self, payment_session_id: str, draft: OrderDraft):
        """Completion callback bound to one checkout."""
        async def _on_complete(result: CompletionResult) -> None:
            await self.record(payment_session_id, draft, result)
        return _on_complete
