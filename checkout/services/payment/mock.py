"""
Mock Mobile Money Gateway Implementation

Simulates the Shwary merchant API without making real HTTP calls.
Used in development mode (ENV_MODE=development) to:
    - Exercise the complete checkout flow locally
    - Run the concurrency simulation without charging real phones
    - Reproduce provider incidents (declines, blocked status endpoint)

Behavior:
    - Simulates realistic response times
    - Charges stay pending for a few status checks, like a payer who
      takes a moment to confirm on the device
    - Randomly declines a share of payments with realistic reasons
    - Generates Shwary-like transaction ids
"""

import asyncio
import random
import uuid
import logging
from dataclasses import dataclass
from typing import Optional

from checkout.services.payment.base import (
    BaseMobileMoneyGateway,
    PaymentRequest,
    TransactionState,
    TransactionStatus,
)
from checkout.services.payment.exceptions import (
    AuthorizationError,
    GatewayError,
)

logger = logging.getLogger(__name__)


@dataclass
class _MockTransaction:
    request: PaymentRequest
    outcome: TransactionState
    failure_reason: Optional[str] = None
    polls: int = 0


class MockMobileMoneyGateway(BaseMobileMoneyGateway):
    """
    Mock implementation of the mobile-money gateway.

    Attributes:
        confirm_after_polls: Status checks answered "pending" before the
            transaction settles
        failure_rate: Probability that a charge is declined (0.0-1.0)
        instant_settlement: Report "completed" straight from initiate
        unauthorized_status_checks: Answer every status check with 401,
            like a misconfigured status endpoint
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds

    Example:
        >>> gateway = MockMobileMoneyGateway(confirm_after_polls=2)
        >>> status = await gateway.initiate(request)
        >>> await gateway.check_status(status.id)  # pending
        >>> await gateway.check_status(status.id)  # completed
    """

    # Simulated decline reasons (mimics real operator failures)
    DECLINE_REASONS = [
        "Insufficient balance",
        "Transaction cancelled by the customer",
        "PIN entry timed out",
        "Subscriber not registered for mobile money",
        "Daily transaction limit exceeded",
    ]

    def __init__(
        self,
        confirm_after_polls: int = 2,
        failure_rate: float = 0.10,
        instant_settlement: bool = False,
        unauthorized_status_checks: bool = False,
        min_latency: float = 0.1,
        max_latency: float = 0.4,
    ):
        self.confirm_after_polls = confirm_after_polls
        self.failure_rate = failure_rate
        self.instant_settlement = instant_settlement
        self.unauthorized_status_checks = unauthorized_status_checks
        self.min_latency = min_latency
        self.max_latency = max_latency

        self._transactions: dict[str, _MockTransaction] = {}

        logger.info(
            f"MockMobileMoneyGateway initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"confirm_after_polls={confirm_after_polls}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    def _generate_transaction_id(self) -> str:
        return f"tx_mock_{uuid.uuid4().hex[:24]}"

    async def _simulate_latency(self) -> None:
        latency = random.uniform(self.min_latency, self.max_latency)
        await asyncio.sleep(latency)

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def initiate(self, request: PaymentRequest) -> TransactionStatus:
        """Simulate submitting a charge to the payer's phone."""
        await self._simulate_latency()

        if not request.phone_number.startswith("+"):
            raise GatewayError(
                "clientPhoneNumber must be in international format",
                status_code=400,
            )

        transaction_id = self._generate_transaction_id()

        if self._should_fail():
            transaction = _MockTransaction(
                request=request,
                outcome=TransactionState.FAILED,
                failure_reason=random.choice(self.DECLINE_REASONS),
            )
        else:
            transaction = _MockTransaction(
                request=request,
                outcome=TransactionState.COMPLETED,
            )
        self._transactions[transaction_id] = transaction

        status = TransactionState.PENDING
        if self.instant_settlement and transaction.outcome == TransactionState.COMPLETED:
            status = TransactionState.COMPLETED

        logger.info(
            f"Mock: Payment {transaction_id} initiated - "
            f"{request.gateway_amount} {request.country_code.currency} - {status.value}"
        )

        return TransactionStatus(
            id=transaction_id,
            status=status,
            raw={
                "id": transaction_id,
                "status": status.value,
                "amount": request.gateway_amount,
                "clientPhoneNumber": request.phone_number,
                "mock": True,
            },
        )

    async def check_status(self, transaction_id: str) -> TransactionStatus:
        """Simulate a status check; settles after confirm_after_polls checks."""
        await self._simulate_latency()

        if self.unauthorized_status_checks:
            logger.debug(f"Mock: Status check for {transaction_id} unauthorized")
            raise AuthorizationError("Unauthorized", status_code=401)

        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            raise GatewayError("Transaction not found", status_code=404)

        transaction.polls += 1
        if transaction.polls < self.confirm_after_polls:
            status = TransactionState.PENDING
        else:
            status = transaction.outcome

        logger.debug(
            f"Mock: Status for {transaction_id} after {transaction.polls} "
            f"checks: {status.value}"
        )

        failure_reason = transaction.failure_reason if status == TransactionState.FAILED else None
        return TransactionStatus(
            id=transaction_id,
            status=status,
            failure_reason=failure_reason,
            raw={
                "id": transaction_id,
                "status": status.value,
                "failureReason": failure_reason,
                "mock": True,
            },
        )

    async def health_check(self) -> bool:
        """Mock health check always returns True."""
        logger.debug("Mock: Health check passed")
        return True
