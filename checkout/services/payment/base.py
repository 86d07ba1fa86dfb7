"""
Mobile Money Gateway Abstract Base Class

Defines the value objects exchanged with the mobile-money provider and the
interface contract every gateway implementation must honour. Both
MockMobileMoneyGateway and ShwaryGateway implement these methods, so the
orchestrator behaves identically regardless of which one is active.

Design Pattern: Strategy Pattern
    - Allows runtime switching between the mock and the real provider
    - Facilitates testing with scripted implementations
"""

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from checkout.services.payment.exceptions import ValidationError

# Smallest amount (in minor currency units) the provider accepts
MIN_GATEWAY_AMOUNT = 100


class CountryCode(str, Enum):
    """Countries served by the mobile-money provider."""
    DRC = "DRC"
    KE = "KE"
    UG = "UG"

    @property
    def dial_prefix(self) -> str:
        return DIAL_PREFIXES[self]

    @property
    def currency(self) -> str:
        return CURRENCIES[self]


DIAL_PREFIXES = {
    CountryCode.DRC: "+243",
    CountryCode.KE: "+254",
    CountryCode.UG: "+256",
}

CURRENCIES = {
    CountryCode.DRC: "CDF",
    CountryCode.KE: "KES",
    CountryCode.UG: "UGX",
}


class TransactionState(str, Enum):
    """Transaction status values reported by the provider."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ASSUMED_SUCCESS = "assumed_success"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TransactionState":
        """Read a provider status string; anything unknown is still pending."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.PENDING


def gateway_amount(amount: Union[int, float]) -> int:
    """
    Amount actually sent to the provider.

    Rounds to the nearest integer (halves round up) and never goes below
    MIN_GATEWAY_AMOUNT.

    Example:
        >>> gateway_amount(15000)
        15000
        >>> gateway_amount(12.5)
        100
        >>> gateway_amount(150.5)
        151
    """
    if not math.isfinite(amount):
        raise ValidationError("Invalid amount")
    return max(MIN_GATEWAY_AMOUNT, int(math.floor(amount + 0.5)))


def validate_amount(amount: Optional[Union[int, float]]) -> None:
    """
    Check a checkout amount before anything is sent to the provider.

    Raises:
        ValidationError: If the amount is missing, not finite, or not above 0
    """
    if amount is None or not math.isfinite(amount):
        raise ValidationError("Invalid amount")
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0")


def normalize_phone_number(
    phone_number: Optional[str],
    country_code: Union[CountryCode, str] = CountryCode.DRC,
) -> str:
    """
    Normalize a customer phone number to international format.

    Rules:
        - Whitespace is removed ("081 234 5678" -> "0812345678")
        - A leading "+" means the number is already international
        - A leading "0" is replaced by the country dial prefix
        - Anything else gets the dial prefix prepended

    Raises:
        ValidationError: If the number is empty or contains non-digits
    """
    cleaned = re.sub(r"\s+", "", phone_number or "")
    if not cleaned:
        raise ValidationError("Please enter your phone number")

    prefix = CountryCode(country_code).dial_prefix

    if cleaned.startswith("+"):
        normalized = cleaned
    elif cleaned.startswith("0"):
        normalized = prefix + cleaned[1:]
    else:
        normalized = prefix + cleaned

    if not re.fullmatch(r"\+\d{6,15}", normalized):
        raise ValidationError(f"Invalid phone number: {phone_number}")

    return normalized


@dataclass(frozen=True)
class PaymentRequest:
    """
    One mobile-money charge request.

    Attributes:
        phone_number: Payer phone number in international format
        amount: Amount in minor currency units
        country_code: Country whose endpoint receives the charge
    """
    phone_number: str
    amount: Union[int, float]
    country_code: CountryCode = CountryCode.DRC

    @property
    def gateway_amount(self) -> int:
        return gateway_amount(self.amount)


@dataclass(frozen=True)
class TransactionStatus:
    """
    Snapshot of a transaction as reported by the provider.

    Every status check yields a fresh instance; snapshots are never
    updated in place.
    """
    id: str
    status: TransactionState
    failure_reason: Optional[str] = None
    message: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        transaction_id: Optional[str] = None,
    ) -> "TransactionStatus":
        """Build a snapshot from the provider's JSON body."""
        return cls(
            id=str(payload.get("id") or transaction_id or ""),
            status=TransactionState.parse(payload.get("status")),
            failure_reason=payload.get("failureReason"),
            message=payload.get("message"),
            raw=dict(payload),
        )

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionState.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == TransactionState.FAILED


class BaseMobileMoneyGateway(ABC):
    """
    Abstract base class for mobile-money gateways.

    Implementations are stateless between calls and can be shared by every
    checkout session in the process.

    Example:
        >>> gateway = get_payment_gateway()  # Mock or Shwary
        >>> status = await gateway.initiate(
        ...     PaymentRequest("+243812345678", 15000, CountryCode.DRC)
        ... )
        >>> if not status.is_completed:
        ...     status = await gateway.check_status(status.id)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the payment provider.

        Returns:
            str: Provider name (e.g., "mock", "shwary")
        """
        pass

    @abstractmethod
    async def initiate(self, request: PaymentRequest) -> TransactionStatus:
        """
        Submit a charge to the payer's phone.

        Args:
            request: Phone number, amount and country of the charge

        Returns:
            TransactionStatus: Usually pending (the payer confirms on the
            device), occasionally already completed

        Raises:
            GatewayError: If the provider rejects the request
        """
        pass

    @abstractmethod
    async def check_status(self, transaction_id: str) -> TransactionStatus:
        """
        Fetch the current status of a transaction.

        Raises:
            AuthorizationError: If the provider refuses the status check
            GatewayError: For any other non-success response
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the provider.

        Returns:
            bool: True if the provider is reachable
        """
        pass

    async def aclose(self) -> None:
        """Release network resources held by the gateway."""
        return None
