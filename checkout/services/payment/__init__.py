"""
Payment Gateway Factory

Provides a single entry point for obtaining a mobile-money gateway.
The rest of the application stays agnostic about which implementation
is being used.

Usage:
    from checkout.services.payment import get_payment_gateway

    # Returns MockMobileMoneyGateway or ShwaryGateway based on ENV_MODE
    gateway = get_payment_gateway()

    status = await gateway.initiate(request)

Environment Switching:
    - ENV_MODE=development → MockMobileMoneyGateway (no API calls)
    - ENV_MODE=staging → ShwaryGateway (set SHWARY_SANDBOX=true)
    - ENV_MODE=production → ShwaryGateway (live charges)
"""

import logging
from functools import lru_cache

from checkout.core.config import get_settings
from checkout.services.payment.base import (
    BaseMobileMoneyGateway,
    CountryCode,
    PaymentRequest,
    TransactionState,
    TransactionStatus,
    gateway_amount,
    normalize_phone_number,
    validate_amount,
)
from checkout.services.payment.exceptions import (
    AuthorizationError,
    ConfirmationTimeoutError,
    GatewayError,
    InvalidTransitionError,
    PaymentError,
    ValidationError,
)
from checkout.services.payment.mock import MockMobileMoneyGateway
from checkout.services.payment.shwary import ShwaryGateway

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_gateway() -> BaseMobileMoneyGateway:
    """
    Get the configured mobile-money gateway.

    The instance is cached so every checkout session shares one HTTP
    connection pool.

    Raises:
        ValueError: If staging/production mode but merchant credentials
            are not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Gateway: Using MockMobileMoneyGateway (development mode)")
        return MockMobileMoneyGateway(
            confirm_after_polls=2,
            failure_rate=0.10,  # 10% simulated declines
        )
    else:
        logger.info(
            f"Payment Gateway: Using ShwaryGateway "
            f"({settings.env_mode.value} mode)"
        )
        return ShwaryGateway.from_settings(settings)


def reset_payment_gateway() -> None:
    """
    Clear the cached gateway instance.

    The next call to get_payment_gateway() will create a new instance.
    """
    get_payment_gateway.cache_clear()
    logger.debug("Payment gateway cache cleared")


__all__ = [
    "get_payment_gateway",
    "reset_payment_gateway",
    "BaseMobileMoneyGateway",
    "CountryCode",
    "PaymentRequest",
    "TransactionState",
    "TransactionStatus",
    "gateway_amount",
    "normalize_phone_number",
    "validate_amount",
    "MockMobileMoneyGateway",
    "ShwaryGateway",
    "PaymentError",
    "ValidationError",
    "GatewayError",
    "AuthorizationError",
    "ConfirmationTimeoutError",
    "InvalidTransitionError",
]
