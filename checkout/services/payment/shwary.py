"""
Shwary Mobile Money Gateway Implementation

Production implementation talking to the Shwary merchant API over HTTP.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - SHWARY_MERCHANT_ID and SHWARY_MERCHANT_KEY must be set in environment
    - SHWARY_SANDBOX=true routes charges to the sandbox endpoints

Endpoints:
    - POST {base}/payment/{country}            initiate a charge
    - POST {base}/payment/sandbox/{country}    initiate a sandbox charge
    - GET  {base}/transactions/{id}            transaction status

Security Notes:
    - Never log the merchant key
    - The status endpoint expects only the x-merchant headers (no
      Authorization header, no Content-Type on GET)
"""

import logging
from typing import Any, Optional

import httpx

from checkout.core.config import Settings, get_settings
from checkout.services.payment.base import (
    BaseMobileMoneyGateway,
    PaymentRequest,
    TransactionStatus,
)
from checkout.services.payment.exceptions import (
    AuthorizationError,
    GatewayError,
)

logger = logging.getLogger(__name__)


class ShwaryGateway(BaseMobileMoneyGateway):
    """
    Production Shwary gateway client.

    Stateless apart from the pooled HTTP client: one instance is shared by
    every checkout session in the process.

    Example:
        >>> gateway = ShwaryGateway.from_settings()
        >>> status = await gateway.initiate(
        ...     PaymentRequest("+243812345678", 15000, CountryCode.DRC)
        ... )
        >>> print(status.status)
        TransactionState.PENDING
    """

    def __init__(
        self,
        merchant_id: str,
        merchant_key: str,
        base_url: str = "https://api.shwary.com/api/v1/merchants",
        sandbox: bool = False,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the gateway with merchant credentials.

        Args:
            merchant_id: Value of the x-merchant-id header
            merchant_key: Value of the x-merchant-key header
            base_url: Merchant API root
            sandbox: Send charges to the sandbox endpoints
            timeout: HTTP timeout in seconds
            client: Pre-built HTTP client (tests inject a mock transport)

        Raises:
            ValueError: If either credential is missing
        """
        if not merchant_id or not merchant_key:
            raise ValueError(
                "SHWARY_MERCHANT_ID and SHWARY_MERCHANT_KEY are required "
                "for the Shwary gateway. Set them in your .env file or "
                "environment variables."
            )

        self._merchant_id = merchant_id
        self._merchant_key = merchant_key
        self._base_url = base_url.rstrip("/")
        self._sandbox = sandbox
        self._client = client or httpx.AsyncClient(timeout=timeout)

        logger.info(
            f"ShwaryGateway initialized "
            f"({'SANDBOX' if sandbox else 'LIVE'}, base_url={self._base_url})"
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ShwaryGateway":
        """Build the gateway from process-wide settings."""
        settings = settings or get_settings()
        return cls(
            merchant_id=settings.shwary_merchant_id,
            merchant_key=settings.shwary_merchant_key,
            base_url=settings.shwary_base_url,
            sandbox=settings.shwary_sandbox,
            timeout=settings.shwary_http_timeout,
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "shwary"

    def _merchant_headers(self) -> dict[str, str]:
        return {
            "x-merchant-id": self._merchant_id,
            "x-merchant-key": self._merchant_key,
        }

    def _payment_url(self, request: PaymentRequest) -> str:
        if self._sandbox:
            return f"{self._base_url}/payment/sandbox/{request.country_code.value}"
        return f"{self._base_url}/payment/{request.country_code.value}"

    def _transaction_url(self, transaction_id: str) -> str:
        return f"{self._base_url}/transactions/{transaction_id}"

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        """Decode a response body, tolerating non-JSON error pages."""
        try:
            data = response.json()
        except ValueError:
            return {"message": response.text} if response.text else {}
        if isinstance(data, dict):
            return data
        return {"data": data}

    @staticmethod
    def _is_unauthorized(response: httpx.Response, data: dict[str, Any]) -> bool:
        if response.status_code == 401:
            return True
        message = str(data.get("message") or data.get("error") or "")
        return "unauthorized" in message.lower()

    async def initiate(self, request: PaymentRequest) -> TransactionStatus:
        """
        Submit a charge to the payer's phone.

        The amount is rounded and floored at the provider minimum before
        being sent.
        """
        url = self._payment_url(request)
        payload = {
            "amount": request.gateway_amount,
            "clientPhoneNumber": request.phone_number,
        }

        logger.info(
            f"Shwary: Initiating payment of {payload['amount']} "
            f"{request.country_code.currency} for {request.phone_number}"
        )

        try:
            response = await self._client.post(
                url,
                json=payload,
                headers={
                    "Content-Type": "application/json",
                    **self._merchant_headers(),
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Shwary: Payment request failed - {e}")
            raise GatewayError("Payment service temporarily unavailable") from e

        data = self._decode(response)

        if not response.is_success:
            logger.error(
                f"Shwary: Payment rejected - {response.status_code}: {data}"
            )
            error_cls = (
                AuthorizationError if self._is_unauthorized(response, data)
                else GatewayError
            )
            raise error_cls(
                data.get("message") or "Payment initiation failed",
                status_code=response.status_code,
                payload=data,
            )

        status = TransactionStatus.from_payload(data)
        logger.info(f"Shwary: Payment {status.id} accepted - status={status.status.value}")
        return status

    async def check_status(self, transaction_id: str) -> TransactionStatus:
        """Fetch the current status of a transaction."""
        logger.debug(f"Shwary: Checking status for {transaction_id}")

        try:
            response = await self._client.get(
                self._transaction_url(transaction_id),
                headers={
                    "Accept": "application/json",
                    **self._merchant_headers(),
                },
            )
        except httpx.HTTPError as e:
            logger.warning(f"Shwary: Status request failed - {e}")
            raise GatewayError("Payment service temporarily unavailable") from e

        data = self._decode(response)

        if self._is_unauthorized(response, data):
            logger.error(
                f"Shwary: Status check unauthorized for {transaction_id} - {data}"
            )
            raise AuthorizationError(
                data.get("message") or "Unauthorized",
                status_code=response.status_code,
                payload=data,
            )

        if not response.is_success:
            logger.error(
                f"Shwary: Status check failed - {response.status_code}: {data}"
            )
            raise GatewayError(
                data.get("message") or "Unable to verify the payment status",
                status_code=response.status_code,
                payload=data,
            )

        status = TransactionStatus.from_payload(data, transaction_id)
        logger.info(f"Shwary: Status for {transaction_id}: {status.status.value}")
        return status

    async def health_check(self) -> bool:
        """
        Verify the provider is reachable.

        The merchant API has no dedicated health endpoint; any HTTP answer
        from the API root counts as reachable.
        """
        try:
            await self._client.get(self._base_url, headers=self._merchant_headers())
            logger.debug("Shwary: Health check passed")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Shwary: Health check failed - {e}")
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
