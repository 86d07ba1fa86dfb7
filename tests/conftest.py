"""Pytest fixtures and fakes for the checkout tests."""

import asyncio
import os

# Settings are cached on first import; point them at test-friendly values
os.environ.setdefault("ENV_MODE", "development")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest

from checkout.services.orchestrator import CheckoutTimings
from checkout.services.payment.base import (
    BaseMobileMoneyGateway,
    PaymentRequest,
    TransactionState,
    TransactionStatus,
)


def tx(status: str, transaction_id: str = "tx1", failure_reason=None) -> TransactionStatus:
    """Shorthand for a provider status snapshot."""
    payload = {"id": transaction_id, "status": status}
    if failure_reason:
        payload["failureReason"] = failure_reason
    return TransactionStatus.from_payload(payload)


class ScriptedGateway(BaseMobileMoneyGateway):
    """
    Gateway answering from scripts.

    Each script entry is either a TransactionStatus to return or an
    exception to raise. The last status entry repeats once the script runs
    out.
    """

    def __init__(self, initiate=None, statuses=None):
        self.initiate_script = list(initiate or [tx(TransactionState.PENDING.value)])
        self.status_script = list(statuses or [tx(TransactionState.PENDING.value)])
        self.initiated: list[PaymentRequest] = []
        self.status_checks: list[str] = []
        self.release = None  # asyncio.Event gating status answers
        self.initiate_release = None  # asyncio.Event gating initiate answers
        self.initiate_requested = asyncio.Event()
        self.status_requested = asyncio.Event()

    @property
    def provider_name(self) -> str:
        return "scripted"

    @staticmethod
    def _next(script):
        entry = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def initiate(self, request: PaymentRequest) -> TransactionStatus:
        self.initiated.append(request)
        self.initiate_requested.set()
        if self.initiate_release is not None:
            await self.initiate_release.wait()
        return self._next(self.initiate_script)

    async def check_status(self, transaction_id: str) -> TransactionStatus:
        self.status_checks.append(transaction_id)
        self.status_requested.set()
        if self.release is not None:
            await self.release.wait()
        return self._next(self.status_script)

    async def health_check(self) -> bool:
        return True


class CompletionSpy:
    """Completion callback recording every call."""

    def __init__(self, error=None):
        self.results = []
        self.error = error

    async def __call__(self, result):
        self.results.append(result)
        if self.error is not None:
            raise self.error


@pytest.fixture
def fast_timings():
    """Checkout timings scaled down to milliseconds."""
    return CheckoutTimings(
        poll_interval=0.01,
        timeout=0.3,
        manual_override_grace=0.05,
        finalize_delay=0.02,
        card_processing=0.02,
    )


@pytest.fixture
def spy():
    return CompletionSpy()
