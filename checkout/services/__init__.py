"""
                        Services Module

Contains the checkout business logic.

Services:
    - payment: mobile-money gateways (mock and Shwary)
    - orchestrator: payment confirmation state machine
    - sessions: registry of live checkout sessions
    - orders: order recording once a payment completes
"""

from checkout.services.orchestrator import PaymentOrchestrator
from checkout.services.sessions import SessionRegistry

__all__ = ["PaymentOrchestrator", "SessionRegistry"]
