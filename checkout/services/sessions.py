"""
Checkout Session Registry

Keeps the live PaymentOrchestrator of every checkout attempt in this
process so the API can report progress, accept a manual confirmation or
cancel a session by id. Settled sessions stay queryable for a retention
window and are then purged.

Sessions whose status checks were refused by the provider have no
deadline of their own. When the customer walks away from one, the registry
cancels it after abandon_blocked_after_seconds so it can be purged.
"""

import logging
import time
from typing import Iterator, Optional

from checkout.services.orchestrator import PaymentOrchestrator, SessionState
from checkout.services.payment.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class SessionRegistry:
    """In-memory registry of checkout sessions keyed by session id."""

    def __init__(
        self,
        retention_seconds: float = 300.0,
        abandon_blocked_after_seconds: float = 900.0,
    ):
        self.retention_seconds = retention_seconds
        self.abandon_blocked_after_seconds = abandon_blocked_after_seconds
        self._sessions: dict[str, PaymentOrchestrator] = {}
        self._settled_at: dict[str, float] = {}
        self._blocked_at: dict[str, float] = {}

    def __iter__(self) -> Iterator[PaymentOrchestrator]:
        return iter(list(self._sessions.values()))

    def add(self, orchestrator: PaymentOrchestrator) -> PaymentOrchestrator:
        self.purge()
        self._sessions[orchestrator.session_id] = orchestrator
        logger.debug(f"Registered session {orchestrator.session_id}")
        return orchestrator

    def get(self, session_id: str) -> Optional[PaymentOrchestrator]:
        self.purge()
        return self._sessions.get(session_id)

    def discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._settled_at.pop(session_id, None)
        self._blocked_at.pop(session_id, None)

    def active_count(self) -> int:
        return sum(
            1 for orchestrator in self._sessions.values()
            if not orchestrator.session.is_settled
        )

    def blocked_count(self) -> int:
        """Open sessions waiting on the customer because status checks are refused."""
        return sum(
            1 for orchestrator in self._sessions.values()
            if self._is_blocked(orchestrator)
        )

    @staticmethod
    def _is_blocked(orchestrator: PaymentOrchestrator) -> bool:
        session = orchestrator.session
        return (
            session.status_checks_blocked
            and not session.cancelled
            and session.state == SessionState.WAITING_CONFIRMATION
        )

    def purge(self) -> int:
        """
        Drop settled sessions older than the retention window.

        Blocked sessions left open past abandon_blocked_after_seconds are
        cancelled first.
        """
        now = time.monotonic()
        self._abandon_blocked(now)
        expired = []

        for session_id, orchestrator in self._sessions.items():
            if not orchestrator.session.is_settled:
                continue
            settled_at = self._settled_at.setdefault(session_id, now)
            if now - settled_at >= self.retention_seconds:
                expired.append(session_id)

        for session_id in expired:
            self.discard(session_id)

        if expired:
            logger.debug(f"Purged {len(expired)} settled sessions")
        return len(expired)

    def _abandon_blocked(self, now: float) -> None:
        for session_id, orchestrator in self._sessions.items():
            session = orchestrator.session
            if not self._is_blocked(orchestrator):
                continue
            blocked_at = self._blocked_at.setdefault(session_id, now)
            if now - blocked_at < self.abandon_blocked_after_seconds:
                continue
            if orchestrator.cancel():
                logger.warning(
                    f"Session {session_id}: abandoned while status checks were "
                    f"blocked (transaction {session.transaction_id}), cancelled"
                )

    def shutdown(self) -> int:
        """
        Cancel every session that can still be cancelled.

        Sessions already finalizing a completed payment are left to finish.

        Returns:
            Number of sessions cancelled
        """
        cancelled = 0
        for orchestrator in self:
            if orchestrator.session.state == SessionState.COMPLETED:
                continue
            try:
                if orchestrator.cancel():
                    cancelled += 1
            except InvalidTransitionError:
                continue

        if cancelled:
            logger.info(f"Cancelled {cancelled} open checkout sessions")
        return cancelled
