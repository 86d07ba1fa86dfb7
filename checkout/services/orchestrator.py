"""
Payment Orchestrator

Drives one checkout attempt from submission to a terminal state:

    idle → processing → completed
                      → waiting_confirmation → completed | error

While waiting for the payer to confirm on the device, three timers run on
the event loop:
    - the status poll (every poll_interval seconds)
    - the hard deadline (timeout seconds after entering waiting)
    - the manual-override grace period (manual_override_grace seconds)

Every scheduled callback re-checks the session's ``active`` flag and state
after each await, so a response arriving after the customer closed the
payment screen is ignored. The completion callback fires exactly once,
finalize_delay seconds after the session completes.
"""

import asyncio
import inspect
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from checkout.core.config import Settings, get_settings
from checkout.services.payment.base import (
    BaseMobileMoneyGateway,
    CountryCode,
    PaymentRequest,
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

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "The transaction was cancelled or failed."
GENERIC_START_FAILURE_MESSAGE = "Payment initiation failed"


class SessionState(str, Enum):
    """Checkout session states."""
    IDLE = "idle"
    PROCESSING = "processing"
    WAITING_CONFIRMATION = "waiting_confirmation"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.ERROR})

_ALLOWED_TRANSITIONS = {
    SessionState.IDLE: {SessionState.PROCESSING},
    SessionState.PROCESSING: {
        SessionState.IDLE,
        SessionState.COMPLETED,
        SessionState.WAITING_CONFIRMATION,
    },
    SessionState.WAITING_CONFIRMATION: {SessionState.COMPLETED, SessionState.ERROR},
    SessionState.COMPLETED: set(),
    SessionState.ERROR: set(),
}


class VerificationStatus(str, Enum):
    """How the payment was verified; manual_check orders need reconciliation."""
    PAID = "paid"
    MANUAL_CHECK = "manual_check"


class Operator(str, Enum):
    """Payment methods offered at checkout."""
    AIRTEL = "airtel"
    MPESA = "mpesa"
    ORANGE = "orange"
    VISA = "visa"

    @property
    def display_name(self) -> str:
        return OPERATOR_NAMES[self]

    @property
    def is_card(self) -> bool:
        return self is Operator.VISA


OPERATOR_NAMES = {
    Operator.AIRTEL: "Airtel Money",
    Operator.MPESA: "M-Pesa",
    Operator.ORANGE: "Orange Money",
    Operator.VISA: "Visa / MasterCard",
}


@dataclass(frozen=True)
class CheckoutTimings:
    """Timer settings for one checkout session, in seconds."""
    poll_interval: float = 4.0
    timeout: float = 60.0
    manual_override_grace: float = 15.0
    finalize_delay: float = 2.0
    card_processing: float = 3.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CheckoutTimings":
        settings = settings or get_settings()
        return cls(
            poll_interval=settings.payment_poll_interval_seconds,
            timeout=settings.payment_timeout_seconds,
            manual_override_grace=settings.manual_override_grace_seconds,
            finalize_delay=settings.payment_finalize_delay_seconds,
            card_processing=settings.card_processing_seconds,
        )


@dataclass(frozen=True)
class CompletionResult:
    """
    Handed to the completion callback exactly once per completed session.

    Attributes:
        operator: Display name of the payment method
        phone_number: Number charged (masked card number for card payments)
        transaction_ref: Provider transaction id or card reference
        amount: Amount of the checkout
        verification_status: paid, or manual_check for self-reported payments
        raw_response: Last provider payload seen for the transaction
    """
    operator: str
    phone_number: str
    transaction_ref: str
    amount: Union[int, float]
    verification_status: VerificationStatus
    raw_response: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class PaymentSession:
    """Mutable state of one checkout attempt, owned by its orchestrator."""
    operator: Operator
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.IDLE
    amount: Union[int, float] = 0
    country_code: CountryCode = CountryCode.DRC
    phone_number: Optional[str] = None
    transaction_id: Optional[str] = None
    started_at: Optional[datetime] = None
    waiting_since: Optional[datetime] = None
    manual_override_eligible: bool = False
    status_checks_blocked: bool = False
    error_message: Optional[str] = None
    active: bool = True
    cancelled: bool = False
    finalized: bool = False
    result: Optional[CompletionResult] = None
    finalize_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_settled(self) -> bool:
        """True once nothing more will happen to this session."""
        return self.finalized or self.cancelled or self.state == SessionState.ERROR


CompletionCallback = Callable[[CompletionResult], Union[Awaitable[None], None]]


class PaymentOrchestrator:
    """
    State machine for a single checkout attempt.

    One orchestrator handles one session; a new payment attempt gets a new
    orchestrator. The gateway is shared and stateless.

    Example:
        >>> orchestrator = PaymentOrchestrator(gateway, record_order, Operator.MPESA)
        >>> await orchestrator.start("081 234 5678", 15000, CountryCode.DRC)
        >>> session = await orchestrator.wait()
        >>> session.result.verification_status
        VerificationStatus.PAID
    """

    def __init__(
        self,
        gateway: BaseMobileMoneyGateway,
        on_complete: CompletionCallback,
        operator: Union[Operator, str] = Operator.AIRTEL,
        country_code: Union[CountryCode, str] = CountryCode.DRC,
        timings: Optional[CheckoutTimings] = None,
        session_id: Optional[str] = None,
    ):
        self._gateway = gateway
        self._on_complete = on_complete
        self._timings = timings or CheckoutTimings()

        self.session = PaymentSession(
            operator=Operator(operator),
            country_code=CountryCode(country_code),
        )
        if session_id:
            self.session.session_id = session_id

        self._poll_task: Optional[asyncio.Task] = None
        self._timeout_task: Optional[asyncio.Task] = None
        self._grace_task: Optional[asyncio.Task] = None
        self._card_task: Optional[asyncio.Task] = None
        self._finalize_task: Optional[asyncio.Task] = None
        self._callback_fired = False
        self._settled = asyncio.Event()

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def timings(self) -> CheckoutTimings:
        return self._timings

    # =========================================================================
    # PUBLIC ACTIONS
    # =========================================================================

    async def start(
        self,
        phone_number: str,
        amount: Union[int, float],
        country_code: Optional[Union[CountryCode, str]] = None,
    ) -> PaymentSession:
        """
        Submit a mobile-money charge and supervise its confirmation.

        Returns as soon as the provider has answered the initiate call; the
        confirmation continues in the background.

        Raises:
            ValidationError: Bad phone number or amount (no network call made)
            GatewayError: The provider refused the charge
            InvalidTransitionError: The session was already started or closed

        Any failure of the initiate call puts the session back to idle so it
        can be retried.
        """
        session = self.session
        self._ensure_startable()

        if session.operator.is_card:
            raise ValidationError("Card payments must provide card details")

        country = CountryCode(country_code) if country_code else session.country_code

        try:
            formatted_phone = normalize_phone_number(phone_number, country)
            validate_amount(amount)
        except ValidationError as e:
            session.error_message = e.message
            raise

        session.phone_number = formatted_phone
        session.amount = amount
        session.country_code = country
        session.started_at = datetime.now()
        session.error_message = None
        self._transition(SessionState.PROCESSING)

        request = PaymentRequest(
            phone_number=formatted_phone,
            amount=amount,
            country_code=country,
        )

        try:
            status = await self._gateway.initiate(request)
            if not status.id and not status.is_completed:
                raise GatewayError("The payment provider did not return a transaction id")
        except PaymentError as e:
            self._reset_after_failed_start(e.message)
            raise
        except Exception:
            logger.exception(f"Session {session.session_id}: unexpected initiate failure")
            self._reset_after_failed_start(GENERIC_START_FAILURE_MESSAGE)
            raise

        if not session.active:
            logger.info(
                f"Session {session.session_id}: discarded before the provider "
                f"answered, ignoring transaction {status.id}"
            )
            return session

        session.transaction_id = status.id or None

        if status.is_completed:
            self._complete(status.id, VerificationStatus.PAID, status.raw)
        else:
            self._enter_waiting()

        return session

    async def start_card(
        self,
        card_number: str,
        expiry: str,
        cvc: str,
        amount: Union[int, float],
    ) -> PaymentSession:
        """
        Card checkout: simulated processing, then completion.

        Card payments never poll; they complete card_processing seconds
        after submission unless cancelled first.
        """
        session = self.session
        self._ensure_startable()

        if not session.operator.is_card:
            raise ValidationError(
                f"{session.operator.display_name} payments require a phone number"
            )
        if not card_number or not expiry or not cvc:
            session.error_message = "Please fill in all the card fields"
            raise ValidationError(session.error_message)

        digits = re.sub(r"\D", "", card_number)
        if len(digits) < 4:
            session.error_message = "Invalid card number"
            raise ValidationError(session.error_message)
        try:
            validate_amount(amount)
        except ValidationError as e:
            session.error_message = e.message
            raise

        session.phone_number = f"Card **** {digits[-4:]}"
        session.amount = amount
        session.started_at = datetime.now()
        session.error_message = None
        self._transition(SessionState.PROCESSING)

        self._card_task = asyncio.create_task(self._settle_card())
        return session

    def confirm_manually(self) -> PaymentSession:
        """
        Customer asserts the payment went through on the device.

        Only offered while waiting, after the grace period or once status
        checks are blocked. The order is flagged for manual reconciliation.

        Raises:
            InvalidTransitionError: If the action is not offered yet
        """
        session = self.session
        if not self._is_waiting() or not session.manual_override_eligible:
            raise InvalidTransitionError("Manual confirmation is not available yet")

        logger.warning(
            f"Session {session.session_id}: payment self-reported by the customer, "
            f"flagging for manual check"
        )
        self._complete(
            session.transaction_id,
            VerificationStatus.MANUAL_CHECK,
            {"paymentVerificationStatus": VerificationStatus.MANUAL_CHECK.value},
        )
        return session

    def cancel(self) -> bool:
        """
        Discard the session (customer closed the payment screen).

        Returns:
            bool: False if the session had already reached a terminal state

        Raises:
            InvalidTransitionError: While the completed payment is being
                finalized
        """
        session = self.session
        if session.state == SessionState.COMPLETED and not session.finalized:
            raise InvalidTransitionError(
                "Payment is being finalized and can no longer be cancelled"
            )
        if session.is_terminal or session.cancelled:
            return False

        # Flag first so any timer or late response waking up sees it
        session.active = False
        session.cancelled = True
        self._stop_timers()
        self._settled.set()

        logger.info(f"Session {session.session_id}: cancelled in state {session.state.value}")
        return True

    async def wait(self, timeout: Optional[float] = None) -> PaymentSession:
        """
        Wait until the session is settled.

        Settled means the completion callback has run, the session failed,
        or it was cancelled.
        """
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.session

    # =========================================================================
    # STATE HANDLING
    # =========================================================================

    def _ensure_startable(self) -> None:
        session = self.session
        if not session.active or session.state != SessionState.IDLE:
            raise InvalidTransitionError("This payment session has already been used")

    def _reset_after_failed_start(self, message: str) -> None:
        """Back to idle so the customer can retry."""
        session = self.session
        if not session.active or session.state != SessionState.PROCESSING:
            return
        logger.warning(f"Session {session.session_id}: initiate failed - {message}")
        session.error_message = message
        self._transition(SessionState.IDLE)

    def _is_waiting(self) -> bool:
        return (
            self.session.active
            and self.session.state == SessionState.WAITING_CONFIRMATION
        )

    def _transition(self, new_state: SessionState) -> None:
        session = self.session
        if new_state not in _ALLOWED_TRANSITIONS[session.state]:
            raise InvalidTransitionError(
                f"Cannot move from {session.state.value} to {new_state.value}"
            )
        logger.info(
            f"Session {session.session_id}: {session.state.value} → {new_state.value}"
        )
        session.state = new_state

    def _enter_waiting(self) -> None:
        session = self.session
        session.waiting_since = datetime.now()
        self._transition(SessionState.WAITING_CONFIRMATION)

        self._poll_task = asyncio.create_task(self._poll_loop(session.transaction_id))
        self._timeout_task = asyncio.create_task(self._expire_after(self._timings.timeout))
        self._grace_task = asyncio.create_task(
            self._offer_manual_override_after(self._timings.manual_override_grace)
        )

    def _complete(
        self,
        transaction_ref: str,
        verification_status: VerificationStatus,
        raw_response: Optional[dict[str, Any]] = None,
    ) -> None:
        session = self.session
        self._stop_timers()

        session.result = CompletionResult(
            operator=session.operator.display_name,
            phone_number=session.phone_number or "",
            transaction_ref=transaction_ref,
            amount=session.amount,
            verification_status=verification_status,
            raw_response=dict(raw_response or {}),
        )
        session.manual_override_eligible = False
        self._transition(SessionState.COMPLETED)

        self._finalize_task = asyncio.create_task(self._finalize())

    def _fail(self, message: str) -> None:
        session = self.session
        self._stop_timers()

        session.error_message = message
        self._transition(SessionState.ERROR)
        session.active = False
        self._settled.set()

    def _block_status_checks(self, error: AuthorizationError) -> None:
        """Status endpoint refused us: wait for the customer instead."""
        session = self.session
        session.status_checks_blocked = True
        session.manual_override_eligible = True
        # No more deadline once the customer is the only source of truth
        self._cancel_task(self._timeout_task)

        logger.warning(
            f"Session {session.session_id}: status API blocked ({error}). "
            f"Falling back to manual confirmation."
        )

    def _stop_timers(self) -> None:
        for task in (self._poll_task, self._timeout_task, self._grace_task, self._card_task):
            self._cancel_task(task)

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()

    # =========================================================================
    # SCHEDULED WORK
    # =========================================================================

    async def _poll_loop(self, transaction_id: str) -> None:
        session = self.session

        while self._is_waiting():
            await asyncio.sleep(self._timings.poll_interval)
            if not self._is_waiting() or session.status_checks_blocked:
                return

            try:
                status = await self._gateway.check_status(transaction_id)
            except AuthorizationError as e:
                if self._is_waiting():
                    self._block_status_checks(e)
                return
            except GatewayError as e:
                logger.warning(
                    f"Session {session.session_id}: status check failed, retrying - {e}"
                )
                continue

            if not self._is_waiting():
                logger.debug(
                    f"Session {session.session_id}: ignoring late status "
                    f"{status.status.value} for {transaction_id}"
                )
                return

            if status.is_completed:
                self._complete(status.id or transaction_id, VerificationStatus.PAID, status.raw)
                return

            if status.is_failed:
                logger.info(
                    f"Session {session.session_id}: payment failed - {status.failure_reason}"
                )
                self._fail(status.failure_reason or GENERIC_FAILURE_MESSAGE)
                return

    async def _expire_after(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if not self._is_waiting() or self.session.status_checks_blocked:
            return

        logger.warning(
            f"Session {self.session.session_id}: no confirmation after {timeout}s"
        )
        self._fail(ConfirmationTimeoutError().message)

    async def _offer_manual_override_after(self, grace: float) -> None:
        await asyncio.sleep(grace)
        if not self._is_waiting():
            return

        self.session.manual_override_eligible = True
        logger.info(f"Session {self.session.session_id}: manual confirmation offered")

    async def _settle_card(self) -> None:
        await asyncio.sleep(self._timings.card_processing)
        session = self.session
        if not session.active or session.state != SessionState.PROCESSING:
            return

        reference = f"card-{int(time.time() * 1000)}"
        session.transaction_id = reference
        self._complete(
            reference,
            VerificationStatus.PAID,
            {
                "id": reference,
                "status": "completed",
                "paymentVerificationStatus": VerificationStatus.PAID.value,
            },
        )

    async def _finalize(self) -> None:
        await asyncio.sleep(self._timings.finalize_delay)
        session = self.session
        if self._callback_fired or session.result is None:
            return

        self._callback_fired = True
        try:
            outcome = self._on_complete(session.result)
            if inspect.isawaitable(outcome):
                await outcome
            logger.info(
                f"Session {session.session_id}: finalized "
                f"({session.result.verification_status.value}, "
                f"ref={session.result.transaction_ref})"
            )
        except Exception as e:
            # Persisting the order is the caller's concern; keep the error visible
            logger.exception(f"Session {session.session_id}: completion callback failed - {e}")
            session.finalize_error = str(e)
        finally:
            session.finalized = True
            session.active = False
            self._settled.set()
