"""Single-flight payment session state machine.

One PaymentFlow owns at most one live PaymentSession. States:
IDLE, NEGOTIATING, AWAITING_RECEIPT, then one of the terminal states
CONFIRMED, REJECTED (aborted while awaiting), TIMED_OUT or FAILED
(negotiation error). reset() returns the flow to IDLE.

Receipts arrive one at a time from the relay subscription and are
validated synchronously. Invalid receipts are reported through
on_rejection and never end the session; only a valid receipt, the
receipt timer, or an explicit reset does.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from zapgate.errors import (
    InvalidAmount,
    PaymentAborted,
    PaymentInProgress,
    ZapError,
)
from zapgate.zap_request import ZAP_RECEIPT_KIND, ZapRequest, build_zap_request
from zapgate.zap_verify import SignatureVerifier, ZapOutcome, validate_zap_receipt

if TYPE_CHECKING:
    from zapgate.config import Config
    from zapgate.lnurl import LnurlClient

log = logging.getLogger(__name__)

# Valid session states
IDLE = "idle"
NEGOTIATING = "negotiating"
AWAITING_RECEIPT = "awaiting_receipt"
CONFIRMED = "confirmed"
REJECTED = "rejected"
TIMED_OUT = "timed_out"
FAILED = "failed"

IN_FLIGHT_STATES = frozenset({NEGOTIATING, AWAITING_RECEIPT})
TERMINAL_STATES = frozenset({CONFIRMED, REJECTED, TIMED_OUT, FAILED})

RequestSigner = Callable[[ZapRequest], dict]
RejectionCallback = Callable[[ZapOutcome], None]
EventHandler = Callable[[Mapping], None]


# -- Relay subscription interface ----------------------------------------------


@dataclass(frozen=True)
class ReceiptFilter:
    """Advisory relay filter. Events outside it must still be validated."""

    kinds: tuple[int, ...]
    authors: tuple[str, ...]
    since: int


class Subscription:
    """Handle returned by a subscriber. close() must be idempotent."""

    async def close(self) -> None:
        raise NotImplementedError


class RelaySubscriber:
    """Delivers raw NIP-01 event dicts matching a filter to a handler."""

    async def subscribe(
        self, receipt_filter: ReceiptFilter, handler: EventHandler
    ) -> Subscription:
        raise NotImplementedError


# -- Session values --------------------------------------------------------------


@dataclass
class PaymentSession:
    """One payment attempt. Mutated only by PaymentFlow."""

    session_id: str
    amount_sats: int
    recipient_address: str
    created_at: int
    recipient_pubkey: str | None = None
    invoice: str | None = None
    zap_request: ZapRequest | None = None
    state: str = NEGOTIATING
    result: PaymentResult | None = field(default=None, repr=False)

    @property
    def amount_msats(self) -> int:
        return self.amount_sats * 1000


@dataclass(frozen=True)
class InvoiceDetails:
    """What the UI needs to show a payable invoice."""

    invoice: str
    amount_sats: int
    session_id: str
    lnurl: str = ""

    def to_dict(self) -> dict:
        return {
            "invoice": self.invoice,
            "amount_sats": self.amount_sats,
            "session_id": self.session_id,
            "lnurl": self.lnurl,
        }


@dataclass(frozen=True)
class PaymentResult:
    """Terminal outcome of a session."""

    session_id: str
    status: str
    zap: ZapOutcome | None = None
    error: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.status == CONFIRMED

    def to_dict(self) -> dict:
        data: dict = {"session_id": self.session_id, "status": self.status}
        if self.zap is not None:
            data["payment"] = self.zap.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data


def generate_session_id(prefix: str, now: float | None = None) -> str:
    ms = int((time.time() if now is None else now) * 1000)
    return f"{prefix}-{ms}-{secrets.token_hex(5)}"


# -- Flow ------------------------------------------------------------------------


class PaymentFlow:
    """Drives one payment at a time from invoice negotiation to receipt."""

    def __init__(
        self,
        lnurl: LnurlClient,
        subscriber: RelaySubscriber,
        config: Config,
        sign_request: RequestSigner | None = None,
        verify_signature: SignatureVerifier | None = None,
        on_rejection: RejectionCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lnurl = lnurl
        self._subscriber = subscriber
        self._config = config
        self._sign_request = sign_request
        self._verify_signature = verify_signature
        self._on_rejection = on_rejection
        self._clock = clock

        self._session: PaymentSession | None = None
        self._subscription: Subscription | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._done: asyncio.Future[PaymentResult] | None = None
        self._teardown_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def session(self) -> PaymentSession | None:
        return self._session

    @property
    def state(self) -> str:
        if self._session is None:
            return IDLE
        return self._session.state

    def is_busy(self) -> bool:
        return self.state in IN_FLIGHT_STATES

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def start(self, amount_sats: int | None = None) -> InvoiceDetails:
        """Negotiate an invoice and start listening for its zap receipt.

        Raises PaymentInProgress if a session is already negotiating or
        awaiting its receipt; the in-flight session is left untouched.
        Any other error (or cancellation) marks the new session FAILED and
        is re-raised, so the slot is always released.
        """
        # Guard and claim the slot before the first await.
        if self._session is not None and self._session.state in IN_FLIGHT_STATES:
            log.warning("Payment %s already in progress", self._session.session_id)
            raise PaymentInProgress(self._session.session_id)

        amount = self._config.min_payment_sats if amount_sats is None else amount_sats
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount(0)
        if amount < self._config.min_payment_sats:
            raise InvalidAmount(amount * 1000)

        now = self._clock()
        session = PaymentSession(
            session_id=generate_session_id(self._config.session_prefix, now),
            amount_sats=amount,
            recipient_address=self._config.recipient_address,
            created_at=int(now),
        )
        self._session = session
        self._done = asyncio.get_running_loop().create_future()
        log.info("Initiating payment %s: %d sats", session.session_id, amount)

        try:
            metadata = await self._lnurl.resolve(session.recipient_address)
            zap_request = build_zap_request(
                session.session_id,
                session.amount_sats,
                metadata,
                self._config.nostr_relays,
                recipient_pubkey=self._config.recipient_pubkey,
                app_name=self._config.app_name,
                created_at=session.created_at,
            )
            session.recipient_pubkey = zap_request.recipient_pubkey
            session.zap_request = zap_request

            event = (
                self._sign_request(zap_request)
                if self._sign_request is not None
                else zap_request.to_event()
            )
            invoice = await self._lnurl.fetch_invoice(
                metadata, event, session.amount_msats
            )
        except ZapError as exc:
            self._fail(session, exc.message)
            raise
        except Exception as exc:
            self._fail(session, f"{type(exc).__name__}: {exc}", exc_info=True)
            raise
        except asyncio.CancelledError:
            self._fail(session, "cancelled")
            raise

        if session.state != NEGOTIATING:
            raise PaymentAborted(session.session_id)

        session.invoice = invoice
        try:
            await self._begin_watch(session)
        except ZapError as exc:
            self._fail(session, exc.message)
            raise
        except Exception as exc:
            self._fail(session, f"{type(exc).__name__}: {exc}", exc_info=True)
            raise
        except asyncio.CancelledError:
            self._fail(session, "cancelled")
            raise
        if session.state == REJECTED:
            raise PaymentAborted(session.session_id)

        return InvoiceDetails(
            invoice=invoice,
            amount_sats=session.amount_sats,
            session_id=session.session_id,
            lnurl=metadata.lnurl,
        )

    async def _begin_watch(self, session: PaymentSession) -> None:
        """Subscribe for receipts and arm the timeout. Enters AWAITING_RECEIPT."""
        receipt_filter = ReceiptFilter(
            kinds=(ZAP_RECEIPT_KIND,),
            authors=(session.recipient_pubkey,) if session.recipient_pubkey else (),
            since=session.created_at - self._config.receipt_lookback_seconds,
        )
        session.state = AWAITING_RECEIPT
        subscription = await self._subscriber.subscribe(
            receipt_filter, self.handle_event
        )
        # Confirmed or aborted while subscribe() was in flight.
        if session.state != AWAITING_RECEIPT:
            await self._close_subscription(subscription)
            return
        self._subscription = subscription

        self._timer = asyncio.get_running_loop().call_later(
            self._config.receipt_timeout_seconds, self.expire
        )
        log.info(
            "Listening for zap receipt: session=%s expected=%d sats recipient=%s",
            session.session_id, session.amount_sats,
            (session.recipient_pubkey or "?")[:16],
        )

    def _fail(
        self, session: PaymentSession, error: str, exc_info: bool = False
    ) -> None:
        log.error("Payment %s failed: %s", session.session_id, error, exc_info=exc_info)
        self._finish(session, FAILED, error=error)

    # ------------------------------------------------------------------
    # Receipts and timeout
    # ------------------------------------------------------------------

    def handle_event(self, event: Mapping) -> ZapOutcome | None:
        """Validate one relay event against the live session.

        Returns the outcome, or None if no session is awaiting a receipt
        (late, duplicate or post-confirmation events are ignored).
        """
        session = self._session
        if session is None or session.state != AWAITING_RECEIPT:
            log.debug("Ignoring relay event: no session awaiting receipt")
            return None

        outcome = validate_zap_receipt(
            event,
            session.recipient_pubkey or "",
            session.amount_sats,
            verify_signature=self._verify_signature,
        )
        if not outcome.valid:
            log.info(
                "Invalid zap receipt for %s: %s", session.session_id, outcome.reason
            )
            if self._on_rejection is not None:
                try:
                    self._on_rejection(outcome)
                except Exception:
                    log.exception("Rejection callback failed")
            return outcome

        log.info(
            "Valid zap receipt for %s: %d sats from %s (event %s)",
            session.session_id, outcome.amount_sats,
            (outcome.sender_pubkey or "anonymous")[:16], (outcome.event_id or "?")[:16],
        )
        self._finish(session, CONFIRMED, zap=outcome)
        return outcome

    def expire(self) -> None:
        """Receipt timer callback. No-op unless still awaiting."""
        session = self._session
        if session is None or session.state != AWAITING_RECEIPT:
            return
        log.info(
            "No zap receipt for %s within %ds",
            session.session_id, self._config.receipt_timeout_seconds,
        )
        self._finish(session, TIMED_OUT, error="timed out waiting for zap receipt")

    def _finish(
        self,
        session: PaymentSession,
        status: str,
        zap: ZapOutcome | None = None,
        error: str | None = None,
    ) -> None:
        """Enter a terminal state exactly once: stop timer, tear down, notify."""
        if session.state in TERMINAL_STATES:
            return
        session.state = status
        session.result = PaymentResult(
            session_id=session.session_id, status=status, zap=zap, error=error
        )
        if session is not self._session:
            return

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            task = asyncio.get_running_loop().create_task(
                self._close_subscription(subscription)
            )
            self._teardown_tasks.add(task)
            task.add_done_callback(self._teardown_tasks.discard)

        if self._done is not None and not self._done.done():
            self._done.set_result(session.result)

    @staticmethod
    async def _close_subscription(subscription: Subscription) -> None:
        try:
            await subscription.close()
        except Exception:
            log.exception("Error closing receipt subscription")

    # ------------------------------------------------------------------
    # Waiting and cleanup
    # ------------------------------------------------------------------

    async def wait(self, timeout: float | None = None) -> PaymentResult:
        """Wait for the current session's terminal outcome.

        Raises RuntimeError if there is no session, asyncio.TimeoutError if
        timeout elapses first (the session itself keeps running).
        """
        session = self._session
        if session is None or self._done is None:
            raise RuntimeError("No payment session")
        if session.result is not None:
            result = session.result
        else:
            result = await asyncio.wait_for(asyncio.shield(self._done), timeout)
        await self._await_teardown()
        return result

    async def reset(self) -> str | None:
        """Abort any live session and return to IDLE.

        Returns the released session id, or None if the flow was idle.
        Safe to call repeatedly.
        """
        session = self._session
        if session is None:
            return None
        if session.state in IN_FLIGHT_STATES:
            log.info("Aborting payment %s", session.session_id)
            self._finish(session, REJECTED, error="aborted")
        await self._await_teardown()
        # A new start() may have claimed the slot during teardown.
        if self._session is session:
            self._session = None
            self._done = None
        return session.session_id

    async def close(self) -> None:
        await self.reset()

    async def _await_teardown(self) -> None:
        if self._teardown_tasks:
            await asyncio.gather(*self._teardown_tasks)

