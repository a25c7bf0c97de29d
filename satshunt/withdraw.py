"""
LNURL-withdraw protocol driven by NFC taps.

One attempt moves through

    Requested -> Challenged -> Authenticating -> Reserved -> Paying -> Committed | Released

The initial request only reads; the callback authenticates the tap (recording
the Scan and the new counter), reserves funds, pays the invoice and then
commits or releases the reservation. When the payer cannot tell us the outcome
in time the reservation stays pending and ``reconcile_pending`` resolves it
later from the payer's own records.

``withdraw_invoice`` and ``withdraw_ln_address`` run the same claim for a
pasted invoice or a Lightning address, skipping the k1 round trip. Every paid
claim is also debited from the claimant's custodial balance.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from satshunt import db_storage, metrics
from satshunt.audit_logger import get_audit_logger
from satshunt.cards import CARD_NOT_FOUND, LOCATION_MISSING, authenticate_tap
from satshunt.database import session_scope
from satshunt.exceptions import (
    AuthFailure,
    ChallengeError,
    DuplicateWithdrawal,
    InsufficientFunds,
    InvoiceError,
    LnAddressError,
    LocationNotFound,
    PayerFailure,
    PayerUnknown,
    WithdrawalStateError,
)
from satshunt.keys import parse_master_key
from satshunt.ledger import LedgerEngine
from satshunt.lnurl import (
    callback_error,
    callback_ok,
    invoice_amount_msat,
    invoice_for_ln_address,
    withdraw_request,
)
from satshunt.models import (
    LOCATION_ACTIVE,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_FAILED,
    WITHDRAWAL_PENDING,
    Claim,
    Location,
    PendingWithdrawal,
)
from satshunt.ntag424 import CMAC_MISMATCH, INVALID_CMAC, INVALID_PICC_DATA, REPLAY, UID_MISMATCH
from satshunt.payments.ln import LightningPayer, PaymentOutcome

logger = logging.getLogger(__name__)


class WithdrawState(str, Enum):
    REQUESTED = "requested"
    CHALLENGED = "challenged"
    AUTHENTICATING = "authenticating"
    RESERVED = "reserved"
    PAYING = "paying"
    COMMITTED = "committed"
    RELEASED = "released"


# Error codes surfaced to wallets, one human reason each
ERR_LOCATION = "location"
ERR_UNKNOWN_LOCATION = "unknown_location"
ERR_CHALLENGE = "challenge"
ERR_INVOICE = "invoice"
ERR_AUTH = "auth"
ERR_FUNDS = "insufficient_funds"
ERR_PAYMENT = "payment_failed"
ERR_LN_ADDRESS = "ln_address"
ERR_LN_ADDRESS_UNRESOLVED = "ln_address_unresolved"

INACTIVE_LOCATION = "location_inactive"

AUTH_REASONS = {
    REPLAY: "This scan has already been used. Please scan the sticker again.",
    CMAC_MISMATCH: "Invalid NFC scan. Please scan the sticker again.",
    INVALID_CMAC: "Invalid NFC scan. Please scan the sticker again.",
    INVALID_PICC_DATA: "Invalid NFC scan. Please scan the sticker again.",
    UID_MISMATCH: "Invalid NFC card for this location.",
    CARD_NOT_FOUND: "NFC card not configured.",
    LOCATION_MISSING: "Location not found.",
    INACTIVE_LOCATION: "Location is not active yet.",
}
NO_FUNDS_REASON = "No sats available at this location."
PAYMENT_FAILED_REASON = "Payment failed. Please scan the sticker again to retry."
CHALLENGE_REASON = "Withdraw request expired or already used. Please scan the sticker again."
LN_ADDRESS_UNRESOLVED_REASON = "Could not resolve Lightning address. Please check and try again."


@dataclass
class WithdrawResult:
    """Outcome of one protocol step."""

    state: WithdrawState
    error: Optional[str] = None
    reason: Optional[str] = None
    params: Optional[dict] = None
    pending_id: Optional[str] = None
    claim_id: Optional[str] = None
    scan_id: Optional[str] = None
    amount_msats: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_response(self) -> dict:
        if not self.ok:
            return callback_error(self.reason)
        if self.params is not None:
            return self.params
        return callback_ok()


def _funds_reason(exc: InsufficientFunds) -> str:
    if exc.available_msats < 1000:
        return NO_FUNDS_REASON
    return f"Amount exceeds what this location can pay right now ({exc.available_msats // 1000} sats)."


class WithdrawProtocol:
    """
    Orchestrates tag authentication, the ledger and the payer for LNURL-withdraw.

    Args:
        ledger: balance engine
        payer: external Lightning payer
        master_key: card master key (hex); validated here so a bad key fails at startup
        base_url: public URL prefix for callbacks
        challenge_ttl: lifetime of a k1 in seconds
        payer_timeout: bounded wait on the payer before deferring the outcome
        sweep_max_attempts: status polls per withdrawal before paging an operator
        in_flight_wait: how long a repeated callback waits for the first one to reserve
        ln_address_timeout: per-request timeout when resolving Lightning addresses
    """

    def __init__(
        self,
        ledger: LedgerEngine,
        payer: LightningPayer,
        master_key: str,
        base_url: str,
        challenge_ttl: int = 300,
        payer_timeout: float = 30,
        sweep_max_attempts: int = 120,
        description: str = "SatsHunt treasure",
        in_flight_wait: float = 5,
        ln_address_timeout: float = 10,
    ):
        self.ledger = ledger
        self.payer = payer
        self.master_key = parse_master_key(master_key)
        self.base_url = base_url.rstrip("/")
        self.challenge_ttl = challenge_ttl
        self.payer_timeout = payer_timeout
        self.sweep_max_attempts = sweep_max_attempts
        self.description = description
        self.in_flight_wait = in_flight_wait
        self.ln_address_timeout = ln_address_timeout
        self._executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="payer")

    @classmethod
    def from_config(cls, cfg, ledger: LedgerEngine, payer: LightningPayer) -> "WithdrawProtocol":
        return cls(
            ledger,
            payer,
            cfg.get("MASTER_KEY"),
            cfg["BASE_URL"],
            challenge_ttl=cfg["CHALLENGE_TTL_SECONDS"],
            payer_timeout=cfg["PAYER_TIMEOUT_SECONDS"],
            sweep_max_attempts=cfg["WITHDRAW_SWEEP_MAX_ATTEMPTS"],
            in_flight_wait=cfg["CALLBACK_IN_FLIGHT_WAIT_SECONDS"],
            ln_address_timeout=cfg["LN_ADDRESS_TIMEOUT_SECONDS"],
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _location_status(self, location_id: str) -> Optional[str]:
        with session_scope() as session:
            location = session.get(Location, location_id)
            return location.status if location else None

    def _check_location(self, location_id: str) -> Optional[WithdrawResult]:
        status = self._location_status(location_id)
        if status is None:
            return WithdrawResult(WithdrawState.REQUESTED, ERR_UNKNOWN_LOCATION, AUTH_REASONS[LOCATION_MISSING])
        if status != LOCATION_ACTIVE:
            return WithdrawResult(WithdrawState.REQUESTED, ERR_LOCATION, AUTH_REASONS[INACTIVE_LOCATION])
        return None

    def _auth_failed(self, location_id: str, exc: AuthFailure) -> WithdrawResult:
        get_audit_logger().log_tap(location_id, success=False, reason=exc.reason)
        metrics.taps_total.labels(outcome=exc.reason).inc()
        logger.info(f"Tap rejected at {location_id}: {exc}")
        reason = AUTH_REASONS.get(exc.reason, "Invalid NFC scan. Please scan the sticker again.")
        return WithdrawResult(WithdrawState.AUTHENTICATING, ERR_AUTH, reason)

    def withdraw_url(self, location_id: str) -> str:
        return f"{self.base_url}/api/lnurlw/{location_id}"

    def callback_url(self, location_id: str) -> str:
        return f"{self.withdraw_url(location_id)}/callback"

    def _existing(self, user_id: str, invoice: str) -> Optional[WithdrawResult]:
        """Result of an earlier callback for the same (claimant, invoice), if any."""
        with session_scope() as session:
            pending = (
                session.query(PendingWithdrawal)
                .filter_by(user_id=user_id, invoice=invoice)
                .order_by(PendingWithdrawal.created_at.desc())
                .first()
            )
            if pending is None:
                return None

            if pending.status == WITHDRAWAL_COMPLETED:
                claim = session.query(Claim).filter_by(pending_withdrawal_id=pending.id).first()
                return WithdrawResult(
                    WithdrawState.COMMITTED,
                    pending_id=pending.id,
                    claim_id=claim.id if claim else None,
                    scan_id=pending.scan_id,
                    amount_msats=pending.msats,
                )
            if pending.status == WITHDRAWAL_FAILED:
                return WithdrawResult(
                    WithdrawState.RELEASED, ERR_PAYMENT, PAYMENT_FAILED_REASON, pending_id=pending.id
                )
            return WithdrawResult(
                WithdrawState.PAYING, pending_id=pending.id, scan_id=pending.scan_id, amount_msats=pending.msats
            )

    def _pay(self, invoice: str, amount_msats: int) -> None:
        """
        Pay ``invoice`` within the bounded wait.

        Raises:
            PayerFailure: the payer reported a definitive failure
            PayerUnknown: no outcome in time, or the payer crashed
        """
        future = self._executor.submit(self.payer.pay_invoice, invoice, amount_msats, self.payer_timeout)
        try:
            outcome = PaymentOutcome(future.result(timeout=self.payer_timeout))
        except FutureTimeout as exc:
            raise PayerUnknown(f"no outcome within {self.payer_timeout}s") from exc
        except Exception as exc:
            logger.error(f"Payer raised during payment: {exc}", exc_info=True)
            raise PayerUnknown(str(exc)) from exc

        if outcome == PaymentOutcome.FAILED:
            raise PayerFailure("payer reported failure")
        if outcome == PaymentOutcome.PENDING:
            raise PayerUnknown("payer reported the payment in flight")

    def _consume_challenge(self, k1: str, location_id: str, user_id: str, invoice: str) -> None:
        consumed = k1 and db_storage.consume_withdraw_challenge(
            k1, location_id, now=self.ledger.clock(), user_id=user_id, invoice=invoice
        )
        if not consumed:
            raise ChallengeError(f"k1 unknown, expired or already used for {location_id}")

    def _settle(
        self, pending_id: str, outcome: PaymentOutcome, amount_msats: int, user_id: str, scan_id=None
    ) -> WithdrawResult:
        get_audit_logger().log_payment(pending_id, outcome.value, amount_msats)

        if outcome == PaymentOutcome.SETTLED:
            claim_id = self.ledger.commit(pending_id)
            # Paid straight to the claimant's wallet, so the collect nets out
            self.ledger.record_withdrawal(user_id, amount_msats, claim_id=claim_id)
            metrics.payout_msats_total.inc(amount_msats)
            return WithdrawResult(
                WithdrawState.COMMITTED,
                pending_id=pending_id,
                claim_id=claim_id,
                scan_id=scan_id,
                amount_msats=amount_msats,
            )

        if outcome == PaymentOutcome.FAILED:
            self.ledger.release(pending_id, "payer reported failure")
            return WithdrawResult(
                WithdrawState.RELEASED, ERR_PAYMENT, PAYMENT_FAILED_REASON, pending_id=pending_id, scan_id=scan_id
            )

        return WithdrawResult(WithdrawState.PAYING, pending_id=pending_id, scan_id=scan_id, amount_msats=amount_msats)

    def _await_first_attempt(self, k1: str, location_id: str, user_id: str, invoice: str) -> Optional[WithdrawResult]:
        """
        Result of the callback that consumed ``k1``, when it was this same
        (claimant, invoice) and it reserves within ``in_flight_wait``.
        """
        challenge = db_storage.get_withdraw_challenge(k1, now=self.ledger.clock()) if k1 else None
        if not challenge or challenge["location_id"] != location_id:
            return None
        if challenge["used_by"] != user_id or challenge["invoice"] != invoice:
            return None

        deadline = time.monotonic() + self.in_flight_wait
        while True:
            previous = self._existing(user_id, invoice)
            if previous is not None or time.monotonic() >= deadline:
                return previous
            time.sleep(0.05)

    def _claim(self, location_id: str, invoice: str, picc_data: str, cmac: str, user_id: str) -> WithdrawResult:
        """Authenticate the tap, reserve, pay, then commit or release."""
        rejected = self._check_location(location_id)
        if rejected:
            return rejected

        try:
            amount_msats = invoice_amount_msat(invoice)
        except InvoiceError as exc:
            return WithdrawResult(WithdrawState.CHALLENGED, ERR_INVOICE, str(exc))

        # Authenticating: the Scan and the new counter are persisted together
        try:
            tap = authenticate_tap(
                location_id, picc_data, cmac, user_id=user_id, master_key=self.master_key, now=self.ledger.clock()
            )
        except AuthFailure as exc:
            return self._auth_failed(location_id, exc)

        get_audit_logger().log_tap(location_id, success=True, counter=tap.counter)
        metrics.taps_total.labels(outcome="accepted").inc()

        try:
            pending_id = self.ledger.reserve(location_id, user_id, amount_msats, invoice, scan_id=tap.scan_id)
        except InsufficientFunds as exc:
            get_audit_logger().log_reservation(location_id, user_id, amount_msats, False, "insufficient_funds")
            return WithdrawResult(WithdrawState.AUTHENTICATING, ERR_FUNDS, _funds_reason(exc), scan_id=tap.scan_id)
        except DuplicateWithdrawal:
            # Lost a race against an identical concurrent callback
            return self._existing(user_id, invoice)
        except LocationNotFound:
            return WithdrawResult(WithdrawState.AUTHENTICATING, ERR_UNKNOWN_LOCATION, AUTH_REASONS[LOCATION_MISSING])

        get_audit_logger().log_reservation(location_id, user_id, amount_msats, True)

        try:
            self._pay(invoice, amount_msats)
            outcome = PaymentOutcome.SETTLED
        except PayerFailure as exc:
            logger.info(f"Payment for {pending_id} failed: {exc}")
            outcome = PaymentOutcome.FAILED
        except PayerUnknown as exc:
            logger.warning(f"Payment for {pending_id} unresolved, leaving it to the sweep: {exc}")
            outcome = PaymentOutcome.PENDING

        result = self._settle(pending_id, outcome, amount_msats, user_id, scan_id=tap.scan_id)
        metrics.payouts_total.labels(state=result.state.value).inc()
        return result

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    def initial_request(self, location_id: str, picc_data: str, cmac: str) -> WithdrawResult:
        """
        Answer the wallet's first GET with LUD-03 withdraw parameters.

        The tap is verified without consuming its counter so that the callback
        can present the same ``p``/``c``. No funds are touched.
        """
        rejected = self._check_location(location_id)
        if rejected:
            return rejected

        try:
            authenticate_tap(location_id, picc_data, cmac, user_id="", master_key=self.master_key, persist=False)
        except AuthFailure as exc:
            return self._auth_failed(location_id, exc)

        available = self.ledger.available(location_id)
        withdrawable = (available // 1000) * 1000
        if withdrawable <= 0:
            return WithdrawResult(WithdrawState.REQUESTED, ERR_FUNDS, NO_FUNDS_REASON)

        k1 = db_storage.store_withdraw_challenge(location_id, self.challenge_ttl, now=self.ledger.clock())
        callback = f"{self.callback_url(location_id)}?p={picc_data}&c={cmac}"
        get_audit_logger().log_event("lnurlw.challenge_created", location_id=location_id, max_msats=withdrawable)

        return WithdrawResult(
            WithdrawState.CHALLENGED,
            params=withdraw_request(callback, k1, withdrawable, withdrawable, self.description),
        )

    def callback(
        self, location_id: str, k1: str, invoice: str, picc_data: str, cmac: str, user_id: str
    ) -> WithdrawResult:
        """
        Second LNURL-withdraw step: authenticate, reserve, pay, then commit or release.

        A repeated (claimant, invoice) pair returns the recorded result and never
        reserves again, including while the first call is still authenticating.
        """
        invoice = (invoice or "").strip()

        previous = self._existing(user_id, invoice)
        if previous is not None:
            logger.info(f"Repeated callback for {user_id}; returning {previous.state.value}")
            return previous

        try:
            self._consume_challenge(k1, location_id, user_id, invoice)
        except ChallengeError as exc:
            previous = self._await_first_attempt(k1, location_id, user_id, invoice)
            if previous is not None:
                logger.info(f"Repeated callback for {user_id} raced the first; returning {previous.state.value}")
                return previous
            logger.info(f"Callback refused at {location_id}: {exc}")
            return WithdrawResult(WithdrawState.CHALLENGED, ERR_CHALLENGE, CHALLENGE_REASON)

        return self._claim(location_id, invoice, picc_data, cmac, user_id)

    def withdraw_invoice(
        self, location_id: str, picc_data: str, cmac: str, invoice: str, user_id: str
    ) -> WithdrawResult:
        """
        Pay a pasted BOLT11 invoice for a tap, without the LNURL round trip.

        The tap counter is the single-use token here; a repeat of the same
        (claimant, invoice) returns the recorded result.
        """
        invoice = (invoice or "").strip()
        previous = self._existing(user_id, invoice)
        if previous is not None:
            return previous
        return self._claim(location_id, invoice, picc_data, cmac, user_id)

    def withdraw_ln_address(
        self, location_id: str, picc_data: str, cmac: str, ln_address: str, user_id: str
    ) -> WithdrawResult:
        """
        Pay everything withdrawable at the location to a Lightning address.

        The address is resolved to an invoice before the tap is consumed, so a
        bad address leaves the scan usable.
        """
        rejected = self._check_location(location_id)
        if rejected:
            return rejected

        try:
            authenticate_tap(location_id, picc_data, cmac, user_id="", master_key=self.master_key, persist=False)
        except AuthFailure as exc:
            return self._auth_failed(location_id, exc)

        withdrawable = (self.ledger.available(location_id) // 1000) * 1000
        if withdrawable <= 0:
            return WithdrawResult(WithdrawState.REQUESTED, ERR_FUNDS, NO_FUNDS_REASON)

        try:
            invoice = invoice_for_ln_address(ln_address, withdrawable, timeout=self.ln_address_timeout)
        except LnAddressError as exc:
            if exc.kind == LnAddressError.INVALID:
                return WithdrawResult(WithdrawState.REQUESTED, ERR_LN_ADDRESS, f"Invalid Lightning address: {exc}")
            if exc.kind == LnAddressError.OUT_OF_RANGE:
                return WithdrawResult(WithdrawState.REQUESTED, ERR_LN_ADDRESS, str(exc))
            logger.error(f"Lightning address resolution failed for {location_id}: {exc}")
            return WithdrawResult(WithdrawState.REQUESTED, ERR_LN_ADDRESS_UNRESOLVED, LN_ADDRESS_UNRESOLVED_REASON)

        return self._claim(location_id, invoice, picc_data, cmac, user_id)

    def reconcile_pending(self) -> dict:
        """
        Poll the payer for every pending withdrawal and commit or release it.

        Returns:
            counts of committed, released and still pending withdrawals
        """
        with session_scope() as session:
            rows = [
                (p.id, p.user_id, p.invoice, p.msats, p.scan_id)
                for p in session.query(PendingWithdrawal)
                .filter_by(status=WITHDRAWAL_PENDING)
                .order_by(PendingWithdrawal.created_at)
                .all()
            ]

        counts = {"committed": 0, "released": 0, "pending": 0}
        for pending_id, user_id, invoice, msats, scan_id in rows:
            try:
                outcome = PaymentOutcome(self.payer.payment_status(invoice))
            except Exception as e:
                logger.warning(f"Status lookup for {pending_id} failed: {e}")
                outcome = PaymentOutcome.PENDING

            if outcome == PaymentOutcome.PENDING:
                self._bump_attempts(pending_id)
                counts["pending"] += 1
                continue

            try:
                result = self._settle(pending_id, outcome, msats, user_id, scan_id=scan_id)
            except WithdrawalStateError as e:
                logger.warning(f"Skipping {pending_id}: {e}")
                continue
            metrics.payouts_total.labels(state=result.state.value).inc()
            counts["committed" if result.state == WithdrawState.COMMITTED else "released"] += 1

        metrics.pending_withdrawals.set(counts["pending"])
        if rows:
            logger.info(f"Withdraw sweep: {counts}")
        return counts

    def _bump_attempts(self, pending_id: str) -> None:
        with session_scope() as session:
            pending = session.get(PendingWithdrawal, pending_id)
            if pending is None or pending.status != WITHDRAWAL_PENDING:
                return
            pending.attempts += 1
            attempts = pending.attempts

        if attempts == self.sweep_max_attempts:
            logger.error(f"Withdrawal {pending_id} still unresolved after {attempts} polls; needs an operator")
            get_audit_logger().log_security_event(
                "withdrawal_unresolved", "high", {"pending_id": pending_id, "attempts": attempts}
            )
