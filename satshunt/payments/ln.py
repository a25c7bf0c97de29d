"""Lightning payer service for SatsHunt.

Two directions share one interface: donation invoices we issue and wait on, and
withdraw invoices we pay. Backends are selected with ``LN_BACKEND``.
"""

import base64
import hashlib
import logging
import secrets
import threading
from enum import Enum
from typing import Dict, Optional, Tuple

import requests

from satshunt.exceptions import LightningPaymentError

logger = logging.getLogger(__name__)

_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

PAYMENTS_PAGE_SIZE = 200


class PaymentOutcome(str, Enum):
    SETTLED = "settled"
    FAILED = "failed"
    PENDING = "pending"


def _hrp_amount(amount_msat: int) -> str:
    # 1n = 100 msat, 1p = 0.1 msat
    if amount_msat % 100 == 0:
        return f"{amount_msat // 100}n"
    return f"{amount_msat * 10}p"


class LightningPayer:
    """Interface of the external payer service."""

    def create_invoice(self, amount_msat: int, memo: str, expiry_seconds: int = 3600) -> Tuple[str, str]:
        """Return ``(payment_request, invoice_id)``."""
        raise NotImplementedError

    def invoice_status(self, invoice_id: str) -> PaymentOutcome:
        """Settlement state of an invoice we issued."""
        raise NotImplementedError

    def pay_invoice(self, invoice: str, amount_msat: int, timeout: float) -> PaymentOutcome:
        """Pay ``invoice`` waiting at most ``timeout`` seconds for a final outcome."""
        raise NotImplementedError

    def payment_status(self, invoice: str) -> PaymentOutcome:
        """Outcome of an earlier ``pay_invoice`` call."""
        raise NotImplementedError


class StubPayer(LightningPayer):
    """
    In-process payer for development.

    Outgoing payments resolve to ``pay_outcome``. Issued invoices stay pending
    until ``mark_paid`` is called, or settle at once with ``auto_settle=True``.
    """

    def __init__(self, pay_outcome: PaymentOutcome = PaymentOutcome.SETTLED, auto_settle: bool = False):
        self.pay_outcome = pay_outcome
        self.auto_settle = auto_settle
        self._lock = threading.Lock()
        self._issued: Dict[str, PaymentOutcome] = {}
        self._paid: Dict[str, PaymentOutcome] = {}

    def create_invoice(self, amount_msat: int, memo: str, expiry_seconds: int = 3600) -> Tuple[str, str]:
        preimage = secrets.token_bytes(32)
        invoice_id = hashlib.sha256(preimage).hexdigest()
        data = "".join(secrets.choice(_BECH32_CHARSET) for _ in range(120))
        payment_request = f"lnbc{_hrp_amount(amount_msat)}1p{data}"
        with self._lock:
            self._issued[invoice_id] = PaymentOutcome.SETTLED if self.auto_settle else PaymentOutcome.PENDING
        logger.info(f"Created stub invoice {invoice_id[:16]}... for {amount_msat} msat")
        return payment_request, invoice_id

    def mark_paid(self, invoice_id: str) -> None:
        with self._lock:
            self._issued[invoice_id] = PaymentOutcome.SETTLED

    def invoice_status(self, invoice_id: str) -> PaymentOutcome:
        with self._lock:
            return self._issued.get(invoice_id, PaymentOutcome.PENDING)

    def pay_invoice(self, invoice: str, amount_msat: int, timeout: float) -> PaymentOutcome:
        with self._lock:
            self._paid[invoice] = self.pay_outcome
        logger.info(f"Stub payment of {amount_msat} msat: {self.pay_outcome.value}")
        return self.pay_outcome

    def payment_status(self, invoice: str) -> PaymentOutcome:
        with self._lock:
            return self._paid.get(invoice, PaymentOutcome.PENDING)


class LndRestPayer(LightningPayer):
    """LND over its REST gateway, authenticated with a hex macaroon."""

    def __init__(self, base_url: str, macaroon: Optional[str], verify_tls: bool = True, request_timeout: float = 10):
        if not base_url:
            raise LightningPaymentError("Missing LND_REST_URL for LND REST backend.")
        if not macaroon:
            raise LightningPaymentError("Missing LND_MACAROON for LND REST backend.")
        self.base_url = base_url.rstrip("/")
        self.verify_tls = verify_tls
        self.request_timeout = request_timeout
        self._headers = {"Grpc-Metadata-macaroon": macaroon}

    def _get(self, path: str, **params) -> dict:
        resp = requests.get(
            f"{self.base_url}{path}",
            params=params or None,
            headers=self._headers,
            timeout=self.request_timeout,
            verify=self.verify_tls,
        )
        if resp.status_code >= 300:
            raise LightningPaymentError(f"LND GET {path} failed: {resp.status_code} {resp.text}")
        return resp.json()

    def create_invoice(self, amount_msat: int, memo: str, expiry_seconds: int = 3600) -> Tuple[str, str]:
        payload = {"value_msat": str(int(amount_msat)), "memo": memo, "expiry": str(int(expiry_seconds))}
        try:
            resp = requests.post(
                f"{self.base_url}/v1/invoices",
                json=payload,
                headers=self._headers,
                timeout=self.request_timeout,
                verify=self.verify_tls,
            )
        except requests.RequestException as e:
            raise LightningPaymentError(f"Could not create invoice: {e}") from e
        if resp.status_code >= 300:
            raise LightningPaymentError(f"LND invoice create failed: {resp.status_code} {resp.text}")

        data = resp.json()
        payment_request = data.get("payment_request")
        invoice_id = data.get("r_hash_str")
        if not invoice_id and data.get("r_hash"):
            # r_hash is base64 bytes; convert to hex string safe for URL paths
            invoice_id = base64.b64decode(data["r_hash"]).hex()
        if not payment_request or not invoice_id:
            raise LightningPaymentError("LND invoice response missing payment_request or r_hash.")

        logger.info(f"Created Lightning invoice: {invoice_id[:16]}... for {amount_msat} msat")
        return payment_request, invoice_id

    def invoice_status(self, invoice_id: str) -> PaymentOutcome:
        data = self._get(f"/v1/invoice/{invoice_id}")
        state = data.get("state")
        if data.get("settled") or state == "SETTLED":
            return PaymentOutcome.SETTLED
        if state == "CANCELED":
            return PaymentOutcome.FAILED
        return PaymentOutcome.PENDING

    def pay_invoice(self, invoice: str, amount_msat: int, timeout: float) -> PaymentOutcome:
        # Amount comes from the invoice; LND rejects amt_msat alongside an amount-bearing invoice
        payload = {"payment_request": invoice}
        try:
            resp = requests.post(
                f"{self.base_url}/v1/channels/transactions",
                json=payload,
                headers=self._headers,
                timeout=timeout,
                verify=self.verify_tls,
            )
        except requests.Timeout:
            logger.warning(f"LND payment of {amount_msat} msat did not resolve within {timeout}s")
            return PaymentOutcome.PENDING
        except requests.RequestException as e:
            # The request may have reached the node; only a status lookup can tell
            logger.error(f"LND payment transport error: {e}")
            return PaymentOutcome.PENDING

        if resp.status_code >= 500:
            logger.error(f"LND payment returned {resp.status_code}: {resp.text}")
            return PaymentOutcome.PENDING
        data = resp.json()
        if resp.status_code >= 300 or data.get("payment_error"):
            logger.info(f"LND payment failed: {data.get('payment_error') or resp.text}")
            return PaymentOutcome.FAILED
        if data.get("payment_preimage"):
            return PaymentOutcome.SETTLED
        return PaymentOutcome.PENDING

    def payment_status(self, invoice: str) -> PaymentOutcome:
        payment_hash = self._get(f"/v1/payreq/{invoice}").get("payment_hash")
        if not payment_hash:
            raise LightningPaymentError("LND could not decode payment request")

        payment = self._find_payment(payment_hash)
        if payment is None:
            return PaymentOutcome.PENDING
        status = payment.get("status")
        if status == "SUCCEEDED":
            return PaymentOutcome.SETTLED
        if status == "FAILED":
            return PaymentOutcome.FAILED
        return PaymentOutcome.PENDING

    def _find_payment(self, payment_hash: str) -> Optional[dict]:
        """Walk the payment history newest first, one page at a time."""
        index_offset = "0"
        while True:
            data = self._get(
                "/v1/payments",
                include_incomplete="true",
                reversed="true",
                max_payments=str(PAYMENTS_PAGE_SIZE),
                index_offset=index_offset,
            )
            payments = data.get("payments", [])
            for payment in payments:
                if payment.get("payment_hash") == payment_hash:
                    return payment

            next_offset = data.get("first_index_offset")
            # A short page or an offset that does not move means the start of history
            if len(payments) < PAYMENTS_PAGE_SIZE or not next_offset or next_offset == index_offset:
                return None
            index_offset = next_offset


def get_payer(cfg) -> LightningPayer:
    """Build the payer selected by ``LN_BACKEND``."""
    backend = (cfg.get("LN_BACKEND") or "stub").lower()
    if backend == "lnd_rest":
        return LndRestPayer(
            cfg.get("LND_REST_URL"), cfg.get("LND_MACAROON"), verify_tls=cfg.get("LND_TLS_VERIFY", True)
        )
    if backend != "stub":
        raise LightningPaymentError(f"Unknown LN_BACKEND {backend!r}")
    logger.warning("Using stub Lightning backend - no real payments will be made")
    return StubPayer()
