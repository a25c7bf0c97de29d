"""LNURL-withdraw (LUD-01/03/17) helpers, Lightning address (LUD-16) payments and BOLT11 amount parsing."""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlparse

import requests
from bech32 import bech32_encode, convertbits

from satshunt.exceptions import InvoiceError, LnAddressError

logger = logging.getLogger(__name__)

WITHDRAW_TAG = "withdrawRequest"
PAY_TAG = "payRequest"

# BTC -> msat per multiplier; "p" is a tenth of a msat and handled separately
_MULTIPLIERS = {"": 100_000_000_000, "m": 100_000_000, "u": 100_000, "n": 100}
_HRP_RE = re.compile(r"^ln(bcrt|bc|tbs|tb|sb)(\d*)([munp]?)$")
_BECH32_CHARSET = set("qpzry9x8gf2tvdw0s3jn54khce6mua7l")
_LNURLW_PATH_RE = re.compile(r"/api/lnurlw/([^/?#]+)/?$")


def encode_lnurl(url: str) -> str:
    """Bech32-encode ``url`` with the ``lnurl`` prefix, upper-cased for QR codes."""
    return bech32_encode("lnurl", convertbits(url.encode("utf-8"), 8, 5)).upper()


def lnurlw_uri(url: str) -> str:
    """Rewrite an https URL to the ``lnurlw://`` scheme written onto the tag."""
    parsed = urlparse(url)
    return parsed._replace(scheme="lnurlw").geturl()


def location_id_from_lnurlw(uri: str) -> Optional[str]:
    """Location id embedded in a tag's LNURLW, or None if it is not one of ours."""
    match = _LNURLW_PATH_RE.search(urlparse(uri.strip()).path)
    return match.group(1) if match else None


def invoice_amount_msat(invoice: str) -> int:
    """
    Amount carried by a BOLT11 invoice.

    Raises:
        InvoiceError: malformed invoice, unknown network or no amount
    """
    if not invoice:
        raise InvoiceError("Missing invoice")
    bolt11 = invoice.strip().lower()
    if bolt11.startswith("lightning:"):
        bolt11 = bolt11[len("lightning:") :]

    sep = bolt11.rfind("1")
    if sep < 4 or len(bolt11) - sep - 1 < 7:
        raise InvoiceError("Invalid Lightning invoice")
    if not set(bolt11[sep + 1 :]) <= _BECH32_CHARSET:
        raise InvoiceError("Invalid Lightning invoice")

    match = _HRP_RE.match(bolt11[:sep])
    if not match:
        raise InvoiceError("Invalid Lightning invoice")

    digits, multiplier = match.group(2), match.group(3)
    if not digits:
        raise InvoiceError("Invoice must specify an amount")
    amount = int(digits)

    if multiplier == "p":
        if amount % 10:
            raise InvoiceError("Invoice amount has sub-millisatoshi precision")
        msat = amount // 10
    else:
        msat = amount * _MULTIPLIERS[multiplier]

    if msat <= 0:
        raise InvoiceError("Invoice must specify an amount")
    return msat


def withdraw_request(callback: str, k1: str, min_msat: int, max_msat: int, description: str) -> dict:
    """LUD-03 response to the initial request."""
    return {
        "tag": WITHDRAW_TAG,
        "callback": callback,
        "k1": k1,
        "defaultDescription": description,
        "minWithdrawable": min_msat,
        "maxWithdrawable": max_msat,
    }


def callback_ok() -> dict:
    return {"status": "OK"}


def callback_error(reason: str) -> dict:
    return {"status": "ERROR", "reason": reason}


# ============================================================================
# Lightning addresses (LUD-16)
# ============================================================================


@dataclass
class PayParams:
    """The parts of a LUD-06 payRequest needed to fetch an invoice."""

    callback: str
    min_sendable: int
    max_sendable: int


def parse_ln_address(address: str) -> Tuple[str, str]:
    """
    Split ``user@domain`` into its parts.

    Raises:
        LnAddressError: not a plausible Lightning address
    """
    address = (address or "").strip().lower()
    parts = address.split("@")
    if len(parts) != 2:
        raise LnAddressError(LnAddressError.INVALID, "must look like user@domain.com")
    user, domain = parts
    if not user:
        raise LnAddressError(LnAddressError.INVALID, "missing user name")
    if "." not in domain:
        raise LnAddressError(LnAddressError.INVALID, "domain must contain a dot")
    return user, domain


def _get_json(url: str, timeout: float) -> dict:
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise LnAddressError(LnAddressError.UNRESOLVED, f"request to {url} failed: {e}") from e
    if resp.status_code != 200:
        raise LnAddressError(LnAddressError.UNRESOLVED, f"{url} returned {resp.status_code}")
    try:
        return resp.json()
    except ValueError as e:
        raise LnAddressError(LnAddressError.UNRESOLVED, f"{url} returned invalid JSON") from e


def resolve_ln_address(address: str, timeout: float = 10) -> PayParams:
    """
    Fetch the payRequest behind a Lightning address.

    Raises:
        LnAddressError: malformed address or unusable response
    """
    user, domain = parse_ln_address(address)
    data = _get_json(f"https://{domain}/.well-known/lnurlp/{user}", timeout)

    if data.get("status") == "ERROR":
        raise LnAddressError(LnAddressError.UNRESOLVED, data.get("reason") or "service returned an error")
    if data.get("tag") != PAY_TAG:
        raise LnAddressError(LnAddressError.UNRESOLVED, f"expected tag {PAY_TAG}, got {data.get('tag')!r}")
    try:
        return PayParams(data["callback"], int(data["minSendable"]), int(data["maxSendable"]))
    except (KeyError, TypeError, ValueError) as e:
        raise LnAddressError(LnAddressError.UNRESOLVED, f"incomplete payRequest: {e}") from e


def fetch_invoice(callback: str, amount_msat: int, timeout: float = 10) -> str:
    """
    Ask a payRequest callback for an invoice of ``amount_msat``.

    Raises:
        LnAddressError: the service refused or returned no invoice
    """
    separator = "&" if "?" in callback else "?"
    data = _get_json(f"{callback}{separator}amount={amount_msat}", timeout)

    if data.get("status") == "ERROR":
        raise LnAddressError(LnAddressError.UNRESOLVED, data.get("reason") or "service returned an error")
    invoice = data.get("pr")
    if not invoice:
        raise LnAddressError(LnAddressError.UNRESOLVED, "no invoice in response")
    return invoice


def invoice_for_ln_address(address: str, amount_msat: int, timeout: float = 10) -> str:
    """
    Resolve ``address`` and return an invoice for exactly ``amount_msat``.

    Raises:
        LnAddressError: invalid address, amount outside the service's range,
            or the service could not produce a matching invoice
    """
    params = resolve_ln_address(address, timeout)
    if not params.min_sendable <= amount_msat <= params.max_sendable:
        raise LnAddressError(
            LnAddressError.OUT_OF_RANGE,
            f"Amount {amount_msat // 1000} sats is outside the allowed range "
            f"({params.min_sendable // 1000}-{params.max_sendable // 1000} sats)",
        )

    invoice = fetch_invoice(params.callback, amount_msat, timeout)
    try:
        invoiced = invoice_amount_msat(invoice)
    except InvoiceError as e:
        raise LnAddressError(LnAddressError.UNRESOLVED, f"service returned a bad invoice: {e}") from e
    if invoiced != amount_msat:
        raise LnAddressError(LnAddressError.UNRESOLVED, f"invoice is for {invoiced} msat, asked for {amount_msat}")

    logger.info(f"Resolved Lightning address for {amount_msat} msat")
    return invoice
