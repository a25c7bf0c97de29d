"""
LNURL-Withdraw Blueprint - NFC tap payouts

Implements the two LUD-03 steps a wallet performs after reading the tag:
the initial request (withdraw parameters) and the callback (invoice payment).
``withdraw_bp`` serves the web form alternatives: a pasted invoice or a
Lightning address.
"""

import hashlib
import logging

from flask import Blueprint, current_app, jsonify, request, session

from satshunt.audit_logger import get_audit_logger
from satshunt.factory import get_services
from satshunt.lnurl import callback_error, encode_lnurl
from satshunt.security import limiter
from satshunt.withdraw import ERR_AUTH, ERR_LN_ADDRESS_UNRESOLVED, ERR_PAYMENT, ERR_UNKNOWN_LOCATION, WithdrawResult

logger = logging.getLogger(__name__)

lnurlw_bp = Blueprint("lnurlw", __name__)
withdraw_bp = Blueprint("withdraw", __name__)


def _rate_limit() -> str:
    return current_app.config["APP_CONFIG"].get("LNURLW_RATE_LIMIT", "30/minute")


def _claimant(invoice: str) -> str:
    """Logged-in user, or a stable anonymous identity per invoice."""
    user_id = session.get("user_id")
    if user_id:
        return str(user_id)
    return "anon:" + hashlib.sha256(invoice.strip().lower().encode("utf-8")).hexdigest()[:32]


def _status_code(result: WithdrawResult) -> int:
    if result.ok:
        return 200
    if result.error in (ERR_PAYMENT, ERR_LN_ADDRESS_UNRESOLVED):
        return 502
    if result.error == ERR_UNKNOWN_LOCATION:
        return 404
    if result.error == ERR_AUTH:
        return 403
    return 400


@lnurlw_bp.route("/<location_id>", methods=["GET"])
@limiter.limit(_rate_limit)
def withdraw_request(location_id: str):
    """
    Initial LNURL-withdraw request.

    Query parameters:
        - p: encrypted PICC data from the tag
        - c: SUN MAC from the tag

    Returns:
        LUD-03 withdrawRequest JSON or ``{"status": "ERROR"}``
    """
    picc_data = request.args.get("p", "")
    cmac = request.args.get("c", "")
    if not picc_data or not cmac:
        return jsonify(callback_error("Missing p or c parameter")), 400

    try:
        result = get_services().protocol.initial_request(location_id, picc_data, cmac)
        return jsonify(result.to_response()), _status_code(result)
    except Exception as e:
        logger.error(f"LNURL-withdraw request failed for {location_id}: {e}", exc_info=True)
        get_audit_logger().log_error("lnurlw_request", str(e), {"location_id": location_id})
        return jsonify(callback_error("Internal error")), 500


@lnurlw_bp.route("/<location_id>/callback", methods=["GET"])
@limiter.limit(_rate_limit)
def withdraw_callback(location_id: str):
    """
    LNURL-withdraw callback.

    Query parameters:
        - k1: challenge from the initial request
        - pr: BOLT11 invoice to pay
        - p, c: the tag payload carried over from the initial request

    Returns:
        ``{"status": "OK"}`` or ``{"status": "ERROR", "reason": ...}``
    """
    k1 = request.args.get("k1", "")
    invoice = request.args.get("pr", "")
    picc_data = request.args.get("p", "")
    cmac = request.args.get("c", "")

    if not all([k1, invoice, picc_data, cmac]):
        return jsonify(callback_error("Missing required parameters")), 400

    try:
        result = get_services().protocol.callback(
            location_id, k1, invoice, picc_data, cmac, user_id=_claimant(invoice)
        )
        return jsonify(result.to_response()), _status_code(result)
    except Exception as e:
        logger.error(f"LNURL-withdraw callback failed for {location_id}: {e}", exc_info=True)
        get_audit_logger().log_error("lnurlw_callback", str(e), {"location_id": location_id})
        return jsonify(callback_error("Internal error")), 500


@lnurlw_bp.route("/<location_id>/qr", methods=["GET"])
def withdraw_lnurl(location_id: str):
    """Bech32 LNURL of the location's withdraw endpoint, for printing."""
    url = get_services().protocol.withdraw_url(location_id)
    return jsonify({"location_id": location_id, "url": url, "lnurl": encode_lnurl(url)})


def _tap_params():
    picc_data = request.args.get("p") or request.args.get("picc_data", "")
    cmac = request.args.get("c") or request.args.get("cmac", "")
    return picc_data, cmac


def _withdraw_response(result: WithdrawResult):
    if not result.ok:
        return jsonify({"success": False, "error": result.reason}), _status_code(result)
    body = {"success": True, "status": result.state.value}
    if result.amount_msats is not None:
        body["amount_sats"] = result.amount_msats // 1000
    return jsonify(body), 200


@withdraw_bp.route("/<location_id>/invoice", methods=["POST"])
@limiter.limit(_rate_limit)
def withdraw_invoice(location_id: str):
    """
    Pay a pasted BOLT11 invoice.

    Query parameters:
        - p, c: the tag payload

    Request body:
        {"invoice": "lnbc..."}

    Returns:
        ``{"success": true, "status": ..., "amount_sats": ...}`` or ``{"success": false, "error": ...}``
    """
    picc_data, cmac = _tap_params()
    data = request.get_json(silent=True) or {}
    invoice = str(data.get("invoice") or "").strip()
    if not picc_data or not cmac or not invoice:
        return jsonify({"success": False, "error": "Missing p, c or invoice"}), 400

    try:
        result = get_services().protocol.withdraw_invoice(
            location_id, picc_data, cmac, invoice, user_id=_claimant(invoice)
        )
        return _withdraw_response(result)
    except Exception as e:
        logger.error(f"Invoice withdrawal failed for {location_id}: {e}", exc_info=True)
        get_audit_logger().log_error("withdraw_invoice", str(e), {"location_id": location_id})
        return jsonify({"success": False, "error": "Internal error"}), 500


@withdraw_bp.route("/<location_id>/ln-address", methods=["POST"])
@limiter.limit(_rate_limit)
def withdraw_ln_address(location_id: str):
    """
    Pay everything withdrawable to a Lightning address.

    Query parameters:
        - p, c: the tag payload

    Request body:
        {"ln_address": "user@domain.com"}
    """
    picc_data, cmac = _tap_params()
    data = request.get_json(silent=True) or {}
    ln_address = str(data.get("ln_address") or "").strip()
    if not picc_data or not cmac or not ln_address:
        return jsonify({"success": False, "error": "Missing p, c or ln_address"}), 400

    try:
        result = get_services().protocol.withdraw_ln_address(
            location_id, picc_data, cmac, ln_address, user_id=_claimant(ln_address)
        )
        return _withdraw_response(result)
    except Exception as e:
        logger.error(f"Lightning address withdrawal failed for {location_id}: {e}", exc_info=True)
        get_audit_logger().log_error("withdraw_ln_address", str(e), {"location_id": location_id})
        return jsonify({"success": False, "error": "Internal error"}), 500
