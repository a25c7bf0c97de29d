"""
Boltcard Blueprint - card programming and location activation

Speaks the Boltcard programmer protocol: the app posts the UID of a blank
card (program) or the LNURLW read from a programmed one (reset) and receives
the LNURLW plus the five keys to write or wipe.
"""

import hmac
import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from satshunt.audit_logger import get_audit_logger
from satshunt.cards import activate_location, provision_card
from satshunt.exceptions import LocationNotFound
from satshunt.lnurl import location_id_from_lnurlw

logger = logging.getLogger(__name__)

boltcard_bp = Blueprint("boltcard", __name__)


def require_admin_token(view):
    """Reject requests whose X-Admin-Token does not match ADMIN_API_TOKEN."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config["APP_CONFIG"].get("ADMIN_API_TOKEN")
        presented = request.headers.get("X-Admin-Token", "")
        if not expected or not hmac.compare_digest(presented.encode(), expected.encode()):
            get_audit_logger().log_security_event(
                "admin_token_rejected", "medium", {"path": request.path, "ip": request.remote_addr}
            )
            return jsonify({"error": "unauthorized", "message": "Authentication required"}), 401
        return view(*args, **kwargs)

    return wrapper


@boltcard_bp.route("/boltcard/<location_id>", methods=["POST"])
@require_admin_token
def boltcard_keys(location_id: str):
    """
    Return LNURLW and K0..K4 for the location's card.

    Request body (one of):
        - {"UID": "04..."}: program a card, binding its UID
        - {"LNURLW": "lnurlw://..."}: reset a programmed card

    Query parameters:
        - onExisting=UpdateVersion: rotate keys by bumping the card version
    """
    cfg = current_app.config["APP_CONFIG"]
    data = request.get_json(silent=True) or {}
    rotate = request.args.get("onExisting") == "UpdateVersion"

    uid = data.get("UID")
    lnurlw = data.get("LNURLW")
    if not uid and not lnurlw:
        return jsonify({"error": "bad_request", "message": "UID or LNURLW required"}), 400

    if lnurlw and location_id_from_lnurlw(lnurlw) != location_id:
        return jsonify({"error": "bad_request", "message": "LNURLW does not belong to this location"}), 400

    try:
        payload = provision_card(location_id, cfg["MASTER_KEY"], cfg["BASE_URL"], uid=uid, rotate=rotate)
    except LocationNotFound:
        return jsonify({"error": "not_found", "message": "Unknown location"}), 404
    except ValueError as e:
        return jsonify({"error": "conflict", "message": str(e)}), 409

    get_audit_logger().log_card_provisioned(location_id, payload["version"], uid)
    return jsonify(payload)


@boltcard_bp.route("/locations/<location_id>/activate", methods=["POST"])
@require_admin_token
def activate(location_id: str):
    """Open a programmed location for withdrawals."""
    try:
        status = activate_location(location_id)
    except LocationNotFound:
        return jsonify({"error": "not_found", "message": "Unknown location"}), 404
    except ValueError as e:
        return jsonify({"error": "conflict", "message": str(e)}), 409

    get_audit_logger().log_event("location.activated", location_id=location_id)
    return jsonify({"location_id": location_id, "status": status})
