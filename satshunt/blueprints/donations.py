"""
Donations Blueprint - invoices that refill location pools
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from satshunt.exceptions import LightningPaymentError, LocationNotFound
from satshunt.factory import get_services
from satshunt.security import limiter

logger = logging.getLogger(__name__)

donations_bp = Blueprint("donations", __name__)

DONATION_RATE_LIMIT = "20 per minute"


@donations_bp.route("", methods=["POST"])
@limiter.limit(DONATION_RATE_LIMIT)
def create_donation():
    """
    Issue a donation invoice.

    Request body:
        - amount_sats: integer amount
        - location_id: optional target; omitted means the global pool

    Returns:
        JSON with donation id, invoice and expiry
    """
    cfg = current_app.config["APP_CONFIG"]
    data = request.get_json(silent=True) or {}

    amount_sats = data.get("amount_sats")
    if not isinstance(amount_sats, int) or isinstance(amount_sats, bool):
        return jsonify({"error": "bad_request", "message": "amount_sats must be an integer"}), 400
    if not cfg["MIN_DONATION_SATS"] <= amount_sats <= cfg["MAX_DONATION_SATS"]:
        return (
            jsonify(
                {
                    "error": "bad_request",
                    "message": f"amount_sats must be between {cfg['MIN_DONATION_SATS']} and {cfg['MAX_DONATION_SATS']}",
                }
            ),
            400,
        )

    try:
        donation = get_services().tracker.create_donation(amount_sats * 1000, data.get("location_id"))
    except LocationNotFound:
        return jsonify({"error": "not_found", "message": "Unknown location"}), 404
    except LightningPaymentError as e:
        logger.error(f"Donation invoice creation failed: {e}")
        return jsonify({"error": "payment_backend_unavailable", "message": "Could not create invoice"}), 502

    return jsonify(donation), 201


@donations_bp.route("/<donation_id>", methods=["GET"])
def donation_status(donation_id: str):
    """Current status of a donation (created, received or timed_out)."""
    donation = get_services().tracker.get_donation(donation_id)
    if donation is None:
        return jsonify({"error": "not_found", "message": "Unknown donation"}), 404
    return jsonify(donation)
