"""
Stats Blueprint - read-only balances computed from the ledger
"""

import logging

from flask import Blueprint, jsonify

from satshunt import db_storage
from satshunt.exceptions import LocationNotFound
from satshunt.factory import get_services

logger = logging.getLogger(__name__)

stats_bp = Blueprint("stats", __name__)


@stats_bp.route("/stats", methods=["GET"])
def stats():
    """Aggregate pool, claims and per-location availability."""
    return jsonify(get_services().ledger.stats())


@stats_bp.route("/locations/<location_id>", methods=["GET"])
def location_detail(location_id: str):
    location = db_storage.get_location(location_id)
    if location is None:
        return jsonify({"error": "not_found", "message": "Unknown location"}), 404
    return jsonify(location)


@stats_bp.route("/locations/<location_id>/balance", methods=["GET"])
def location_balance(location_id: str):
    try:
        balance = get_services().ledger.balance(location_id)
    except LocationNotFound:
        return jsonify({"error": "not_found", "message": "Unknown location"}), 404
    return jsonify(balance.to_dict())


@stats_bp.route("/users/<user_id>/balance", methods=["GET"])
def user_balance(user_id: str):
    """Custodial balance recomputed from the user's transactions."""
    return jsonify({"user_id": user_id, "balance_msats": get_services().ledger.user_balance(user_id)})
