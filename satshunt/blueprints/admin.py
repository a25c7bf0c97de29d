"""
Admin Blueprint - Health Checks, Metrics, and Operational Endpoints

Provides monitoring and operational endpoints for infrastructure health.
"""

import logging
import time
from typing import Any, Dict

from flask import Blueprint, Response, current_app, jsonify
from prometheus_client import generate_latest

from satshunt.database import check_database_health, check_redis_health
from satshunt.metrics import registry

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)


@admin_bp.route("/health")
def health():
    """
    Comprehensive health check endpoint.

    Returns:
        JSON health status with service information
    """
    cfg = current_app.config["APP_CONFIG"]
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": time.time(),
        "service": cfg.get("APP_NAME", "SatsHunt"),
        "version": cfg.get("APP_VERSION"),
        "components": {},
    }

    database = check_database_health()
    health_status["components"]["database"] = database
    if database["status"] != "healthy":
        health_status["status"] = "degraded"

    # Redis only backs the rate limiter; its absence is not a degradation
    redis_status = check_redis_health()
    if redis_status["status"] == "unavailable":
        redis_status = {"status": "optional_unavailable"}
    health_status["components"]["redis"] = redis_status

    workers = current_app.extensions["satshunt"].workers
    health_status["components"]["workers"] = {w.name: ("running" if w.running else "stopped") for w in workers}

    return jsonify(health_status), 200 if health_status["status"] == "healthy" else 503


@admin_bp.route("/health/live")
def liveness():
    """
    Liveness probe - checks if app is running.

    Returns:
        200 if process is alive
    """
    return jsonify({"status": "alive"}), 200


@admin_bp.route("/health/ready")
def readiness():
    """
    Readiness probe - checks if app is ready to serve traffic.

    Returns:
        200 if ready, 503 if not ready
    """
    database = check_database_health()
    if database["status"] == "healthy":
        return jsonify({"status": "ready"}), 200
    return jsonify({"status": "not_ready", "error": database.get("error")}), 503


@admin_bp.route("/metrics")
def metrics_prometheus():
    """
    Prometheus metrics endpoint.

    Returns:
        Prometheus text format metrics
    """
    return Response(generate_latest(registry), mimetype="text/plain; version=0.0.4")
