"""
Application Factory for SatsHunt

Implements the Flask application factory pattern with:
- Blueprint registration
- Card master key validation at startup
- Database and cache initialization
- Ledger, payer, withdraw protocol and donation tracker wiring
- Comprehensive error handling
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from flask import Flask, current_app, jsonify, request

from satshunt.audit_logger import get_audit_logger, init_audit_logger
from satshunt.config import AppConfig, get_config, validate_config
from satshunt.database import close_all, init_all
from satshunt.donations import DonationTracker
from satshunt.keys import parse_master_key
from satshunt.ledger import LedgerEngine
from satshunt.payments.ln import LightningPayer, get_payer
from satshunt.security import init_security
from satshunt.withdraw import WithdrawProtocol
from satshunt.workers import PeriodicWorker, build_workers

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived collaborators shared by requests and background workers."""

    ledger: LedgerEngine
    payer: LightningPayer
    protocol: WithdrawProtocol
    tracker: DonationTracker
    workers: List[PeriodicWorker] = field(default_factory=list)


def get_services() -> Services:
    return current_app.extensions["satshunt"]


def create_app(
    config_override: Optional[AppConfig] = None,
    payer: Optional[LightningPayer] = None,
    clock=None,
) -> Flask:
    """
    Create and configure the Flask application using the factory pattern.

    Args:
        config_override: Optional configuration override for testing
        payer: Lightning backend, defaults to the one selected by LN_BACKEND
        clock: time source for the ledger and trackers (tests)

    Returns:
        Configured Flask application instance

    Raises:
        DerivationError: MASTER_KEY missing or malformed
    """
    app = Flask(__name__)

    # Load configuration
    cfg = config_override or get_config()
    validate_config(cfg)
    app.config["APP_CONFIG"] = cfg

    # Set Flask secret key (required for sessions)
    app.secret_key = cfg["FLASK_SECRET_KEY"]

    # A bad master key is fatal here, never per request
    parse_master_key(cfg.get("MASTER_KEY"))
    logger.info("✅ Card master key loaded")

    # Initialize database and cache connections
    try:
        init_all(database_url=cfg.get("DATABASE_URL"))
        init_audit_logger()
        logger.info("✅ Database, cache, and audit logging initialized")
    except Exception as e:
        logger.error(f"❌ Infrastructure initialization failed: {e}")
        raise

    # Proxy headers, rate limiting, logging
    init_security(app, cfg)

    clock_kwargs = {"clock": clock} if clock is not None else {}
    ledger = LedgerEngine.from_config(cfg, **clock_kwargs)
    payer = payer or get_payer(cfg)
    protocol = WithdrawProtocol.from_config(cfg, ledger, payer)
    tracker = DonationTracker(payer, expiry_seconds=cfg["DONATION_EXPIRY_SECONDS"], **clock_kwargs)
    app.extensions["satshunt"] = Services(ledger=ledger, payer=payer, protocol=protocol, tracker=tracker)

    # Register blueprints
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Register before/after request handlers
    register_request_handlers(app)

    logger.info("🚀 Application factory completed successfully")
    return app


def start_workers(app: Flask) -> List[PeriodicWorker]:
    """Start donation reconciliation and the withdraw sweep for ``app``."""
    cfg = app.config["APP_CONFIG"]
    services: Services = app.extensions["satshunt"]
    if not cfg.get("BACKGROUND_WORKERS_ENABLED", True):
        logger.info("Background workers disabled by configuration")
        return []
    if not services.workers:
        services.workers = build_workers(cfg, services.tracker, services.protocol)
    for worker in services.workers:
        worker.start()
    return services.workers


def shutdown_app(app: Flask) -> None:
    """Stop workers and release connections."""
    services: Services = app.extensions["satshunt"]
    for worker in services.workers:
        worker.stop()
    services.protocol.shutdown()
    close_all()


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""

    # LNURL-withdraw (tap → invoice → payout)
    from satshunt.blueprints.lnurlw import lnurlw_bp, withdraw_bp

    app.register_blueprint(lnurlw_bp, url_prefix="/api/lnurlw")
    app.register_blueprint(withdraw_bp, url_prefix="/api/withdraw")

    # Donation invoices
    from satshunt.blueprints.donations import donations_bp

    app.register_blueprint(donations_bp, url_prefix="/api/donations")

    # Read-only balances and aggregates
    from satshunt.blueprints.stats import stats_bp

    app.register_blueprint(stats_bp, url_prefix="/api")

    # Card programming (admin token)
    from satshunt.blueprints.boltcard import boltcard_bp

    app.register_blueprint(boltcard_bp, url_prefix="/api")

    # Admin/operations blueprint (health, metrics)
    from satshunt.blueprints.admin import admin_bp

    app.register_blueprint(admin_bp)

    logger.info("✅ All blueprints registered")


def register_error_handlers(app: Flask) -> None:
    """Register global error handlers."""

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({"error": "bad_request", "message": str(e)}), 400

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({"error": "unauthorized", "message": "Authentication required"}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "forbidden", "message": "Access denied"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Resource not found"}), 404

    @app.errorhandler(429)
    def rate_limit_exceeded(e):
        get_audit_logger().log_rate_limit_exceeded(request.remote_addr, request.path)
        return jsonify({"error": "rate_limit_exceeded", "message": str(e)}), 429

    @app.errorhandler(500)
    def internal_error(e):
        logger.error(f"Internal server error: {e}", exc_info=True)
        return jsonify({"error": "internal_error", "message": "An unexpected error occurred"}), 500


def register_request_handlers(app: Flask) -> None:
    """Register before/after request handlers."""

    @app.after_request
    def add_security_headers(response):
        """LNURL responses are per-tap and must never be cached."""
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        return response

    @app.teardown_appcontext
    def cleanup(error=None):
        """Cleanup resources after request."""
        if error:
            logger.error(f"Request cleanup with error: {error}")
