"""Security helpers for configuring Flask in production."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from flask import Flask
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix

from satshunt.database import get_redis, get_redis_url

logger = logging.getLogger(__name__)

# Created unbound so blueprints can decorate routes at import time
limiter = Limiter(key_func=get_remote_address, strategy="fixed-window")


def configure_logging(level_name: str) -> None:
    """JSON-shaped root logging at ``level_name``; idempotent."""
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(isinstance(handler, logging.StreamHandler) for handler in root_logger.handlers):
        handler = logging.StreamHandler()
        fmt = (
            "{\"level\":\"%(levelname)s\",\"msg\":\"%(message)s\",\"name\":\"%(name)s\",\"path\":\"%(pathname)s\","
            "\"lineno\":%(lineno)d}"
        )
        handler.setFormatter(logging.Formatter(fmt))
        root_logger.addHandler(handler)


def init_security(app: Flask, cfg: Mapping[str, Any]) -> Optional[Limiter]:
    """Initialise proxy handling, rate limiting and logging."""

    # Respect reverse proxy headers for TLS detection and client IP extraction.
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1)  # type: ignore[assignment]

    configure_logging(cfg.get("LOG_LEVEL", "INFO"))

    enabled = cfg.get("RATE_LIMIT_ENABLED") is not False
    app.config["RATELIMIT_ENABLED"] = enabled
    app.config["RATELIMIT_DEFAULT"] = cfg.get("RATE_LIMIT_DEFAULT") or "100/hour"
    # Shared counters only when Redis actually answered at startup
    app.config["RATELIMIT_STORAGE_URI"] = get_redis_url() if get_redis() is not None else "memory://"
    limiter.init_app(app)

    if not enabled:
        logger.warning("Rate limiting disabled")
        return None
    logger.debug(f"Rate limiting enabled ({app.config['RATELIMIT_STORAGE_URI'].split('@')[-1]})")
    return limiter
