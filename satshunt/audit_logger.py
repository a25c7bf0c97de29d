"""
Audit logging for SatsHunt.

Every tap verdict, reservation outcome, payout and donation transition is
written to the ``audit`` logger so that any movement of funds can be traced.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_logger = logging.getLogger("audit")
_audit_logger = None  # Will be initialized by init_audit_logger


def init_audit_logger():
    """Initialize the audit logger."""
    global _audit_logger

    _logger.setLevel(logging.INFO)

    # Add console handler if not already present
    if not _logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - AUDIT - %(levelname)s - %(message)s"))
        _logger.addHandler(handler)

    _audit_logger = AuditLogger()

    _logger.info("Audit logger initialized")


def get_audit_logger():
    """Get the audit logger instance."""
    global _audit_logger

    if _audit_logger is None:
        init_audit_logger()
    return _audit_logger


class AuditLogger:
    """
    Audit logging interface for fund-moving and security events.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or _logger

    def log_event(self, event: str, **details: Any) -> None:
        """Generic structured audit event."""

        payload = {"event": event, **details, "timestamp": datetime.now(timezone.utc).isoformat()}
        self.logger.info(json.dumps(payload, default=str))

    def log_tap(self, location_id: str, success: bool, reason: Optional[str] = None, counter: Optional[int] = None):
        """Log an NFC tap verdict."""
        status = "SUCCESS" if success else "FAILURE"
        msg = f"TAP | location={location_id} | status={status}"
        if counter is not None:
            msg += f" | counter={counter}"
        if reason:
            msg += f" | reason={reason}"
        if success:
            self.logger.info(msg)
        else:
            self.logger.warning(msg)

    def log_reservation(self, location_id: str, user_id: str, msats: int, success: bool, reason: Optional[str] = None):
        """Log a reserve attempt against a location."""
        status = "SUCCESS" if success else "FAILURE"
        msg = f"RESERVE | location={location_id} | user={user_id} | msats={msats} | status={status}"
        if reason:
            msg += f" | reason={reason}"
        self.logger.info(msg)

    def log_payment(self, pending_id: str, outcome: str, msats: int):
        """Log the payer outcome for a reservation."""
        self.logger.info(f"PAYMENT | withdrawal={pending_id} | msats={msats} | outcome={outcome}")

    def log_donation(self, donation_id: str, status: str, msats: int, location_id: Optional[str] = None):
        """Log a donation status transition."""
        self.logger.info(
            f"DONATION | donation={donation_id} | status={status} | msats={msats} | location={location_id or 'global'}"
        )

    def log_card_provisioned(self, location_id: str, version: int, uid: Optional[str]):
        """Log key issuance for a card."""
        self.logger.info(f"CARD_PROVISIONED | location={location_id} | version={version} | uid={uid}")

    def log_security_event(self, event_type: str, severity: str, details: Dict[str, Any]):
        """Log security event."""
        self.logger.warning(f"SECURITY_EVENT | type={event_type} | severity={severity} | details={details}")

    def log_rate_limit_exceeded(self, ip_address: str, endpoint: str):
        """Log rate limit violation."""
        self.logger.warning(f"RATE_LIMIT_EXCEEDED | ip={ip_address} | endpoint={endpoint}")

    def log_error(self, error_type: str, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log application error."""
        msg = f"ERROR | type={error_type} | msg={error_msg}"
        if context:
            msg += f" | context={context}"
        self.logger.error(msg)
