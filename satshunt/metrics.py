"""Prometheus metrics shared by the protocol, the workers and /metrics."""

from prometheus_client import CollectorRegistry, Counter, Gauge

registry = CollectorRegistry()

taps_total = Counter(
    "satshunt_taps_total",
    "NFC tap verifications by outcome",
    ["outcome"],
    registry=registry,
)
payouts_total = Counter(
    "satshunt_payouts_total",
    "Withdraw callbacks by final protocol state",
    ["state"],
    registry=registry,
)
payout_msats_total = Counter(
    "satshunt_payout_msats_total",
    "Millisatoshi committed as claims",
    registry=registry,
)
donations_total = Counter(
    "satshunt_donations_total",
    "Donation status transitions",
    ["status"],
    registry=registry,
)
pending_withdrawals = Gauge(
    "satshunt_pending_withdrawals",
    "Withdrawals awaiting a payment outcome after the last sweep",
    registry=registry,
)
