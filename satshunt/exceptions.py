"""Exception taxonomy shared by the tag, ledger and withdraw layers."""


class SatsHuntError(Exception):
    """Base class for domain errors."""


class DerivationError(SatsHuntError):
    """Master key missing or malformed. Fatal at startup."""


class AuthFailure(SatsHuntError):
    """A tap payload was rejected. Terminal for the request, never retried."""

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason


class InsufficientFunds(SatsHuntError):
    def __init__(self, requested_msats: int, available_msats: int):
        super().__init__(f"requested {requested_msats} msat, {available_msats} msat available")
        self.requested_msats = requested_msats
        self.available_msats = available_msats


class WithdrawalStateError(SatsHuntError):
    """Illegal transition of a PendingWithdrawal, e.g. committing a released one."""


class ChallengeError(SatsHuntError):
    """Unknown, expired or mismatched k1."""


class InvoiceError(SatsHuntError):
    """BOLT11 invoice could not be parsed or carries no amount."""


class PayerFailure(SatsHuntError):
    """The payer reported a definitive failure."""


class PayerUnknown(SatsHuntError):
    """The payer did not report an outcome within the bounded wait."""


class LightningPaymentError(SatsHuntError):
    """Transport or backend error talking to the Lightning node."""


class DuplicateWithdrawal(WithdrawalStateError):
    """A pending withdrawal already exists for this (claimant, invoice)."""


class LocationNotFound(SatsHuntError):
    pass


class LnAddressError(SatsHuntError):
    """A Lightning address could not be turned into an invoice."""

    INVALID = "invalid"
    OUT_OF_RANGE = "out_of_range"
    UNRESOLVED = "unresolved"

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
