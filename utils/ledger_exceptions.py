"""Error kinds raised by the ledger, scanners and pipelines"""


class LedgerError(Exception):
    """Base class for all ledger-domain errors"""
    pass


class ConfigurationError(LedgerError):
    """Unknown chain or token. Fatal to the calling operation."""
    pass


class ValidationError(LedgerError):
    """Request rejected before any state was written"""
    pass


class BelowMinimum(ValidationError):
    """Amount is below the token's configured minimum"""
    pass


class InvalidAddress(ValidationError):
    """Destination address does not match the chain's address format"""
    pass


class InvalidAmount(ValidationError, ValueError):
    """Amount is zero, negative or not a number"""
    pass


class InsufficientBalance(LedgerError):
    """Available balance is smaller than the requested amount"""

    def __init__(self, message: str, available=None, requested=None):
        super().__init__(message)
        self.available = available
        self.requested = requested


class InvalidState(LedgerError):
    """Operation not allowed from the record's current state"""
    pass


class InvalidCode(LedgerError):
    """Verification code is wrong, expired, for another withdrawal, or already used"""
    pass


class DepositNotFound(LedgerError):
    pass


class WithdrawalNotFound(LedgerError):
    pass


class ChainDataError(LedgerError):
    """Upstream chain data source returned an error or an unusable payload"""
    pass
