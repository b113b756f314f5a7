class LedgerError(Exception):
    """Base class for ledger input errors."""


class InvalidAmountError(LedgerError, ValueError):
    """Raised when a transaction amount is missing or not strictly positive."""


class InvalidCurrencyError(LedgerError, ValueError):
    """Raised when a transaction currency code is empty."""


class AccountNotFoundError(LedgerError):
    """Raised when an account id is missing or belongs to another owner."""


class ConversionUnavailableError(Exception):
    """Raised internally when a rate cannot be obtained. Never fatal to callers."""


class RateProviderUnavailable(ConversionUnavailableError):
    """Raised when a rate provider cannot fetch rates."""


class TagNotFoundError(LedgerError):
    """Raised when a tag id is missing or belongs to another owner."""


class InvalidTransferError(LedgerError, ValueError):
    """Raised when a transfer has no destination account."""
