"""
Typed failures raised by the ledger services.

Business-rule violations are final for the request. `DuplicateReference`
means "already applied" and callers normally turn it into success.
`StoreUnavailable` is the only transient one.
"""


class LedgerError(Exception):
    code = "ledger_error"
    default_message = "Ledger operation failed."

    def __init__(self, message=None):
        super().__init__(message or self.default_message)


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"
    default_message = "Insufficient coins."

    def __init__(self, message=None, balance=None, required=None):
        if message is None and balance is not None and required is not None:
            message = f"Insufficient coins. Required: {required}, Available: {balance}."
        super().__init__(message)
        self.balance = balance
        self.required = required


class DuplicateReference(LedgerError):
    code = "duplicate_reference"
    default_message = "This entry has already been applied."

    def __init__(self, message=None, entry=None):
        super().__init__(message)
        self.entry = entry


class InvalidCode(LedgerError):
    code = "invalid_code"
    default_message = "Invalid referral code."


class SelfReferral(LedgerError):
    code = "self_referral"
    default_message = "You cannot refer yourself."


class AlreadyApplied(LedgerError):
    code = "already_applied"
    default_message = "Referral code from this user has already been applied."


class RateLimited(LedgerError):
    code = "rate_limited"
    default_message = "Too many requests. Please try again later."

    def __init__(self, message=None, retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


class ItemUnavailable(LedgerError):
    code = "item_unavailable"
    default_message = "Item is not available."


class OutOfStock(LedgerError):
    code = "out_of_stock"
    default_message = "Not enough items in stock."


class AlreadyProcessed(LedgerError):
    code = "already_processed"
    default_message = "This request has already been processed."


class StoreUnavailable(LedgerError):
    code = "store_unavailable"
    default_message = "The ledger is temporarily unavailable. Please try again."
