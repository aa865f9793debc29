"""Typed failure hierarchy for the ledger and loan engine.

Every error carries a ``user_message`` suitable for showing to a member and a
``retryable`` flag. Only persistence failures are retryable; everything else
is terminal for the attempt. The core never retries on its own.
"""


class UnionLedgerError(Exception):
    """Base exception for all ledger errors."""

    user_message = "The request could not be completed."
    retryable = False

    def __init__(self, message=None, **context):
        super().__init__(message or self.user_message)
        self.context = context


class InsufficientFunds(UnionLedgerError):
    """Raised when a debit would take a balance below zero."""

    user_message = "Insufficient funds for this transaction."

    def __init__(self, message=None, available=None, requested=None, **context):
        super().__init__(message, **context)
        self.available = available
        self.requested = requested


class InvalidTransactionState(UnionLedgerError):
    """Raised when a transaction is transitioned out of a terminal state."""

    user_message = "This transaction has already been settled."


class InvalidLoanState(UnionLedgerError):
    """Raised when a loan transition is not allowed from its current status."""

    user_message = "This action is not available for the loan in its current status."


class InvalidLoanParameters(UnionLedgerError):
    """Raised when loan principal, rate or term are out of range."""

    user_message = "The loan amount, rate or term is not valid."


class ConcurrencyConflict(UnionLedgerError):
    """Raised when an account guard cannot be acquired in time."""

    user_message = "Another operation on this account is in progress. Please try again shortly."


class PersistenceFailure(UnionLedgerError):
    """Raised when the storage backend fails. Always surfaced, never retried here."""

    user_message = "We could not save your request. Please try again."
    retryable = True


class RecordNotFound(UnionLedgerError):
    """Raised when a referenced record does not exist."""

    user_message = "The requested record was not found."


class AccountNotFound(RecordNotFound):
    user_message = "Account not found."


class LoanNotFound(RecordNotFound):
    user_message = "Loan not found."


class TransactionNotFound(RecordNotFound):
    user_message = "Transaction not found."


class AccountInactive(UnionLedgerError):
    """Raised when a deactivated account is asked to move money."""

    user_message = "This account has been deactivated."


class AccountAlreadyExists(UnionLedgerError):
    user_message = "This member already has an account."


class InvalidAmount(UnionLedgerError):
    """Raised when an amount is missing, non-positive or malformed."""

    user_message = "Please enter a valid amount."


class CurrencyMismatch(InvalidAmount):
    user_message = "The amount is in a different currency than the account."


class InvalidTransfer(UnionLedgerError):
    """Raised when a transfer names the same account on both sides."""

    user_message = "You cannot transfer money to the same account."


class InvalidImportFile(UnionLedgerError):
    """Raised when a bulk import file cannot be read as transaction rows."""

    user_message = "The import file is missing required columns."


class DataIntegrityError(UnionLedgerError):
    """Raised when persisted data holds a value the core does not recognise."""

    user_message = "This record is in an unexpected state. Please contact support."
