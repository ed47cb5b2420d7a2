from typing import Any


class AppError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(AppError):
    def __init__(self, entity: str, id: str):
        super().__init__(f"{entity} not found: {id}", status_code=404)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, status_code=403)


# ── Ledger errors ─────────────────────────────────────────────────────────────


class LedgerError(AppError):
    """Base for every error the ledger engine surfaces to its callers.

    `retryable` separates infrastructure failures ("retry later, the
    idempotency key makes it safe") from business-rule failures ("this
    request is invalid as issued").
    """

    code = "ledger_error"
    retryable = False


class InvalidAmountError(LedgerError):
    code = "invalid_amount"

    def __init__(self, amount: Any):
        super().__init__(f"Amount must be a positive integer, got {amount!r}", status_code=400)
        self.amount = amount


class InvalidOperationError(LedgerError):
    code = "invalid_operation"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class AccountNotFoundError(LedgerError):
    code = "account_not_found"

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}", status_code=404)
        self.account_id = account_id


class InsufficientFundsError(LedgerError):
    code = "insufficient_funds"

    def __init__(self, account_id: str, balance: int, required: int):
        super().__init__(
            f"Insufficient funds: balance={balance}, required={required}",
            status_code=402,
        )
        self.account_id = account_id
        self.balance = balance
        self.required = required


class DuplicateInProgressError(LedgerError):
    code = "duplicate_in_progress"

    def __init__(self, idempotency_key: str):
        super().__init__(
            f"An operation with idempotency key {idempotency_key!r} is still in progress",
            status_code=409,
        )
        self.idempotency_key = idempotency_key


class VersionConflictExhaustedError(LedgerError):
    code = "version_conflict_exhausted"
    retryable = True

    def __init__(self, account_id: str, attempts: int):
        super().__init__(
            f"Account {account_id} kept changing underneath the update ({attempts} attempts)",
            status_code=503,
        )
        self.account_id = account_id
        self.attempts = attempts


class StoreUnavailableError(LedgerError):
    code = "store_unavailable"
    retryable = True

    def __init__(self, message: str = "Ledger store unavailable"):
        super().__init__(message, status_code=503)


# ── Internal signals (never rendered to HTTP) ─────────────────────────────────


class VersionConflictError(Exception):
    """A compare-and-swap lost the race against another writer."""

    def __init__(self, account_id: str, expected_version: int, current_version: int):
        super().__init__(
            f"Account {account_id} is at version {current_version}, expected {expected_version}"
        )
        self.account_id = account_id
        self.expected_version = expected_version
        self.current_version = current_version


class DuplicateIdempotencyKeyError(Exception):
    """Another live transaction already holds the (idempotency_key, kind) slot."""

    def __init__(self, existing: Any):
        super().__init__(f"Idempotency key already held by transaction {existing.id}")
        self.existing = existing
