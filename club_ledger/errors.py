"""Exception hierarchy for the club ledger."""


class LedgerServiceError(Exception):
    pass


class LedgerValidationError(LedgerServiceError):
    """Malformed input. Raised before anything is written."""


class InvalidEntryError(LedgerValidationError):
    pass


class InsufficientBalanceError(LedgerValidationError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class ClubNotFoundError(NotFoundError):
    pass


class RoundNotFoundError(NotFoundError):
    pass


class ForbiddenError(LedgerServiceError):
    pass


class ConflictError(LedgerServiceError):
    """Duplicate settlement, double application or a uniqueness violation."""


class StoreFailureError(LedgerServiceError):
    """The store aborted the transaction and rolled it back."""
