class BudgetError(Exception):
    """Base class for every failure the ledger core reports to its caller."""


class ValidationError(BudgetError, ValueError):
    """Malformed or missing input. The caller can retry with corrected data."""


class NotFoundOrForbidden(BudgetError, LookupError):
    """The record is missing or belongs to another user.

    Both cases share one error so callers cannot probe for other users' data.
    """


class NotFound(BudgetError, LookupError):
    pass


class Forbidden(BudgetError, PermissionError):
    pass


class ProviderError(BudgetError, RuntimeError):
    """The external generation provider failed or returned unusable data."""


class ContextUnavailable(BudgetError):
    """Part of the prompt context could not be loaded; generation continues."""
