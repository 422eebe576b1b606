"""Error taxonomy for the lending core."""


class LendingError(Exception):
    """Base exception for all lending errors."""


class LoanValidationError(LendingError, ValueError):
    """Raised for bad amounts, self-loans, or a transition from the wrong state."""


class LoanPreconditionError(LendingError, ValueError):
    """Raised when an external or escrow precondition is not met."""


class LoanNotFoundError(LendingError, LookupError):
    """Raised when a referenced loan does not exist."""


class UserNotFoundError(LendingError, LookupError):
    """Raised when a referenced user does not exist."""


class CollaboratorError(LendingError):
    """Raised by external collaborator clients (credit bureau, notification channels)."""
