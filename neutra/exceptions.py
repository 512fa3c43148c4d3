"""
Neutra Exceptions

Custom exception classes for the batch settlement engine.
"""


class NeutraException(Exception):
    """Base exception for Neutra."""
    pass


class InvalidAmountError(NeutraException):
    """Amount is zero, negative, or exceeds what is available."""
    pass


class PendingClaimError(InvalidAmountError):
    """Reservation belongs to a settled round and must be claimed first."""
    pass


class DepositLimitExceededError(InvalidAmountError):
    """Reservation would push the round over the deposit limit."""
    pass


class RoundLockedError(NeutraException):
    """Round is locked while its batch is executing on the venue."""

    def __init__(self, message: str = "batch under execution"):
        super().__init__(message)


class RoundNotExecutingError(NeutraException):
    """Confirmation arrived for a side with no batch in flight."""
    pass


class UnauthorizedOperatorError(NeutraException):
    """Caller lacks the role required for the operation."""
    pass


class StaleClaimError(NeutraException):
    """Claim attempted before the round's settlement is known."""
    pass


class SaleClosedError(NeutraException):
    """Reservations for this side are currently disabled."""
    pass


class InvalidInstructionError(NeutraException):
    """Per-asset execution instruction could not be decoded."""
    pass


class UnknownRequestError(NeutraException):
    """Venue confirmation does not belong to the batch in flight."""
    pass


class VenueError(NeutraException):
    """Execution venue rejected an operation."""
    pass


class InvalidAddressError(NeutraException):
    """Invalid account address format."""
    pass


class ConfigurationError(NeutraException):
    """Configuration error."""
    pass


class PersistenceError(NeutraException):
    """State could not be written to or read from durable storage."""
    pass
