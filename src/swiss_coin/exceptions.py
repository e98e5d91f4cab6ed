"""Custom exceptions for Swiss Coin."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ValidationFailure


class SwissCoinError(Exception):
    """Base exception for all Swiss Coin errors."""

    pass


class ConfigurationError(SwissCoinError):
    """Raised when configuration is invalid or missing."""

    pass


class MissingCurrentUserError(SwissCoinError):
    """Raised when an operation needs the current user's identity and none is set."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "No current user is configured. Run `swiss-coin init --name <you>` first."
        )


class DataIntegrityError(SwissCoinError):
    """Raised when stored data has an unexpected shape (missing id, unknown tag)."""

    pass


class RecordNotFoundError(SwissCoinError):
    """Raised when a referenced participant, group or record does not exist."""

    def __init__(self, kind: str, record_id: object):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class SplitRejectedError(SwissCoinError):
    """Raised by the service layer when an expense's split does not validate."""

    def __init__(self, failure: "ValidationFailure"):
        self.failure = failure
        super().__init__(f"{failure.kind.value}: {failure.detail}")


class SettlementRejectedError(SwissCoinError):
    """Raised by the service layer when a settlement cannot be recorded."""

    def __init__(self, failure: "ValidationFailure"):
        self.failure = failure
        super().__init__(f"{failure.kind.value}: {failure.detail}")
