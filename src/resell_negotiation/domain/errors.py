"""Error taxonomy shared by every negotiation component."""

from typing import Any, Optional


class MarketplaceError(Exception):
    """Base class for negotiation errors."""

    code = "MARKETPLACE_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(MarketplaceError):
    """Raised for bad caller input, such as a non-positive offer amount."""

    code = "VALIDATION_ERROR"


class NotFoundError(MarketplaceError):
    """Raised when a referenced chat, message or offer does not exist."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str):
        super().__init__(
            f"{kind} not found: {identifier}",
            details={"kind": kind, "id": identifier},
        )
        self.kind = kind
        self.identifier = identifier


class InvalidStateError(MarketplaceError):
    """Raised when an operation is not valid for the entity's current status."""

    code = "INVALID_STATE"


class NetworkError(MarketplaceError):
    """Raised when the document store or the generative model cannot be reached."""

    code = "NETWORK_ERROR"


class ServiceDisabledError(NetworkError):
    """Raised when the generative model has no credential configured."""

    code = "SERVICE_DISABLED"


class OperationTimeoutError(MarketplaceError):
    """Raised when a remote call exceeds its deadline."""

    code = "TIMEOUT"


class ParseError(MarketplaceError):
    """Raised when a model response violates the expected JSON contract."""

    code = "PARSE_ERROR"
