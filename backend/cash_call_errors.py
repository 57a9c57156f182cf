"""
Cash Call Engine Errors

Every error the engine reports to its caller. All are recoverable and local;
the API layer maps them to HTTP responses through `kind` and `http_status`.
"""


class CashCallError(Exception):
    """Base class for engine errors"""
    kind = "error"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CashCallError):
    """Malformed or missing input. The caller can correct and retry."""
    kind = "validation_error"
    http_status = 422


class ActorIntegrityError(ValidationError):
    """Actor record is malformed (unknown role, affiliate without an owning affiliate)."""
    kind = "actor_integrity_error"


class Forbidden(CashCallError):
    """
    Authorization failure.

    The message is fixed so the response never says why access was denied.
    """
    kind = "forbidden"
    http_status = 403

    def __init__(self):
        super().__init__("Permission denied")


class InvalidTransition(CashCallError):
    kind = "invalid_transition"
    http_status = 409

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Invalid transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class NotFound(CashCallError):
    """
    Id does not resolve, or resolves to a record the actor may not see.
    Both cases are reported identically.
    """
    kind = "not_found"
    http_status = 404

    def __init__(self, message: str = "Cash call not found"):
        super().__init__(message)


class ConcurrentModification(CashCallError):
    """The record kept changing underneath the write; retries exhausted."""
    kind = "concurrent_modification"
    http_status = 409
