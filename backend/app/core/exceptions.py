"""Domain errors raised by the recovery services.

Routers do not catch these individually; ``app.main`` registers a single
handler that renders them with the status code declared on each class.
"""

from typing import Any


class RecoveryError(Exception):
    """Base class for all recovery engine errors."""

    status_code = 400
    code = "recovery_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(RecoveryError):
    """A referenced entity does not exist."""

    status_code = 404
    code = "not_found"


class AccessDeniedError(RecoveryError):
    """The caller is neither the owning customer nor an admin."""

    status_code = 403
    code = "access_denied"


class InvalidStateError(RecoveryError):
    """The operation does not apply to the entity's current state.

    Carries the entity as it currently is so callers can treat the
    rejection as a no-op and carry on with the current state.
    """

    status_code = 409
    code = "invalid_state"

    def __init__(self, message: str, current: Any = None):
        super().__init__(message)
        self.current = current


class PaymentMethodBlockedError(InvalidStateError):
    """Scheduled retry refused because the card is blocked after repeated failures."""

    code = "payment_method_blocked"

    def __init__(self, message: str, current: Any = None, blocked_until: Any = None):
        super().__init__(message, current=current)
        self.blocked_until = blocked_until


class InputValidationError(RecoveryError, ValueError):
    """Malformed input; nothing was mutated."""

    status_code = 422
    code = "validation_error"


class UpstreamError(RecoveryError):
    """The payment processor or notifier stayed unavailable after transport retries."""

    status_code = 502
    code = "upstream_failure"
