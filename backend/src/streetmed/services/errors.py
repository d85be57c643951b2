"""Business errors raised by the coordination services.

Every error carries a stable ``code`` (the class name), a ``kind`` that tells
the client how to react, and the HTTP status the API maps it to:

- not_found: the referenced row does not exist; never retried.
- invalid_transition: the status rule was violated; refresh and re-evaluate.
- conflict: another caller won a race or capacity is exhausted; re-list and
  retry against fresh data.
- authorization: the caller does not own the resource.
- rate_limited: too many requests; retry later.
"""


class CoordinationError(Exception):
    """Base class for all business rule failures."""

    kind = "error"
    http_status = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {
            "status": "error",
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
        }


# ==================== Not found ====================


class NotFoundError(CoordinationError):
    kind = "not_found"
    http_status = 404
    default_message = "Resource not found"


class OrderNotFound(NotFoundError):
    default_message = "Order not found"


class AssignmentNotFound(NotFoundError):
    default_message = "Assignment not found"


class RoundNotFound(NotFoundError):
    default_message = "Round not found"


class SignupNotFound(NotFoundError):
    default_message = "Signup not found"


# ==================== Invalid transition ====================


class InvalidTransition(CoordinationError):
    kind = "invalid_transition"
    http_status = 400
    default_message = "Status transition is not allowed"


class OrderNotPending(InvalidTransition):
    default_message = "Order is no longer pending"


class NotTerminal(InvalidTransition):
    default_message = "Only completed or cancelled orders can be deleted"


class NoActiveAssignment(InvalidTransition):
    default_message = "Order has no active assignment"


class OrderNotBindable(InvalidTransition):
    default_message = "Completed or cancelled orders cannot be bound to a round"


class RoundNotSchedulable(InvalidTransition):
    default_message = "Round is not in SCHEDULED status"


class SignupClosed(InvalidTransition):
    default_message = "Signups for this round are closed"


class ValidationFailed(InvalidTransition):
    kind = "validation"
    default_message = "Invalid request"


# ==================== Conflict ====================


class ConflictError(CoordinationError):
    kind = "conflict"
    http_status = 409
    default_message = "Conflicting update, refresh and retry"


class OrderAlreadyAccepted(ConflictError):
    default_message = "This order was already accepted by another volunteer"


class RoundFull(ConflictError):
    default_message = "Round has no remaining capacity"


class AlreadySignedUp(ConflictError):
    default_message = "Volunteer already has an active signup for this round"


class RoleSeatTaken(ConflictError):
    default_message = "This round already has someone in that role"


class VolunteerAtCapacity(ConflictError):
    default_message = "Volunteer already holds the maximum number of orders for this round"


class CapacityBelowUsage(ConflictError):
    default_message = "Capacity cannot be lowered below current usage"


class ConcurrencyError(ConflictError):
    default_message = "Concurrent update conflict, retry"


# ==================== Authorization / rate limiting ====================


class NotOwner(CoordinationError):
    kind = "authorization"
    http_status = 403
    default_message = "Resource belongs to another user"


class RateLimitExceeded(CoordinationError):
    kind = "rate_limited"
    http_status = 429
    default_message = "Rate limit exceeded"
