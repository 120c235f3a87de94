"""
Typed failures of the order lifecycle. Every operation either applies its full mutation or raises one of these.
"""


class LifecycleError(Exception):
    """Base class for all order lifecycle failures."""


class OrderValidationError(LifecycleError):
    """Malformed create-order input: empty items, bad quantity, unknown service."""


class NotFoundError(LifecycleError):
    """Referenced order or service does not exist."""

    def __init__(self, kind: str, key: object):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class ForbiddenError(LifecycleError):
    """Actor lacks ownership or role for the operation. Says nothing about the order beyond that."""

    def __init__(self) -> None:
        super().__init__("forbidden")


class InvalidTransitionError(LifecycleError):
    """Requested status change is not in the transition table for the current status and role."""

    def __init__(self, current_status: str, attempted_status: str, role: str | None = None):
        self.current_status = current_status
        self.attempted_status = attempted_status
        self.role = role
        super().__init__(f"cannot transition from {current_status} to {attempted_status}")


class InvalidStateError(LifecycleError):
    """Branch or payment operation invoked outside its precondition."""


class VersionConflictError(LifecycleError):
    """Compare-and-write lost against a concurrent writer. Retried by the facade."""

    def __init__(self, order_id: str, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(f"order {order_id} changed since version {expected_version}")


class ConflictError(LifecycleError):
    """Concurrent modifications kept winning; retries exhausted."""

    def __init__(self, order_id: str, attempts: int):
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"order {order_id} is busy, gave up after {attempts} attempts")
