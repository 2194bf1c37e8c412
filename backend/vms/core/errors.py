"""Error taxonomy for visit operations.

Every business error carries a list of human-readable reasons so that a
single response can report several validation failures at once. The API
layer renders them through one exception handler in ``vms.main``.
"""

from typing import Iterable, List, Optional, Union


class VisitError(Exception):
    """Base class for errors that abort a visit operation."""

    status_code = 400

    def __init__(self, reasons: Union[str, Iterable[str]]):
        if isinstance(reasons, str):
            reasons = [reasons]
        self.reasons: List[str] = list(reasons)
        super().__init__("; ".join(self.reasons))


class ValidationError(VisitError):
    """Missing or malformed input. Raised before anything is persisted."""

    status_code = 422


class DuplicateVisitError(VisitError):
    """A non-cancelled visit already occupies the (entity, host, date) slot."""

    status_code = 409

    def __init__(self, entity_id: Optional[int] = None, visit_date=None):
        self.entity_id = entity_id
        self.visit_date = visit_date
        super().__init__("This visitor already has a visit registered on this date")


class EntityBlockedError(VisitError):
    """The entity's status forbids the requested action."""

    status_code = 403

    def __init__(self, entity_id: int, status: str, action: str = "register"):
        self.entity_id = entity_id
        self.status = status
        self.action = action
        super().__init__(f"Visitor is {status} and cannot {action}")


class StateConflictError(VisitError):
    """The visit is not in a state that allows the requested transition."""

    status_code = 409


class NotFoundError(VisitError):
    status_code = 404


class CapabilityError(VisitError):
    """The caller's role does not hold the required permission."""

    status_code = 403

    def __init__(self, role: str, permission: str):
        self.role = role
        self.permission = permission
        super().__init__(f"Role '{role}' is not allowed to perform '{permission}'")


class ReferentialIntegrityError(VisitError):
    """Entity deletion refused because visit history still references it."""

    status_code = 409


class NotificationDispatchFailure(Exception):
    """A notification could not be handed to its transport.

    Only raised inside the notification layer; it is always caught and
    logged there and never reaches the caller of a business operation.
    """

    def __init__(self, channel: str, recipient: str, error: str):
        self.channel = channel
        self.recipient = recipient
        self.error = error
        super().__init__(f"{channel} to {recipient} failed: {error}")
