"""
Subscription status graph.

The only valid status changes are the edges listed here; everything else is
rejected with InvalidTransition.
"""

from apps.billing.models import Subscription
from apps.core.exceptions import InvalidTransition

Status = Subscription.Status

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    # first payment, or trial end with a payment method / trial end without one
    Status.TRIAL: frozenset({Status.ACTIVE, Status.EXPIRED}),
    # scheduled payment fails / explicit cancellation
    Status.ACTIVE: frozenset({Status.PAST_DUE, Status.CANCELLED}),
    # late payment / grace elapsed / explicit cancellation
    Status.PAST_DUE: frozenset({Status.ACTIVE, Status.SUSPENDED, Status.CANCELLED}),
    # manual reactivation / explicit cancellation
    Status.SUSPENDED: frozenset({Status.ACTIVE, Status.CANCELLED}),
    # resubscription on the same record
    Status.CANCELLED: frozenset({Status.ACTIVE}),
    # reactivation with a plan selection
    Status.EXPIRED: frozenset({Status.ACTIVE}),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def assert_transition(from_status: str, to_status: str) -> None:
    """Raise InvalidTransition unless ``from_status -> to_status`` is an edge."""
    if not can_transition(from_status, to_status):
        raise InvalidTransition(from_status, to_status)
