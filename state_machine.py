"""
Transaction lifecycle.

    pending -> processing -> completed
    pending | processing -> failed | cancelled | rejected

completed, failed, cancelled and rejected are terminal. Every status change
goes through ``transition`` so an illegal move never reaches the database.
"""

from datetime import datetime
from exceptions import InvalidStateTransition

PENDING = 'pending'
PROCESSING = 'processing'
COMPLETED = 'completed'
FAILED = 'failed'
CANCELLED = 'cancelled'
REJECTED = 'rejected'

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED, REJECTED)
TERMINAL = frozenset((COMPLETED, FAILED, CANCELLED, REJECTED))

TRANSITIONS = {
    PENDING: frozenset((PROCESSING, FAILED, CANCELLED, REJECTED)),
    PROCESSING: frozenset((COMPLETED, FAILED, CANCELLED, REJECTED)),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
    CANCELLED: frozenset(),
    REJECTED: frozenset(),
}


def is_terminal(status):
    return status in TERMINAL


def can_transition(current, target):
    return target in TRANSITIONS.get(current, ())


def transition(tx, target, actor_id=None, now=None):
    """Move ``tx`` to ``target`` and stamp the matching audit fields."""
    if not can_transition(tx.status, target):
        raise InvalidStateTransition(
            f"Transaction {tx.transaction_id} cannot move from {tx.status} to {target}",
            transaction=tx)

    now = now or datetime.utcnow()
    if target == PROCESSING:
        tx.processed_at = now
        if actor_id is not None:
            tx.processed_by = actor_id
    elif target == COMPLETED:
        tx.completed_at = now
        if actor_id is not None:
            tx.approved_by = actor_id
            tx.approved_at = now
    elif target == REJECTED:
        tx.completed_at = now
        tx.rejected_at = now
        if actor_id is not None:
            tx.rejected_by = actor_id
    else:
        tx.completed_at = now

    tx.status = target
    return tx
