"""
Payment state machine.

Pure transition logic, no I/O. The orchestrator asks ``decide_transition``
what to do with a target state and applies the answer under a row lock.

Transitions are monotonic moves in a lattice: a payment only ever moves
"forward". An event that would move it to a state it has already passed
through is a stale, reordered delivery and is accepted as a no-op. An event
that contradicts where the payment ended up (success after failure, failure
after success, ...) is an anomaly and is never applied.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional

from paycore.fsm.states import GatewayEventType, PaymentStatus


class TransitionDecision(str, Enum):
    ADVANCE = "advance"
    NOOP = "noop"
    ANOMALY = "anomaly"


_RANK: Dict[PaymentStatus, int] = {
    PaymentStatus.CREATED: 0,
    PaymentStatus.INITIATED: 1,
    PaymentStatus.PENDING_CONFIRMATION: 2,
    PaymentStatus.SUCCEEDED: 3,
    PaymentStatus.FAILED: 3,
    PaymentStatus.CANCELLED: 3,
    PaymentStatus.PARTIALLY_REFUNDED: 4,
    PaymentStatus.REFUNDED: 5,
}

_OPEN = frozenset(
    {PaymentStatus.CREATED, PaymentStatus.INITIATED, PaymentStatus.PENDING_CONFIRMATION}
)

# States a payment has necessarily passed through to reach the key state.
_HISTORY: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset(),
    PaymentStatus.INITIATED: frozenset({PaymentStatus.CREATED}),
    PaymentStatus.PENDING_CONFIRMATION: frozenset(
        {PaymentStatus.CREATED, PaymentStatus.INITIATED}
    ),
    PaymentStatus.SUCCEEDED: _OPEN,
    PaymentStatus.FAILED: _OPEN,
    PaymentStatus.CANCELLED: _OPEN,
    PaymentStatus.PARTIALLY_REFUNDED: _OPEN | {PaymentStatus.SUCCEEDED},
    PaymentStatus.REFUNDED: _OPEN
    | {PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED},
}

# The only moves allowed out of a terminal state.
_REFUND_MOVES = frozenset(
    {
        (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED),
        (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED),
        (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.PARTIALLY_REFUNDED),
        (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED),
    }
)

EVENT_TARGETS: Dict[GatewayEventType, PaymentStatus] = {
    GatewayEventType.PENDING: PaymentStatus.PENDING_CONFIRMATION,
    GatewayEventType.AUTHORIZED: PaymentStatus.SUCCEEDED,
    GatewayEventType.CAPTURED: PaymentStatus.SUCCEEDED,
    GatewayEventType.FAILED: PaymentStatus.FAILED,
    GatewayEventType.EXPIRED: PaymentStatus.FAILED,
    GatewayEventType.CANCELLED: PaymentStatus.CANCELLED,
}


def target_for_event(event_type: GatewayEventType) -> Optional[PaymentStatus]:
    """Status a non-refund event drives a payment towards. Refunds are amount-dependent."""
    return EVENT_TARGETS.get(event_type)


def decide_transition(current: PaymentStatus, target: PaymentStatus) -> TransitionDecision:
    """Decide whether moving ``current`` to ``target`` advances, is stale, or conflicts."""
    if (current, target) in _REFUND_MOVES:
        return TransitionDecision.ADVANCE

    if target == current or target in _HISTORY[current]:
        return TransitionDecision.NOOP

    if current.is_terminal:
        return TransitionDecision.ANOMALY

    if target in (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED):
        # Refund of money that was never collected
        return TransitionDecision.ANOMALY

    if _RANK[target] > _RANK[current]:
        return TransitionDecision.ADVANCE

    return TransitionDecision.NOOP
