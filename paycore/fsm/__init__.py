"""FSM package for payment, withdrawal and ledger state definitions."""

from paycore.fsm.states import PaymentStatus, GatewayType, GatewayEventType, LedgerEntryState, WithdrawalStatus
from paycore.fsm.machine import TransitionDecision, decide_transition

__all__ = [
    "PaymentStatus",
    "GatewayType",
    "GatewayEventType",
    "LedgerEntryState",
    "WithdrawalStatus",
    "TransitionDecision",
    "decide_transition",
]
