"""
Tests for the payment state machine.
"""

import pytest

from paycore.fsm.machine import TransitionDecision, decide_transition, target_for_event
from paycore.fsm.states import (
    KEY_BLOCKING_PAYMENT_STATUSES,
    CommissionScope,
    GatewayEventType,
    PaymentStatus,
)


class TestPaymentStatus:
    """Tests for PaymentStatus enum."""

    def test_all_states_defined(self):
        """Verify every lifecycle state exists."""
        expected = {
            "created",
            "initiated",
            "pending_confirmation",
            "succeeded",
            "failed",
            "cancelled",
            "partially_refunded",
            "refunded",
        }
        assert {s.value for s in PaymentStatus} == expected

    def test_open_and_terminal_are_disjoint(self):
        for status in PaymentStatus:
            assert not (status.is_open and status.is_terminal)

    def test_failed_and_cancelled_do_not_block_a_new_attempt(self):
        assert PaymentStatus.FAILED not in KEY_BLOCKING_PAYMENT_STATUSES
        assert PaymentStatus.CANCELLED not in KEY_BLOCKING_PAYMENT_STATUSES
        assert PaymentStatus.SUCCEEDED in KEY_BLOCKING_PAYMENT_STATUSES


class TestDecideTransition:
    """Forward moves advance, stale moves are no-ops, contradictions are anomalies."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (PaymentStatus.CREATED, PaymentStatus.INITIATED),
            (PaymentStatus.INITIATED, PaymentStatus.PENDING_CONFIRMATION),
            (PaymentStatus.INITIATED, PaymentStatus.SUCCEEDED),
            (PaymentStatus.PENDING_CONFIRMATION, PaymentStatus.SUCCEEDED),
            (PaymentStatus.PENDING_CONFIRMATION, PaymentStatus.FAILED),
            (PaymentStatus.INITIATED, PaymentStatus.CANCELLED),
            (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED),
            (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED),
            (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.PARTIALLY_REFUNDED),
            (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED),
        ],
    )
    def test_advances(self, current, target):
        assert decide_transition(current, target) == TransitionDecision.ADVANCE

    @pytest.mark.parametrize(
        "current,target",
        [
            (PaymentStatus.SUCCEEDED, PaymentStatus.PENDING_CONFIRMATION),
            (PaymentStatus.SUCCEEDED, PaymentStatus.SUCCEEDED),
            (PaymentStatus.PENDING_CONFIRMATION, PaymentStatus.INITIATED),
            (PaymentStatus.REFUNDED, PaymentStatus.SUCCEEDED),
            (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED),
            (PaymentStatus.FAILED, PaymentStatus.FAILED),
        ],
    )
    def test_stale_deliveries_are_noops(self, current, target):
        assert decide_transition(current, target) == TransitionDecision.NOOP

    @pytest.mark.parametrize(
        "current,target",
        [
            (PaymentStatus.FAILED, PaymentStatus.SUCCEEDED),
            (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED),
            (PaymentStatus.CANCELLED, PaymentStatus.SUCCEEDED),
            (PaymentStatus.INITIATED, PaymentStatus.REFUNDED),
        ],
    )
    def test_contradictions_are_anomalies(self, current, target):
        assert decide_transition(current, target) == TransitionDecision.ANOMALY


class TestEventTargets:
    def test_captured_and_authorized_both_mean_paid(self):
        assert target_for_event(GatewayEventType.CAPTURED) == PaymentStatus.SUCCEEDED
        assert target_for_event(GatewayEventType.AUTHORIZED) == PaymentStatus.SUCCEEDED

    def test_expiry_fails_the_payment(self):
        assert target_for_event(GatewayEventType.EXPIRED) == PaymentStatus.FAILED

    def test_refund_target_depends_on_amount(self):
        assert target_for_event(GatewayEventType.REFUNDED) is None


class TestCommissionScope:
    def test_specificity_order(self):
        ranked = sorted(CommissionScope, key=lambda s: s.specificity, reverse=True)
        assert ranked == [
            CommissionScope.INSTRUCTOR,
            CommissionScope.COURSE,
            CommissionScope.CATEGORY,
            CommissionScope.GLOBAL,
        ]
