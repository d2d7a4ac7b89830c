"""Models package for database models."""

from paycore.models.payment import Payment
from paycore.models.webhook_event import WebhookEvent, SecurityAuditEvent
from paycore.models.commission import CommissionSetting
from paycore.models.ledger import EarningsLedgerEntry, InstructorAccount
from paycore.models.withdrawal import WithdrawalMethod, WithdrawalRequest
from paycore.models.refund import Refund
from paycore.models.bank_transfer import BankTransfer
from paycore.models.reconciliation import ReconciliationItem

__all__ = [
    "Payment",
    "WebhookEvent",
    "SecurityAuditEvent",
    "CommissionSetting",
    "EarningsLedgerEntry",
    "InstructorAccount",
    "WithdrawalMethod",
    "WithdrawalRequest",
    "Refund",
    "BankTransfer",
    "ReconciliationItem",
]
