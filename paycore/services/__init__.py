"""Services package."""

from paycore.services.reconciliation_service import ReconciliationService
from paycore.services.commission_resolver import CommissionResolver, ResolvedCommission
from paycore.services.earnings_ledger import Balance, EarningsLedger
from paycore.services.refund_service import RefundProcessor
from paycore.services.payment_orchestrator import Cart, PaymentOrchestrator
from paycore.services.webhook_reconciler import WebhookReconciler
from paycore.services.bank_transfer_service import BankTransferService
from paycore.services.withdrawal_service import WithdrawalProcessor
from paycore.services.settlement_service import SettlementService
from paycore.services.notification_service import NotificationService

__all__ = [
    "ReconciliationService",
    "CommissionResolver",
    "ResolvedCommission",
    "Balance",
    "EarningsLedger",
    "RefundProcessor",
    "Cart",
    "PaymentOrchestrator",
    "WebhookReconciler",
    "BankTransferService",
    "WithdrawalProcessor",
    "SettlementService",
    "NotificationService",
]
