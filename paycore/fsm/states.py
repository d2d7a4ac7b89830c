"""
State and enum definitions.
Values are stored as plain strings in the database.
"""

from enum import Enum


class PaymentStatus(str, Enum):
    """
    Checkout attempt lifecycle.
    Created -> Initiated -> PendingConfirmation -> Succeeded | Failed | Cancelled,
    Succeeded -> PartiallyRefunded -> Refunded.
    """

    CREATED = "created"
    INITIATED = "initiated"
    PENDING_CONFIRMATION = "pending_confirmation"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PAYMENT_STATUSES

    @property
    def is_open(self) -> bool:
        """Still waiting on the buyer or the provider."""
        return self in (
            PaymentStatus.CREATED,
            PaymentStatus.INITIATED,
            PaymentStatus.PENDING_CONFIRMATION,
        )


TERMINAL_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.PARTIALLY_REFUNDED,
        PaymentStatus.REFUNDED,
    }
)

# A new Payment may not be keyed while another one with the same
# idempotency key sits in one of these states.
KEY_BLOCKING_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.CREATED,
        PaymentStatus.INITIATED,
        PaymentStatus.PENDING_CONFIRMATION,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.PARTIALLY_REFUNDED,
        PaymentStatus.REFUNDED,
    }
)


class GatewayType(str, Enum):
    """Supported payment providers."""

    PAYMOB = "paymob"
    FAWRY = "fawry"
    TAP = "tap"
    HYPERPAY = "hyperpay"
    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"


class GatewayEventType(str, Enum):
    """Provider-neutral webhook/callback event types."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class InitiationKind(str, Enum):
    """Shape of what the buyer receives after initiating checkout."""

    REDIRECT = "redirect"
    CLIENT_SECRET = "client_secret"
    REFERENCE_NUMBER = "reference_number"
    BANK_INSTRUCTIONS = "bank_instructions"


class ItemType(str, Enum):
    """What is being sold."""

    COURSE = "course"
    BUNDLE = "bundle"
    BOOK = "book"
    SUBSCRIPTION = "subscription"
    LIVE_SESSION = "live_session"


class CommissionScope(str, Enum):
    """Level a commission rule applies at. Ordered by specificity."""

    GLOBAL = "global"
    CATEGORY = "category"
    COURSE = "course"
    INSTRUCTOR = "instructor"

    @property
    def specificity(self) -> int:
        ranks = {
            CommissionScope.GLOBAL: 0,
            CommissionScope.CATEGORY: 1,
            CommissionScope.COURSE: 2,
            CommissionScope.INSTRUCTOR: 3,
        }
        return ranks[self]


class LedgerAccount(str, Enum):
    """Who an entry belongs to. Platform entries are informational."""

    INSTRUCTOR = "instructor"
    PLATFORM = "platform"


class LedgerEntryState(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    WITHDRAWN_HOLD = "withdrawn_hold"
    REVERSED = "reversed"


class WithdrawalStatus(str, Enum):
    """Pending -> Approved -> Processed, or Pending -> Rejected | Cancelled."""

    PENDING = "pending"
    APPROVED = "approved"
    PROCESSED = "processed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class WithdrawalRejectionReason(str, Enum):
    BALANCE_CHANGED = "balance_changed"
    ADMIN_REJECTED = "admin_rejected"


class WithdrawalMethodType(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    MOBILE_WALLET = "mobile_wallet"
    INSTAPAY = "instapay"
    PAYPAL = "paypal"


class BankTransferStatus(str, Enum):
    """Manual proof flow: AwaitingProof -> ProofSubmitted -> Verified | Rejected."""

    AWAITING_PROOF = "awaiting_proof"
    PROOF_SUBMITTED = "proof_submitted"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"


class WebhookEventStatus(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"
    UNMATCHED = "unmatched"
    ANOMALY = "anomaly"


class ReconciliationKind(str, Enum):
    """Why a human has to look at something."""

    GATEWAY_AMBIGUOUS = "gateway_ambiguous"
    STATE_ANOMALY = "state_anomaly"
    AMOUNT_MISMATCH = "amount_mismatch"
    NEGATIVE_BALANCE = "negative_balance"
    WEBHOOK_RETRIES_EXHAUSTED = "webhook_retries_exhausted"
    MANUAL_REFUND_PAYOUT = "manual_refund_payout"
    CURRENCY_MISMATCH = "currency_mismatch"


class ReconciliationStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
