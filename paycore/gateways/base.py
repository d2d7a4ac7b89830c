"""
Provider-neutral gateway contract.

Every provider implements the same capability set: initiate a checkout,
verify and parse its callbacks, refund, and (where the provider has a live
API) query a transaction's status. The orchestrator only ever talks to this
interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional

from paycore.fsm.states import GatewayEventType, GatewayType, InitiationKind, RefundStatus
from paycore.models.types import utcnow

# ISO 4217 minor-unit exponents that differ from 2
_CURRENCY_EXPONENTS = {
    "BHD": 3,
    "JOD": 3,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "JPY": 0,
}


def currency_exponent(currency: str) -> int:
    return _CURRENCY_EXPONENTS.get(currency.upper(), 2)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """1000.50 EGP -> 100050."""
    exponent = currency_exponent(currency)
    return int((amount * (Decimal(10) ** exponent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Any, currency: str) -> Decimal:
    exponent = currency_exponent(currency)
    return (Decimal(str(value)) / (Decimal(10) ** exponent)).quantize(Decimal(1).scaleb(-exponent))


def format_amount(amount: Decimal, currency: str) -> str:
    """Decimal string with the currency's number of decimals ("1000.00")."""
    exponent = currency_exponent(currency)
    return f"{amount.quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_UP):.{exponent}f}"


@dataclass
class BuyerInfo:
    buyer_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or "Customer"


@dataclass
class InitiateRequest:
    """What the orchestrator asks a gateway to charge."""

    payment_id: str
    amount: Decimal
    currency: str
    buyer: BuyerInfo
    description: str
    success_url: str
    cancel_url: str
    webhook_url: str
    idempotency_key: str


@dataclass
class ProviderInitResult:
    """
    Outcome of starting a checkout. Exactly one of the buyer-facing fields
    is set, matching ``kind``.
    """

    kind: InitiationKind
    provider_reference: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    reference_number: Optional[str] = None
    expires_at: Optional[datetime] = None
    bank_instructions: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def buyer_payload(self) -> Dict[str, Any]:
        """Safe-to-return subset for the checkout API."""
        data: Dict[str, Any] = {"kind": self.kind.value}
        if self.redirect_url:
            data["redirect_url"] = self.redirect_url
        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.reference_number:
            data["reference_number"] = self.reference_number
        if self.expires_at:
            data["expires_at"] = self.expires_at.isoformat()
        if self.bank_instructions:
            data["bank_instructions"] = self.bank_instructions
        return data


@dataclass
class InboundWebhook:
    """Raw callback exactly as received."""

    provider: GatewayType
    raw_body: bytes
    headers: Mapping[str, str]
    query_params: Mapping[str, str] = field(default_factory=dict)
    remote_addr: Optional[str] = None

    def header(self, name: str, default: str = "") -> str:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


@dataclass
class GatewayEvent:
    """Normalized provider callback or status query result."""

    provider: GatewayType
    provider_event_id: str
    event_type: GatewayEventType
    signature_verified: bool
    provider_txn_id: Optional[str] = None
    # Our payment id, echoed back by the provider
    merchant_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    provider_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    received_at: datetime = field(default_factory=utcnow)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    status: RefundStatus
    provider_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    # Provider accepted but money must be moved by hand (bank transfer)
    requires_manual_payout: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


class WebhookParseError(ValueError):
    """Callback body could not be understood."""


class GatewayAdapter(ABC):
    """Translator between the neutral payment protocol and one provider."""

    gateway_type: GatewayType
    supported_currencies: frozenset = frozenset()

    def supports_currency(self, currency: str) -> bool:
        return not self.supported_currencies or currency.upper() in self.supported_currencies

    @abstractmethod
    async def initiate(self, request: InitiateRequest) -> ProviderInitResult:
        """Start a checkout with the provider."""

    @abstractmethod
    def verify_webhook_signature(self, webhook: InboundWebhook) -> bool:
        """Authenticate a callback. Must never default to True on missing data."""

    @abstractmethod
    def parse_webhook(self, webhook: InboundWebhook) -> Optional[GatewayEvent]:
        """Normalize a verified callback. Returns None for event kinds we do not act on."""

    @abstractmethod
    async def refund(self, provider_txn_id: str, amount: Decimal, currency: str, reason: str = "") -> RefundResult:
        """Refund all or part of a captured transaction."""

    @abstractmethod
    async def query_status(
        self,
        provider_reference: str,
        merchant_reference: str,
    ) -> Optional[GatewayEvent]:
        """Ask the provider directly for a transaction's state. None when there is no live API."""
