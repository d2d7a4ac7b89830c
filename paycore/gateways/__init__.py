"""
Gateway adapters and the registry the orchestrator resolves them from.
"""

import logging
from functools import lru_cache
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

import httpx

from paycore.config import Settings, settings as default_settings
from paycore.errors import ValidationError
from paycore.fsm.states import GatewayType
from paycore.gateways.bank_transfer import BankTransferAdapter
from paycore.gateways.base import GatewayAdapter, GatewayEvent, InboundWebhook, InitiateRequest, BuyerInfo
from paycore.gateways.fawry import FawryAdapter
from paycore.gateways.hyperpay import HyperpayAdapter
from paycore.gateways.paymob import PaymobAdapter
from paycore.gateways.stripe_gateway import StripeAdapter
from paycore.gateways.tap import TapAdapter

logger = logging.getLogger(__name__)

AdapterBuilder = Callable[[Settings, Optional[httpx.AsyncBaseTransport]], GatewayAdapter]

_builders: Dict[GatewayType, AdapterBuilder] = {}


def register_gateway(gateway_type: GatewayType):
    def _decorator(builder: AdapterBuilder) -> AdapterBuilder:
        _builders[gateway_type] = builder
        return builder

    return _decorator


@register_gateway(GatewayType.PAYMOB)
def _paymob(config: Settings, transport: Optional[httpx.AsyncBaseTransport]) -> GatewayAdapter:
    return PaymobAdapter(config, transport=transport)


@register_gateway(GatewayType.FAWRY)
def _fawry(config: Settings, transport: Optional[httpx.AsyncBaseTransport]) -> GatewayAdapter:
    return FawryAdapter(config, transport=transport)


@register_gateway(GatewayType.TAP)
def _tap(config: Settings, transport: Optional[httpx.AsyncBaseTransport]) -> GatewayAdapter:
    return TapAdapter(config, transport=transport)


@register_gateway(GatewayType.HYPERPAY)
def _hyperpay(config: Settings, transport: Optional[httpx.AsyncBaseTransport]) -> GatewayAdapter:
    return HyperpayAdapter(config, transport=transport)


@register_gateway(GatewayType.STRIPE)
def _stripe(config: Settings, transport: Optional[httpx.AsyncBaseTransport]) -> GatewayAdapter:
    return StripeAdapter(config)


@register_gateway(GatewayType.BANK_TRANSFER)
def _bank_transfer(config: Settings, transport: Optional[httpx.AsyncBaseTransport]) -> GatewayAdapter:
    return BankTransferAdapter(config)


class GatewayRegistry:
    """Enabled adapters keyed by gateway type."""

    def __init__(self, adapters: Iterable[GatewayAdapter]) -> None:
        self._adapters: Dict[GatewayType, GatewayAdapter] = {a.gateway_type: a for a in adapters}

    @classmethod
    def from_settings(
        cls,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GatewayRegistry":
        config = config or default_settings
        adapters = []
        for name in config.enabled_gateways:
            try:
                gateway_type = GatewayType(name)
            except ValueError:
                logger.warning(f"Unknown gateway in ENABLED_GATEWAYS: {name}")
                continue
            adapters.append(_builders[gateway_type](config, transport))
        return cls(adapters)

    def get(self, gateway_type: GatewayType) -> GatewayAdapter:
        adapter = self._adapters.get(GatewayType(gateway_type))
        if adapter is None:
            raise ValidationError(f"Gateway {GatewayType(gateway_type).value} is not enabled")
        return adapter

    def find(self, gateway_type: str) -> Optional[GatewayAdapter]:
        """Lenient lookup for inbound webhooks; None for unknown or disabled providers."""
        try:
            return self._adapters.get(GatewayType(gateway_type))
        except ValueError:
            return None

    @property
    def enabled(self) -> List[GatewayType]:
        return list(self._adapters)


@lru_cache
def get_gateway_registry() -> GatewayRegistry:
    """Process-wide registry built from settings."""
    return GatewayRegistry.from_settings()


_GULF_COUNTRIES = {"AE", "KW", "BH", "QA", "OM"}

# Below this, Egyptian buyers are steered to cash at Fawry
FAWRY_PREFERRED_BELOW = Decimal("100")


def recommend_gateway(
    country_code: str,
    amount: Decimal,
    enabled: Optional[Iterable[GatewayType]] = None,
) -> GatewayType:
    """Suggest a gateway for the buyer's country and basket size."""
    country = (country_code or "").upper()
    if country == "EG":
        choice = GatewayType.FAWRY if amount < FAWRY_PREFERRED_BELOW else GatewayType.PAYMOB
    elif country == "SA":
        choice = GatewayType.TAP
    elif country in _GULF_COUNTRIES:
        choice = GatewayType.HYPERPAY
    else:
        choice = GatewayType.STRIPE

    if enabled is not None:
        enabled = list(enabled)
        if choice not in enabled:
            if GatewayType.STRIPE in enabled:
                return GatewayType.STRIPE
            if enabled:
                return enabled[0]
    return choice


__all__ = [
    "GatewayAdapter",
    "GatewayEvent",
    "GatewayRegistry",
    "get_gateway_registry",
    "InboundWebhook",
    "InitiateRequest",
    "BuyerInfo",
    "recommend_gateway",
    "register_gateway",
]
