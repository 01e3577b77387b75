"""Builds the gateway adapters from settings."""

import logging
from typing import Dict, Optional

import httpx

from ..config import Settings
from ..database.models import PaymentMethod
from .base import ConnectorBase
from .nexi_connector import NexiConnector
from .paypal_connector import PayPalConnector
from .satispay_connector import SatispayConnector
from .simulator_connector import SimulatorConfig, SimulatorConnector
from .stripe_connector import StripeConnector
from .sumup_connector import SumUpConnector

logger = logging.getLogger(__name__)


def build_connectors(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, ConnectorBase]:
    """Create one adapter per gateway.

    A gateway whose credentials are missing gets a SimulatorConnector
    registered under its own name.

    Args:
        settings: Application settings.
        http_client: Optional shared client for the HTTP gateways.

    Returns:
        Mapping of gateway tag to connector.
    """
    production = settings.is_production
    auto_accept = settings.simulator_auto_accept_seconds
    if production and auto_accept is not None:
        logger.warning("Simulator auto-accept ignored in production")
        auto_accept = None
    simulator_config = SimulatorConfig(auto_accept_seconds=auto_accept)
    connectors: Dict[str, ConnectorBase] = {}

    def simulator(provider: str, webhook_secret: str) -> SimulatorConnector:
        return SimulatorConnector(
            provider,
            config=simulator_config,
            webhook_secret=webhook_secret,
            production=production,
        )

    if settings.stripe_api_key:
        connectors[PaymentMethod.STRIPE.value] = StripeConnector(
            settings.stripe_api_key,
            webhook_secret=settings.stripe_webhook_secret,
            production=production,
        )
    else:
        connectors[PaymentMethod.STRIPE.value] = simulator("stripe", settings.stripe_webhook_secret)

    if settings.satispay_key_id and settings.satispay_private_key:
        connectors[PaymentMethod.SATISPAY.value] = SatispayConnector(
            settings.satispay_key_id,
            settings.satispay_private_key,
            webhook_secret=settings.satispay_webhook_secret,
            production=production,
            http_client=http_client,
        )
    else:
        connectors[PaymentMethod.SATISPAY.value] = simulator("satispay", settings.satispay_webhook_secret)

    if settings.paypal_client_id and settings.paypal_client_secret:
        connectors[PaymentMethod.PAYPAL.value] = PayPalConnector(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            webhook_id=settings.paypal_webhook_id,
            production=production,
            http_client=http_client,
        )
    else:
        connectors[PaymentMethod.PAYPAL.value] = simulator("paypal", "")

    if settings.sumup_api_key and settings.sumup_merchant_code:
        connectors[PaymentMethod.SUMUP.value] = SumUpConnector(
            settings.sumup_api_key,
            settings.sumup_merchant_code,
            webhook_secret=settings.sumup_webhook_secret,
            production=production,
            http_client=http_client,
        )
    else:
        connectors[PaymentMethod.SUMUP.value] = simulator("sumup", settings.sumup_webhook_secret)

    if settings.nexi_api_key:
        connectors[PaymentMethod.NEXI.value] = NexiConnector(
            settings.nexi_api_key,
            webhook_secret=settings.nexi_webhook_secret,
            production=production,
            http_client=http_client,
        )
    else:
        connectors[PaymentMethod.NEXI.value] = simulator("nexi", settings.nexi_webhook_secret)

    simulated = sorted(name for name, c in connectors.items() if c.simulated)
    if simulated:
        logger.warning(f"Gateways in simulation mode: {', '.join(simulated)}")
    return connectors


async def close_connectors(connectors: Dict[str, ConnectorBase]) -> None:
    for connector in connectors.values():
        await connector.aclose()
