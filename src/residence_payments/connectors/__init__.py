"""Gateway adapters."""

from .base import (
    ConnectorBase,
    ProviderPaymentHandle,
    ProviderStatus,
    RemotePaymentRequest,
    StatusOutcome,
    WebhookEvent,
)
from .nexi_connector import NexiConnector
from .paypal_connector import PayPalConnector
from .registry import build_connectors, close_connectors
from .satispay_connector import SatispayConnector
from .simulator_connector import SimulatorConfig, SimulatorConnector
from .stripe_connector import StripeConnector
from .sumup_connector import SumUpConnector

__all__ = [
    "ConnectorBase",
    "ProviderPaymentHandle",
    "ProviderStatus",
    "RemotePaymentRequest",
    "StatusOutcome",
    "WebhookEvent",
    "NexiConnector",
    "PayPalConnector",
    "SatispayConnector",
    "SimulatorConfig",
    "SimulatorConnector",
    "StripeConnector",
    "SumUpConnector",
    "build_connectors",
    "close_connectors",
]
