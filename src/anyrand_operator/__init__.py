"""
Anyrand Operator package.

Fulfills Anyrand randomness requests with drand beacon signatures.
"""

from .beacon_client import BeaconClient
from .config import OperatorConfig
from .fulfillment_executor import FulfillmentExecutor
from .models import FulfillmentOutcome, RandomnessRequest
from .prioritizer import FulfillmentPrioritizer
from .request_ledger import RequestLedger
from .round_clock import RoundClock
from .service import AnyrandOperator

__all__ = [
    "AnyrandOperator",
    "BeaconClient",
    "FulfillmentExecutor",
    "FulfillmentOutcome",
    "FulfillmentPrioritizer",
    "OperatorConfig",
    "RandomnessRequest",
    "RequestLedger",
    "RoundClock",
]
__version__ = "0.1.0"
