"""
Execution layer: everything between a scenario row and a verdict.

- OrderParameterBuilder: prices and sizes orders from live quotes
- VenueGateway: serialized, deadline-bounded command path into the venue
- EventDispatcher: per-order routing of the venue event stream
- OrderStateMachine: lifecycle and fill accounting rules
- OrderLifecycleDriver: submit, follow, cancel on deadline
- ReconciliationChecker: ledger vs venue holdings
"""

from conformance.execution.lot_size import LotSizeMode, LotSizeRule, QuantityAdjustment
from conformance.execution.price_policy import (
    AggressivePolicy,
    BoundsPolicy,
    MarketPolicy,
    OrderPrices,
    PolicyRegistry,
    PriceContext,
    PricePolicy,
    SafeParkPolicy,
    default_policies,
)
from conformance.execution.order_builder import BuiltOrder, OrderBuilderConfig, OrderParameterBuilder
from conformance.execution.venue_gateway import VenueGateway, VenueGatewayConfig
from conformance.execution.event_dispatcher import EventDispatcher
from conformance.execution.order_state_machine import (
    VALID_TRANSITIONS,
    OrderStateMachine,
    OrderStateRecord,
    StateTransition,
)
from conformance.execution.lifecycle_driver import DriverConfig, OrderLifecycleDriver, Verdict
from conformance.execution.reconciliation import (
    LocalLedger,
    ReconcileResult,
    ReconciliationChecker,
    ReconciliationConfig,
)

__all__ = [
    "LotSizeMode",
    "LotSizeRule",
    "QuantityAdjustment",
    "AggressivePolicy",
    "BoundsPolicy",
    "MarketPolicy",
    "OrderPrices",
    "PolicyRegistry",
    "PriceContext",
    "PricePolicy",
    "SafeParkPolicy",
    "default_policies",
    "BuiltOrder",
    "OrderBuilderConfig",
    "OrderParameterBuilder",
    "VenueGateway",
    "VenueGatewayConfig",
    "EventDispatcher",
    "VALID_TRANSITIONS",
    "OrderStateMachine",
    "OrderStateRecord",
    "StateTransition",
    "DriverConfig",
    "OrderLifecycleDriver",
    "Verdict",
    "LocalLedger",
    "ReconcileResult",
    "ReconciliationChecker",
    "ReconciliationConfig",
]
