"""
Error taxonomy for the conformance harness.

Every error carries a ``kind`` used by the report to categorise failures:

- connection: fatal to the run, remaining scenarios are aborted
- build:      order could not be constructed (no price, bad quantity)
- submission: venue rejected or invalidated the order
- cancel:     cancel request refused (used by idempotence checks)
- lifecycle:  venue broke the documented order lifecycle (adapter bug)
- timeout:    a bounded wait expired
- divergence: local ledger disagrees with venue holdings
- outcome:    order behaved legally but not as the scenario expected
- internal:   any other exception raised while running a scenario
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class HarnessError(Exception):
    """Base class for every error the harness records."""
    kind = "harness"
    # Partial lifecycle trace of the order in flight, set by the lifecycle driver
    verdict: Optional[Any] = None

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "error": type(self).__name__,
            "message": self.message,
            **self.details,
        }


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class VenueConnectionError(HarnessError):
    kind = "connection"


class AuthFailed(VenueConnectionError):
    pass


class Unreachable(VenueConnectionError):
    pass


# ---------------------------------------------------------------------------
# Order construction
# ---------------------------------------------------------------------------

class OrderBuildError(HarnessError):
    kind = "build"


class PriceUnavailable(OrderBuildError):
    pass


class QuantityInvalid(OrderBuildError):
    pass


class PriceCrossesMarket(OrderBuildError):
    pass


class UnknownPricePolicy(OrderBuildError):
    pass


# ---------------------------------------------------------------------------
# Submission / cancellation
# ---------------------------------------------------------------------------

class SubmissionError(HarnessError):
    kind = "submission"


class OrderRejected(SubmissionError):
    pass


class OrderInvalid(SubmissionError):
    pass


class CancelError(HarnessError):
    kind = "cancel"

    def __init__(self, message: str, order_id: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, order_id=order_id, **details)
        self.order_id = order_id


class OrderNotFound(CancelError):
    pass


class AlreadyTerminal(CancelError):
    pass


# ---------------------------------------------------------------------------
# Lifecycle / timing / reconciliation
# ---------------------------------------------------------------------------

class LifecycleViolation(HarnessError):
    kind = "lifecycle"


class UnexpectedTransition(LifecycleViolation):
    def __init__(self, order_id: str, from_state: Any, to_state: Any, **details: Any) -> None:
        from_name = getattr(from_state, "name", from_state)
        to_name = getattr(to_state, "name", to_state)
        super().__init__(
            f"order {order_id}: illegal transition {from_name} -> {to_name}",
            order_id=order_id,
            from_state=from_name,
            to_state=to_name,
            **details,
        )
        self.order_id = order_id
        self.from_state = from_state
        self.to_state = to_state


class FillAccountingError(LifecycleViolation):
    pass


class ScenarioTimeout(HarnessError):
    kind = "timeout"


class CommandTimeout(ScenarioTimeout):
    pass


class CancelNotConfirmed(ScenarioTimeout):
    pass


class Divergence(HarnessError):
    kind = "divergence"

    def __init__(self, message: str, expected: Any = None, observed: Any = None, **details: Any) -> None:
        super().__init__(message, expected=expected, observed=observed, **details)
        self.expected = expected
        self.observed = observed


class OutcomeMismatch(HarnessError):
    kind = "outcome"


class FillPriceOutOfRange(OutcomeMismatch):
    pass


class ScenarioCrashed(HarnessError):
    """Wraps a non-harness exception caught at the scenario boundary."""
    kind = "internal"

    def __init__(self, exc: BaseException, **details: Any) -> None:
        super().__init__(f"{type(exc).__name__}: {exc}", error_type=type(exc).__name__, **details)
        self.cause = exc
