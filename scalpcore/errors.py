"""Domain errors for the execution core.

Every error carries a short machine-readable code so the API layer and the
trade boundary can surface it without string matching.
"""

from __future__ import annotations


class ScalpCoreError(Exception):
    """Base class for all execution core errors."""

    def __init__(self, message: str, code: str = "SCALPCORE_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


class NotFoundError(ScalpCoreError):
    """Ledger operation referenced an unknown client order id."""

    def __init__(self, client_order_id: str):
        super().__init__(
            f"Order {client_order_id} not found in ledger", "ORDER_NOT_FOUND"
        )
        self.client_order_id = client_order_id


class SubmissionFailure(ScalpCoreError):
    """Broker rejected or timed out on a submission."""

    def __init__(self, message: str, client_order_id: str | None = None):
        super().__init__(message, "SUBMISSION_FAILED")
        self.client_order_id = client_order_id


class ValidationFailure(ScalpCoreError):
    """A chase price was clamped to the slippage ceiling."""

    def __init__(self, message: str, computed: float, ceiling: float):
        super().__init__(message, "SLIPPAGE_CEILING")
        self.computed = computed
        self.ceiling = ceiling


class StaleDataError(ScalpCoreError):
    """Market tick is older than the freshness window."""

    def __init__(self, symbol: str, age_seconds: float, threshold: float):
        super().__init__(
            f"Stale quote for {symbol}: {age_seconds:.1f}s > {threshold:.1f}s",
            "STALE_DATA",
        )
        self.symbol = symbol
        self.age_seconds = age_seconds
        self.threshold = threshold


class InvalidTransitionError(ScalpCoreError):
    """Trade state change not allowed by the transition table."""

    def __init__(self, trade_id: str, from_state: str, to_state: str):
        super().__init__(
            f"Invalid transition for trade {trade_id} from {from_state} to {to_state}",
            "INVALID_TRANSITION",
        )
        self.trade_id = trade_id
        self.from_state = from_state
        self.to_state = to_state


class UnknownStrategyError(ScalpCoreError, ValueError):
    """Chase strategy name does not match any known strategy."""

    def __init__(self, name: str):
        super().__init__(f"Unknown chase strategy: {name}", "UNKNOWN_STRATEGY")
        self.name = name


def get_error_message(error: BaseException | str | None) -> str:
    """Extract a printable message from an exception or string."""
    if isinstance(error, ScalpCoreError):
        return error.message
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    if isinstance(error, str):
        return error
    return "An unknown error occurred"
