class SaleIndexerError(Exception):
    """Base class for indexer and aggregation failures."""


class MalformedEventError(SaleIndexerError):
    """
    A decoded log failed a required-field check. Signals an ABI/contract
    mismatch, so indexing must stop rather than project bad state.
    """

    def __init__(self, message, event_name=None, event_id=None):
        super().__init__(message)
        self.event_name = event_name
        self.event_id = event_id


class UnresolvableSourceError(SaleIndexerError):
    """The log has no attributable contract address."""


class ChainReadError(SaleIndexerError):
    """Network or timeout failure on a live chain read."""

    def __init__(self, operation, cause=None):
        detail = f": {type(cause).__name__}: {cause}" if cause is not None else ""
        super().__init__(f"chain read '{operation}' failed{detail}")
        self.operation = operation
        self.cause = cause


class AggregationError(SaleIndexerError):
    """An aggregation for one token could not be completed."""

    def __init__(self, token, message):
        super().__init__(f"{token}: {message}")
        self.token = token
