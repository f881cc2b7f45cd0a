"""
Progress Sync — error taxonomy

ParseTolerant        malformed progress line, recovered inside the codec
PreconditionFailed   rejected state transition, state left unchanged
NoMatch              external event found no order/item (acknowledged)
QuantityMismatch     external event quantity disagrees (skipped, acknowledged)
TransientIOFailure   store or transport call failed, retried with backoff
"""


class ProgressSyncError(Exception):
    """Base class for every error raised by this service."""


class ParseTolerant(ProgressSyncError):
    """A progress line could not be parsed exactly and was recovered."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"{reason}: {line!r}")
        self.line = line
        self.reason = reason


class PreconditionFailed(ProgressSyncError):
    """The requested transition is not allowed from the current state."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class OrderNotFound(ProgressSyncError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class ItemNotFound(ProgressSyncError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Order item not found: {item_id}")
        self.item_id = item_id


class PurchaseOrderLinkNotFound(ProgressSyncError):
    def __init__(self, link_id: str) -> None:
        super().__init__(f"Purchase order link not found: {link_id}")
        self.link_id = link_id


class NoMatch(ProgressSyncError):
    """No order matched any candidate reference of an external event."""


class QuantityMismatch(ProgressSyncError):
    def __init__(self, sku: str, expected: int, received: int) -> None:
        super().__init__(
            f"Quantity mismatch for {sku}: item has {expected}, event has {received}"
        )
        self.sku = sku
        self.expected = expected
        self.received = received


class TransientIOFailure(ProgressSyncError):
    """A backing-store or transport round trip failed and may be retried."""
