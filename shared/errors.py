"""
Error taxonomy for the broadcast hub.

Only `DuplicateIdError` aborts an operation. `DeliveryError` and
`TransportError` are scoped to a single recipient or a single connection.
"""


class HubError(Exception):
    """Base class for every hub failure."""


class DuplicateIdError(HubError):
    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"connection id already registered: {connection_id}")


class DeliveryError(HubError):
    """One delivery attempt to one recipient failed or timed out."""

    def __init__(self, connection_id: str, reason: str, cause: Exception | None = None):
        self.connection_id = connection_id
        self.reason = reason
        self.cause = cause
        super().__init__(f"delivery to {connection_id} failed: {reason}")

    @property
    def transport_lost(self) -> bool:
        return isinstance(self.cause, TransportError)


class TransportError(HubError):
    """The underlying transport is closed or broken."""
