"""Custom exception hierarchy for courier."""


class CourierError(Exception):
    """Base exception for courier."""
    pass


class ConfigurationError(CourierError):
    """Raised when settings are inconsistent for the selected backends."""
    pass


class StorageError(CourierError):
    """Raised when the queue store cannot be reached or queried."""
    pass


class NotClaimableError(StorageError):
    """Raised by a claim when the row is absent or no longer pending.

    This is the normal outcome of two triggers racing for the same row, not a
    failure of the store.
    """

    def __init__(self, outbox_id: int) -> None:
        self.outbox_id = outbox_id
        super().__init__(f"outbox message {outbox_id} is not claimable")


class InvalidTargetError(CourierError):
    """Raised when a queue row's target cannot be parsed into an address."""
    pass


class TransportError(CourierError):
    """Raised when the messaging network rejects or fails a send."""
    pass


class ServiceUnavailableError(TransportError):
    """Raised when the messaging gateway itself is unreachable."""
    pass
