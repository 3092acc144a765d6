class BillingSyncError(Exception):
    """Base exception for the billing webhook processor."""

    pass


class InvalidWebhookError(BillingSyncError):
    """Raised when an inbound webhook fails signature or payload validation."""

    pass


class ExtractionError(BillingSyncError):
    """Raised when required identifiers cannot be found in an event payload."""

    def __init__(self, event_id: str | None, missing: list[str], context: dict | None = None):
        self.event_id = event_id
        self.missing = missing
        self.context = context or {}
        super().__init__(f"Event {event_id}: missing required fields {', '.join(missing)}")


class AccountResolutionError(BillingSyncError):
    """Raised when no owning account can be resolved for a billing object."""

    def __init__(self, event_id: str | None, object_id: str | None, customer_id: str | None = None):
        self.event_id = event_id
        self.object_id = object_id
        self.customer_id = customer_id
        super().__init__(
            f"Event {event_id}: no account for {object_id} (customer {customer_id or 'MISSING'})"
        )


class ProviderError(BillingSyncError):
    """Raised when the billing provider cannot be reached or rejects a request."""

    pass
