class TicketGateError(Exception):
    pass


class ConfigError(TicketGateError):
    pass


class SignatureError(TicketGateError):
    """The webhook payload is not authentic or cannot be parsed."""


class PermanentDataError(TicketGateError):
    """An authentic notification is missing data; retrying cannot fix it."""

    def __init__(self, message: str, transaction_id: str = ""):
        super().__init__(message)
        self.transaction_id = transaction_id


class TransientStoreError(TicketGateError):
    """Store or ledger unavailable; the provider should retry."""
