"""Error taxonomy for the boleto flow.

ValidationError and LookupNotFound never escape the engine: they are turned
into a same-state retry prompt. BillingError subclasses end the conversation
in ERROR. ConfigurationError aborts the invocation before any session write.
"""


class ValidationError(Exception):
    """User input is malformed or out of range for the current state."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class LookupNotFound(ValidationError):
    """CNPJ or contribution lookup returned nothing for this tenant."""

    pass


class BillingError(Exception):
    """Side effect against the billing backend failed. Not retried in-turn."""

    pass


class RepositoryFailure(BillingError):
    """Database fault while reading or writing billing records."""

    pass


class InvoiceFailure(BillingError):
    """Payment provider refused or failed to issue the invoice."""

    pass


class ConfigurationError(RuntimeError):
    """Missing credentials, environment or tenant mapping."""

    pass


class StaleSessionError(Exception):
    """Session row changed since it was loaded (lost compare-and-swap)."""

    pass
