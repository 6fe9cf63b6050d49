from __future__ import annotations


class InvoiceError(Exception):
    """Invoice request rejected before anything was persisted or enqueued."""


class OrderNotFound(InvoiceError):
    pass


class NotFinalized(InvoiceError):
    """The service order is not in the finalized state."""


class DuplicateInvoice(InvoiceError):
    """A non-canceled invoice already references the service order."""


class InvoiceNotFound(InvoiceError):
    pass


class AlreadyCanceled(InvoiceError):
    pass


class GatewayError(Exception):
    pass


class UnknownProvider(GatewayError):
    """GatewayConfig names a provider with no adapter."""


class ProviderError(GatewayError):
    """Network failure, timeout, or non-success response from the provider."""

    def __init__(
        self,
        message: str,
        response: dict | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.response = response or {}
        self.status_code = status_code


class GatewayConfigNotFound(GatewayError):
    pass


class CipherError(Exception):
    pass


class MissingKey(CipherError):
    """No key material configured for certificate encryption."""


class CorruptSecret(CipherError):
    """Ciphertext failed authentication (tampered, truncated, or wrong key)."""


class JobNotFound(Exception):
    pass


class LeaseLost(JobNotFound):
    """The claim no longer owns the job (it was swept, reclaimed or removed)."""
