"""Error taxonomy for the provisioning engine.

Every error carries the address of the resource it is attributed to
(None only for document-wide problems such as unreadable files).
"""

from typing import Optional


class EngineError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str, address: Optional[str] = None):
        self.message = message
        self.address = address
        super().__init__(message)


class ValidationError(EngineError):
    """Invalid resource document or graph (cycle, dangling reference, ...).

    Raised before anything is applied.

    Attributes:
        addresses: All resources implicated in the failure
    """

    def __init__(self, message: str, address: Optional[str] = None,
                 addresses: Optional[list[str]] = None):
        super().__init__(message, address)
        self.addresses = list(addresses) if addresses else ([address] if address else [])


class ConflictError(EngineError):
    """Stored state no longer matches the fingerprint a plan was made against."""


class ProviderError(EngineError):
    """Base class for failures reported by a provider capability."""


class TransientProviderError(ProviderError):
    """Network/timeout class failure; safe to retry."""


class FatalProviderError(ProviderError):
    """Non-retryable provider failure."""


class StateError(EngineError):
    """State file is unreadable, malformed or from an unsupported version."""
