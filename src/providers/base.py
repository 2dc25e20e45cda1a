"""Provider capability interface.

A provider implements create/read/update/delete for one or more resource
types. The engine never inspects provider classes; it looks them up by
(provider, type) in a ProviderRegistry.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable


@dataclass
class ProviderResponse:
    """Acknowledgment returned by a provider for create/update.

    Attributes:
        provider_id: Identifier of the remote object
        outputs: Computed values (addresses, URLs, ...) to keep in state
    """
    provider_id: str
    outputs: dict = field(default_factory=dict)


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider capabilities.

    Implementations raise TransientProviderError for failures worth
    retrying and FatalProviderError for everything else.
    """

    def create(self, type_: str, attributes: dict) -> ProviderResponse:
        """Create an object and return its identity."""

    def read(self, type_: str, provider_id: str) -> Optional[dict]:
        """Return current attributes, or None if the object no longer exists."""

    def update(self, type_: str, provider_id: str, attributes: dict) -> ProviderResponse:
        """Update an object in place."""

    def delete(self, type_: str, provider_id: str) -> None:
        """Delete an object. Deleting a missing object is not an error."""
