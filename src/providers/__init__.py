"""Provider capabilities and the lookup table that selects them."""

import logging
from typing import Optional

from config import EngineConfig
from engine.errors import ValidationError
from providers.base import Provider, ProviderResponse
from providers.http import HttpProvider
from providers.local import LocalProvider
from secret_store import SecretNotFound, SecretStore

logger = logging.getLogger(__name__)

# Registry key matching every type of a provider
ANY_TYPE = '*'


class ProviderRegistry:
    """Lookup table of provider capabilities keyed by (provider, type).

    An exact (provider, type) entry wins over a (provider, '*') entry.
    """

    def __init__(self):
        self._table: dict[tuple[str, str], Provider] = {}

    def register(self, provider: str, capability: Provider, types: Optional[list[str]] = None) -> None:
        """Register a capability for a provider's types (all types when omitted)."""
        for type_ in types or [ANY_TYPE]:
            self._table[(provider, type_)] = capability

    def find(self, provider: str, type_: str) -> Optional[Provider]:
        return self._table.get((provider, type_)) or self._table.get((provider, ANY_TYPE))

    def get(self, provider: str, type_: str, address: Optional[str] = None) -> Provider:
        """Get the capability for a resource.

        Raises:
            ValidationError: If nothing is registered for (provider, type)
        """
        capability = self.find(provider, type_)
        if capability is None:
            raise ValidationError(
                f"No provider registered for '{provider}' type '{type_}'",
                address=address,
            )
        return capability

    def capabilities(self) -> list[tuple[str, Provider]]:
        """Distinct (provider, capability) pairs in registration order."""
        pairs: list[tuple[str, Provider]] = []
        for (provider, _), capability in self._table.items():
            if not any(p == provider and c is capability for p, c in pairs):
                pairs.append((provider, capability))
        return pairs

    def __contains__(self, key: tuple[str, str]) -> bool:
        return self.find(*key) is not None


def build_registry(
    config: EngineConfig,
    providers: list[str],
    secrets: Optional[SecretStore] = None,
) -> ProviderRegistry:
    """Instantiate capabilities for the named providers from configuration.

    Args:
        config: Engine configuration
        providers: Provider names needed (from specs and state)
        secrets: Secret store for http bearer tokens

    Returns:
        Populated ProviderRegistry

    Raises:
        ValidationError: If a provider is not configured (and no default),
            or its token secret is missing
    """
    registry = ProviderRegistry()
    for name in dict.fromkeys(providers):
        pc = config.provider_config(name)
        if pc is None:
            raise ValidationError(f"Provider '{name}' is not configured")

        if pc.kind == 'http':
            token = None
            if pc.token_secret:
                if secrets is None:
                    raise ValidationError(f"Provider '{name}' needs secret '{pc.token_secret}'")
                try:
                    token = secrets.get(pc.token_secret)
                except SecretNotFound:
                    raise ValidationError(
                        f"Provider '{name}' token secret '{pc.token_secret}' not found "
                        f"(set it in the secrets file or {SecretStore.env_name(pc.token_secret)})"
                    )
            capability: Provider = HttpProvider(
                name=name,
                endpoint=pc.endpoint,
                token=token,
                timeout=pc.timeout,
                verify=pc.verify,
            )
        else:
            path = pc.path or config.workspace_dir / 'providers' / f'{name}.json'
            capability = LocalProvider(name=name, path=path)

        registry.register(name, capability, pc.types or None)
        logger.debug(f"Registered provider '{name}' ({pc.kind})")
    return registry


__all__ = [
    'ANY_TYPE',
    'HttpProvider',
    'LocalProvider',
    'Provider',
    'ProviderRegistry',
    'ProviderResponse',
    'build_registry',
]
