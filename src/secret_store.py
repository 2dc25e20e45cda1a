"""Secret lookup by name.

Secrets come from a flat YAML file (name: value) or from environment
variables named STRATA_SECRET_<NAME>, the usual way a CI runner hands
credentials to a job. The file wins over the environment.

Secret values are substituted only when calling a provider; plans and
state keep the ${secret.NAME} placeholder.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from config import ConfigError
from resources import SECRET_PREFIX, Reference, find_references, substitute

logger = logging.getLogger(__name__)

ENV_PREFIX = 'STRATA_SECRET_'


class SecretNotFound(KeyError):
    """Requested secret is not defined."""


class SecretStore:
    """Read-only secret lookup."""

    def __init__(self, secrets_file: Optional[Path] = None,
                 environ: Optional[Mapping[str, str]] = None):
        """Initialize the store.

        Args:
            secrets_file: Optional YAML file of name -> value
            environ: Environment mapping (defaults to os.environ)

        Raises:
            ConfigError: If the secrets file exists but is not a flat mapping
        """
        self.secrets_file = secrets_file
        self._environ = os.environ if environ is None else environ
        self._values: dict[str, Any] = {}
        if secrets_file is not None:
            self._values = _load_secrets(Path(secrets_file))

    @staticmethod
    def env_name(name: str) -> str:
        return ENV_PREFIX + re.sub(r'[^A-Za-z0-9]', '_', name).upper()

    def get(self, name: str) -> Any:
        """Get a secret by name.

        Raises:
            SecretNotFound: If neither the file nor the environment defines it
        """
        if name in self._values:
            return self._values[name]
        env_name = self.env_name(name)
        if env_name in self._environ:
            return self._environ[env_name]
        raise SecretNotFound(name)

    def has(self, name: str) -> bool:
        try:
            self.get(name)
        except SecretNotFound:
            return False
        return True

    def missing(self, value: Any) -> list[str]:
        """Names of secrets referenced in value that cannot be resolved."""
        names: list[str] = []
        for ref in find_references(value):
            if ref.kind == SECRET_PREFIX and not self.has(ref.target) and ref.target not in names:
                names.append(ref.target)
        return names

    def reveal(self, value: Any) -> Any:
        """Substitute ${secret.NAME} references, leaving others untouched.

        Raises:
            SecretNotFound: If a referenced secret is missing
        """
        def _resolve(ref: Reference) -> Any:
            if ref.kind == SECRET_PREFIX:
                return self.get(ref.target)
            return f'${{{ref.expression}}}'

        return substitute(value, _resolve)


def _load_secrets(path: Path) -> dict:
    """Load secrets from a YAML file; a missing file yields no secrets."""
    if not path.exists():
        logger.debug(f"Secrets file {path} not found")
        return {}
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in secrets file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Secrets file {path} must be a mapping of name -> value")
    return data
