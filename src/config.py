"""Engine configuration management.

Configuration is loaded from a YAML file (strata.yaml):

    state_dir: .states
    workspace: default
    max_workers: 4
    retry:
      max_attempts: 4
      base_delay: 1.0
      max_delay: 30.0
    secrets_file: secrets.yaml
    default_provider: local
    providers:
      aws:
        kind: local
      gcp:
        kind: http
        endpoint: https://gcp-gateway.example.com/v1
        token_secret: gcp_token
        timeout: 30

Resolution order for the file:
1. Explicit path (--config)
2. $STRATA_CONFIG environment variable
3. ./strata.yaml in the working directory
4. Built-in defaults (no file)

Relative paths in the file are resolved against the file's directory.
$STRATA_WORKSPACE and $STRATA_STATE_DIR override the file.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = 'strata.yaml'
PROVIDER_KINDS = {'local', 'http'}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient provider errors.

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on any single delay
    """
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RetryPolicy':
        if not data:
            return cls()
        policy = cls(
            max_attempts=int(data.get('max_attempts', 4)),
            base_delay=float(data.get('base_delay', 1.0)),
            max_delay=float(data.get('max_delay', 30.0)),
        )
        if policy.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")
        if policy.base_delay < 0 or policy.max_delay < 0:
            raise ConfigError("retry delays must not be negative")
        return policy


@dataclass
class ProviderConfig:
    """Configuration for one named provider.

    Attributes:
        name: Provider name as used in resource documents
        kind: Implementation ('local' or 'http')
        endpoint: Base URL (http only)
        token_secret: Secret name holding the bearer token (http only)
        timeout: Request timeout in seconds (http only)
        verify: Verify TLS certificates (http only)
        path: Object file (local only; default under the workspace state dir)
        types: Resource types served; empty means all types
    """
    name: str
    kind: str = 'local'
    endpoint: str = ''
    token_secret: Optional[str] = None
    timeout: float = 30.0
    verify: bool = True
    path: Optional[Path] = None
    types: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict], base_dir: Path) -> 'ProviderConfig':
        data = data or {}
        kind = data.get('kind', 'local')
        if kind not in PROVIDER_KINDS:
            raise ConfigError(
                f"Provider '{name}' has unknown kind '{kind}'. "
                f"Supported: {', '.join(sorted(PROVIDER_KINDS))}"
            )
        if kind == 'http' and not data.get('endpoint'):
            raise ConfigError(f"Provider '{name}' (http) requires an endpoint")

        path = data.get('path')
        return cls(
            name=name,
            kind=kind,
            endpoint=data.get('endpoint', ''),
            token_secret=data.get('token_secret'),
            timeout=float(data.get('timeout', 30.0)),
            verify=bool(data.get('verify', True)),
            path=_resolve_path(path, base_dir) if path else None,
            types=list(data.get('types') or []),
        )


@dataclass
class EngineConfig:
    """Engine-wide settings.

    Attributes:
        config_file: File the settings were read from (None for defaults)
        state_dir: Root directory for workspace state
        workspace: Workspace name (state is isolated per workspace)
        max_workers: Concurrent provider calls during apply
        retry: Retry policy for transient provider errors
        secrets_file: YAML file with secret values
        default_provider: Kind used for providers not listed (None = reject)
        providers: Named provider configurations
    """
    config_file: Optional[Path] = None
    state_dir: Path = field(default_factory=lambda: Path('.states'))
    workspace: str = 'default'
    max_workers: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    secrets_file: Optional[Path] = None
    default_provider: Optional[str] = 'local'
    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    @property
    def workspace_dir(self) -> Path:
        return self.state_dir / self.workspace

    def provider_config(self, name: str) -> Optional[ProviderConfig]:
        """Get configuration for a provider, falling back to default_provider."""
        if name in self.providers:
            return self.providers[name]
        if self.default_provider:
            return ProviderConfig(name=name, kind=self.default_provider)
        return None

    @classmethod
    def from_dict(cls, data: dict, base_dir: Path, config_file: Optional[Path] = None) -> 'EngineConfig':
        """Create EngineConfig from a parsed YAML mapping.

        Raises:
            ConfigError: On invalid values
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Config {config_file} must be a YAML object (dict)")

        max_workers = int(data.get('max_workers', 4))
        if max_workers < 1:
            raise ConfigError("max_workers must be at least 1")

        default_provider = data.get('default_provider', 'local')
        if default_provider is not None and default_provider not in PROVIDER_KINDS:
            raise ConfigError(f"default_provider must be one of {sorted(PROVIDER_KINDS)} or null")

        providers_data = data.get('providers') or {}
        if not isinstance(providers_data, dict):
            raise ConfigError("providers must be a mapping of name -> settings")

        secrets_file = data.get('secrets_file')
        return cls(
            config_file=config_file,
            state_dir=_resolve_path(data.get('state_dir', '.states'), base_dir),
            workspace=str(data.get('workspace', 'default')),
            max_workers=max_workers,
            retry=RetryPolicy.from_dict(data.get('retry')),
            secrets_file=_resolve_path(secrets_file, base_dir) if secrets_file else None,
            default_provider=default_provider,
            providers={
                name: ProviderConfig.from_dict(name, settings, base_dir)
                for name, settings in providers_data.items()
            },
        )


def _resolve_path(value: str, base_dir: Path) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def find_config_file(explicit: Optional[str] = None) -> Optional[Path]:
    """Locate the configuration file.

    Raises:
        ConfigError: If an explicitly named file does not exist
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path

    if env_path := os.environ.get('STRATA_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"STRATA_CONFIG={env_path} does not exist")

    local = Path.cwd() / DEFAULT_CONFIG_NAME
    if local.exists():
        return local
    return None


def load_engine_config(path: Optional[str] = None, workspace: Optional[str] = None) -> EngineConfig:
    """Load engine configuration.

    Args:
        path: Explicit config file (overrides discovery)
        workspace: Workspace override (highest priority)

    Returns:
        EngineConfig instance

    Raises:
        ConfigError: If the file is missing or invalid
    """
    config_file = find_config_file(path)
    if config_file is None:
        logger.debug("No config file found, using defaults")
        config = EngineConfig()
    else:
        logger.debug(f"Loading config from {config_file}")
        config = EngineConfig.from_dict(
            _parse_yaml(config_file),
            base_dir=config_file.parent,
            config_file=config_file,
        )

    if state_dir := os.environ.get('STRATA_STATE_DIR'):
        config.state_dir = Path(state_dir)
    if env_workspace := os.environ.get('STRATA_WORKSPACE'):
        config.workspace = env_workspace
    if workspace:
        config.workspace = workspace
    return config
