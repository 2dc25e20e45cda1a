"""Shared pytest fixtures for strata tests."""

import sys
import threading
from pathlib import Path
from typing import Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.errors import TransientProviderError
from engine.state import StateStore
from providers import ProviderRegistry
from providers.base import ProviderResponse


class FakeProvider:
    """In-memory provider capability that records every call.

    Failures are keyed by resource type:
    - fail[type] is raised on every call for that type
    - transient[type] = n raises TransientProviderError for the next n calls
    """

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.transient: dict[str, int] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def _record(self, method: str, type_: str, *args) -> None:
        with self._lock:
            self.calls.append((method, type_) + args)
            if self.transient.get(type_, 0) > 0:
                self.transient[type_] -= 1
                raise TransientProviderError(f"{type_} endpoint timed out")
        if type_ in self.fail:
            raise self.fail[type_]

    def methods(self) -> list[tuple[str, str]]:
        return [(c[0], c[1]) for c in self.calls]

    def create(self, type_: str, attributes: dict) -> ProviderResponse:
        self._record('create', type_, attributes)
        with self._lock:
            self._counter += 1
            provider_id = f'{type_}-{self._counter}'
            self.objects[provider_id] = dict(attributes)
        return ProviderResponse(provider_id=provider_id, outputs={'arn': f'arn:fake:{provider_id}'})

    def read(self, type_: str, provider_id: str) -> Optional[dict]:
        self._record('read', type_, provider_id)
        obj = self.objects.get(provider_id)
        return dict(obj) if obj is not None else None

    def update(self, type_: str, provider_id: str, attributes: dict) -> ProviderResponse:
        self._record('update', type_, provider_id, attributes)
        self.objects[provider_id] = dict(attributes)
        return ProviderResponse(provider_id=provider_id, outputs={'arn': f'arn:fake:{provider_id}'})

    def delete(self, type_: str, provider_id: str) -> None:
        self._record('delete', type_, provider_id)
        self.objects.pop(provider_id, None)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep developer environment variables out of tests."""
    for name in ('STRATA_CONFIG', 'STRATA_WORKSPACE', 'STRATA_STATE_DIR'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    """Registry routing the aws and gcp providers to one FakeProvider."""
    reg = ProviderRegistry()
    reg.register('aws', fake_provider)
    reg.register('gcp', fake_provider)
    return reg


@pytest.fixture
def store():
    """In-memory state store."""
    return StateStore(workspace='test')


@pytest.fixture
def web_stack():
    """Document data: a vm, a storage volume attached to it, and an unrelated network."""
    return {
        'name': 'web-stack',
        'resources': [
            {'provider': 'aws', 'type': 'vm', 'name': 'web',
             'attributes': {'size': 'small', 'image': 'debian-12'}},
            {'provider': 'aws', 'type': 'storage', 'name': 'logs',
             'attributes': {'attached_to': '${aws.vm.web.id}', 'gb': 20}},
            {'provider': 'gcp', 'type': 'network', 'name': 'edge',
             'attributes': {'cidr': '10.0.0.0/16'}},
        ],
        'outputs': {'web_id': '${aws.vm.web.id}'},
    }


@pytest.fixture
def config_dir(tmp_path):
    """Directory with a strata.yaml, a secrets file and a resource document.

    Creates:
    - strata.yaml (local providers, fast retries)
    - secrets.yaml
    - stack.yaml
    """
    (tmp_path / 'strata.yaml').write_text("""
state_dir: .states
workspace: ci
max_workers: 2
retry:
  max_attempts: 2
  base_delay: 0
secrets_file: secrets.yaml
providers:
  aws:
    kind: local
""")
    (tmp_path / 'secrets.yaml').write_text("""
db_password: hunter2
""")
    (tmp_path / 'stack.yaml').write_text("""
name: web-stack
variables:
  size: small
resources:
  - provider: aws
    type: vm
    name: web
    attributes:
      size: ${var.size}
  - provider: aws
    type: storage
    name: logs
    attributes:
      attached_to: ${aws.vm.web.id}
  - provider: aws
    type: database
    name: main
    attributes:
      password: ${secret.db_password}
outputs:
  web_id: ${aws.vm.web.id}
  logs_link: ${aws.storage.logs.self_link}
""")
    return tmp_path
