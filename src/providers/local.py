"""Local provider: a simulated cloud persisted to a JSON file.

Objects live in {path} as {type: {id: attributes}}. Useful for dry runs,
CI smoke tests and exercising the engine without cloud credentials.
"""

import json
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Optional

from engine.errors import FatalProviderError
from providers.base import ProviderResponse

logger = logging.getLogger(__name__)


class LocalProvider:
    """Provider capability backed by a local JSON file (or memory)."""

    def __init__(self, name: str, path: Optional[Path] = None):
        """Initialize the provider.

        Args:
            name: Provider name (used in self_link outputs)
            path: JSON file for persistence; None keeps objects in memory
        """
        self.name = name
        self.path = Path(path) if path is not None else None
        self._objects: dict[str, dict[str, dict]] = {}
        self._lock = threading.Lock()
        if self.path is not None and self.path.exists():
            with open(self.path, encoding='utf-8') as f:
                self._objects = json.load(f)

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(self._objects, f, indent=2)

    def _outputs(self, type_: str, provider_id: str) -> dict:
        return {
            'self_link': f'local://{self.name}/{type_}/{provider_id}',
            'updated_at': time.time(),
        }

    def create(self, type_: str, attributes: dict) -> ProviderResponse:
        provider_id = f'{type_}-{uuid.uuid4().hex[:8]}'
        with self._lock:
            self._objects.setdefault(type_, {})[provider_id] = dict(attributes)
            self._save()
        logger.info(f"[{self.name}] Created {type_} {provider_id}")
        return ProviderResponse(provider_id=provider_id, outputs=self._outputs(type_, provider_id))

    def read(self, type_: str, provider_id: str) -> Optional[dict]:
        with self._lock:
            attributes = self._objects.get(type_, {}).get(provider_id)
        return dict(attributes) if attributes is not None else None

    def update(self, type_: str, provider_id: str, attributes: dict) -> ProviderResponse:
        with self._lock:
            objects = self._objects.get(type_, {})
            if provider_id not in objects:
                raise FatalProviderError(f"{type_} {provider_id} not found")
            objects[provider_id] = dict(attributes)
            self._save()
        logger.info(f"[{self.name}] Updated {type_} {provider_id}")
        return ProviderResponse(provider_id=provider_id, outputs=self._outputs(type_, provider_id))

    def delete(self, type_: str, provider_id: str) -> None:
        with self._lock:
            removed = self._objects.get(type_, {}).pop(provider_id, None)
            self._save()
        if removed is None:
            logger.debug(f"[{self.name}] {type_} {provider_id} already absent")
        else:
            logger.info(f"[{self.name}] Deleted {type_} {provider_id}")
