"""State store for applied resources.

Persists the last-applied StateRecord per resource address so later plans
can diff against it and destroys can find provider ids. State is stored in
.states/{workspace}/state.json and survives process restarts.

Each record carries a fingerprint over its content (including the
provider-assigned id and serial). Writers pass the fingerprint they read;
a mismatch means someone else changed the record in the meantime and is
reported as ConflictError instead of being overwritten.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from engine.errors import ConflictError, StateError

logger = logging.getLogger(__name__)

STATE_VERSION = 1

# Passed as expected_fingerprint to skip the optimistic concurrency check
UNCHECKED = object()


@dataclass(frozen=True)
class StateRecord:
    """Last known applied configuration of one resource.

    Attributes:
        address: Resource identity (provider.type.name)
        provider: Provider name
        type: Resource type
        name: Logical name
        provider_id: Identifier assigned by the provider on create
        attributes: Applied attributes, resource references resolved
        outputs: Computed values returned by the provider
        dependencies: Addresses this resource depended on when applied
        serial: Store serial at the time of the write
        fingerprint: Content hash, see compute_fingerprint()
    """
    address: str
    provider: str
    type: str
    name: str
    provider_id: str
    attributes: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    dependencies: tuple[str, ...] = ()
    serial: int = 0
    fingerprint: str = ''

    def compute_fingerprint(self) -> str:
        payload = self.to_dict()
        payload.pop('fingerprint', None)
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode('utf-8'))
        return digest.hexdigest()[:16]

    def sealed(self, serial: int) -> 'StateRecord':
        """Return a copy stamped with serial and a fresh fingerprint."""
        record = replace(self, serial=serial, fingerprint='')
        return replace(record, fingerprint=record.compute_fingerprint())

    @property
    def is_intact(self) -> bool:
        return self.fingerprint == self.compute_fingerprint()

    def lookup(self, attribute: str) -> Any:
        """Resolve an attribute for reference resolution.

        'id' is the provider id; declared attributes shadow outputs.

        Raises:
            KeyError: If the attribute is unknown
        """
        if attribute == 'id':
            return self.provider_id
        if attribute in self.attributes:
            return self.attributes[attribute]
        return self.outputs[attribute]

    def to_dict(self) -> dict:
        return {
            'address': self.address,
            'provider': self.provider,
            'type': self.type,
            'name': self.name,
            'provider_id': self.provider_id,
            'attributes': self.attributes,
            'outputs': self.outputs,
            'dependencies': list(self.dependencies),
            'serial': self.serial,
            'fingerprint': self.fingerprint,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'StateRecord':
        return cls(
            address=data['address'],
            provider=data['provider'],
            type=data['type'],
            name=data['name'],
            provider_id=str(data['provider_id']),
            attributes=data.get('attributes', {}),
            outputs=data.get('outputs', {}),
            dependencies=tuple(data.get('dependencies', [])),
            serial=data.get('serial', 0),
            fingerprint=data.get('fingerprint', ''),
        )


class StateStore:
    """Identity-keyed store of StateRecords with JSON persistence.

    Writes to one address are serialized by an address-scoped lock;
    the in-memory map and the state file are guarded by a store-wide lock.
    A store created without a path keeps state in memory only.
    """

    def __init__(self, path: Optional[Path] = None, workspace: str = 'default'):
        """Initialize the store, loading existing state from path if present.

        Args:
            path: State file location (None for in-memory)
            workspace: Workspace name recorded in the state file
        """
        self.path = Path(path) if path is not None else None
        self.workspace = workspace
        self.serial = 0
        self._records: dict[str, StateRecord] = {}
        self._lock = threading.RLock()
        self._identity_locks: dict[str, threading.Lock] = {}
        if self.path is not None and self.path.exists():
            self._load()

    @classmethod
    def for_workspace(cls, state_dir: Path, workspace: str) -> 'StateStore':
        """Open the store for a workspace under state_dir."""
        return cls(Path(state_dir) / workspace / 'state.json', workspace=workspace)

    def lock_for(self, address: str) -> threading.Lock:
        """Get the lock guarding writes to one address."""
        with self._lock:
            if address not in self._identity_locks:
                self._identity_locks[address] = threading.Lock()
            return self._identity_locks[address]

    def get(self, address: str) -> Optional[StateRecord]:
        with self._lock:
            return self._records.get(address)

    def fingerprint(self, address: str) -> Optional[str]:
        """Current fingerprint of a record, None if absent."""
        record = self.get(address)
        return record.fingerprint if record else None

    def records(self) -> list[StateRecord]:
        with self._lock:
            return list(self._records.values())

    @property
    def addresses(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def __contains__(self, address: str) -> bool:
        return self.get(address) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _check(self, address: str, expected_fingerprint: Any) -> None:
        if expected_fingerprint is UNCHECKED:
            return
        current = self.fingerprint(address)
        if current != expected_fingerprint:
            raise ConflictError(
                f"State for '{address}' changed concurrently "
                f"(expected fingerprint {expected_fingerprint}, found {current})",
                address=address,
            )

    def put(self, record: StateRecord, expected_fingerprint: Any = UNCHECKED) -> StateRecord:
        """Store a record (last write wins) and persist.

        The in-memory map and serial change only once the state file has
        been written.

        Args:
            record: Record to store; serial and fingerprint are assigned here
            expected_fingerprint: Fingerprint the caller read (None = must not
                exist). UNCHECKED skips the check.

        Returns:
            The stored, sealed record

        Raises:
            ConflictError: If the current fingerprint differs from expected
            OSError: If the state file cannot be written (nothing committed)
        """
        with self.lock_for(record.address):
            self._check(record.address, expected_fingerprint)
            with self._lock:
                serial = self.serial + 1
                sealed = record.sealed(serial)
                records = dict(self._records)
                records[record.address] = sealed
                self._commit(records, serial)
        logger.debug(f"Committed state for '{record.address}' (serial {sealed.serial})")
        return sealed

    def delete(self, address: str, expected_fingerprint: Any = UNCHECKED) -> Optional[StateRecord]:
        """Remove a record and persist.

        Returns:
            The removed record, None if there was none

        Raises:
            ConflictError: If the current fingerprint differs from expected
            OSError: If the state file cannot be written (nothing committed)
        """
        with self.lock_for(address):
            self._check(address, expected_fingerprint)
            with self._lock:
                records = dict(self._records)
                removed = records.pop(address, None)
                if removed is not None:
                    self._commit(records, self.serial + 1)
        if removed is not None:
            logger.debug(f"Removed state for '{address}'")
        return removed

    def verify(self) -> None:
        """Check every record's fingerprint against its content.

        Raises:
            ConflictError: For the first record whose content no longer
                matches its fingerprint (e.g. provider id edited out of band)
        """
        for record in self.records():
            if not record.is_intact:
                raise ConflictError(
                    f"State for '{record.address}' does not match its fingerprint "
                    f"(provider id {record.provider_id})",
                    address=record.address,
                )

    def _commit(self, records: dict[str, StateRecord], serial: int) -> None:
        """Write records, then make them current."""
        self._write(records, serial)
        self._records = records
        self.serial = serial

    def save(self) -> Optional[Path]:
        """Write state to the JSON file atomically (no-op for in-memory stores).

        Returns:
            Path where state was saved
        """
        with self._lock:
            return self._write(self._records, self.serial)

    def _write(self, records: dict[str, StateRecord], serial: int) -> Optional[Path]:
        if self.path is None:
            return None
        data = {
            'version': STATE_VERSION,
            'workspace': self.workspace,
            'serial': serial,
            'resources': {address: r.to_dict() for address, r in records.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix='.state-', suffix='.json', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return self.path

    def _load(self) -> None:
        """Load records from the state file.

        Raises:
            StateError: If the file is not valid state JSON or its version
                is unsupported
        """
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"State file {self.path} is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise StateError(f"State file {self.path} must contain a JSON object")

        version = data.get('version', STATE_VERSION)
        if version != STATE_VERSION:
            raise StateError(f"Unsupported state version {version} in {self.path}")

        resources = data.get('resources', {})
        if not isinstance(resources, dict):
            raise StateError(f"State file {self.path}: 'resources' must be a mapping")
        records: dict[str, StateRecord] = {}
        for address, record_data in resources.items():
            try:
                records[address] = StateRecord.from_dict(record_data)
            except (KeyError, TypeError, AttributeError) as e:
                raise StateError(f"State file {self.path}: malformed record '{address}' ({e!r})")

        self.serial = data.get('serial', 0)
        self.workspace = data.get('workspace', self.workspace)
        self._records = records
        logger.debug(f"Loaded {len(self._records)} state records from {self.path}")
