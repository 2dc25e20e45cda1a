"""Plan differ: declared resources vs last-applied state.

Walks the resource graph in topological order and decides, per resource,
whether it must be created, updated or left alone; state records with no
declaration become deletes, ordered dependents first. The result is a Plan
that can be shown, saved to disk and handed to the Executor.

Each change remembers the fingerprint of the state record it was computed
against so a stale plan is rejected instead of applied.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from engine.errors import ConflictError, ValidationError
from engine.graph import ResourceGraph
from engine.state import StateRecord, StateStore
from resources import (
    SECRET_PREFIX,
    UNKNOWN,
    Reference,
    ResourceSpec,
    contains_unknown,
    substitute,
)

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'
NO_OP = 'no-op'
ACTIONS = (CREATE, UPDATE, DELETE, NO_OP)

PLAN_VERSION = 1


def resolve_references(spec: ResourceSpec, lookup: Callable[[Reference], Any]) -> dict:
    """Resolve resource references in a spec's attributes.

    Secret references are left in place; they are revealed only when a
    provider is called.

    Args:
        spec: The resource whose attributes to resolve
        lookup: Returns the value (or UNKNOWN) for a resource reference

    Raises:
        ValidationError: If lookup raises KeyError (unknown attribute)
    """
    def _resolve(ref: Reference) -> Any:
        if ref.kind == SECRET_PREFIX:
            return f'${{{ref.expression}}}'
        try:
            return lookup(ref)
        except KeyError:
            raise ValidationError(
                f"'{spec.address}' references unknown attribute "
                f"'{ref.attribute}' of '{ref.target}'",
                address=spec.address,
            )

    return substitute(spec.attributes, _resolve)


def _display(value: Any) -> Any:
    """Make a value JSON-safe for plan output."""
    if value is UNKNOWN:
        return str(UNKNOWN)
    if isinstance(value, dict):
        return {k: _display(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_display(v) for v in value]
    return value


def diff_attributes(old: Optional[dict], new: Optional[dict]) -> dict:
    """Attribute-level diff as {name: {'old': ..., 'new': ...}}.

    UNKNOWN values always count as changed.
    """
    old = old or {}
    new = new or {}
    diff: dict[str, dict] = {}
    for key in list(old) + [k for k in new if k not in old]:
        before = old.get(key)
        after = new.get(key)
        if key in old and key in new and before == after and not contains_unknown(after):
            continue
        diff[key] = {'old': _display(before), 'new': _display(after)}
    return diff


@dataclass
class PlannedChange:
    """A single create/update/delete/no-op decision.

    Attributes:
        address: Resource identity
        action: One of ACTIONS
        diff: Attribute diff (display values)
        spec: Declared spec (create, update, no-op)
        prior: State record the decision was based on (update, delete, no-op)
        dependencies: Addresses whose changes must complete first
    """
    address: str
    action: str
    diff: dict = field(default_factory=dict)
    spec: Optional[ResourceSpec] = None
    prior: Optional[StateRecord] = None
    dependencies: tuple[str, ...] = ()

    @property
    def prior_fingerprint(self) -> Optional[str]:
        return self.prior.fingerprint if self.prior else None

    @property
    def provider(self) -> str:
        return self.spec.provider if self.spec else self.prior.provider

    @property
    def type(self) -> str:
        return self.spec.type if self.spec else self.prior.type

    @property
    def is_change(self) -> bool:
        return self.action != NO_OP

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'action': self.action,
        }
        if self.diff:
            d['diff'] = self.diff
        if self.spec is not None:
            d['spec'] = self.spec.to_dict()
            d['spec']['index'] = self.spec.index
        if self.prior is not None:
            d['prior'] = self.prior.to_dict()
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'PlannedChange':
        if data.get('action') not in ACTIONS:
            raise ValidationError(f"Invalid plan action: {data.get('action')!r}",
                                  address=data.get('address'))
        spec = None
        if 'spec' in data:
            spec = ResourceSpec.from_dict(data['spec'], index=data['spec'].get('index', 0))
        return cls(
            address=data['address'],
            action=data['action'],
            diff=data.get('diff', {}),
            spec=spec,
            prior=StateRecord.from_dict(data['prior']) if 'prior' in data else None,
            dependencies=tuple(data.get('dependencies', [])),
        )


@dataclass
class Plan:
    """Ordered list of planned changes.

    Create/update/no-op changes come first in dependency order, then
    deletes in reverse dependency order.
    """
    changes: list[PlannedChange]
    workspace: str = 'default'
    state_serial: int = 0
    destroy: bool = False

    def get(self, address: str) -> PlannedChange:
        """Get the change for an address.

        Raises:
            KeyError: If the address is not in the plan
        """
        for change in self.changes:
            if change.address == address:
                return change
        raise KeyError(address)

    @property
    def actions(self) -> list[tuple[str, str]]:
        """(action, address) pairs in plan order."""
        return [(c.action, c.address) for c in self.changes]

    @property
    def has_changes(self) -> bool:
        return any(c.is_change for c in self.changes)

    def summary(self) -> dict[str, int]:
        counts = {action: 0 for action in ACTIONS}
        for change in self.changes:
            counts[change.action] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'version': PLAN_VERSION,
            'workspace': self.workspace,
            'state_serial': self.state_serial,
            'destroy': self.destroy,
            'summary': self.summary(),
            'changes': [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Plan':
        if data.get('version', PLAN_VERSION) != PLAN_VERSION:
            raise ValidationError(f"Unsupported plan version: {data.get('version')}")
        return cls(
            changes=[PlannedChange.from_dict(c) for c in data.get('changes', [])],
            workspace=data.get('workspace', 'default'),
            state_serial=data.get('state_serial', 0),
            destroy=data.get('destroy', False),
        )

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved plan to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> 'Plan':
        """Load a saved plan.

        Raises:
            ValidationError: If the file is missing or malformed
        """
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"Plan file not found: {path}")
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid plan file {path}: {e}")
        return cls.from_dict(data)


def _check_fingerprints(store: StateStore, expected: Optional[dict[str, Optional[str]]]) -> None:
    store.verify()
    for address, fingerprint in (expected or {}).items():
        current = store.fingerprint(address)
        if current != fingerprint:
            raise ConflictError(
                f"Conflicting concurrent state for '{address}': "
                f"expected fingerprint {fingerprint}, found {current}",
                address=address,
            )


def _state_order(records: list[StateRecord]) -> list[StateRecord]:
    """Order records dependencies-first using their stored dependencies.

    Ties keep store order; anything left over (never expected) is appended.
    """
    by_address = {r.address: r for r in records}
    placed: set[str] = set()
    ordered: list[StateRecord] = []
    progress = True
    while progress and len(ordered) < len(records):
        progress = False
        for record in records:
            if record.address in placed:
                continue
            deps = [d for d in record.dependencies if d in by_address]
            if all(d in placed for d in deps):
                ordered.append(record)
                placed.add(record.address)
                progress = True
                break
    ordered.extend(r for r in records if r.address not in placed)
    return ordered


def _delete_changes(doomed: list[StateRecord], survivors: Iterable[StateRecord]) -> list[PlannedChange]:
    """Build delete changes, dependents first.

    A delete waits for deletes of records that depended on it and for
    changes to surviving resources that used to depend on it.
    """
    doomed_addresses = {r.address for r in doomed}
    users: dict[str, list[str]] = {r.address: [] for r in doomed}
    for record in list(doomed) + list(survivors):
        for dep in record.dependencies:
            if dep in doomed_addresses and record.address != dep:
                users[dep].append(record.address)

    changes = []
    for record in reversed(_state_order(doomed)):
        changes.append(PlannedChange(
            address=record.address,
            action=DELETE,
            diff=diff_attributes(record.attributes, None),
            prior=record,
            dependencies=tuple(users[record.address]),
        ))
    return changes


def compute_plan(
    graph: ResourceGraph,
    store: StateStore,
    expected_fingerprints: Optional[dict[str, Optional[str]]] = None,
    targets: Optional[list[str]] = None,
) -> Plan:
    """Diff the declared graph against stored state.

    Args:
        graph: Declared resources
        store: Current state
        expected_fingerprints: Fingerprints the caller believes are current
            (address -> fingerprint, None = absent)
        targets: Limit the plan to these addresses and their dependencies

    Returns:
        Plan with changes in execution order

    Raises:
        ConflictError: If state does not match its own or the expected fingerprints
        ValidationError: If a reference names an attribute that does not exist
        KeyError: If a target is not declared
    """
    _check_fingerprints(store, expected_fingerprints)

    if targets:
        graph = graph.extract(targets)

    planned: dict[str, tuple[str, dict, Optional[StateRecord]]] = {}

    def _lookup(ref: Reference) -> Any:
        action, desired, record = planned[ref.target]
        if ref.attribute == 'id':
            return UNKNOWN if action == CREATE else record.provider_id
        if ref.attribute in desired:
            return desired[ref.attribute]
        if action == NO_OP:
            return record.outputs[ref.attribute]
        # Outputs of resources being created or updated are recomputed
        return UNKNOWN

    changes: list[PlannedChange] = []
    for node in graph.topological_order():
        spec = node.spec
        record = store.get(spec.address)
        desired = resolve_references(spec, _lookup)

        if record is None:
            action = CREATE
            diff = diff_attributes(None, desired)
        else:
            diff = diff_attributes(record.attributes, desired)
            action = UPDATE if diff else NO_OP

        planned[spec.address] = (action, desired, record)
        changes.append(PlannedChange(
            address=spec.address,
            action=action,
            diff=diff,
            spec=spec,
            prior=record,
            dependencies=tuple(spec.dependencies),
        ))

    # Targets are always declared, so a targeted plan never deletes orphans
    if not targets:
        orphans = [r for r in store.records() if r.address not in graph]
        survivors = [r for r in store.records() if r.address in graph]
        changes.extend(_delete_changes(orphans, survivors))

    plan = Plan(changes=changes, workspace=store.workspace, state_serial=store.serial)
    counts = plan.summary()
    logger.info(
        f"Plan: {counts[CREATE]} to create, {counts[UPDATE]} to update, "
        f"{counts[DELETE]} to delete, {counts[NO_OP]} unchanged"
    )
    return plan


def compute_destroy_plan(store: StateStore, targets: Optional[list[str]] = None) -> Plan:
    """Plan deletion of every recorded resource (or targets and their dependents).

    Raises:
        ConflictError: If state does not match its fingerprints
        KeyError: If a target is not in state
    """
    _check_fingerprints(store, None)
    records = store.records()

    if targets:
        doomed_addresses: set[str] = set()
        for target in targets:
            if target not in store:
                raise KeyError(target)
            doomed_addresses.add(target)
        # Pull in everything that (transitively) depends on a target
        grew = True
        while grew:
            grew = False
            for record in records:
                if record.address not in doomed_addresses and \
                        any(d in doomed_addresses for d in record.dependencies):
                    doomed_addresses.add(record.address)
                    grew = True
        doomed = [r for r in records if r.address in doomed_addresses]
    else:
        doomed = records

    survivors = [r for r in records if r not in doomed]
    plan = Plan(
        changes=_delete_changes(doomed, survivors),
        workspace=store.workspace,
        state_serial=store.serial,
        destroy=True,
    )
    logger.info(f"Destroy plan: {len(plan.changes)} to delete")
    return plan
