"""Plan executor for resource provisioning.

Applies a Plan through provider capabilities. Changes run on a thread pool
as soon as every change they depend on has committed state, so
independent subgraphs proceed concurrently.

Failure handling:
- Transient provider errors are retried with exponential backoff up to
  the retry policy's attempt limit.
- Any other failure fails that change; changes depending on it are marked
  blocked and never started. Unrelated branches continue.
- Nothing already applied is rolled back. A partial apply is reported as
  such and the state store reflects exactly what was acknowledged.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from config import RetryPolicy
from engine.differ import CREATE, DELETE, NO_OP, Plan, PlannedChange, resolve_references
from engine.errors import ConflictError, EngineError, TransientProviderError, ValidationError
from engine.outcome import APPLIED, BLOCKED, FAILED, PENDING, ApplyResult, ChangeOutcome
from engine.state import StateRecord, StateStore
from providers import ProviderRegistry
from resources import SECRET_PREFIX, Reference, find_references, substitute
from secret_store import SecretNotFound, SecretStore

logger = logging.getLogger(__name__)


@dataclass
class Executor:
    """Applies plans against providers and commits results to the state store.

    Attributes:
        registry: Provider capability lookup table
        store: State store shared with the differ
        secrets: Secret store for ${secret.*} references (None = no secrets)
        retry: Backoff policy for transient provider errors
        max_workers: Maximum concurrent provider calls
    """
    registry: ProviderRegistry
    store: StateStore
    secrets: Optional[SecretStore] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    max_workers: int = 4
    _cancelled: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def cancel(self) -> None:
        """Stop scheduling new changes; in-flight provider calls finish."""
        if not self._cancelled.is_set():
            logger.warning("Cancellation requested: no new changes will start")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def apply(self, plan: Plan) -> ApplyResult:
        """Apply a plan.

        Returns:
            ApplyResult with per-change outcomes and the resulting state

        Raises:
            ConflictError: If state changed since the plan was made (nothing applied)
            ValidationError: If a change has no registered provider (nothing applied)
        """
        result = ApplyResult(plan.workspace)
        result.start()
        for change in plan.changes:
            result.add(change.address, change.action)

        self._preflight(plan)

        changes = {c.address: c for c in plan.changes}
        order = [c.address for c in plan.changes]
        # Dependencies outside the plan are already committed
        deps = {c.address: [d for d in c.dependencies if d in changes] for c in plan.changes}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            running: dict[Future, str] = {}
            while True:
                self._block_dependents(order, deps, result)

                if not self.cancelled:
                    for address in order:
                        outcome = result.get(address)
                        if outcome.status != PENDING:
                            continue
                        if all(result.get(d).status == APPLIED for d in deps[address]):
                            outcome.start()
                            future = pool.submit(self._run_change, changes[address], outcome)
                            running[future] = address

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    running.pop(future)
                    future.result()

        for outcome in result.with_status(PENDING):
            outcome.cancel()
        result.cancelled = self.cancelled
        result.records = self.store.records()
        result.finish()

        counts = result.counts()
        if result.success:
            logger.info(f"Apply complete: {counts.get(APPLIED, 0)} changes applied")
        else:
            logger.error(
                f"Apply incomplete: {counts.get(APPLIED, 0)} applied, "
                f"{counts.get(FAILED, 0)} failed, {counts.get(BLOCKED, 0)} blocked, "
                f"{counts.get('cancelled', 0)} cancelled"
            )
        return result

    def _preflight(self, plan: Plan) -> None:
        """Reject stale or unrunnable plans before any mutation."""
        for change in plan.changes:
            current = self.store.fingerprint(change.address)
            if current != change.prior_fingerprint:
                raise ConflictError(
                    f"Plan is stale: state for '{change.address}' changed since planning "
                    f"(planned against {change.prior_fingerprint}, found {current})",
                    address=change.address,
                )
            if change.action != NO_OP:
                self.registry.get(change.provider, change.type, change.address)

    def _block_dependents(self, order: list[str], deps: dict[str, list[str]],
                          result: ApplyResult) -> None:
        """Mark pending changes whose dependencies failed (transitively) as blocked."""
        changed = True
        while changed:
            changed = False
            for address in order:
                outcome = result.get(address)
                if outcome.status != PENDING:
                    continue
                for dep in deps[address]:
                    if result.get(dep).status in (FAILED, BLOCKED):
                        outcome.block(dep)
                        logger.warning(f"[{address}] blocked: dependency '{dep}' did not apply")
                        changed = True
                        break

    def _run_change(self, change: PlannedChange, outcome: ChangeOutcome) -> None:
        """Apply one change; all failures are recorded on the outcome."""
        try:
            # Queued before cancellation but not yet started
            if self.cancelled:
                outcome.cancel()
                return
            if change.action == NO_OP:
                self._sync_dependencies(change)
                outcome.complete()
                return

            capability = self.registry.get(change.provider, change.type, change.address)
            logger.info(f"[{change.action}] {change.address}")

            if change.action == DELETE:
                self._call(outcome, capability.delete, change.type, change.prior.provider_id)
                self.store.delete(change.address, expected_fingerprint=change.prior_fingerprint)
            else:
                spec = change.spec
                attributes = self._resolve(change)
                payload = self._reveal(change, attributes)
                if change.action == CREATE:
                    response = self._call(outcome, capability.create, change.type, payload)
                else:
                    response = self._call(outcome, capability.update, change.type,
                                          change.prior.provider_id, payload)
                self.store.put(
                    StateRecord(
                        address=change.address,
                        provider=spec.provider,
                        type=spec.type,
                        name=spec.name,
                        provider_id=response.provider_id,
                        attributes=attributes,
                        outputs=response.outputs,
                        dependencies=tuple(spec.dependencies),
                    ),
                    expected_fingerprint=change.prior_fingerprint,
                )

            outcome.complete()
            logger.info(f"[{change.action}] {change.address} complete "
                        f"({outcome.attempts} attempt{'s' if outcome.attempts != 1 else ''})")
        except EngineError as e:
            if e.address is None:
                e.address = change.address
            outcome.fail(e.message, type(e).__name__)
            logger.error(f"[{change.action}] {change.address} failed: {e.message}")
        except Exception as e:
            logger.exception(f"[{change.action}] {change.address} raised unexpectedly")
            outcome.fail(str(e), type(e).__name__)

    def _sync_dependencies(self, change: PlannedChange) -> None:
        """Record current dependencies for an unchanged resource.

        Delete ordering reads dependencies from state, so a resource that
        gained or lost a dependency without an attribute change is rewritten
        with no provider call.
        """
        if change.spec is None or change.prior is None:
            return
        dependencies = tuple(change.spec.dependencies)
        if dependencies == change.prior.dependencies:
            return
        self.store.put(replace(change.prior, dependencies=dependencies),
                       expected_fingerprint=change.prior_fingerprint)
        logger.info(f"[{change.action}] {change.address} dependencies now "
                    f"{', '.join(dependencies) or 'none'}")

    def _resolve(self, change: PlannedChange) -> dict:
        """Resolve references against committed dependency state."""
        def _lookup(ref: Reference) -> Any:
            record = self.store.get(ref.target)
            if record is None:
                raise KeyError(ref.target)
            return record.lookup(ref.attribute)

        return resolve_references(change.spec, _lookup)

    def _reveal(self, change: PlannedChange, attributes: dict) -> dict:
        """Substitute secrets for the provider call only."""
        if not any(r.kind == SECRET_PREFIX for r in find_references(attributes)):
            return attributes
        if self.secrets is None:
            raise ValidationError(f"'{change.address}' references secrets but no secret store is configured",
                                  address=change.address)
        try:
            return self.secrets.reveal(attributes)
        except SecretNotFound as e:
            raise ValidationError(f"'{change.address}' references unknown secret {e}",
                                  address=change.address)

    def _call(self, outcome: ChangeOutcome, fn: Callable, *args: Any) -> Any:
        """Call a provider capability, retrying transient errors with backoff."""
        attempt = 0
        while True:
            attempt += 1
            outcome.attempts = attempt
            try:
                return fn(*args)
            except TransientProviderError as e:
                if attempt >= self.retry.max_attempts:
                    raise TransientProviderError(
                        f"{e.message} (gave up after {attempt} attempts)",
                        address=outcome.address,
                    )
                delay = self.retry.delay(attempt)
                logger.warning(
                    f"[{outcome.address}] transient error: {e.message}; "
                    f"retry {attempt}/{self.retry.max_attempts - 1} in {delay:.1f}s"
                )
                time.sleep(delay)

    def refresh(self) -> dict[str, list[str]]:
        """Reconcile state with what providers report.

        Resources that no longer exist are dropped from state so the next
        plan recreates them. Remote attribute values replace stored ones so
        drift shows up as an update. Attributes holding secret placeholders
        are left alone.

        Returns:
            {'unchanged': [...], 'drifted': [...], 'removed': [...]}
        """
        summary: dict[str, list[str]] = {'unchanged': [], 'drifted': [], 'removed': []}
        for record in self.store.records():
            capability = self.registry.get(record.provider, record.type, record.address)
            outcome = ChangeOutcome(address=record.address, action='refresh')
            remote = self._call(outcome, capability.read, record.type, record.provider_id)

            if remote is None:
                logger.warning(f"[refresh] {record.address} ({record.provider_id}) no longer exists")
                self.store.delete(record.address, expected_fingerprint=record.fingerprint)
                summary['removed'].append(record.address)
                continue

            attributes = dict(record.attributes)
            for key, value in record.attributes.items():
                if key in remote and not find_references(value) and remote[key] != value:
                    logger.info(f"[refresh] {record.address}.{key} drifted: {value!r} -> {remote[key]!r}")
                    attributes[key] = remote[key]

            if attributes != record.attributes:
                self.store.put(replace(record, attributes=attributes),
                               expected_fingerprint=record.fingerprint)
                summary['drifted'].append(record.address)
            else:
                summary['unchanged'].append(record.address)
        return summary


def resolve_outputs(outputs: dict, store: StateStore) -> dict:
    """Resolve document outputs against committed state.

    Raises:
        ValidationError: If an output references a resource or attribute
            that is not in state
    """
    resolved: dict[str, Any] = {}
    for name, expression in outputs.items():
        def _lookup(ref: Reference) -> Any:
            if ref.kind == SECRET_PREFIX:
                raise ValidationError(f"Output '{name}' must not reference secrets")
            record = store.get(ref.target)
            if record is None:
                raise ValidationError(f"Output '{name}' references '{ref.target}' which is not in state",
                                      address=ref.target)
            try:
                return record.lookup(ref.attribute)
            except KeyError:
                raise ValidationError(
                    f"Output '{name}' references unknown attribute '{ref.attribute}' of '{ref.target}'",
                    address=ref.target,
                )

        resolved[name] = substitute(expression, _lookup)
    return resolved
