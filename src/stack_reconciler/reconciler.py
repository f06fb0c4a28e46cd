from __future__ import annotations

import hashlib
import itertools
import logging
import threading
import time
import uuid
from collections import defaultdict, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Mapping

from .backoff import BackoffPolicy
from .diff import classify_change, field_deltas
from .errors import (
    ChangeSetConsumedError,
    ProviderError,
    ProvisioningTimeoutError,
    ReconcilerError,
    UnresolvedReferenceError,
)
from .graph import ResourceGraph
from .kinds import ResourceKind
from .models import (
    SECRET_DIGEST_KEY,
    ChangeAction,
    ChangeEntry,
    ChangeSet,
    DeposedResource,
    LifecycleState,
    OutputRef,
    ResourceNode,
    SecretRef,
    TimelineEvent,
)
from .providers import ProviderRegistry, ProviderStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Output board
# ---------------------------------------------------------------------------

class OutputBoard:
    """Computed outputs of nodes that reached Applied during the current run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._applied: dict[str, dict[str, Any]] = {}

    def publish(self, name: str, outputs: Mapping[str, Any]) -> None:
        with self._lock:
            self._applied[name] = dict(outputs)

    def read(self, ref: OutputRef) -> Any:
        with self._lock:
            outputs = self._applied.get(ref.node)
        if outputs is None:
            raise UnresolvedReferenceError(ref.node, ref.output, "node has not reached Applied")
        if ref.output not in outputs:
            raise UnresolvedReferenceError(ref.node, ref.output, "provider did not return this output")
        return outputs[ref.output]


def secret_digest(value: str) -> dict[str, str]:
    return {SECRET_DIGEST_KEY: hashlib.sha256(value.encode("utf-8")).hexdigest()}


def resolve_config(value: Any, board: OutputBoard, secrets: Mapping[str, str]) -> tuple[Any, Any]:
    """Resolve references in *value*.

    Returns:
        ``(plain, redacted)``: the configuration handed to the provider and the
        form persisted as applied configuration, with secrets replaced by
        their digest.
    """
    if isinstance(value, OutputRef):
        resolved = board.read(value)
        return resolved, resolved
    if isinstance(value, SecretRef):
        if value.name not in secrets:
            raise UnresolvedReferenceError(value.name, "$secret", "secret was not supplied")
        secret = secrets[value.name]
        return secret, secret_digest(secret)
    if isinstance(value, dict):
        plain: dict[str, Any] = {}
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            plain[key], redacted[key] = resolve_config(item, board, secrets)
        return plain, redacted
    if isinstance(value, (list, tuple)):
        pairs = [resolve_config(item, board, secrets) for item in value]
        return [p for p, _ in pairs], [r for _, r in pairs]
    return value, value


# ---------------------------------------------------------------------------
# Run bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class NodeOutcome:
    """Mutable per-run record of what happened to one node."""

    name: str
    kind: ResourceKind
    planned_action: ChangeAction
    effective_action: ChangeAction | None = None
    state: LifecycleState = LifecycleState.PENDING
    resource_id: str | None = None
    tainted_id: str | None = None
    declared_config: dict[str, Any] = field(default_factory=dict)
    applied_config: dict[str, Any] | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    error: ReconcilerError | None = None
    failed_seq: int | None = None
    skipped_because: str | None = None
    retire: list[DeposedResource] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)
    deleted: bool = False
    teardown_attempted: bool = False


@dataclass
class ExecutionResult:
    run_id: str
    changeset: ChangeSet
    outcomes: dict[str, NodeOutcome]
    timeline: list[TimelineEvent]
    canceled: bool = False
    halted: bool = False
    provider_calls: int = 0

    def failures(self) -> list[NodeOutcome]:
        failed = [outcome for outcome in self.outcomes.values() if outcome.error is not None]
        return sorted(failed, key=lambda outcome: outcome.failed_seq or 0)

    @property
    def success(self) -> bool:
        if self.canceled or self.halted or self.failures():
            return False
        return all(
            outcome.state == LifecycleState.APPLIED or outcome.deleted
            for outcome in self.outcomes.values()
        )


@dataclass
class _Operation:
    key: str
    node: str
    prereqs: set[str]
    run: Callable[[], bool]


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class Reconciler:
    """Walks the dependency graph and issues provider operations.

    Two waves run on a bounded worker pool. The apply wave creates, updates
    and replaces nodes in dependency order; the teardown wave deletes removed
    nodes and superseded instances in reverse dependency order. The
    eligibility frontier of each wave is only mutated under ``_frontier_lock``.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        parallelism: int = 4,
        fail_fast: bool = False,
        backoff: BackoffPolicy | None = None,
        transient_retries: int = 3,
        secrets: Mapping[str, str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got: {parallelism}")
        if transient_retries < 0:
            raise ValueError(f"transient_retries must be >= 0, got: {transient_retries}")
        self.registry = registry
        self.parallelism = parallelism
        self.fail_fast = fail_fast
        self.backoff = backoff if backoff is not None else BackoffPolicy()
        self.transient_retries = transient_retries
        self.secrets = dict(secrets or {})
        self._sleep = sleep
        self._clock = clock
        self._frontier_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def execute(
        self,
        changeset: ChangeSet,
        graph: ResourceGraph,
        *,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        """Execute *changeset* against the provider.

        Never raises for provider failures: they are contained per node and
        reported in the returned ``ExecutionResult``.

        Raises:
            ChangeSetConsumedError: If this changeset was already executed.
            ValueError: If the changeset does not match the graph.
        """
        missing = [name for name in graph.nodes if changeset.entry(name) is None]
        if missing:
            raise ValueError(f"ChangeSet {changeset.changeset_id} has no entry for: {', '.join(sorted(missing))}")
        if not changeset.claim():
            raise ChangeSetConsumedError(changeset.changeset_id)

        run = _Run(
            reconciler=self,
            changeset=changeset,
            graph=graph,
            cancel_event=cancel_event if cancel_event is not None else threading.Event(),
        )
        return run.execute()

    # ------------------------------------------------------------------
    # Wave scheduler
    # ------------------------------------------------------------------

    def _run_wave(
        self,
        operations: dict[str, _Operation],
        *,
        should_stop: Callable[[], bool],
        on_failure: Callable[[_Operation, list[_Operation]], None],
    ) -> set[str]:
        """Run *operations* respecting their prerequisites. Returns the keys that were started."""
        waiting = {key: set(op.prereqs) & operations.keys() for key, op in operations.items()}
        dependents: dict[str, list[str]] = defaultdict(list)
        for key, prereqs in waiting.items():
            for prereq in prereqs:
                dependents[prereq].append(key)

        ready: deque[str] = deque(key for key in operations if not waiting[key])
        claimed: set[str] = set()
        blocked: set[str] = set()
        running: dict[Future[bool], str] = {}

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="reconcile") as pool:
            while True:
                with self._frontier_lock:
                    while ready and len(running) < self.parallelism and not should_stop():
                        key = ready.popleft()
                        if key in claimed or key in blocked:
                            continue
                        claimed.add(key)
                        running[pool.submit(operations[key].run)] = key
                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    key = running.pop(future)
                    succeeded = future.result()
                    with self._frontier_lock:
                        if succeeded:
                            for nxt in dependents[key]:
                                waiting[nxt].discard(key)
                                if not waiting[nxt] and nxt not in claimed and nxt not in blocked:
                                    ready.append(nxt)
                            continue
                        downstream: list[_Operation] = []
                        queue: deque[str] = deque(dependents[key])
                        while queue:
                            current = queue.popleft()
                            if current in blocked or current in claimed:
                                continue
                            blocked.add(current)
                            downstream.append(operations[current])
                            queue.extend(dependents[current])
                    on_failure(operations[key], downstream)
        return claimed


class _Run:
    """State of one ``Reconciler.execute`` call."""

    def __init__(
        self,
        *,
        reconciler: Reconciler,
        changeset: ChangeSet,
        graph: ResourceGraph,
        cancel_event: threading.Event,
    ) -> None:
        self.reconciler = reconciler
        self.registry = reconciler.registry
        self.backoff = reconciler.backoff
        self.changeset = changeset
        self.graph = graph
        self.cancel_event = cancel_event
        self.halt_event = threading.Event()
        self.board = OutputBoard()
        self.run_id = f"RUN-{uuid.uuid4().hex[:12]}"
        self._seq = itertools.count(1)
        self._timeline: list[TimelineEvent] = []
        self._timeline_lock = threading.Lock()
        self._calls = 0
        self.outcomes: dict[str, NodeOutcome] = {}
        for entry in changeset.entries:
            node = graph.nodes.get(entry.name)
            self.outcomes[entry.name] = NodeOutcome(
                name=entry.name,
                kind=entry.kind,
                planned_action=entry.action,
                declared_config=node.wire_config if node is not None else {},
            )

    # ------------------------------------------------------------------
    # bookkeeping
    # ------------------------------------------------------------------

    def _event(self, node: str, event: str, resource_id: str | None = None) -> int:
        with self._timeline_lock:
            seq = next(self._seq)
            self._timeline.append(
                TimelineEvent(seq=seq, node=node, event=event, resource_id=resource_id, at=datetime.now(UTC))
            )
            return seq

    def _should_stop(self) -> bool:
        return self.cancel_event.is_set() or self.halt_event.is_set()

    def _fail(self, outcome: NodeOutcome, error: ReconcilerError) -> bool:
        if outcome.error is None:
            outcome.error = error
            outcome.failed_seq = self._event(outcome.name, "failed", outcome.resource_id or outcome.tainted_id)
        return False

    def _on_failure(self, failed: _Operation, downstream: list[_Operation]) -> None:
        for op in downstream:
            outcome = self.outcomes[op.node]
            if outcome.skipped_because is None:
                outcome.skipped_because = failed.node
            self._event(op.node, "skipped")
            logger.warning("Skipping %s: dependency %s failed", op.key, failed.node)
        if self.reconciler.fail_fast and not self.halt_event.is_set():
            logger.error("Fail-fast: halting scheduling after failure of %s", failed.key)
            self.halt_event.set()

    # ------------------------------------------------------------------
    # provider calls
    # ------------------------------------------------------------------

    def _call(self, kind: ResourceKind, operation: str, *args: Any) -> Any:
        client = self.registry.client_for(kind)
        fn = getattr(client, operation)
        attempt = 0
        while True:
            with self._timeline_lock:
                self._calls += 1
            try:
                return self.registry.call(kind, operation, fn, *args)
            except ProviderError as exc:
                if not exc.transient or attempt >= self.reconciler.transient_retries:
                    raise
                delay = self.backoff.next_delay(attempt)
                attempt += 1
                logger.warning(
                    "Transient %s.%s failure (attempt %d/%d), retrying in %.2fs: %s",
                    kind.value,
                    operation,
                    attempt,
                    self.reconciler.transient_retries,
                    delay,
                    exc,
                )
                self.reconciler._sleep(delay)

    def _await(self, kind: ResourceKind, resource_id: str, operation: str) -> None:
        """Poll ``describe`` with bounded exponential backoff until a terminal status.

        A delete is complete only once the resource is ``NOT_FOUND``. The last
        poll happens at the ``max_wait`` ceiling; only a resource still in
        progress then is timed out.
        """
        clock = self.reconciler._clock
        started = clock()
        attempt = 0
        while True:
            status: ProviderStatus = self._call(kind, "describe", resource_id)
            if status == ProviderStatus.NOT_FOUND:
                if operation == "delete":
                    return
                raise ProviderError(
                    f"{kind.value} resource {resource_id} disappeared during {operation}",
                    kind=kind.value,
                    operation=operation,
                )
            if status == ProviderStatus.FAILED:
                raise ProviderError(
                    f"{kind.value} resource {resource_id} reported FAILED during {operation}",
                    kind=kind.value,
                    operation=operation,
                )
            if status == ProviderStatus.SUCCEEDED and operation != "delete":
                return

            elapsed = clock() - started
            if elapsed >= self.backoff.max_wait:
                raise ProvisioningTimeoutError(resource_id, elapsed, kind=kind.value)
            delay = min(self.backoff.next_delay(attempt), self.backoff.max_wait - elapsed)
            attempt += 1
            logger.debug("%s %s still in progress, polling again in %.2fs", kind.value, resource_id, delay)
            self.reconciler._sleep(delay)

    # ------------------------------------------------------------------
    # apply wave
    # ------------------------------------------------------------------

    def _apply(self, node: ResourceNode, entry: ChangeEntry) -> bool:
        outcome = self.outcomes[node.name]
        outcome.state = LifecycleState.APPLYING
        self._event(node.name, "apply_started")
        try:
            self._apply_node(node, entry, outcome)
        except ReconcilerError as exc:
            outcome.state = LifecycleState.FAILED
            logger.error("Apply of %s (%s) failed: %s", node.name, node.kind.value, exc)
            return self._fail(outcome, exc)
        except Exception as exc:  # noqa: BLE001 - contained per node; recorded in the report.
            outcome.state = LifecycleState.FAILED
            logger.exception("Unexpected error applying %s", node.name)
            return self._fail(outcome, ReconcilerError(f"unexpected error applying {node.name}: {exc}"))

        outcome.state = LifecycleState.APPLIED
        self.board.publish(node.name, outcome.outputs)
        self._event(node.name, "applied", outcome.resource_id)
        return True

    def _apply_node(self, node: ResourceNode, entry: ChangeEntry, outcome: NodeOutcome) -> None:
        plain, redacted = resolve_config(node.config, self.board, self.reconciler.secrets)
        prior = entry.prior
        action = entry.action
        policy = self.registry.registration(node.kind).policy

        if action in (ChangeAction.NOOP, ChangeAction.UPDATE_IN_PLACE) and prior is not None:
            deltas = field_deltas(prior.applied_config, redacted)
            if prior.lifecycle == LifecycleState.FAILED:
                fields = sorted(set(redacted) | {item.field for item in deltas})
                if policy.requires_replace(item.field for item in deltas):
                    action = ChangeAction.REPLACE
                else:
                    action = ChangeAction.UPDATE_IN_PLACE
            else:
                fields = [item.field for item in deltas]
                action = classify_change(policy, deltas)
            if action == ChangeAction.UPDATE_IN_PLACE:
                outcome.effective_action = action
                outcome.resource_id = prior.resource_id
                logger.info("Updating %s in place (fields: %s)", node.name, ", ".join(fields) or "all")
                outputs = self._call(node.kind, "update", prior.resource_id, {name: plain.get(name) for name in fields})
                self._await(node.kind, prior.resource_id, "update")
                outcome.outputs = {**prior.outputs, **(outputs or {})}
                outcome.applied_config = redacted
                return
            if action == ChangeAction.NOOP:
                outcome.effective_action = action
                outcome.resource_id = prior.resource_id
                outcome.outputs = dict(prior.outputs)
                outcome.applied_config = prior.applied_config
                return
            logger.info("Change to %s requires replacement", node.name)

        outcome.effective_action = action
        logger.info("%s %s (%s)", "Replacing" if action == ChangeAction.REPLACE else "Creating", node.name, node.kind.value)
        resource_id, outputs = self._call(node.kind, "create", plain)
        outcome.tainted_id = resource_id
        self._await(node.kind, resource_id, "create")
        outcome.tainted_id = None
        outcome.resource_id = resource_id
        outcome.outputs = dict(outputs or {})
        outcome.applied_config = redacted
        if prior is not None and prior.resource_id and prior.resource_id != resource_id:
            outcome.retire.append(DeposedResource(resource_id=prior.resource_id, kind=prior.kind))

    # ------------------------------------------------------------------
    # teardown wave
    # ------------------------------------------------------------------

    def _teardown(self, name: str, targets: list[DeposedResource]) -> bool:
        outcome = self.outcomes[name]
        outcome.teardown_attempted = True
        removing = outcome.planned_action == ChangeAction.DELETE
        if removing:
            outcome.effective_action = ChangeAction.DELETE
            outcome.state = LifecycleState.APPLYING
        for target in targets:
            self._event(name, "delete_started", target.resource_id)
            try:
                logger.info("Deleting %s instance %s", name, target.resource_id)
                self._call(target.kind, "delete", target.resource_id)
                self._await(target.kind, target.resource_id, "delete")
            except ReconcilerError as exc:
                logger.error("Delete of %s instance %s failed: %s", name, target.resource_id, exc)
                if removing:
                    outcome.state = LifecycleState.FAILED
                return self._fail(outcome, exc)
            except Exception as exc:  # noqa: BLE001 - contained per node; recorded in the report.
                logger.exception("Unexpected error deleting %s instance %s", name, target.resource_id)
                if removing:
                    outcome.state = LifecycleState.FAILED
                return self._fail(outcome, ReconcilerError(f"unexpected error deleting {name}: {exc}"))
            outcome.retired.append(target.resource_id)
            self._event(name, "deleted", target.resource_id)
        if removing:
            outcome.deleted = True
            outcome.state = LifecycleState.APPLIED
        return True

    def _teardown_targets(self, entry: ChangeEntry) -> list[DeposedResource]:
        outcome = self.outcomes[entry.name]
        targets: list[DeposedResource] = []
        if entry.action == ChangeAction.DELETE and entry.prior is not None and entry.prior.resource_id:
            targets.append(DeposedResource(resource_id=entry.prior.resource_id, kind=entry.prior.kind))
        targets.extend(outcome.retire)
        targets.extend(entry.deposed)
        seen: set[str] = set()
        unique: list[DeposedResource] = []
        for target in targets:
            if target.resource_id not in seen:
                seen.add(target.resource_id)
                unique.append(target)
        return unique

    def _teardown_blocker(self, entry: ChangeEntry) -> str | None:
        """Name of a node whose failed migration keeps *entry*'s old instances referenced."""
        if entry.name in self.graph and self.outcomes[entry.name].state != LifecycleState.APPLIED:
            return entry.name
        for other in self.changeset.entries:
            if other.name == entry.name or other.name not in self.graph:
                continue
            depended_before = other.prior is not None and entry.name in other.prior.dependencies
            if depended_before or entry.name in self.graph.dependencies_of(other.name):
                if self.outcomes[other.name].state != LifecycleState.APPLIED:
                    return other.name
        return None

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def execute(self) -> ExecutionResult:
        logger.info(
            "Reconciling stack %s with changeset %s (parallelism=%d, fail_fast=%s)",
            self.changeset.stack,
            self.changeset.changeset_id,
            self.reconciler.parallelism,
            self.reconciler.fail_fast,
        )
        apply_ops: dict[str, _Operation] = {}
        for name in self.graph.topological_order():
            node = self.graph.node(name)
            entry = self.changeset.entry(name)
            apply_ops[f"apply:{name}"] = _Operation(
                key=f"apply:{name}",
                node=name,
                prereqs={f"apply:{dep}" for dep in node.dependencies},
                run=lambda node=node, entry=entry: self._apply(node, entry),
            )
        self.reconciler._run_wave(apply_ops, should_stop=self._should_stop, on_failure=self._on_failure)

        if not self._should_stop():
            self._run_teardown()

        canceled = self.cancel_event.is_set()
        if canceled:
            logger.warning("Reconciliation of %s canceled; unstarted nodes left pending", self.changeset.stack)
        return ExecutionResult(
            run_id=self.run_id,
            changeset=self.changeset,
            outcomes=self.outcomes,
            timeline=sorted(self._timeline, key=lambda event: event.seq),
            canceled=canceled,
            halted=self.halt_event.is_set(),
            provider_calls=self._calls,
        )

    def _held_back(self, pending: Mapping[str, list[DeposedResource]]) -> dict[str, str]:
        """Map each teardown that must wait to the node holding it back.

        A held-back instance keeps everything it depended on alive, so the
        hold spreads along prior dependencies until nothing changes.
        """
        held: dict[str, str] = {}
        for name in pending:
            blocker = self._teardown_blocker(self.changeset.entry(name))
            if blocker is not None:
                held[name] = blocker
                logger.warning("Not deleting old instances of %s: %s did not reach Applied", name, blocker)

        frontier = list(held)
        while frontier:
            holder = frontier.pop()
            prior = self.changeset.entry(holder).prior
            for dep in prior.dependencies if prior is not None else ():
                if dep in pending and dep not in held:
                    held[dep] = holder
                    frontier.append(dep)
                    logger.warning("Not deleting old instances of %s: still used by kept instances of %s", dep, holder)
        return held

    def _run_teardown(self) -> None:
        pending: dict[str, list[DeposedResource]] = {}
        for entry in self.changeset.entries:
            targets = self._teardown_targets(entry)
            if targets:
                pending[entry.name] = targets
            elif entry.action == ChangeAction.DELETE:
                # Nothing the provider ever confirmed: drop the record.
                outcome = self.outcomes[entry.name]
                outcome.deleted = True
                outcome.effective_action = ChangeAction.DELETE
                outcome.state = LifecycleState.APPLIED

        held = self._held_back(pending)
        for name, blocker in held.items():
            if blocker == name:
                continue
            outcome = self.outcomes[name]
            if outcome.skipped_because is None:
                outcome.skipped_because = blocker
            self._event(name, "skipped")

        teardown_ops: dict[str, _Operation] = {}
        for entry in self.changeset.entries:
            targets = pending.get(entry.name)
            if targets is None or entry.name in held:
                continue
            teardown_ops[f"teardown:{entry.name}"] = _Operation(
                key=f"teardown:{entry.name}",
                node=entry.name,
                prereqs=set(),
                run=lambda name=entry.name, targets=targets: self._teardown(name, targets),
            )

        # Reverse dependency order: a node's old instance goes only after everything that used it.
        for entry in self.changeset.entries:
            key = f"teardown:{entry.name}"
            if key not in teardown_ops:
                continue
            for other in self.changeset.entries:
                other_key = f"teardown:{other.name}"
                if other_key == key or other_key not in teardown_ops:
                    continue
                if other.prior is not None and entry.name in other.prior.dependencies:
                    teardown_ops[key].prereqs.add(other_key)

        if teardown_ops:
            self.reconciler._run_wave(teardown_ops, should_stop=self._should_stop, on_failure=self._on_failure)
