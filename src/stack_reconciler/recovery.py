"""Turn the outcome of a reconcile run into the next persisted snapshot and a report.

The controller is forward-only: a failed node keeps its last confirmed state
so that the next run can pick up where this one stopped. Rolling back is an
explicit engine operation that reapplies an earlier revision.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from .canonical import canonical_equal
from .graph import ResourceGraph
from .models import (
    AppliedRevision,
    ChangeAction,
    ChangeEntry,
    DeposedResource,
    FailureSummary,
    LifecycleState,
    NodeReport,
    NodeState,
    ReconcileReport,
    StackSnapshot,
)
from .reconciler import ExecutionResult, NodeOutcome

logger = logging.getLogger(__name__)


def _merge_deposed(
    existing: list[DeposedResource],
    added: list[DeposedResource],
    retired: list[str],
) -> list[DeposedResource]:
    merged: list[DeposedResource] = []
    seen: set[str] = set(retired)
    for item in [*existing, *added]:
        if item.resource_id in seen:
            continue
        seen.add(item.resource_id)
        merged.append(item)
    return merged


class RecoveryController:
    """Classify per-node outcomes and build the snapshot that records them."""

    def __init__(self, history_limit: int = 20) -> None:
        if history_limit < 1:
            raise ValueError(f"history_limit must be >= 1, got: {history_limit}")
        self.history_limit = history_limit

    # ------------------------------------------------------------------
    # Per-node state transitions
    # ------------------------------------------------------------------

    def _applied_state(
        self,
        entry: ChangeEntry,
        outcome: NodeOutcome,
        graph: ResourceGraph,
        serial: int,
        now: datetime,
    ) -> NodeState:
        node = graph.node(entry.name)
        prior = entry.prior
        history = list(prior.history) if prior is not None else []
        if outcome.effective_action != ChangeAction.NOOP or not history:
            history.append(
                AppliedRevision(
                    serial=serial,
                    resource_id=outcome.resource_id or "",
                    applied_config=outcome.applied_config or {},
                    outputs=dict(outcome.outputs),
                    applied_at=now,
                )
            )
        return NodeState(
            kind=node.kind,
            lifecycle=LifecycleState.APPLIED,
            resource_id=outcome.resource_id,
            declared_config=outcome.declared_config,
            applied_config=outcome.applied_config,
            outputs=dict(outcome.outputs),
            dependencies=list(node.dependencies),
            depends_on=list(node.depends_on),
            deposed=_merge_deposed(list(entry.deposed), outcome.retire, outcome.retired),
            history=history[-self.history_limit :],
        )

    def _failed_state(self, entry: ChangeEntry, outcome: NodeOutcome, graph: ResourceGraph) -> NodeState:
        node = graph.node(entry.name)
        prior = entry.prior
        if prior is None:
            # Never confirmed: remember the tainted id so the next run replaces it.
            return NodeState(
                kind=node.kind,
                lifecycle=LifecycleState.FAILED,
                resource_id=outcome.tainted_id,
                declared_config=outcome.declared_config,
                applied_config=None,
                dependencies=list(node.dependencies),
                depends_on=list(node.depends_on),
            )

        tainted: list[DeposedResource] = []
        if outcome.tainted_id and outcome.tainted_id != prior.resource_id:
            tainted.append(DeposedResource(resource_id=outcome.tainted_id, kind=node.kind))
        return prior.model_copy(
            update={
                "lifecycle": LifecycleState.FAILED,
                "deposed": _merge_deposed(list(prior.deposed), tainted, outcome.retired),
            }
        )

    def _removed_state(self, entry: ChangeEntry, outcome: NodeOutcome) -> NodeState | None:
        prior = entry.prior
        if outcome.deleted or prior is None:
            return None
        update: dict[str, object] = {"deposed": _merge_deposed(list(prior.deposed), [], outcome.retired)}
        if prior.resource_id is not None and prior.resource_id in outcome.retired:
            update.update(resource_id=None, applied_config=None)
        return prior.model_copy(update=update)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def finalize(
        self,
        prior_snapshot: StackSnapshot,
        graph: ResourceGraph,
        result: ExecutionResult,
        *,
        started_at: datetime | None = None,
        rollback: bool = False,
    ) -> tuple[StackSnapshot, ReconcileReport, bool]:
        """Build the next snapshot and the run report.

        Returns:
            ``(snapshot, report, changed)``. ``changed`` is False when the
            snapshot's nodes are identical to ``prior_snapshot``; the serial is
            only advanced when something changed.
        """
        now = datetime.now(UTC)
        changeset = result.changeset
        next_serial = prior_snapshot.serial + 1
        nodes: dict[str, NodeState] = dict(prior_snapshot.nodes)

        for entry in changeset.entries:
            outcome = result.outcomes[entry.name]
            if entry.action == ChangeAction.DELETE and entry.name not in graph:
                state = self._removed_state(entry, outcome)
            elif outcome.state == LifecycleState.APPLIED:
                state = self._applied_state(entry, outcome, graph, next_serial, now)
            elif outcome.state == LifecycleState.FAILED:
                state = self._failed_state(entry, outcome, graph)
            else:
                state = entry.prior
            if state is None:
                nodes.pop(entry.name, None)
            else:
                nodes[entry.name] = state

        changed = not canonical_equal(
            {name: state.model_dump(mode="json") for name, state in nodes.items()},
            {name: state.model_dump(mode="json") for name, state in prior_snapshot.nodes.items()},
        )
        if changed:
            snapshot = StackSnapshot(stack=prior_snapshot.stack, serial=next_serial, updated_at=now, nodes=nodes)
        else:
            snapshot = prior_snapshot

        report = self._report(prior_snapshot, snapshot, result, started_at or now, now, rollback)
        failed = [item.name for item in report.nodes if item.state == LifecycleState.FAILED]
        logger.info(
            "Run %s on stack %s finished: success=%s, serial %d -> %d, failed=%s, skipped=%s",
            result.run_id,
            snapshot.stack,
            report.success,
            prior_snapshot.serial,
            snapshot.serial,
            failed or "none",
            report.skipped or "none",
        )
        return snapshot, report, changed

    def _report(
        self,
        prior_snapshot: StackSnapshot,
        snapshot: StackSnapshot,
        result: ExecutionResult,
        started_at: datetime,
        finished_at: datetime,
        rollback: bool,
    ) -> ReconcileReport:
        node_reports: list[NodeReport] = []
        skipped: list[str] = []
        for entry in result.changeset.entries:
            outcome = result.outcomes[entry.name]
            state = outcome.state
            if (
                rollback
                and state == LifecycleState.APPLIED
                and outcome.effective_action not in (None, ChangeAction.NOOP)
            ):
                state = LifecycleState.ROLLED_BACK
            if outcome.skipped_because is not None:
                skipped.append(entry.name)
            node_reports.append(
                NodeReport(
                    name=entry.name,
                    kind=entry.kind,
                    planned_action=entry.action,
                    effective_action=outcome.effective_action,
                    state=state,
                    resource_id=outcome.resource_id or outcome.tainted_id,
                    error=str(outcome.error) if outcome.error is not None else None,
                    skipped_because=outcome.skipped_because,
                )
            )

        first_failure = None
        failures = result.failures()
        if failures:
            error = failures[0].error
            first_failure = FailureSummary(
                node=failures[0].name,
                error_type=type(error).__name__,
                message=str(error),
                transient=bool(getattr(error, "transient", False)),
            )

        return ReconcileReport(
            run_id=result.run_id,
            stack=snapshot.stack,
            success=result.success,
            canceled=result.canceled,
            rollback=rollback,
            base_serial=prior_snapshot.serial,
            serial=snapshot.serial,
            started_at=started_at,
            finished_at=finished_at,
            nodes=node_reports,
            first_failure=first_failure,
            skipped=skipped,
            timeline=list(result.timeline),
            provider_calls=result.provider_calls,
        )
