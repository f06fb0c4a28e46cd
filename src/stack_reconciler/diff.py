"""Diff engine: classify each node of a desired graph against the stored snapshot."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping

from .canonical import canonical_equal
from .graph import ResourceGraph
from .kinds import DEFAULT_POLICIES, KindPolicy, ResourceKind, policy_for
from .models import ChangeAction, ChangeEntry, ChangeSet, FieldDelta, LifecycleState, NodeState, StackSnapshot

logger = logging.getLogger(__name__)

_MISSING: Any = None


def field_deltas(old: Mapping[str, Any] | None, new: Mapping[str, Any]) -> tuple[FieldDelta, ...]:
    """Top-level field differences between two configurations, sorted by field name.

    A field removed from *new* is reported with ``new=None``.
    """
    previous = dict(old or {})
    deltas: list[FieldDelta] = []
    for name in sorted(set(previous) | set(new)):
        before = previous.get(name, _MISSING)
        after = new.get(name, _MISSING)
        if name in previous and name in new and canonical_equal(before, after):
            continue
        deltas.append(FieldDelta(field=name, old=before, new=after))
    return tuple(deltas)


def classify_change(policy: KindPolicy, deltas: tuple[FieldDelta, ...]) -> ChangeAction:
    """Pick UpdateInPlace or Replace for a non-empty delta.

    A field the policy lists neither as updatable nor as replace-on is
    ambiguous and resolves to Replace.
    """
    if not deltas:
        return ChangeAction.NOOP
    if policy.requires_replace(item.field for item in deltas):
        return ChangeAction.REPLACE
    return ChangeAction.UPDATE_IN_PLACE


def _classify_existing(
    prior: NodeState,
    kind: ResourceKind,
    wire_config: dict[str, Any],
    policies: Mapping[ResourceKind, KindPolicy],
) -> tuple[ChangeAction, tuple[FieldDelta, ...]]:
    if not prior.confirmed:
        # The provider never confirmed this node: recreate it, replacing any tainted instance.
        action = ChangeAction.REPLACE if prior.resource_id else ChangeAction.CREATE
        return action, field_deltas(prior.declared_config, wire_config)

    if prior.kind != kind:
        return ChangeAction.REPLACE, field_deltas(prior.declared_config, wire_config)

    deltas = field_deltas(prior.declared_config, wire_config)
    if not deltas:
        if prior.lifecycle == LifecycleState.FAILED:
            return ChangeAction.UPDATE_IN_PLACE, ()
        return ChangeAction.NOOP, ()
    return classify_change(policy_for(kind, policies), deltas), deltas


def compute_changeset(
    graph: ResourceGraph,
    snapshot: StackSnapshot,
    policies: Mapping[ResourceKind, KindPolicy] = DEFAULT_POLICIES,
) -> ChangeSet:
    """Compare the desired graph against stored state and produce an immutable ChangeSet.

    Entries for desired nodes come first in topological order, followed by
    deletions of snapshot nodes absent from the graph.
    """
    entries: list[ChangeEntry] = []
    for name in graph.topological_order():
        node = graph.node(name)
        prior = snapshot.get(name)
        wire_config = node.wire_config
        if prior is None:
            action, deltas = ChangeAction.CREATE, field_deltas(None, wire_config)
        else:
            action, deltas = _classify_existing(prior, node.kind, wire_config, policies)
        entries.append(
            ChangeEntry(
                name=name,
                kind=node.kind,
                action=action,
                delta=deltas,
                prior=prior,
                deposed=tuple(prior.deposed) if prior is not None else (),
            )
        )

    for name in sorted(set(snapshot.nodes) - set(graph.nodes)):
        prior = snapshot.nodes[name]
        entries.append(
            ChangeEntry(
                name=name,
                kind=prior.kind,
                action=ChangeAction.DELETE,
                delta=field_deltas(prior.declared_config, {}),
                prior=prior,
                deposed=tuple(prior.deposed),
            )
        )

    changeset = ChangeSet(
        changeset_id=f"CS-{uuid.uuid4().hex[:12]}",
        stack=snapshot.stack,
        base_serial=snapshot.serial,
        entries=tuple(entries),
    )
    logger.info("Planned changeset %s for stack %s: %s", changeset.changeset_id, snapshot.stack, changeset.summary())
    return changeset
