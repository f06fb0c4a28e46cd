from __future__ import annotations

from typing import Any

from stack_reconciler import (
    ChangeAction,
    LifecycleState,
    NodeState,
    ResourceKind,
    StackSnapshot,
    build_resource_graph,
    compute_changeset,
)
from stack_reconciler.models import DeposedResource


def _applied(kind: ResourceKind, config: dict[str, Any], resource_id: str = "id-1", **extra: Any) -> NodeState:
    return NodeState(
        kind=kind,
        resource_id=resource_id,
        declared_config=config,
        applied_config=config,
        outputs={},
        **extra,
    )


def _function(**config: Any) -> dict[str, Any]:
    return {"name": "fn", "kind": "Function", "config": {"function_name": "fn", "memory_mb": 128, **config}}


def _snapshot(**nodes: NodeState) -> StackSnapshot:
    return StackSnapshot(stack="demo", serial=3, nodes=nodes)


def test_new_node_is_created() -> None:
    changeset = compute_changeset(build_resource_graph([_function()]), StackSnapshot.empty("demo"))
    entry = changeset.entry("fn")
    assert entry.action == ChangeAction.CREATE
    assert entry.changed_fields == ["function_name", "memory_mb"]
    assert changeset.base_serial == 0
    assert changeset.changeset_id.startswith("CS-")


def test_unchanged_node_is_noop() -> None:
    graph = build_resource_graph([_function()])
    snapshot = _snapshot(fn=_applied(ResourceKind.FUNCTION, {"memory_mb": 128, "function_name": "fn"}))
    changeset = compute_changeset(graph, snapshot)
    assert changeset.entry("fn").action == ChangeAction.NOOP
    assert changeset.entry("fn").delta == ()
    assert not changeset.has_changes


def test_updatable_field_change_is_in_place() -> None:
    graph = build_resource_graph([_function(memory_mb=512)])
    snapshot = _snapshot(fn=_applied(ResourceKind.FUNCTION, {"function_name": "fn", "memory_mb": 128}))
    entry = compute_changeset(graph, snapshot).entry("fn")
    assert entry.action == ChangeAction.UPDATE_IN_PLACE
    assert [(item.field, item.old, item.new) for item in entry.delta] == [("memory_mb", 128, 512)]


def test_replace_on_field_change_is_replace() -> None:
    graph = build_resource_graph([{"name": "fn", "kind": "Function", "config": {"function_name": "renamed", "memory_mb": 128}}])
    snapshot = _snapshot(fn=_applied(ResourceKind.FUNCTION, {"function_name": "fn", "memory_mb": 128}))
    assert compute_changeset(graph, snapshot).entry("fn").action == ChangeAction.REPLACE


def test_unclassified_field_is_treated_as_replace() -> None:
    graph = build_resource_graph([_function(mystery_flag=True)])
    snapshot = _snapshot(fn=_applied(ResourceKind.FUNCTION, {"function_name": "fn", "memory_mb": 128}))
    assert compute_changeset(graph, snapshot).entry("fn").action == ChangeAction.REPLACE


def test_kind_change_is_replace() -> None:
    graph = build_resource_graph([{"name": "fn", "kind": "FunctionLayer", "config": {}}])
    snapshot = _snapshot(fn=_applied(ResourceKind.FUNCTION, {}))
    assert compute_changeset(graph, snapshot).entry("fn").action == ChangeAction.REPLACE


def test_removed_node_is_deleted_after_desired_entries() -> None:
    graph = build_resource_graph([_function()])
    snapshot = _snapshot(
        fn=_applied(ResourceKind.FUNCTION, {"function_name": "fn", "memory_mb": 128}),
        old=_applied(ResourceKind.NETWORK, {"cidr_block": "10.0.0.0/16"}, resource_id="net-1"),
    )
    changeset = compute_changeset(graph, snapshot)
    assert [(entry.name, entry.action) for entry in changeset.entries] == [
        ("fn", ChangeAction.NOOP),
        ("old", ChangeAction.DELETE),
    ]
    assert changeset.summary()["delete"] == 1


def test_never_confirmed_node_is_recreated() -> None:
    graph = build_resource_graph([_function()])
    tainted = NodeState(kind=ResourceKind.FUNCTION, lifecycle=LifecycleState.FAILED, resource_id="fn-9")
    untouched = NodeState(kind=ResourceKind.FUNCTION, lifecycle=LifecycleState.FAILED)
    assert compute_changeset(graph, _snapshot(fn=tainted)).entry("fn").action == ChangeAction.REPLACE
    assert compute_changeset(graph, _snapshot(fn=untouched)).entry("fn").action == ChangeAction.CREATE


def test_failed_update_with_same_config_is_retried_in_place() -> None:
    graph = build_resource_graph([_function()])
    prior = _applied(
        ResourceKind.FUNCTION,
        {"function_name": "fn", "memory_mb": 128},
        lifecycle=LifecycleState.FAILED,
    )
    entry = compute_changeset(graph, _snapshot(fn=prior)).entry("fn")
    assert entry.action == ChangeAction.UPDATE_IN_PLACE
    assert entry.delta == ()


def test_deposed_ids_are_carried_and_count_as_changes() -> None:
    graph = build_resource_graph([_function()])
    prior = _applied(
        ResourceKind.FUNCTION,
        {"function_name": "fn", "memory_mb": 128},
        deposed=[DeposedResource(resource_id="fn-old", kind=ResourceKind.FUNCTION)],
    )
    changeset = compute_changeset(graph, _snapshot(fn=prior))
    assert changeset.entry("fn").action == ChangeAction.NOOP
    assert [item.resource_id for item in changeset.entry("fn").deposed] == ["fn-old"]
    assert changeset.has_changes


def test_reference_expression_is_compared_in_wire_form() -> None:
    graph = build_resource_graph(
        [
            {"name": "net", "kind": "Network", "config": {}},
            {"name": "sg", "kind": "SecurityGroup", "config": {"network_id": {"$ref": "net.network_id"}}},
        ]
    )
    snapshot = _snapshot(
        net=_applied(ResourceKind.NETWORK, {}),
        sg=NodeState(
            kind=ResourceKind.SECURITY_GROUP,
            resource_id="sg-1",
            declared_config={"network_id": {"$ref": "net.network_id"}},
            applied_config={"network_id": "net-1"},
        ),
    )
    assert not compute_changeset(graph, snapshot).has_changes
