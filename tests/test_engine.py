from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import pytest

from conftest import SECRETS, six_node_stack
from stack_reconciler import (
    ChangeAction,
    CorruptStateError,
    CycleError,
    InvalidDeclarationError,
    LifecycleState,
    ProviderRegistry,
    ReconcilerError,
    ResourceKind,
    RuntimeSettings,
    SecurityPolicyError,
    StackEngine,
)
from stack_reconciler.simulated import ProviderLedger, simulated_registry


def _engine(registry: ProviderRegistry, settings: RuntimeSettings, **kwargs: Any) -> StackEngine:
    kwargs.setdefault("secrets", SECRETS)
    return StackEngine("demo", registry, settings=settings, **kwargs)


def _set_fault(registry: ProviderRegistry, fault: Any) -> None:
    for kind in ResourceKind:
        registry.client_for(kind).fault = fault


def test_six_node_stack_creates_then_is_idempotent(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings)

    first = engine.apply(six_node_stack())

    assert first.success
    assert [node.planned_action for node in first.nodes] == [ChangeAction.CREATE] * 6
    assert all(node.state == LifecycleState.APPLIED for node in first.nodes)
    assert first.serial == 1
    assert ledger.count("create") == 6
    snapshot = engine.show()
    assert set(snapshot.nodes) == {"N", "D", "F1", "F2", "R1", "R2"}
    assert snapshot.nodes["D"].declared_config["master_password"] == {"$secret": "DB_PASSWORD"}

    ledger.reset()
    second = engine.apply(six_node_stack())

    assert second.success
    assert [node.planned_action for node in second.nodes] == [ChangeAction.NOOP] * 6
    assert [node.effective_action for node in second.nodes] == [ChangeAction.NOOP] * 6
    assert ledger.count() == 0
    assert second.provider_calls == 0
    assert second.serial == 1
    assert engine.store.list_revisions() == []


def test_cycle_is_rejected_before_any_provider_call(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    declarations = six_node_stack()
    declarations[0]["config"]["peer"] = {"$ref": "R2.route_id"}
    engine = _engine(registry, settings)

    with pytest.raises(CycleError):
        engine.apply(declarations)

    assert ledger.count() == 0
    assert not engine.store.snapshot_path.exists()


def test_missing_secret_is_rejected_before_any_provider_call(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings, secrets={})
    with pytest.raises(InvalidDeclarationError):
        engine.apply(six_node_stack())
    assert ledger.count() == 0


def _open_group() -> list[dict[str, Any]]:
    return [
        {"name": "net", "kind": "Network", "config": {}},
        {
            "name": "sg",
            "kind": "SecurityGroup",
            "config": {
                "network_id": {"$ref": "net.network_id"},
                "ingress_rules": [{"cidr": "0.0.0.0/0", "protocol": "all"}],
            },
        },
    ]


def test_enforced_security_policy_blocks_open_ingress(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    enforcing = RuntimeSettings(**{**settings.__dict__, "security_policy": "enforce"}).normalized()
    with pytest.raises(SecurityPolicyError) as exc_info:
        _engine(registry, enforcing).apply(_open_group())
    assert "0.0.0.0/0" in str(exc_info.value)
    assert ledger.count() == 0


def test_default_security_policy_passes_declarations_through(
    registry: ProviderRegistry, settings: RuntimeSettings
) -> None:
    assert _engine(registry, settings).apply(_open_group()).success


def test_plan_does_not_touch_provider_or_state(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings)
    changeset = engine.plan(six_node_stack())
    assert changeset.summary()["create"] == 6
    assert ledger.count() == 0
    assert not engine.store.snapshot_path.exists()


def test_database_replacement_migrates_dependents_before_teardown(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings)
    engine.apply(six_node_stack())
    old_database = engine.show().nodes["D"].resource_id

    declarations = six_node_stack()
    declarations[1]["config"]["engine"] = "postgres"
    ledger.reset()
    report = engine.apply(declarations)

    assert report.success
    assert report.node("D").planned_action == ChangeAction.REPLACE
    assert report.node("F1").planned_action == ChangeAction.NOOP
    assert report.node("F1").effective_action == ChangeAction.UPDATE_IN_PLACE
    assert report.node("F2").effective_action == ChangeAction.UPDATE_IN_PLACE
    assert report.node("R1").effective_action == ChangeAction.NOOP

    mutations = ledger.mutations()
    updates = [call.seq for call in mutations if call.operation == "update"]
    delete = next(call for call in mutations if call.operation == "delete")
    assert delete.resource_id == old_database
    assert len(updates) == 2
    assert max(updates) < delete.seq

    snapshot = engine.show()
    new_database = snapshot.nodes["D"].resource_id
    assert new_database != old_database
    assert snapshot.nodes["D"].deposed == []
    assert snapshot.nodes["F1"].applied_config["environment"]["DB_HOST"] == f"{new_database}.db.internal"
    assert [revision.serial for revision in snapshot.nodes["D"].history] == [1, 2]


def test_failed_dependent_keeps_old_instance_until_next_run(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings)
    engine.apply(six_node_stack())
    old_database = engine.show().nodes["D"].resource_id

    def reject_f1_update(operation: str, config: dict[str, Any]) -> BaseException | None:
        if operation == "update" and config.get("function_name") == "f1":
            return RuntimeError("function update rejected")
        return None

    declarations = six_node_stack()
    declarations[1]["config"]["engine"] = "postgres"
    _set_fault(registry, reject_f1_update)
    report = engine.apply(declarations)

    assert not report.success
    assert report.first_failure.node == "F1"
    assert report.first_failure.error_type == "ProviderError"
    assert report.node("F1").state == LifecycleState.FAILED
    assert report.node("R1").skipped_because == "F1"
    assert "R1" in report.skipped
    assert report.node("F2").state == LifecycleState.APPLIED
    assert not [call for call in ledger.mutations() if call.operation == "delete"]

    snapshot = engine.show()
    assert [item.resource_id for item in snapshot.nodes["D"].deposed] == [old_database]
    assert snapshot.nodes["F1"].lifecycle == LifecycleState.FAILED
    assert snapshot.nodes["F1"].applied_config["environment"]["DB_HOST"] == f"{old_database}.db.internal"

    _set_fault(registry, None)
    ledger.reset()
    recovered = engine.apply(declarations)

    assert recovered.success
    assert recovered.node("F1").effective_action == ChangeAction.UPDATE_IN_PLACE
    assert [call.resource_id for call in ledger.mutations() if call.operation == "delete"] == [old_database]
    final = engine.show()
    assert final.nodes["D"].deposed == []
    assert final.nodes["F1"].lifecycle == LifecycleState.APPLIED


def test_failed_create_is_recorded_and_retried(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings)

    def reject_database(operation: str, config: dict[str, Any]) -> BaseException | None:
        if operation == "create" and config.get("engine") == "mysql":
            return RuntimeError("quota exceeded")
        return None

    _set_fault(registry, reject_database)
    report = engine.apply(six_node_stack())

    assert not report.success
    assert report.node("D").state == LifecycleState.FAILED
    assert sorted(report.skipped) == ["F1", "F2", "R1", "R2"]
    snapshot = engine.show()
    assert snapshot.nodes["D"].lifecycle == LifecycleState.FAILED
    assert snapshot.nodes["D"].applied_config is None
    assert set(snapshot.nodes) == {"N", "D"}

    _set_fault(registry, None)
    retried = engine.apply(six_node_stack())

    assert retried.success
    assert retried.node("N").planned_action == ChangeAction.NOOP
    assert retried.node("D").planned_action == ChangeAction.CREATE
    assert engine.show().nodes["D"].lifecycle == LifecycleState.APPLIED


def test_removed_nodes_are_deleted_in_reverse_dependency_order(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings)
    engine.apply(six_node_stack())
    before = engine.show()

    ledger.reset()
    report = engine.apply([item for item in six_node_stack() if item["name"] not in {"F2", "R2"}])

    assert report.success
    deletes = {call.resource_id: call.seq for call in ledger.mutations() if call.operation == "delete"}
    assert deletes[before.nodes["R2"].resource_id] < deletes[before.nodes["F2"].resource_id]
    assert set(engine.show().nodes) == {"N", "D", "F1", "R1"}
    assert report.node("F2").planned_action == ChangeAction.DELETE


def test_rollback_reapplies_previous_revision(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings)
    engine.apply(six_node_stack(function_memory=128))
    engine.apply(six_node_stack(function_memory=512))
    assert engine.show().nodes["F1"].declared_config["memory_mb"] == 512

    ledger.reset()
    report = engine.rollback()

    assert report.success
    assert report.rollback
    assert report.node("F1").state == LifecycleState.ROLLED_BACK
    assert report.node("D").state == LifecycleState.APPLIED
    assert [call.operation for call in ledger.mutations()] == ["update"]
    assert engine.show().nodes["F1"].declared_config["memory_mb"] == 128


def test_rollback_without_history_is_an_error(registry: ProviderRegistry, settings: RuntimeSettings) -> None:
    with pytest.raises(ReconcilerError):
        _engine(registry, settings).rollback()


def test_corrupt_state_is_fatal_unless_overridden(
    registry: ProviderRegistry, settings: RuntimeSettings, tmp_path: Path
) -> None:
    engine = _engine(registry, settings)
    engine.apply(six_node_stack())
    engine.store.snapshot_path.write_text("{broken", encoding="utf-8")

    with pytest.raises(CorruptStateError):
        engine.apply(six_node_stack())

    report = engine.apply(six_node_stack(), allow_corrupt=True)
    assert report.success
    assert [node.planned_action for node in report.nodes] == [ChangeAction.CREATE] * 6
    assert list(engine.store.stack_dir.glob("snapshot.json.corrupt-*"))


def test_declarations_are_not_mutated(registry: ProviderRegistry, settings: RuntimeSettings) -> None:
    declarations = six_node_stack()
    pristine = copy.deepcopy(declarations)
    _engine(registry, settings).apply(declarations)
    assert declarations == pristine


def test_independent_registry_instances_share_nothing(settings: RuntimeSettings, tmp_path: Path) -> None:
    left = _engine(simulated_registry(settle_polls=0), settings)
    other_settings = RuntimeSettings(**{**settings.__dict__, "state_root": str(tmp_path / "other")}).normalized()
    right = _engine(simulated_registry(settle_polls=0), other_settings)
    left.apply(six_node_stack())
    assert right.show().nodes == {}


def _reject_updates(kind: ResourceKind, predicate: Any) -> Any:
    def fault(operation: str, config: dict[str, Any]) -> BaseException | None:
        if operation == "update" and predicate(config):
            return RuntimeError(f"{kind.value} update rejected")
        return None

    return fault


def test_kept_dependent_keeps_its_removed_dependency(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings)
    engine.apply(
        [
            {"name": "X", "kind": "Network", "config": {}},
            {"name": "Y", "kind": "SecurityGroup", "config": {"network_id": {"$ref": "X.network_id"}}},
            {
                "name": "Z",
                "kind": "Function",
                "config": {"function_name": "z", "environment": {"SG": {"$ref": "Y.group_id"}}},
            },
        ]
    )
    before = engine.show()
    remaining = [{"name": "Z", "kind": "Function", "config": {"function_name": "z", "environment": {"SG": "none"}}}]

    registry.client_for(ResourceKind.FUNCTION).fault = _reject_updates(ResourceKind.FUNCTION, lambda config: True)
    ledger.reset()
    report = engine.apply(remaining)

    assert not report.success
    assert report.node("Z").state == LifecycleState.FAILED
    assert not [call for call in ledger.mutations() if call.operation == "delete"]
    assert report.node("Y").skipped_because == "Z"
    assert report.node("X").skipped_because == "Y"
    assert set(engine.show().nodes) == {"X", "Y", "Z"}

    registry.client_for(ResourceKind.FUNCTION).fault = None
    ledger.reset()
    recovered = engine.apply(remaining)

    assert recovered.success
    deletes = [call.resource_id for call in ledger.mutations() if call.operation == "delete"]
    assert deletes == [before.nodes["Y"].resource_id, before.nodes["X"].resource_id]
    assert set(engine.show().nodes) == {"Z"}


def test_replaced_dependency_outlives_replaced_dependent_still_in_use(
    registry: ProviderRegistry, ledger: ProviderLedger, settings: RuntimeSettings
) -> None:
    engine = _engine(registry, settings)
    engine.apply(six_node_stack())
    before = engine.show()
    old_database = before.nodes["D"].resource_id
    old_function = before.nodes["F1"].resource_id

    declarations = six_node_stack()
    declarations[1]["config"]["engine"] = "postgres"
    declarations[2]["config"]["function_name"] = "f1-v2"
    registry.client_for(ResourceKind.API_ROUTE).fault = _reject_updates(
        ResourceKind.API_ROUTE, lambda config: config.get("path") == "/one"
    )
    ledger.reset()
    report = engine.apply(declarations)

    assert not report.success
    assert report.node("D").planned_action == ChangeAction.REPLACE
    assert report.node("F1").planned_action == ChangeAction.REPLACE
    assert report.node("R1").state == LifecycleState.FAILED
    assert not [call for call in ledger.mutations() if call.operation == "delete"]
    assert report.node("F1").skipped_because == "R1"
    assert report.node("D").skipped_because == "F1"
    snapshot = engine.show()
    assert [item.resource_id for item in snapshot.nodes["D"].deposed] == [old_database]
    assert [item.resource_id for item in snapshot.nodes["F1"].deposed] == [old_function]

    registry.client_for(ResourceKind.API_ROUTE).fault = None
    ledger.reset()
    recovered = engine.apply(declarations)

    assert recovered.success
    deletes = {call.resource_id: call.seq for call in ledger.mutations() if call.operation == "delete"}
    assert set(deletes) == {old_database, old_function}
    assert deletes[old_function] < deletes[old_database]
    final = engine.show()
    assert final.nodes["D"].deposed == []
    assert final.nodes["F1"].deposed == []
