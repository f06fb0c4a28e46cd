from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from stack_reconciler import (
    DuplicateNameError,
    InvalidDeclarationError,
    ResourceKind,
    RuntimeSettings,
    build_resource_graph,
    load_stack_file,
)
from stack_reconciler.loader import parse_stack_document, substitute_variables
from stack_reconciler.security import check_security_policy, security_findings

REPO_ROOT = Path(__file__).resolve().parents[1]
EXAMPLE_STACK = REPO_ROOT / "examples" / "bug_tracker_stack.json"


def test_example_stack_loads_with_defaults() -> None:
    stack_file = load_stack_file(EXAMPLE_STACK, env={"DB_PASSWORD": "s3cret"})
    assert stack_file.stack == "apsi-bug-tracker"
    assert stack_file.secrets == {"DB_PASSWORD": "s3cret"}
    assert stack_file.missing_secrets == []

    graph = build_resource_graph(stack_file.declarations)
    assert len(graph) == 13
    database = graph.node("database")
    assert database.config["database_name"] == "apsidb"
    assert database.config["master_username"] == "user"
    assert graph.node("get_problems").config["environment"]["DB_PORT"] == "3306"
    assert graph.dependencies_of("route_get_problem_by_id") == ("api", "get_problem_by_id")
    assert graph.levels()[0] == ["network", "database_layer", "api"]


def test_example_stack_has_an_open_security_group() -> None:
    stack_file = load_stack_file(EXAMPLE_STACK, env={"DB_PASSWORD": "s3cret"})
    graph = build_resource_graph(stack_file.declarations)
    findings = security_findings(graph)
    assert findings == ["db_security_group: ingress rule 0 allows all traffic from 0.0.0.0/0"]
    assert check_security_policy(graph, "passthrough") == []
    assert check_security_policy(graph, "warn") == findings


def test_environment_overrides_defaults() -> None:
    stack_file = load_stack_file(EXAMPLE_STACK, env={"DB_NAME": "bugs", "DB_USERNAME": "admin"})
    database = next(item for item in stack_file.declarations if item.name == "database")
    assert database.config["database_name"] == "bugs"
    assert database.config["master_username"] == "admin"
    assert stack_file.missing_secrets == ["DB_PASSWORD"]


def test_dotenv_file_beside_stack_is_loaded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LOADER_TEST_CIDR", raising=False)
    (tmp_path / ".env").write_text("LOADER_TEST_CIDR=10.9.0.0/16\n", encoding="utf-8")
    stack = tmp_path / "stack.json"
    stack.write_text(
        json.dumps({"resources": [{"name": "net", "kind": "Network", "config": {"cidr_block": "${LOADER_TEST_CIDR}"}}]}),
        encoding="utf-8",
    )
    try:
        stack_file = load_stack_file(stack)
    finally:
        os.environ.pop("LOADER_TEST_CIDR", None)
    assert stack_file.stack is None
    assert stack_file.declarations[0].config == {"cidr_block": "10.9.0.0/16"}


def test_unset_variable_without_default_is_rejected() -> None:
    with pytest.raises(InvalidDeclarationError):
        substitute_variables({"a": ["${NOPE_NOT_SET}"]}, {})
    assert substitute_variables("${EMPTY:-fallback}", {"EMPTY": ""}) == "fallback"
    assert substitute_variables("/problems/{id}", {}) == "/problems/{id}"


def test_duplicate_resource_keys_are_rejected() -> None:
    text = '{"resources": {"net": {"kind": "Network"}, "net": {"kind": "Network"}}}'
    with pytest.raises(DuplicateNameError):
        parse_stack_document(text, env={})


def test_duplicate_resource_names_in_list_are_rejected() -> None:
    text = json.dumps({"resources": [{"name": "a", "kind": "Network"}, {"name": "a", "kind": "RestApi"}]})
    with pytest.raises(DuplicateNameError):
        parse_stack_document(text, env={})


def test_duplicate_config_keys_are_rejected() -> None:
    text = '{"resources": [{"name": "a", "kind": "Network", "config": {"tags": 1, "tags": 2}}]}'
    with pytest.raises(InvalidDeclarationError):
        parse_stack_document(text, env={})


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        "[]",
        '{"stack": "x"}',
        '{"resources": 5}',
        '{"resources": [{"name": "a", "kind": "Teapot"}]}',
    ],
)
def test_malformed_stack_documents_are_rejected(text: str) -> None:
    with pytest.raises(InvalidDeclarationError):
        parse_stack_document(text, env={})


def test_mapping_form_keeps_declaration_order() -> None:
    text = '{"resources": {"b": {"kind": "Network"}, "a": {"kind": "RestApi", "depends_on": ["b"]}}}'
    stack_file = parse_stack_document(text, env={})
    assert [item.name for item in stack_file.declarations] == ["b", "a"]
    assert stack_file.declarations[1].kind == ResourceKind.REST_API


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECONCILER_PARALLELISM", "8")
    monkeypatch.setenv("RECONCILER_FAIL_FAST", "yes")
    monkeypatch.setenv("RECONCILER_POLL_TIMEOUT", "30.5")
    monkeypatch.setenv("RECONCILER_SECURITY_POLICY", " Warn ")
    settings = RuntimeSettings.from_env()
    assert settings.parallelism == 8
    assert settings.fail_fast is True
    assert settings.security_policy == "warn"
    assert settings.backoff_policy().max_wait == 30.5
    assert settings.state_store_path(Path("/srv")) == Path("/srv/state")


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("RECONCILER_PARALLELISM", "0"),
        ("RECONCILER_PARALLELISM", "many"),
        ("RECONCILER_FAIL_FAST", "maybe"),
        ("RECONCILER_POLL_BASE_DELAY", "nan"),
        ("RECONCILER_POLL_TIMEOUT", "0"),
        ("RECONCILER_SECURITY_POLICY", "paranoid"),
        ("RECONCILER_STACK_NAME", "   "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def _run_cli(*args: str, state_root: Path, extra_env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("RECONCILER_")}
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")]))
    env.update(extra_env or {})
    return subprocess.run(
        [sys.executable, "-m", "stack_reconciler", *args, "--state-root", str(state_root), "--log-level", "WARNING"],
        cwd=REPO_ROOT,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )


def test_cli_apply_then_noop_then_show(tmp_path: Path) -> None:
    secrets = {"DB_PASSWORD": "s3cret"}
    first = _run_cli("apply", "--stack-file", str(EXAMPLE_STACK), state_root=tmp_path, extra_env=secrets)
    assert first.returncode == 0, first.stderr
    assert "reconcile_success=True" in first.stdout

    plan = _run_cli("plan", "--stack-file", str(EXAMPLE_STACK), state_root=tmp_path, extra_env=secrets)
    assert plan.returncode == 0, plan.stderr
    assert "has_changes=False" in plan.stdout

    second = _run_cli("apply", "--stack-file", str(EXAMPLE_STACK), state_root=tmp_path, extra_env=secrets)
    assert second.returncode == 0, second.stderr
    report = json.loads(second.stdout.split("\n", 1)[1])
    assert report["provider_calls"] == 0
    assert {node["effective_action"] for node in report["nodes"]} == {"noop"}

    show = _run_cli("show", "--stack", "apsi-bug-tracker", state_root=tmp_path)
    assert show.returncode == 0, show.stderr
    snapshot = json.loads(show.stdout)
    assert snapshot["serial"] == 1
    assert "s3cret" not in show.stdout


def test_cli_reports_missing_secret(tmp_path: Path) -> None:
    result = _run_cli("apply", "--stack-file", str(EXAMPLE_STACK), state_root=tmp_path)
    assert result.returncode == 1
    assert "DB_PASSWORD" in result.stderr


def test_cli_requires_stack_file_for_apply(tmp_path: Path) -> None:
    result = _run_cli("apply", state_root=tmp_path)
    assert result.returncode == 1
    assert "--stack-file is required" in result.stderr
