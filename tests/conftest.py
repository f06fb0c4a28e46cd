from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pytest

from stack_reconciler.backoff import BackoffPolicy
from stack_reconciler.providers import ProviderRegistry
from stack_reconciler.settings import RuntimeSettings
from stack_reconciler.simulated import ProviderLedger, simulated_registry


@pytest.fixture(autouse=True)
def _isolated_reconciler_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep RECONCILER_* variables from the developer's shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("RECONCILER_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def ledger() -> ProviderLedger:
    return ProviderLedger()


@pytest.fixture
def registry(ledger: ProviderLedger) -> ProviderRegistry:
    return simulated_registry(ledger, settle_polls=1)


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    return BackoffPolicy(base_delay=0.0, max_delay=0.0, max_wait=5.0)


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(
        state_root=str(tmp_path / "state"),
        parallelism=4,
        poll_base_delay=0.0,
        poll_max_delay=0.0,
        poll_timeout=5.0,
        transient_retries=2,
    ).normalized()


def six_node_stack(*, function_memory: int = 128) -> list[dict[str, Any]]:
    """Network N, database D, functions F1/F2 reading D's endpoint, routes R1/R2 invoking them."""
    return [
        {"name": "N", "kind": "Network", "config": {"cidr_block": "10.0.0.0/16"}},
        {
            "name": "D",
            "kind": "Database",
            "config": {
                "engine": "mysql",
                "instance_class": "micro",
                "network_id": {"$ref": "N.network_id"},
                "master_password": {"$secret": "DB_PASSWORD"},
            },
        },
        {
            "name": "F1",
            "kind": "Function",
            "config": {
                "function_name": "f1",
                "memory_mb": function_memory,
                "environment": {"DB_HOST": {"$ref": "D.endpoint_address"}},
            },
        },
        {
            "name": "F2",
            "kind": "Function",
            "config": {
                "function_name": "f2",
                "environment": {"DB_HOST": {"$ref": "D.endpoint_address"}},
            },
        },
        {
            "name": "R1",
            "kind": "ApiRoute",
            "config": {"api_id": "api-1", "path": "/one", "method": "GET", "integration": {"$ref": "F1.invoke_arn"}},
        },
        {
            "name": "R2",
            "kind": "ApiRoute",
            "config": {"api_id": "api-1", "path": "/two", "method": "GET", "integration": {"$ref": "F2.invoke_arn"}},
        },
    ]


SECRETS = {"DB_PASSWORD": "hunter2"}
