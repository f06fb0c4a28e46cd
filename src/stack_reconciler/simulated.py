"""In-memory provider that honours the provider protocol.

Used by the test-suite and by the CLI, which ships no real provider clients.
Resources settle asynchronously: ``describe`` reports ``IN_PROGRESS`` for
``settle_polls`` calls before reaching a terminal status. Fault hooks let
callers inject call errors, failed provisioning or resources that never
settle.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .kinds import ResourceKind
from .providers import ProviderRegistry, ProviderStatus

logger = logging.getLogger(__name__)

FaultHook = Callable[[str, dict[str, Any]], BaseException | None]
Predicate = Callable[[str, dict[str, Any]], bool]

_ID_PREFIXES: dict[ResourceKind, str] = {
    ResourceKind.NETWORK: "net",
    ResourceKind.SECURITY_GROUP: "sg",
    ResourceKind.DATABASE: "db",
    ResourceKind.FUNCTION_LAYER: "layer",
    ResourceKind.FUNCTION: "fn",
    ResourceKind.REST_API: "api",
    ResourceKind.API_ROUTE: "route",
}


@dataclass(frozen=True)
class ProviderCall:
    seq: int
    kind: ResourceKind
    operation: str
    resource_id: str | None
    payload: dict[str, Any]


class ProviderLedger:
    """Thread-safe, globally sequenced record of every provider call."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self._ids = itertools.count(1)
        self.calls: list[ProviderCall] = []

    def record(self, kind: ResourceKind, operation: str, resource_id: str | None, payload: dict[str, Any]) -> int:
        with self._lock:
            seq = next(self._seq)
            self.calls.append(
                ProviderCall(seq=seq, kind=kind, operation=operation, resource_id=resource_id, payload=dict(payload))
            )
            return seq

    def new_id(self, kind: ResourceKind) -> str:
        with self._lock:
            return f"{_ID_PREFIXES[kind]}-{next(self._ids):04d}"

    def count(self, operation: str | None = None, kind: ResourceKind | None = None) -> int:
        with self._lock:
            return sum(
                1
                for call in self.calls
                if (operation is None or call.operation == operation) and (kind is None or call.kind == kind)
            )

    def mutations(self) -> list[ProviderCall]:
        with self._lock:
            return [call for call in self.calls if call.operation != "describe"]

    def reset(self) -> None:
        with self._lock:
            self.calls.clear()


@dataclass
class _SimulatedResource:
    resource_id: str
    config: dict[str, Any]
    outputs: dict[str, Any]
    pending_operation: str
    polls_remaining: int
    status: ProviderStatus = ProviderStatus.IN_PROGRESS
    stuck: bool = False
    fail_on_settle: bool = False
    history: list[str] = field(default_factory=list)


def _outputs_for(kind: ResourceKind, resource_id: str, config: dict[str, Any]) -> dict[str, Any]:
    if kind == ResourceKind.NETWORK:
        return {"network_id": resource_id, "cidr_block": config.get("cidr_block", "172.31.0.0/16")}
    if kind == ResourceKind.SECURITY_GROUP:
        return {"group_id": resource_id}
    if kind == ResourceKind.DATABASE:
        return {
            "instance_id": resource_id,
            "endpoint_address": f"{resource_id}.db.internal",
            "port": config.get("port", 3306),
        }
    if kind == ResourceKind.FUNCTION_LAYER:
        name = config.get("layer_name", resource_id)
        return {"layer_arn": f"arn:sim:layer:{name}:{resource_id}", "version": 1}
    if kind == ResourceKind.FUNCTION:
        return {
            "function_arn": f"arn:sim:function:{resource_id}",
            "invoke_arn": f"arn:sim:apigateway:invoke/{resource_id}",
        }
    if kind == ResourceKind.REST_API:
        return {
            "api_id": resource_id,
            "root_resource_id": f"{resource_id}-root",
            "endpoint_url": f"https://{resource_id}.api.sim/prod",
        }
    if kind == ResourceKind.API_ROUTE:
        api_id = config.get("api_id", "api")
        return {"route_id": resource_id, "url": f"https://{api_id}.api.sim/prod{config.get('path', '/')}"}
    raise ValueError(f"unsupported resource kind: {kind}")


class InMemoryProvider:
    """Simulated provider client for a single resource kind."""

    def __init__(
        self,
        kind: ResourceKind,
        *,
        ledger: ProviderLedger | None = None,
        settle_polls: int = 1,
        latency: float = 0.0,
        fault: FaultHook | None = None,
        fail_settle: Predicate | None = None,
        stuck: Predicate | None = None,
        adopt_unknown: bool = False,
    ) -> None:
        if settle_polls < 0:
            raise ValueError(f"settle_polls must be >= 0, got: {settle_polls}")
        self.kind = kind
        self.ledger = ledger if ledger is not None else ProviderLedger()
        self.settle_polls = settle_polls
        self.latency = latency
        self.fault = fault
        self.fail_settle = fail_settle
        self.stuck = stuck
        self.adopt_unknown = adopt_unknown
        self._lock = threading.Lock()
        self._resources: dict[str, _SimulatedResource] = {}

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _maybe_fail(self, operation: str, config: dict[str, Any]) -> None:
        if self.fault is None:
            return
        error = self.fault(operation, config)
        if error is not None:
            raise error

    def _start(self, resource: _SimulatedResource, operation: str) -> None:
        resource.pending_operation = operation
        resource.polls_remaining = self.settle_polls
        resource.status = ProviderStatus.IN_PROGRESS
        resource.stuck = bool(self.stuck and self.stuck(operation, resource.config))
        resource.fail_on_settle = bool(self.fail_settle and self.fail_settle(operation, resource.config))
        resource.history.append(operation)

    def _unknown(self, resource_id: str) -> KeyError:
        return KeyError(f"{self.kind.value} resource {resource_id} does not exist")

    # ------------------------------------------------------------------
    # ProviderClient protocol
    # ------------------------------------------------------------------

    def create(self, config: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        self.ledger.record(self.kind, "create", None, config)
        self._maybe_fail("create", config)
        if self.latency:
            time.sleep(self.latency)
        resource_id = self.ledger.new_id(self.kind)
        resource = _SimulatedResource(
            resource_id=resource_id,
            config=dict(config),
            outputs=_outputs_for(self.kind, resource_id, config),
            pending_operation="create",
            polls_remaining=self.settle_polls,
        )
        self._start(resource, "create")
        with self._lock:
            self._resources[resource_id] = resource
        return resource_id, dict(resource.outputs)

    def update(self, resource_id: str, delta: dict[str, Any]) -> dict[str, Any]:
        self.ledger.record(self.kind, "update", resource_id, delta)
        with self._lock:
            resource = self._resources.get(resource_id)
            if resource is None:
                if not self.adopt_unknown:
                    raise self._unknown(resource_id)
                logger.debug("Adopting unknown %s resource %s", self.kind.value, resource_id)
                resource = _SimulatedResource(
                    resource_id=resource_id,
                    config={},
                    outputs={},
                    pending_operation="update",
                    polls_remaining=self.settle_polls,
                )
                self._resources[resource_id] = resource
            merged = {**resource.config, **{k: v for k, v in delta.items() if v is not None}}
            for key, value in delta.items():
                if value is None:
                    merged.pop(key, None)
        self._maybe_fail("update", merged)
        if self.latency:
            time.sleep(self.latency)
        with self._lock:
            resource.config = merged
            resource.outputs = _outputs_for(self.kind, resource_id, merged)
            self._start(resource, "update")
            return dict(resource.outputs)

    def delete(self, resource_id: str) -> None:
        with self._lock:
            resource = self._resources.get(resource_id)
        self.ledger.record(self.kind, "delete", resource_id, {})
        if resource is None:
            if self.adopt_unknown:
                logger.debug("Delete of unknown %s resource %s treated as already gone", self.kind.value, resource_id)
                return
            raise self._unknown(resource_id)
        self._maybe_fail("delete", resource.config)
        with self._lock:
            self._start(resource, "delete")

    def describe(self, resource_id: str) -> ProviderStatus:
        self.ledger.record(self.kind, "describe", resource_id, {})
        with self._lock:
            resource = self._resources.get(resource_id)
            if resource is None:
                return ProviderStatus.NOT_FOUND
            if resource.status.terminal or resource.stuck:
                return resource.status
            if resource.polls_remaining > 0:
                resource.polls_remaining -= 1
                return ProviderStatus.IN_PROGRESS
            if resource.fail_on_settle:
                resource.status = ProviderStatus.FAILED
            elif resource.pending_operation == "delete":
                del self._resources[resource_id]
                return ProviderStatus.NOT_FOUND
            else:
                resource.status = ProviderStatus.SUCCEEDED
            return resource.status

    # ------------------------------------------------------------------
    # inspection
    # ------------------------------------------------------------------

    def live_resources(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {rid: dict(resource.config) for rid, resource in self._resources.items()}


def simulated_registry(ledger: ProviderLedger | None = None, **options: Any) -> ProviderRegistry:
    """Build a registry with one ``InMemoryProvider`` per resource kind sharing one ledger."""
    shared = ledger if ledger is not None else ProviderLedger()
    registry = ProviderRegistry()
    for kind in ResourceKind:
        registry.register(kind, InMemoryProvider(kind, ledger=shared, **options))
    return registry
