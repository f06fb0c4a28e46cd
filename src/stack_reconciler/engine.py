"""Run pipeline: build graph, load state, diff, execute, recover, persist.

The pipeline is a LangGraph ``StateGraph``. A declaration error raised by
the build step aborts the run before any provider call and before any state
is written.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, TypedDict

from langgraph.graph import END, START, StateGraph

from .diff import compute_changeset
from .errors import InvalidDeclarationError, ReconcilerError
from .graph import ResourceGraph, build_resource_graph
from .models import ChangeSet, ReconcileReport, ResourceDeclaration, StackSnapshot, iter_secrets
from .providers import ProviderRegistry
from .reconciler import ExecutionResult, Reconciler
from .recovery import RecoveryController
from .security import check_security_policy
from .settings import RuntimeSettings
from .state_store import StackStateStore

logger = logging.getLogger(__name__)


class ReconcileRunState(TypedDict, total=False):
    declarations: list[ResourceDeclaration]
    plan_only: bool
    rollback: bool
    allow_corrupt: bool
    cancel_event: threading.Event | None
    started_at: datetime
    graph: ResourceGraph
    findings: list[str]
    snapshot: StackSnapshot
    changeset: ChangeSet
    result: ExecutionResult
    next_snapshot: StackSnapshot
    report: ReconcileReport
    changed: bool


class StackEngine:
    """Reconciles one stack against the provider registry and its state store."""

    def __init__(
        self,
        stack: str,
        registry: ProviderRegistry,
        *,
        store: StackStateStore | None = None,
        settings: RuntimeSettings | None = None,
        secrets: Mapping[str, str] | None = None,
        state_root: str | Path | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.stack = stack
        self.registry = registry
        root = Path(state_root) if state_root is not None else self.settings.state_store_path(Path.cwd())
        self.store = store if store is not None else StackStateStore(
            root, stack, history_limit=self.settings.history_limit
        )
        self.secrets = dict(secrets or {})
        self.reconciler = Reconciler(
            registry,
            parallelism=self.settings.parallelism,
            fail_fast=self.settings.fail_fast,
            backoff=self.settings.backoff_policy(),
            transient_retries=self.settings.transient_retries,
            secrets=self.secrets,
        )
        self.recovery = RecoveryController(history_limit=self.settings.history_limit)
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ReconcileRunState)
        graph.add_node("build_graph", self._build_graph_node)
        graph.add_node("load_state", self._load_state_node)
        graph.add_node("diff", self._diff_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("recover", self._recover_node)
        graph.add_node("persist", self._persist_node)

        graph.add_edge(START, "build_graph")
        graph.add_edge("build_graph", "load_state")
        graph.add_edge("load_state", "diff")
        graph.add_conditional_edges(
            "diff",
            self._diff_route,
            {
                "execute": "execute",
                "end": END,
            },
        )
        graph.add_edge("execute", "recover")
        graph.add_conditional_edges(
            "recover",
            self._recover_route,
            {
                "persist": "persist",
                "end": END,
            },
        )
        graph.add_edge("persist", END)
        return graph

    # ------------------------------------------------------------------
    # Pipeline nodes
    # ------------------------------------------------------------------

    def _build_graph_node(self, state: ReconcileRunState) -> dict[str, Any]:
        resource_graph = build_resource_graph(state["declarations"], self.registry.policies)
        findings = check_security_policy(resource_graph, self.settings.security_policy)
        return {"graph": resource_graph, "findings": findings}

    def _load_state_node(self, state: ReconcileRunState) -> dict[str, Any]:
        return {"snapshot": self.store.load(allow_corrupt=bool(state.get("allow_corrupt")))}

    def _diff_node(self, state: ReconcileRunState) -> dict[str, Any]:
        return {"changeset": compute_changeset(state["graph"], state["snapshot"], self.registry.policies)}

    def _diff_route(self, state: ReconcileRunState) -> str:
        if state.get("plan_only"):
            return "end"
        return "execute"

    def _execute_node(self, state: ReconcileRunState) -> dict[str, Any]:
        resource_graph = state["graph"]
        missing: set[str] = set()
        for name in resource_graph.topological_order():
            missing |= {ref.name for ref in iter_secrets(resource_graph.node(name).config)} - self.secrets.keys()
        if missing:
            raise InvalidDeclarationError(f"Secrets were not supplied: {', '.join(sorted(missing))}")
        result = self.reconciler.execute(
            state["changeset"],
            resource_graph,
            cancel_event=state.get("cancel_event"),
        )
        return {"result": result}

    def _recover_node(self, state: ReconcileRunState) -> dict[str, Any]:
        snapshot, report, changed = self.recovery.finalize(
            state["snapshot"],
            state["graph"],
            state["result"],
            started_at=state["started_at"],
            rollback=bool(state.get("rollback")),
        )
        return {"next_snapshot": snapshot, "report": report, "changed": changed}

    def _recover_route(self, state: ReconcileRunState) -> str:
        if state.get("changed"):
            return "persist"
        return "end"

    def _persist_node(self, state: ReconcileRunState) -> dict[str, Any]:
        self.store.save(state["next_snapshot"])
        return {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _invoke(self, declarations: Iterable[ResourceDeclaration | Mapping[str, Any]], **flags: Any) -> ReconcileRunState:
        initial_state: ReconcileRunState = {
            "declarations": list(declarations),
            "plan_only": False,
            "rollback": False,
            "allow_corrupt": False,
            "cancel_event": None,
            "started_at": datetime.now(UTC),
        }
        initial_state.update(flags)  # type: ignore[typeddict-item]
        return self.graph.invoke(initial_state)

    def plan(
        self,
        declarations: Iterable[ResourceDeclaration | Mapping[str, Any]],
        *,
        allow_corrupt: bool = False,
    ) -> ChangeSet:
        """Validate *declarations* and diff them against stored state without touching the provider."""
        result = self._invoke(declarations, plan_only=True, allow_corrupt=allow_corrupt)
        return result["changeset"]

    def apply(
        self,
        declarations: Iterable[ResourceDeclaration | Mapping[str, Any]],
        *,
        cancel_event: threading.Event | None = None,
        allow_corrupt: bool = False,
    ) -> ReconcileReport:
        """Reconcile provider state to *declarations* and persist the outcome.

        Raises:
            SpecificationError: Before any provider call, for an invalid
                declaration. Nothing is persisted.
            StateCorruptionError: If stored state is corrupt and
                ``allow_corrupt`` was not given.
        """
        result = self._invoke(
            declarations,
            cancel_event=cancel_event,
            allow_corrupt=allow_corrupt,
        )
        return result["report"]

    def previous_declarations(self) -> list[ResourceDeclaration]:
        """Declarations recorded by the newest archived revision."""
        previous = self.store.load_previous()
        if previous is None:
            raise ReconcilerError(f"Stack {self.stack} has no previous revision to roll back to")
        return [
            ResourceDeclaration(
                name=name,
                kind=node.kind,
                config=node.declared_config,
                depends_on=list(node.depends_on),
            )
            for name, node in previous.nodes.items()
        ]

    def rollback(self, *, cancel_event: threading.Event | None = None) -> ReconcileReport:
        """Reapply the declared configuration of the previous persisted revision."""
        declarations = self.previous_declarations()
        logger.warning("Rolling back stack %s to its previous revision (%d nodes)", self.stack, len(declarations))
        result = self._invoke(declarations, rollback=True, cancel_event=cancel_event)
        return result["report"]

    def show(self) -> StackSnapshot:
        return self.store.load()
