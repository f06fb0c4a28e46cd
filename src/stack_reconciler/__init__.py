from importlib.metadata import version

from .backoff import BackoffPolicy
from .canonical import canonical_equal, fingerprint, to_canonical_json
from .diff import compute_changeset
from .engine import StackEngine
from .errors import (
    ChangeSetConsumedError,
    CorruptStateError,
    CycleError,
    DuplicateNameError,
    InvalidDeclarationError,
    ProviderError,
    ProvisioningTimeoutError,
    ReconcilerError,
    SecurityPolicyError,
    SpecificationError,
    StateCorruptionError,
    UnknownReferenceError,
    UnresolvedReferenceError,
)
from .graph import ResourceGraph, build_resource_graph
from .kinds import DEFAULT_POLICIES, KindPolicy, ResourceKind
from .loader import StackFile, load_stack_file
from .models import (
    ChangeAction,
    ChangeEntry,
    ChangeSet,
    DependencyEdge,
    LifecycleState,
    NodeState,
    OutputRef,
    ReconcileReport,
    ResourceDeclaration,
    ResourceNode,
    SecretRef,
    StackSnapshot,
)
from .providers import ProviderClient, ProviderRegistry, ProviderStatus
from .reconciler import ExecutionResult, Reconciler
from .recovery import RecoveryController
from .settings import RuntimeSettings
from .simulated import InMemoryProvider, ProviderLedger, simulated_registry
from .state_store import StackStateStore


def get_version() -> str:
    try:
        return version("stack-reconciler")
    except Exception:
        return "0.0.0"


__all__ = [
    "BackoffPolicy",
    "ChangeAction",
    "ChangeEntry",
    "ChangeSet",
    "ChangeSetConsumedError",
    "CorruptStateError",
    "CycleError",
    "DEFAULT_POLICIES",
    "DependencyEdge",
    "DuplicateNameError",
    "ExecutionResult",
    "InMemoryProvider",
    "InvalidDeclarationError",
    "KindPolicy",
    "LifecycleState",
    "NodeState",
    "OutputRef",
    "ProviderClient",
    "ProviderError",
    "ProviderLedger",
    "ProviderRegistry",
    "ProviderStatus",
    "ProvisioningTimeoutError",
    "ReconcileReport",
    "Reconciler",
    "ReconcilerError",
    "RecoveryController",
    "ResourceDeclaration",
    "ResourceGraph",
    "ResourceKind",
    "ResourceNode",
    "RuntimeSettings",
    "SecretRef",
    "SecurityPolicyError",
    "SpecificationError",
    "StackEngine",
    "StackFile",
    "StackSnapshot",
    "StackStateStore",
    "StateCorruptionError",
    "UnknownReferenceError",
    "UnresolvedReferenceError",
    "build_resource_graph",
    "canonical_equal",
    "compute_changeset",
    "fingerprint",
    "get_version",
    "load_stack_file",
    "simulated_registry",
    "to_canonical_json",
]
