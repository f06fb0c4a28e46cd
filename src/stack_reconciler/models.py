from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, Field, field_validator

from .errors import InvalidDeclarationError
from .kinds import ResourceKind

REF_KEY = "$ref"
SECRET_KEY = "$secret"
SECRET_DIGEST_KEY = "$secret_digest"


class LifecycleState(str, Enum):
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE_IN_PLACE = "update_in_place"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


# ---------------------------------------------------------------------------
# Deferred references
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OutputRef:
    """Reference to another node's computed output, resolved after that node is Applied."""

    node: str
    output: str

    @classmethod
    def parse(cls, expression: str) -> "OutputRef":
        node, sep, output = expression.partition(".")
        if not sep or not node.strip() or not output.strip():
            raise InvalidDeclarationError(f"Reference must look like 'node.output', got {expression!r}")
        return cls(node=node.strip(), output=output.strip())

    def to_wire(self) -> dict[str, str]:
        return {REF_KEY: f"{self.node}.{self.output}"}


@dataclass(frozen=True)
class SecretRef:
    """Opaque secret looked up by name at apply time; never persisted in plaintext."""

    name: str

    def to_wire(self) -> dict[str, str]:
        return {SECRET_KEY: self.name}


def parse_config_value(value: Any) -> Any:
    """Turn wire-form ``{"$ref": ...}`` / ``{"$secret": ...}`` markers into reference objects."""
    if isinstance(value, (OutputRef, SecretRef)):
        return value
    if isinstance(value, dict):
        if REF_KEY in value or SECRET_KEY in value:
            if len(value) != 1:
                raise InvalidDeclarationError(f"Reference markers must be the only key in their object: {value!r}")
            if REF_KEY in value:
                expression = value[REF_KEY]
                if not isinstance(expression, str):
                    raise InvalidDeclarationError(f"{REF_KEY} must be a string, got {expression!r}")
                return OutputRef.parse(expression)
            secret_name = value[SECRET_KEY]
            if not isinstance(secret_name, str) or not secret_name.strip():
                raise InvalidDeclarationError(f"{SECRET_KEY} must be a non-empty string, got {secret_name!r}")
            return SecretRef(name=secret_name.strip())
        return {str(key): parse_config_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [parse_config_value(item) for item in value]
    return value


def encode_config(value: Any) -> Any:
    """Inverse of ``parse_config_value``: render references back to wire form."""
    if isinstance(value, (OutputRef, SecretRef)):
        return value.to_wire()
    if isinstance(value, dict):
        return {str(key): encode_config(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_config(item) for item in value]
    return value


def iter_references(value: Any) -> Iterator[OutputRef]:
    if isinstance(value, OutputRef):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def iter_secrets(value: Any) -> Iterator[SecretRef]:
    if isinstance(value, SecretRef):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_secrets(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_secrets(item)


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------

class ResourceDeclaration(BaseModel):
    """One entry of a desired-state stack."""

    name: str
    kind: ResourceKind
    config: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("resource name must be non-empty")
        if "." in stripped:
            raise ValueError(f"resource name must not contain '.': {stripped!r}")
        return stripped


@dataclass(frozen=True)
class ResourceNode:
    name: str
    kind: ResourceKind
    config: dict[str, Any]
    dependencies: tuple[str, ...]
    depends_on: tuple[str, ...] = ()
    declaration_order: int = 0

    @property
    def wire_config(self) -> dict[str, Any]:
        return encode_config(self.config)

    def references(self) -> list[OutputRef]:
        return list(iter_references(self.config))


@dataclass(frozen=True)
class DependencyEdge:
    """``source`` applies strictly after ``target`` and is torn down strictly before it."""

    source: str
    target: str


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------

class DeposedResource(BaseModel):
    """A superseded provider resource still awaiting deletion."""

    resource_id: str
    kind: ResourceKind


class AppliedRevision(BaseModel):
    serial: int
    resource_id: str
    applied_config: dict[str, Any]
    outputs: dict[str, Any]
    applied_at: datetime


class NodeState(BaseModel):
    kind: ResourceKind
    lifecycle: LifecycleState = LifecycleState.APPLIED
    resource_id: str | None = None
    declared_config: dict[str, Any] = Field(default_factory=dict)
    applied_config: dict[str, Any] | None = None
    outputs: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    deposed: list[DeposedResource] = Field(default_factory=list)
    history: list[AppliedRevision] = Field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        """True when the provider confirmed ``applied_config`` at some point."""
        return self.applied_config is not None and self.resource_id is not None


class StackSnapshot(BaseModel):
    stack: str
    serial: int = 0
    updated_at: datetime | None = None
    nodes: dict[str, NodeState] = Field(default_factory=dict)

    @classmethod
    def empty(cls, stack: str) -> "StackSnapshot":
        return cls(stack=stack)

    def get(self, name: str) -> NodeState | None:
        return self.nodes.get(name)


# ---------------------------------------------------------------------------
# Change sets
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldDelta:
    field: str
    old: Any
    new: Any


@dataclass(frozen=True)
class ChangeEntry:
    name: str
    kind: ResourceKind
    action: ChangeAction
    delta: tuple[FieldDelta, ...] = ()
    prior: NodeState | None = None
    deposed: tuple[DeposedResource, ...] = ()

    @property
    def changed_fields(self) -> list[str]:
        return [item.field for item in self.delta]


@dataclass(frozen=True)
class ChangeSet:
    changeset_id: str
    stack: str
    base_serial: int
    entries: tuple[ChangeEntry, ...] = field(default_factory=tuple)
    _claim: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def entry(self, name: str) -> ChangeEntry | None:
        for candidate in self.entries:
            if candidate.name == name:
                return candidate
        return None

    def claim(self) -> bool:
        """Mark this changeset as executed. Returns False if it already was."""
        return self._claim.acquire(blocking=False)

    @property
    def consumed(self) -> bool:
        return self._claim.locked()

    @property
    def has_changes(self) -> bool:
        return any(entry.action != ChangeAction.NOOP or entry.deposed for entry in self.entries)

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in ChangeAction}
        for entry in self.entries:
            counts[entry.action.value] += 1
        return counts


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class TimelineEvent(BaseModel):
    seq: int
    node: str
    event: str
    resource_id: str | None = None
    at: datetime


class NodeReport(BaseModel):
    name: str
    kind: ResourceKind
    planned_action: ChangeAction
    effective_action: ChangeAction | None = None
    state: LifecycleState
    resource_id: str | None = None
    error: str | None = None
    skipped_because: str | None = None


class FailureSummary(BaseModel):
    node: str
    error_type: str
    message: str
    transient: bool = False


class ReconcileReport(BaseModel):
    run_id: str
    stack: str
    success: bool
    canceled: bool = False
    rollback: bool = False
    base_serial: int
    serial: int
    started_at: datetime
    finished_at: datetime
    nodes: list[NodeReport] = Field(default_factory=list)
    first_failure: FailureSummary | None = None
    skipped: list[str] = Field(default_factory=list)
    timeline: list[TimelineEvent] = Field(default_factory=list)
    provider_calls: int = 0

    def node(self, name: str) -> NodeReport | None:
        for item in self.nodes:
            if item.name == name:
                return item
        return None
