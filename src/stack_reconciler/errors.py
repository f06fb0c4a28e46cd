from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for every error raised by the reconciliation engine."""


# ---------------------------------------------------------------------------
# Specification errors (raised before any provider call)
# ---------------------------------------------------------------------------

class SpecificationError(ReconcilerError):
    """The desired-state declarations are invalid. Nothing has been mutated."""


class DuplicateNameError(SpecificationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate resource name: {name}")
        self.name = name


class UnknownReferenceError(SpecificationError):
    def __init__(self, source: str, target: str, output: str | None = None) -> None:
        if output is None:
            message = f"Resource {source} references unknown resource {target}"
        else:
            message = f"Resource {source} references unknown output {target}.{output}"
        super().__init__(message)
        self.source = source
        self.target = target
        self.output = output


class CycleError(SpecificationError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Resource dependency graph contains a cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


class InvalidDeclarationError(SpecificationError):
    """A declaration is malformed (bad kind, bad reference syntax, empty name)."""


class SecurityPolicyError(SpecificationError):
    def __init__(self, findings: list[str]) -> None:
        super().__init__("Security policy violations: " + "; ".join(findings))
        self.findings = findings


# ---------------------------------------------------------------------------
# Persisted state errors
# ---------------------------------------------------------------------------

class StateCorruptionError(ReconcilerError):
    """Persisted state is unreadable. Requires operator intervention."""


class CorruptStateError(StateCorruptionError):
    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"Stack state at {path} is corrupt: {reason}")
        self.path = path
        self.reason = reason


# ---------------------------------------------------------------------------
# Provider errors (contained per node)
# ---------------------------------------------------------------------------

class ProviderError(ReconcilerError):
    """A provider client call failed.

    ``transient`` failures (throttling, dropped connections) are retried with
    bounded backoff; everything else propagates immediately.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        kind: str | None = None,
        operation: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.kind = kind
        self.operation = operation
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class ProvisioningTimeoutError(ProviderError):
    def __init__(self, resource_id: str, waited_seconds: float, *, kind: str | None = None) -> None:
        super().__init__(
            f"Resource {resource_id} did not reach a terminal status within {waited_seconds:.1f}s",
            transient=False,
            kind=kind,
            operation="describe",
        )
        self.resource_id = resource_id
        self.waited_seconds = waited_seconds


# ---------------------------------------------------------------------------
# Programming errors
# ---------------------------------------------------------------------------

class UnresolvedReferenceError(ReconcilerError):
    """An output was read before its node reached Applied."""

    def __init__(self, node: str, output: str, reason: str) -> None:
        super().__init__(f"Cannot read {node}.{output}: {reason}")
        self.node = node
        self.output = output


class ChangeSetConsumedError(ReconcilerError):
    def __init__(self, changeset_id: str) -> None:
        super().__init__(f"ChangeSet {changeset_id} has already been executed")
        self.changeset_id = changeset_id
