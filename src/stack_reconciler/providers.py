from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Protocol, TypeVar

from .errors import ProviderError
from .kinds import DEFAULT_POLICIES, KindPolicy, ResourceKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_FOUND = "not_found"

    @property
    def terminal(self) -> bool:
        return self != ProviderStatus.IN_PROGRESS


class ProviderClient(Protocol):
    """Capability a provider exposes for one resource kind.

    Every call is an idempotent request; asynchronous provisioning is observed
    through ``describe`` until it reports a terminal status. A delete has
    finished only when ``describe`` reports ``NOT_FOUND``; ``SUCCEEDED`` for a
    resource being deleted means it still exists.
    """

    def create(self, config: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        ...

    def update(self, resource_id: str, delta: dict[str, Any]) -> dict[str, Any]:
        ...

    def delete(self, resource_id: str) -> None:
        ...

    def describe(self, resource_id: str) -> ProviderStatus:
        ...


TransientClassifier = Callable[[BaseException], bool]


def default_is_transient(exc: BaseException) -> bool:
    """Treat dropped connections, socket timeouts and throttling responses as transient."""
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return bool(getattr(exc, "throttled", False))


@dataclass(frozen=True)
class ProviderRegistration:
    kind: ResourceKind
    client: ProviderClient
    policy: KindPolicy
    is_transient: TransientClassifier


class ProviderRegistry:
    """Maps each resource kind tag to the client and field policy that handle it."""

    def __init__(self) -> None:
        self._registrations: dict[ResourceKind, ProviderRegistration] = {}

    def register(
        self,
        kind: ResourceKind,
        client: ProviderClient,
        *,
        policy: KindPolicy | None = None,
        is_transient: TransientClassifier | None = None,
    ) -> None:
        if kind in self._registrations:
            raise ValueError(f"Provider already registered for resource kind {kind.value}")
        resolved_policy = policy if policy is not None else DEFAULT_POLICIES.get(kind)
        if resolved_policy is None:
            raise ValueError(f"No KindPolicy given or known for resource kind {kind.value}")
        if resolved_policy.kind != kind:
            raise ValueError(f"KindPolicy for {resolved_policy.kind.value} cannot be registered under {kind.value}")
        self._registrations[kind] = ProviderRegistration(
            kind=kind,
            client=client,
            policy=resolved_policy,
            is_transient=is_transient if is_transient is not None else default_is_transient,
        )

    def __contains__(self, kind: object) -> bool:
        return kind in self._registrations

    def registration(self, kind: ResourceKind) -> ProviderRegistration:
        try:
            return self._registrations[kind]
        except KeyError as exc:
            raise ValueError(f"No provider registered for resource kind {kind.value}") from exc

    def client_for(self, kind: ResourceKind) -> ProviderClient:
        return self.registration(kind).client

    @property
    def policies(self) -> Mapping[ResourceKind, KindPolicy]:
        merged = dict(DEFAULT_POLICIES)
        merged.update({kind: reg.policy for kind, reg in self._registrations.items()})
        return merged

    def call(self, kind: ResourceKind, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Invoke a client method, mapping any failure into ``ProviderError``."""
        registration = self.registration(kind)
        try:
            return fn(*args)
        except ProviderError as exc:
            if exc.kind is None:
                exc.kind = kind.value
            if exc.operation is None:
                exc.operation = operation
            raise
        except Exception as exc:  # noqa: BLE001 - provider clients raise arbitrary SDK errors.
            transient = registration.is_transient(exc)
            raise ProviderError(
                f"{kind.value}.{operation} failed: {exc}",
                transient=transient,
                kind=kind.value,
                operation=operation,
                cause=exc,
            ) from exc
