from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping


class ResourceKind(str, Enum):
    NETWORK = "Network"
    SECURITY_GROUP = "SecurityGroup"
    DATABASE = "Database"
    FUNCTION_LAYER = "FunctionLayer"
    FUNCTION = "Function"
    REST_API = "RestApi"
    API_ROUTE = "ApiRoute"


@dataclass(frozen=True)
class KindPolicy:
    """Field-level provider capabilities for one resource kind.

    ``updatable`` fields can be changed in place, ``replace_on`` fields force a
    destroy-and-recreate. A field listed in neither is ambiguous and is treated
    as requiring replacement.
    """

    kind: ResourceKind
    outputs: frozenset[str]
    updatable: frozenset[str] = frozenset()
    replace_on: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        overlap = self.updatable & self.replace_on
        if overlap:
            raise ValueError(
                f"KindPolicy for {self.kind.value} lists fields as both updatable and replace_on: "
                f"{', '.join(sorted(overlap))}"
            )
        if not self.outputs:
            raise ValueError(f"KindPolicy for {self.kind.value} must declare at least one output")

    def requires_replace(self, changed_fields: Iterable[str]) -> bool:
        return any(field not in self.updatable for field in changed_fields)


DEFAULT_POLICIES: dict[ResourceKind, KindPolicy] = {
    ResourceKind.NETWORK: KindPolicy(
        kind=ResourceKind.NETWORK,
        outputs=frozenset({"network_id", "cidr_block"}),
        updatable=frozenset({"tags"}),
        replace_on=frozenset({"cidr_block", "is_default", "lookup"}),
    ),
    ResourceKind.SECURITY_GROUP: KindPolicy(
        kind=ResourceKind.SECURITY_GROUP,
        outputs=frozenset({"group_id"}),
        updatable=frozenset({"ingress_rules", "allow_all_outbound", "tags"}),
        replace_on=frozenset({"network_id", "description", "group_name"}),
    ),
    ResourceKind.DATABASE: KindPolicy(
        kind=ResourceKind.DATABASE,
        outputs=frozenset({"instance_id", "endpoint_address", "port"}),
        updatable=frozenset(
            {
                "engine_version",
                "instance_class",
                "allocated_storage",
                "master_password",
                "security_group_ids",
                "backup_retention_days",
                "port",
                "tags",
            }
        ),
        replace_on=frozenset(
            {"engine", "database_name", "master_username", "network_id", "subnet_type", "instance_name"}
        ),
    ),
    ResourceKind.FUNCTION_LAYER: KindPolicy(
        kind=ResourceKind.FUNCTION_LAYER,
        outputs=frozenset({"layer_arn", "version"}),
        replace_on=frozenset({"layer_name", "code", "compatible_runtimes"}),
    ),
    ResourceKind.FUNCTION: KindPolicy(
        kind=ResourceKind.FUNCTION,
        outputs=frozenset({"function_arn", "invoke_arn"}),
        updatable=frozenset(
            {"code", "handler", "runtime", "environment", "layers", "memory_mb", "timeout_seconds", "tags"}
        ),
        replace_on=frozenset({"function_name"}),
    ),
    ResourceKind.REST_API: KindPolicy(
        kind=ResourceKind.REST_API,
        outputs=frozenset({"api_id", "root_resource_id", "endpoint_url"}),
        updatable=frozenset({"api_name", "description", "cors_allow_origins", "tags"}),
    ),
    ResourceKind.API_ROUTE: KindPolicy(
        kind=ResourceKind.API_ROUTE,
        outputs=frozenset({"route_id", "url"}),
        updatable=frozenset({"integration", "authorization"}),
        replace_on=frozenset({"api_id", "path", "method"}),
    ),
}


def parse_kind(value: str | ResourceKind) -> ResourceKind:
    """Parse a kind tag, accepting either the enum or its string value."""
    if isinstance(value, ResourceKind):
        return value
    try:
        return ResourceKind(value)
    except ValueError as exc:
        choices = ", ".join(kind.value for kind in ResourceKind)
        raise ValueError(f"resource kind must be one of: {choices}; got {value!r}") from exc


def policy_for(kind: ResourceKind, policies: Mapping[ResourceKind, KindPolicy]) -> KindPolicy:
    try:
        return policies[kind]
    except KeyError as exc:
        raise ValueError(f"No KindPolicy registered for resource kind {kind.value}") from exc
