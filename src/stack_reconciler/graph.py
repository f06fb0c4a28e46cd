from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from .errors import CycleError, DuplicateNameError, InvalidDeclarationError, UnknownReferenceError
from .kinds import DEFAULT_POLICIES, KindPolicy, ResourceKind, policy_for
from .models import DependencyEdge, ResourceDeclaration, ResourceNode, iter_references, parse_config_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceGraph:
    """Validated dependency DAG of resource nodes."""

    nodes: dict[str, ResourceNode]
    edges: tuple[DependencyEdge, ...]
    _dependents: dict[str, tuple[str, ...]] = field(default_factory=dict, repr=False)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, name: str) -> ResourceNode:
        return self.nodes[name]

    def dependencies_of(self, name: str) -> tuple[str, ...]:
        return self.nodes[name].dependencies

    def dependents_of(self, name: str) -> tuple[str, ...]:
        return self._dependents.get(name, ())

    def topological_order(self) -> list[str]:
        return [name for level in self.levels() for name in level]

    def levels(self) -> list[list[str]]:
        """Group nodes by topological depth; nodes in one level are mutually independent."""
        order = {name: node.declaration_order for name, node in self.nodes.items()}
        indegree = {name: len(node.dependencies) for name, node in self.nodes.items()}
        current = sorted((name for name, degree in indegree.items() if degree == 0), key=order.__getitem__)
        levels: list[list[str]] = []
        while current:
            levels.append(current)
            following: list[str] = []
            for name in current:
                for nxt in self.dependents_of(name):
                    indegree[nxt] -= 1
                    if indegree[nxt] == 0:
                        following.append(nxt)
            current = sorted(following, key=order.__getitem__)
        return levels


def _coerce_declarations(
    declarations: Iterable[ResourceDeclaration | Mapping[str, Any]] | Mapping[str, Mapping[str, Any]],
) -> list[ResourceDeclaration]:
    if isinstance(declarations, Mapping):
        items: list[ResourceDeclaration | Mapping[str, Any]] = [
            {"name": name, **dict(body)} for name, body in declarations.items()
        ]
    else:
        items = list(declarations)

    result: list[ResourceDeclaration] = []
    for index, item in enumerate(items):
        if isinstance(item, ResourceDeclaration):
            result.append(item)
            continue
        try:
            result.append(ResourceDeclaration.model_validate(dict(item)))
        except ValidationError as exc:
            raise InvalidDeclarationError(f"resources[{index}] failed validation: {exc}") from exc
    return result


def _find_cycle(remaining: set[str], dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Return one cycle among *remaining* nodes as a closed path."""
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(name: str) -> list[str] | None:
        visiting.append(name)
        on_path.add(name)
        for dep in sorted(dependencies[name]):
            if dep not in remaining or dep in done:
                continue
            if dep in on_path:
                start = visiting.index(dep)
                return visiting[start:] + [dep]
            found = visit(dep)
            if found is not None:
                return found
        visiting.pop()
        on_path.discard(name)
        done.add(name)
        return None

    for start in sorted(remaining):
        if start in done:
            continue
        found = visit(start)
        if found is not None:
            return found
    return sorted(remaining)


def validate_acyclic(dependencies: Mapping[str, Iterable[str]]) -> None:
    """Raise ``CycleError`` unless the dependency mapping is a DAG (Kahn's algorithm)."""
    deps = {name: set(values) for name, values in dependencies.items()}
    indegree = {name: len(values) for name, values in deps.items()}
    edges: dict[str, list[str]] = defaultdict(list)
    for name, values in deps.items():
        for dep in values:
            edges[dep].append(name)

    queue = deque(sorted(name for name, degree in indegree.items() if degree == 0))
    visited: set[str] = set()
    while queue:
        current = queue.popleft()
        visited.add(current)
        for nxt in sorted(edges[current]):
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    if len(visited) != len(deps):
        raise CycleError(_find_cycle(set(deps) - visited, deps))


def build_resource_graph(
    declarations: Iterable[ResourceDeclaration | Mapping[str, Any]] | Mapping[str, Mapping[str, Any]],
    policies: Mapping[ResourceKind, KindPolicy] = DEFAULT_POLICIES,
) -> ResourceGraph:
    """Turn desired-state declarations into a validated DAG.

    Pure transform: no provider or filesystem access.

    Raises:
        DuplicateNameError: Two declarations share a logical name.
        UnknownReferenceError: A reference or ``depends_on`` names a missing
            node, or an output field the target kind does not declare.
        CycleError: References form a cycle.
        InvalidDeclarationError: A declaration or reference is malformed.
    """
    parsed = _coerce_declarations(declarations)

    by_name: dict[str, ResourceDeclaration] = {}
    for declaration in parsed:
        if declaration.name in by_name:
            raise DuplicateNameError(declaration.name)
        by_name[declaration.name] = declaration

    configs: dict[str, dict[str, Any]] = {}
    dependencies: dict[str, list[str]] = {}
    for declaration in parsed:
        config = parse_config_value(declaration.config)
        configs[declaration.name] = config
        deps: list[str] = []
        for dep in declaration.depends_on:
            if dep not in by_name:
                raise UnknownReferenceError(declaration.name, dep)
            if dep not in deps:
                deps.append(dep)
        for ref in iter_references(config):
            target = by_name.get(ref.node)
            if target is None:
                raise UnknownReferenceError(declaration.name, ref.node)
            if ref.output not in policy_for(target.kind, policies).outputs:
                raise UnknownReferenceError(declaration.name, ref.node, ref.output)
            if ref.node not in deps:
                deps.append(ref.node)
        if declaration.name in deps:
            raise CycleError([declaration.name, declaration.name])
        dependencies[declaration.name] = deps

    validate_acyclic(dependencies)

    nodes: dict[str, ResourceNode] = {}
    edges: list[DependencyEdge] = []
    dependents: dict[str, list[str]] = defaultdict(list)
    for index, declaration in enumerate(parsed):
        deps = tuple(dependencies[declaration.name])
        nodes[declaration.name] = ResourceNode(
            name=declaration.name,
            kind=declaration.kind,
            config=configs[declaration.name],
            dependencies=deps,
            depends_on=tuple(declaration.depends_on),
            declaration_order=index,
        )
        for dep in deps:
            edges.append(DependencyEdge(source=declaration.name, target=dep))
            dependents[dep].append(declaration.name)

    logger.debug("Built resource graph with %d nodes and %d edges", len(nodes), len(edges))
    return ResourceGraph(
        nodes=nodes,
        edges=tuple(edges),
        _dependents={name: tuple(values) for name, values in dependents.items()},
    )
