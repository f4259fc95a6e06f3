"""Dependency graph for stack orchestration.

Builds a DAG of resources from expression references and explicit
dependsOn hints, validates every reference target, and computes a
deterministic topological ordering (dependencies first, declaration order
as tie-break).
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Optional

from errors import (
    CyclicReferenceError,
    DanglingReferenceError,
    GraphCycleError,
    TemplateParseError,
)
from expressions import (
    Expression,
    condition_references,
    guarded_references,
    mapping_references,
    parameter_references,
    resource_references,
)
from kinds import KindRegistry
from template import Resource, Template

logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A resource in the dependency graph.

    Attributes:
        resource: The underlying Resource declaration
        index: Declaration position in the template
        dependencies: Logical ids this resource needs first
        dependents: Logical ids that need this resource first
        depth: Longest dependency chain below this node (0 for roots)
    """
    resource: Resource
    index: int
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)
    depth: int = 0

    @property
    def logical_id(self) -> str:
        return self.resource.logical_id

    @property
    def kind(self) -> str:
        return self.resource.kind

    @property
    def is_root(self) -> bool:
        return not self.dependencies

    @property
    def is_leaf(self) -> bool:
        return not self.dependents

    def __repr__(self) -> str:
        return f"GraphNode({self.logical_id}, kind={self.kind}, depth={self.depth})"


class StackGraph:
    """Validated dependency graph built from a Template.

    Provides ordered traversal:
    - create_order(): dependencies before dependents
    - destroy_order(): dependents before dependencies
    """

    def __init__(self, template: Template, registry: Optional[KindRegistry] = None):
        """Build and validate the graph.

        Args:
            template: Parsed template
            registry: Kind registry; when given, every resource kind must exist

        Raises:
            TemplateParseError: Unknown kind, condition referencing a resource,
                or unguarded reference to a conditional resource
            DanglingReferenceError: Reference to an undeclared name
            CyclicReferenceError: Conditions referencing each other in a loop
            GraphCycleError: Resource dependencies forming a cycle
        """
        self.template = template
        self._nodes: dict[str, GraphNode] = {}
        self._order: list[str] = []

        if registry is not None:
            for resource in template.resources.values():
                registry.get(resource.kind)

        self._validate_conditions()
        self._build_edges()
        self._validate_outputs()
        self._check_cycles()
        self._order = self._topological_sort()
        self._compute_depths()
        logger.debug(f"Graph built: {len(self._nodes)} resources, order={self._order}")

    # Validation

    def _check_names(self, source: str, expr: Expression) -> None:
        """Check parameter, mapping and condition names used by expr exist."""
        for name in sorted(parameter_references(expr)):
            if name not in self.template.parameters:
                raise DanglingReferenceError(source, name, 'parameter')
        for name in sorted(mapping_references(expr)):
            if name not in self.template.mappings:
                raise DanglingReferenceError(source, name, 'mapping')
        for name in sorted(condition_references(expr)):
            if name not in self.template.conditions:
                raise DanglingReferenceError(source, name, 'condition')

    def _validate_conditions(self) -> None:
        conditions = self.template.conditions
        for name, expr in conditions.items():
            targets = resource_references(expr)
            if targets:
                raise TemplateParseError(
                    f"Condition '{name}' references resource '{sorted(targets)[0]}'; "
                    "conditions may only use parameters, mappings and other conditions"
                )
            self._check_names(f"conditions.{name}", expr)

        # DFS over condition -> condition edges
        white, grey, black = 0, 1, 2
        color = {name: white for name in conditions}
        stack: list[str] = []

        def visit(name: str) -> None:
            color[name] = grey
            stack.append(name)
            for ref in sorted(condition_references(conditions[name])):
                if color[ref] == grey:
                    raise CyclicReferenceError(stack[stack.index(ref):] + [ref])
                if color[ref] == white:
                    visit(ref)
            stack.pop()
            color[name] = black

        for name in conditions:
            if color[name] == white:
                visit(name)

    def _build_edges(self) -> None:
        resources = self.template.resources
        for index, resource in enumerate(resources.values()):
            self._nodes[resource.logical_id] = GraphNode(resource=resource, index=index)

        for resource in resources.values():
            node = self._nodes[resource.logical_id]
            source = resource.logical_id

            if resource.condition is not None and resource.condition not in self.template.conditions:
                raise DanglingReferenceError(source, resource.condition, 'condition')

            targets: set[str] = set()
            for name, expr in resource.properties.items():
                self._check_names(f"{source}.{name}", expr)
                targets |= resource_references(expr)
                self._check_guarded(f"{source}.{name}", expr, resource.condition)
            targets |= set(resource.depends_on)

            for target in sorted(targets):
                if target not in resources:
                    raise DanglingReferenceError(source, target)
                if target == source:
                    raise GraphCycleError([source, source])
                node.dependencies.add(target)
                self._nodes[target].dependents.add(source)

    def _check_guarded(self, source: str, expr: Expression, condition: Optional[str]) -> None:
        """Reject references to a resource whose condition may exclude it.

        The referencing resource or output must carry the same condition, or
        the reference must sit in the true branch of an 'if' on it.
        """
        resources = self.template.resources
        for target, guards in guarded_references(expr):
            required = resources[target].condition if target in resources else None
            if required is None or required == condition or required in guards:
                continue
            raise TemplateParseError(
                f"'{source}' references '{target}', which only exists when condition "
                f"'{required}' holds; guard the reference with the same condition"
            )

    def _validate_outputs(self) -> None:
        for name, output in self.template.outputs.items():
            source = f"outputs.{name}"
            self._check_names(source, output.value)
            if output.condition is not None and output.condition not in self.template.conditions:
                raise DanglingReferenceError(source, output.condition, 'condition')
            for target in sorted(resource_references(output.value)):
                if target not in self.template.resources:
                    raise DanglingReferenceError(source, target)
            self._check_guarded(source, output.value, output.condition)

    def _check_cycles(self) -> None:
        """DFS coloring; raises with the full cycle path on a back edge."""
        white, grey, black = 0, 1, 2
        color = {lid: white for lid in self._nodes}
        path: list[str] = []

        def visit(lid: str) -> None:
            color[lid] = grey
            path.append(lid)
            for dep in sorted(self._nodes[lid].dependencies, key=lambda d: self._nodes[d].index):
                if color[dep] == grey:
                    raise GraphCycleError(path[path.index(dep):] + [dep])
                if color[dep] == white:
                    visit(dep)
            path.pop()
            color[lid] = black

        for lid in self._nodes:
            if color[lid] == white:
                visit(lid)

    def _topological_sort(self) -> list[str]:
        """Kahn's algorithm with declaration index as the tie-break."""
        remaining = {lid: len(node.dependencies) for lid, node in self._nodes.items()}
        ready = [(node.index, lid) for lid, node in self._nodes.items() if not node.dependencies]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, lid = heapq.heappop(ready)
            order.append(lid)
            for dependent in self._nodes[lid].dependents:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._nodes[dependent].index, dependent))
        return order

    def _compute_depths(self) -> None:
        for lid in self._order:
            node = self._nodes[lid]
            node.depth = max((self._nodes[d].depth + 1 for d in node.dependencies), default=0)

    # Traversal

    @property
    def roots(self) -> list[GraphNode]:
        """Resources with no dependencies, in declaration order."""
        return [self._nodes[lid] for lid in self._order if self._nodes[lid].is_root]

    @property
    def max_depth(self) -> int:
        if not self._nodes:
            return 0
        return max(n.depth for n in self._nodes.values())

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, logical_id: str) -> GraphNode:
        """Get a GraphNode by logical id.

        Raises:
            KeyError: If logical id not found
        """
        return self._nodes[logical_id]

    def dependencies_of(self, logical_id: str) -> set[str]:
        return set(self._nodes[logical_id].dependencies)

    def dependents_of(self, logical_id: str) -> set[str]:
        return set(self._nodes[logical_id].dependents)

    def topological_order(self) -> list[str]:
        """Logical ids with every dependency before its dependents."""
        return list(self._order)

    def create_order(self) -> list[GraphNode]:
        return [self._nodes[lid] for lid in self._order]

    def destroy_order(self) -> list[GraphNode]:
        """Reverse of create_order."""
        return list(reversed(self.create_order()))


def build_graph(template: Template, registry: Optional[KindRegistry] = None) -> StackGraph:
    """Build and validate the dependency graph for a template."""
    return StackGraph(template, registry)


def order_by_dependencies(dependencies: dict[str, set[str]], tie_break: list[str]) -> list[str]:
    """Topologically order ids from an explicit dependency map.

    Used for recorded state, where dependencies come from the state file
    rather than a template. Edges to ids outside the map are ignored. Ids in
    a cycle (only possible with a hand-edited state file) are appended in
    tie-break order.
    """
    position = {lid: i for i, lid in enumerate(tie_break)}
    ids = sorted(dependencies, key=lambda lid: (position.get(lid, len(position)), lid))
    rank = {lid: i for i, lid in enumerate(ids)}
    deps = {lid: {d for d in dependencies[lid] if d in dependencies and d != lid} for lid in ids}
    dependents: dict[str, set[str]] = {lid: set() for lid in ids}
    for lid, ds in deps.items():
        for d in ds:
            dependents[d].add(lid)

    remaining = {lid: len(ds) for lid, ds in deps.items()}
    ready = [(rank[lid], lid) for lid in ids if not deps[lid]]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        _, lid = heapq.heappop(ready)
        order.append(lid)
        for dep in dependents[lid]:
            remaining[dep] -= 1
            if remaining[dep] == 0:
                heapq.heappush(ready, (rank[dep], dep))
    if len(order) < len(ids):
        logger.warning("Recorded state has cyclic dependencies; falling back to recorded order")
        order.extend(lid for lid in ids if lid not in order)
    return order
