"""Change planning for stack orchestration.

Diffs the evaluated template against recorded stack state and produces an
ordered, immutable ChangePlan:

1. Creates, updates, replacements and no-ops in topological order
   (dependencies first).
2. Deletes (removed resources, resources whose condition became false, and
   the old instances of replaced resources) in reverse dependency order of
   the recorded state.

Planning is read-only: it never calls the backend and never writes state.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from common import content_hash
from expressions import ResolutionContext, Unknown, contains_unknown, resolve
from kinds import KindRegistry
from stack_opr.graph import StackGraph, build_graph, order_by_dependencies
from stack_opr.state import StackState
from template import Template

logger = logging.getLogger(__name__)


class ChangeAction(Enum):
    CREATE = 'create'
    UPDATE = 'update'
    REPLACE = 'replace'
    DELETE = 'delete'
    NOOP = 'noop'


def _plain(value: Any) -> Any:
    """Render Unknown placeholders as strings for display/serialization."""
    if isinstance(value, Unknown):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class ResourceChange:
    """One planned change.

    Attributes:
        logical_id: Resource the change applies to
        action: What the coordinator does
        kind: Resource kind tag
        desired: Resolved desired properties (may hold Unknown placeholders)
        previous: Recorded properties before the change
        physical_id: Existing physical id (the old instance for REPLACE/DELETE)
        changed: Property names that differ from recorded state
        replacement_reasons: Changed properties that force replacement
        depends_on: Logical ids whose entries must succeed first
        replaced: True for the DELETE that removes a replaced resource's old instance
    """
    logical_id: str
    action: ChangeAction
    kind: str
    desired: Optional[dict] = None
    previous: Optional[dict] = None
    physical_id: Optional[str] = None
    changed: tuple[str, ...] = ()
    replacement_reasons: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    replaced: bool = False

    @property
    def is_mutation(self) -> bool:
        return self.action is not ChangeAction.NOOP

    @property
    def label(self) -> str:
        suffix = ' (old instance)' if self.replaced else ''
        return f"{self.action.value.capitalize()} {self.logical_id}{suffix}"

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'logicalId': self.logical_id,
            'action': self.action.value,
            'kind': self.kind,
        }
        if self.physical_id is not None:
            d['physicalId'] = self.physical_id
        if self.desired is not None:
            d['desired'] = _plain(self.desired)
        if self.previous is not None:
            d['previous'] = self.previous
        if self.changed:
            d['changed'] = list(self.changed)
        if self.replacement_reasons:
            d['replacementReasons'] = list(self.replacement_reasons)
        if self.depends_on:
            d['dependsOn'] = list(self.depends_on)
        if self.replaced:
            d['replaced'] = True
        return d


@dataclass(frozen=True)
class ChangePlan:
    """Ordered sequence of changes for one stack.

    The coordinator never reorders a plan; it only runs entries concurrently
    when `prerequisites` allows it.

    Attributes:
        stack_id: Stack the plan applies to
        changes: Ordered changes
        prerequisites: For each change, indices of changes that must succeed first
        state_version: Recorded state version the plan was computed against
        parameters: Bound parameter values
        skipped: Declared resources excluded by a false condition (never created)
        template: Template the plan was computed from (None for destroy)
    """
    stack_id: str
    changes: tuple[ResourceChange, ...]
    prerequisites: tuple[tuple[int, ...], ...]
    state_version: int
    parameters: dict = field(default_factory=dict)
    skipped: tuple[str, ...] = ()
    template: Optional[Template] = field(default=None, compare=False, repr=False)

    def __iter__(self) -> Iterator[ResourceChange]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    @property
    def is_destroy(self) -> bool:
        return self.template is None

    @property
    def effective_changes(self) -> list[ResourceChange]:
        """Changes that mutate something (NOOPs dropped)."""
        return [c for c in self.changes if c.is_mutation]

    @property
    def has_changes(self) -> bool:
        return bool(self.effective_changes)

    @property
    def fingerprint(self) -> str:
        return content_hash({
            'stackId': self.stack_id,
            'stateVersion': self.state_version,
            'changes': [c.to_dict() for c in self.changes],
        })

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in ChangeAction}
        for change in self.changes:
            if not change.replaced:
                counts[change.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'stackId': self.stack_id,
            'stateVersion': self.state_version,
            'fingerprint': self.fingerprint,
            'parameters': dict(self.parameters),
            'summary': self.summary(),
            'changes': [c.to_dict() for c in self.changes],
            'skipped': list(self.skipped),
        }


class Planner:
    """Computes ChangePlans from a template and recorded state."""

    def __init__(self, registry: KindRegistry):
        self.registry = registry

    def plan(
        self,
        template: Template,
        prior: StackState,
        parameters: Optional[dict[str, Any]] = None,
        graph: Optional[StackGraph] = None,
    ) -> ChangePlan:
        """Plan the changes that bring prior state to the template.

        Raises:
            TemplateParseError, DanglingReferenceError, GraphCycleError,
            CyclicReferenceError, TypeMismatchError, UnresolvedReferenceError
        """
        graph = graph or build_graph(template, self.registry)
        bound = template.bind_parameters(parameters)
        context = ResolutionContext(
            parameters=bound,
            mappings=template.mappings,
            conditions=template.conditions,
            allow_unknown=True,
        )
        for lid, record in prior.resources.items():
            context.mark_resolved(lid, record.physical_id, record.attributes)

        upserts: list[ResourceChange] = []
        deletes: set[str] = set()
        replaced: set[str] = set()
        skipped: list[str] = []
        present: set[str] = set()

        for lid in graph.topological_order():
            resource = template.resources[lid]
            record = prior.get(lid)

            if resource.condition is not None and not context.condition(resource.condition):
                context.forget(lid)
                if record is not None:
                    logger.debug(f"[plan] '{lid}' excluded by condition '{resource.condition}'; deleting")
                    deletes.add(lid)
                else:
                    skipped.append(lid)
                continue

            kind = self.registry.get(resource.kind)
            desired = {name: resolve(expr, context) for name, expr in resource.properties.items()}
            kind.validate(lid, desired)
            depends_on = tuple(d for d in graph.topological_order()
                               if d in graph.dependencies_of(lid) and d in present)
            present.add(lid)

            if record is None:
                context.mark_pending(lid)
                upserts.append(ResourceChange(
                    logical_id=lid, action=ChangeAction.CREATE, kind=resource.kind,
                    desired=desired, depends_on=depends_on,
                ))
                continue

            if record.kind != resource.kind:
                changed = {'kind'}
                reasons: list[str] = ['kind']
            elif not contains_unknown(desired) and content_hash(desired) == record.hash:
                upserts.append(ResourceChange(
                    logical_id=lid, action=ChangeAction.NOOP, kind=resource.kind,
                    desired=desired, previous=record.properties,
                    physical_id=record.physical_id, depends_on=depends_on,
                ))
                continue
            else:
                changed = _changed_properties(desired, record.properties)
                reasons = kind.replacement_properties(changed)

            if reasons:
                context.mark_pending(lid)
                replaced.add(lid)
                action = ChangeAction.REPLACE
            else:
                action = ChangeAction.UPDATE
            upserts.append(ResourceChange(
                logical_id=lid, action=action, kind=resource.kind,
                desired=desired, previous=record.properties,
                physical_id=record.physical_id, changed=tuple(sorted(changed)),
                replacement_reasons=tuple(reasons), depends_on=depends_on,
            ))

        deletes |= {lid for lid in prior.resources if lid not in template.resources}
        delete_changes = _delete_changes(prior, deletes, replaced)

        plan = _assemble(
            prior.stack_id, upserts, delete_changes, prior, graph,
            state_version=prior.version, parameters=bound,
            skipped=tuple(skipped), template=template,
        )
        logger.info(f"[plan] {prior.stack_id}: {_format_summary(plan)}")
        return plan

    def plan_destroy(self, prior: StackState) -> ChangePlan:
        """Plan deletion of every recorded resource."""
        delete_changes = _delete_changes(prior, set(prior.resources), set())
        plan = _assemble(
            prior.stack_id, [], delete_changes, prior, None,
            state_version=prior.version, parameters={}, skipped=(), template=None,
        )
        logger.info(f"[plan] {prior.stack_id} (destroy): {_format_summary(plan)}")
        return plan


def _changed_properties(desired: dict, previous: dict) -> set[str]:
    changed = set()
    for name in set(desired) | set(previous):
        value = desired.get(name)
        if contains_unknown(value) or value != previous.get(name):
            changed.add(name)
    return changed


def _delete_changes(prior: StackState, deletes: set[str], replaced: set[str]) -> list[ResourceChange]:
    """Deletes in reverse dependency order of the recorded state."""
    targets = deletes | replaced
    records = prior.resources
    order = order_by_dependencies(
        {lid: set(records[lid].depends_on) for lid in targets},
        tie_break=list(records),
    )
    changes = []
    for lid in reversed(order):
        record = records[lid]
        changes.append(ResourceChange(
            logical_id=lid,
            action=ChangeAction.DELETE,
            kind=record.kind,
            previous=record.properties,
            physical_id=record.physical_id,
            depends_on=tuple(record.depends_on),
            replaced=lid in replaced,
        ))
    return changes


def _assemble(
    stack_id: str,
    upserts: list[ResourceChange],
    delete_changes: list[ResourceChange],
    prior: StackState,
    graph: Optional[StackGraph],
    **kwargs: Any,
) -> ChangePlan:
    """Concatenate phases and compute each change's prerequisites."""
    changes = upserts + delete_changes
    upsert_index = {c.logical_id: i for i, c in enumerate(upserts)}
    delete_index = {c.logical_id: len(upserts) + i for i, c in enumerate(delete_changes)}

    recorded_dependents: dict[str, set[str]] = {}
    for lid, record in prior.resources.items():
        for dep in record.depends_on:
            recorded_dependents.setdefault(dep, set()).add(lid)

    prerequisites: list[tuple[int, ...]] = []
    for change in upserts:
        prerequisites.append(tuple(sorted(upsert_index[d] for d in change.depends_on)))

    for change in delete_changes:
        lid = change.logical_id
        waits: set[int] = set()
        for dependent in recorded_dependents.get(lid, set()):
            if dependent in upsert_index:
                waits.add(upsert_index[dependent])
            if dependent in delete_index and dependent != lid:
                waits.add(delete_index[dependent])
        if graph is not None and lid in graph:
            for dependent in graph.dependents_of(lid):
                if dependent in upsert_index:
                    waits.add(upsert_index[dependent])
        if change.replaced:
            waits.add(upsert_index[lid])
        prerequisites.append(tuple(sorted(waits)))

    return ChangePlan(
        stack_id=stack_id,
        changes=tuple(changes),
        prerequisites=tuple(prerequisites),
        **kwargs,
    )


def _format_summary(plan: ChangePlan) -> str:
    counts = plan.summary()
    return ', '.join(f"{count} {action}" for action, count in counts.items() if count) or 'empty'
