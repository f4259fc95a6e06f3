"""Plan execution for stack orchestration.

Runs a ChangePlan against a provisioning backend. A change is dispatched as
soon as every change it depends on has succeeded, so independent resources
are provisioned concurrently (bounded by max_workers) while dependents
always wait for their dependencies.

Properties are re-resolved at dispatch time against the live context, so
references to attributes that were unknown at plan time pick up the values
reported by the backend. State is recorded on the coordinating thread after
each operation reaches a terminal status, before any dependent is dispatched.

On the first failure (or cancellation) no further change is dispatched,
in-flight operations are drained, and the applied prefix is rolled back.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Optional

from common import content_hash
from errors import ApplyCancelledError, ProvisioningError, RollbackFailureError, StackError
from expressions import ResolutionContext, resolve
from kinds import KindRegistry
from stack_opr.backend import ProvisioningBackend
from stack_opr.planner import ChangeAction, ChangePlan, ResourceChange
from stack_opr.polling import OperationPoller
from stack_opr.rollback import RollbackManager, RollbackResult
from stack_opr.state import STATUS_OK, ResourceRecord, StackState, StateStore

logger = logging.getLogger(__name__)

# Poll interval for the cancel event while operations are in flight
_CANCEL_CHECK_INTERVAL = 0.1


@dataclass
class AppliedChange:
    """A change that reached success.

    Attributes:
        index: Position of the change in the plan
        change: The planned change
        physical_id: Physical id the change acted on or produced
        properties: Resolved properties sent to the backend
        attributes: Attributes reported by the backend
        previous_record: Recorded state before the change (None for creates)
        skipped: True when the backend was not called (no-op, unchanged update)
    """
    index: int
    change: ResourceChange
    physical_id: Optional[str] = None
    properties: Optional[dict] = None
    attributes: dict = field(default_factory=dict)
    previous_record: Optional[ResourceRecord] = None
    skipped: bool = False


@dataclass
class AppliedResult:
    """Result of a successful apply."""
    stack_id: str
    applied: list[AppliedChange] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    state_version: int = 0

    @property
    def changed(self) -> list[str]:
        return [a.change.label for a in self.applied if not a.skipped]

    def to_dict(self) -> dict:
        return {
            'stackId': self.stack_id,
            'stateVersion': self.state_version,
            'changes': [
                {
                    'logicalId': a.change.logical_id,
                    'action': a.change.action.value,
                    'physicalId': a.physical_id,
                    'skipped': a.skipped,
                }
                for a in sorted(self.applied, key=lambda a: a.index)
            ],
            'outputs': self.outputs,
        }


@dataclass
class StackExecutor:
    """Executes change plans against a backend.

    Attributes:
        backend: Provisioning backend
        store: State store the recorded state is saved to
        registry: Resource kinds used to validate resolved properties
        poller: Drives each backend operation to a terminal status
        max_workers: Upper bound on concurrently running operations
    """
    backend: ProvisioningBackend
    store: StateStore
    registry: KindRegistry
    poller: OperationPoller
    max_workers: int = 4
    rollback_manager: Optional[RollbackManager] = None

    def __post_init__(self) -> None:
        if self.rollback_manager is None:
            self.rollback_manager = RollbackManager(self.backend, self.poller, self.store)

    def execute(
        self,
        plan: ChangePlan,
        state: StackState,
        cancel: Optional[threading.Event] = None,
    ) -> AppliedResult:
        """Apply a plan to recorded state.

        The caller holds the stack's update lock and has checked that the
        plan was computed against this state version.

        Raises:
            ProvisioningError: A change failed and the applied prefix was
                rolled back (result attached as .rollback)
            ApplyCancelledError: Cancelled; the applied prefix was rolled back
            RollbackFailureError: A compensating operation failed
        """
        context = self._live_context(plan, state)
        applied, failure = self._run(plan, state, context, cancel)

        outputs: dict[str, Any] = {}
        if failure is None:
            try:
                outputs = self._evaluate_outputs(plan, context)
            except StackError as e:
                logger.error(f"Output evaluation failed for '{plan.stack_id}': {e}")
                failure = ProvisioningError(f"Output evaluation failed: {e.message}")

        if failure is not None:
            self._roll_back(plan, applied, state, failure)

        state.set_outputs(outputs)
        state.set_status(STATUS_OK)
        self.store.save(state)
        logger.info(
            f"Apply of '{plan.stack_id}' complete: "
            f"{sum(1 for a in applied if not a.skipped)} changes, state version {state.version}"
        )
        return AppliedResult(
            stack_id=plan.stack_id,
            applied=applied,
            outputs=outputs,
            state_version=state.version,
        )

    def _live_context(self, plan: ChangePlan, state: StackState) -> ResolutionContext:
        template = plan.template
        kinds = {lid: rec.kind for lid, rec in state.resources.items()}
        if template is not None:
            kinds.update({lid: res.kind for lid, res in template.resources.items()})

        def load_attributes(logical_id: str, physical_id: str) -> Optional[dict]:
            logger.debug(f"Describing '{logical_id}' ({physical_id})")
            return self.backend.describe(physical_id, kinds[logical_id])

        context = ResolutionContext(
            parameters=plan.parameters,
            mappings=template.mappings if template else None,
            conditions=template.conditions if template else None,
            attribute_loader=load_attributes,
        )
        for lid, record in state.resources.items():
            context.mark_resolved(lid, record.physical_id, record.attributes or None)
        for change in plan.changes:
            if change.action in (ChangeAction.CREATE, ChangeAction.REPLACE):
                context.mark_pending(change.logical_id)
        return context

    def _run(
        self,
        plan: ChangePlan,
        state: StackState,
        context: ResolutionContext,
        cancel: Optional[threading.Event],
    ) -> tuple[list[AppliedChange], Optional[ProvisioningError]]:
        """Dispatch changes as their prerequisites complete.

        Returns:
            (applied changes, first failure or None)
        """
        waiting = list(range(len(plan.changes)))
        succeeded: set[int] = set()
        running: dict[Future, int] = {}
        busy: set[str] = set()
        applied: list[AppliedChange] = []
        failure: Optional[ProvisioningError] = None

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='stack-op') as pool:
            while True:
                if cancel is not None and cancel.is_set() and failure is None:
                    logger.warning(f"Apply of '{plan.stack_id}' cancelled; draining in-flight operations")
                    failure = ApplyCancelledError()

                if failure is None:
                    for index in list(waiting):
                        change = plan.changes[index]
                        if not all(p in succeeded for p in plan.prerequisites[index]):
                            continue
                        target = change.physical_id or change.logical_id
                        if target in busy:
                            continue
                        waiting.remove(index)
                        busy.add(target)
                        previous = state.get(change.logical_id)
                        future = pool.submit(self._execute_change, index, change, plan, context, previous)
                        running[future] = index

                if not running:
                    break

                timeout = _CANCEL_CHECK_INTERVAL if cancel is not None else None
                done, _ = wait(list(running), timeout=timeout, return_when=FIRST_COMPLETED)
                for future in done:
                    index = running.pop(future)
                    change = plan.changes[index]
                    busy.discard(change.physical_id or change.logical_id)
                    try:
                        outcome = future.result()
                    except Exception as e:
                        error = _as_provisioning_error(e, change.logical_id)
                        logger.error(f"[{change.action.value}] {change.logical_id} failed: {error.message}")
                        if failure is None:
                            failure = error
                        continue
                    self._record(outcome, state, context)
                    applied.append(outcome)
                    succeeded.add(index)

        if failure is None and waiting:
            blocked = ', '.join(plan.changes[i].logical_id for i in waiting)
            failure = ProvisioningError(f"Changes could not be dispatched: {blocked}")
        return applied, failure

    def _execute_change(
        self,
        index: int,
        change: ResourceChange,
        plan: ChangePlan,
        context: ResolutionContext,
        previous: Optional[ResourceRecord],
    ) -> AppliedChange:
        """Run one change on a worker thread. Never touches recorded state."""
        lid = change.logical_id
        verb = f"[{change.action.value}]"

        if change.action is ChangeAction.NOOP:
            return AppliedChange(index, change, physical_id=change.physical_id,
                                 previous_record=previous, skipped=True)

        if change.action is ChangeAction.DELETE:
            logger.info(f"{verb} {change.label} ({change.physical_id})...")
            self.poller.run(lambda: self.backend.delete(change.physical_id, change.kind), lid)
            logger.info(f"{verb} {change.label} deleted")
            return AppliedChange(index, change, physical_id=change.physical_id, previous_record=previous)

        resource = plan.template.resources[lid]
        properties = {name: resolve(expr, context) for name, expr in resource.properties.items()}
        self.registry.get(change.kind).validate(lid, properties)

        if change.action is ChangeAction.UPDATE:
            if previous is not None and content_hash(properties) == previous.hash:
                logger.info(f"{verb} {lid} unchanged after resolution; skipping")
                return AppliedChange(index, change, physical_id=change.physical_id,
                                     properties=properties, attributes=dict(previous.attributes),
                                     previous_record=previous, skipped=True)
            logger.info(f"{verb} {lid} ({change.physical_id}): {', '.join(change.changed)}...")
            op = self.poller.run(
                lambda: self.backend.update(change.physical_id, change.kind, properties), lid,
            )
            attributes = dict(previous.attributes) if previous is not None else {}
            attributes.update(op.attributes or {})
            logger.info(f"{verb} {lid} updated")
            return AppliedChange(index, change, physical_id=change.physical_id,
                                 properties=properties, attributes=attributes,
                                 previous_record=previous)

        if change.action is ChangeAction.REPLACE:
            logger.info(f"{verb} {lid}: creating new instance "
                        f"(forced by {', '.join(change.replacement_reasons)})...")
        else:
            logger.info(f"{verb} {lid} ({change.kind})...")
        op = self.poller.run(lambda: self.backend.create(change.kind, properties), lid)
        attributes = op.attributes or self.backend.describe(op.physical_id, change.kind) or {}
        logger.info(f"{verb} {lid} -> {op.physical_id}")
        return AppliedChange(index, change, physical_id=op.physical_id,
                             properties=properties, attributes=dict(attributes),
                             previous_record=previous)

    def _record(self, outcome: AppliedChange, state: StackState, context: ResolutionContext) -> None:
        """Persist a successful change. Runs on the coordinating thread."""
        change = outcome.change
        lid = change.logical_id

        if change.action is ChangeAction.NOOP or outcome.skipped:
            return

        if change.action is ChangeAction.DELETE:
            current = state.get(lid)
            if current is not None and current.physical_id == change.physical_id:
                state.remove(lid)
            self.store.save(state)
            return

        state.record(ResourceRecord(
            logical_id=lid,
            physical_id=outcome.physical_id,
            kind=change.kind,
            hash=content_hash(outcome.properties),
            properties=outcome.properties,
            attributes=outcome.attributes,
            depends_on=list(change.depends_on),
        ))
        self.store.save(state)
        context.mark_resolved(lid, outcome.physical_id, outcome.attributes)

    def _evaluate_outputs(self, plan: ChangePlan, context: ResolutionContext) -> dict[str, Any]:
        if plan.template is None:
            return {}
        outputs: dict[str, Any] = {}
        for name, output in plan.template.outputs.items():
            if output.condition is not None and not context.condition(output.condition):
                continue
            outputs[name] = resolve(output.value, context)
        return outputs

    def _roll_back(
        self,
        plan: ChangePlan,
        applied: list[AppliedChange],
        state: StackState,
        failure: ProvisioningError,
    ) -> None:
        """Roll back the applied prefix and raise the failure."""
        try:
            result: RollbackResult = self.rollback_manager.rollback(plan, applied, state, cause=failure)
        except RollbackFailureError as e:
            raise e from failure
        failure.rollback = result
        raise failure


def _as_provisioning_error(error: Exception, logical_id: str) -> ProvisioningError:
    """Wrap resolution, validation and unexpected backend errors raised mid-apply."""
    if isinstance(error, ProvisioningError):
        if error.logical_id is None:
            error.logical_id = logical_id
        return error
    wrapped = ProvisioningError(f"'{logical_id}': {error}", logical_id=logical_id)
    wrapped.__cause__ = error
    return wrapped
