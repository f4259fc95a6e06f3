"""Rollback of a partially applied plan.

Walks the changes that reached success in reverse plan order and issues the
compensating operation for each:

- Create / Replace (new instance): delete the new instance
- Update: re-apply the previously recorded properties
- Delete of a removed resource: re-create it from its recorded properties
- Delete of a replaced resource's old instance: nothing, the pair is
  committed once both halves succeeded

A compensation that fails is not retried. The stack is marked inconsistent
and RollbackFailureError is raised.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from errors import RollbackFailureError, StackError
from stack_opr.backend import ProvisioningBackend
from stack_opr.planner import ChangeAction, ChangePlan
from stack_opr.polling import OperationPoller
from stack_opr.state import (
    STATUS_INCONSISTENT,
    STATUS_ROLLED_BACK,
    ResourceRecord,
    StackState,
    StateStore,
)

if TYPE_CHECKING:
    from stack_opr.executor import AppliedChange

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    """Outcome of a rollback.

    Attributes:
        stack_id: Stack that was rolled back
        compensated: (logical id, compensating action) in execution order
        skipped: Logical ids that needed no compensation
        recreated: Logical id -> new physical id for re-created deletes
    """
    stack_id: str
    compensated: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    recreated: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'stackId': self.stack_id,
            'compensated': [{'logicalId': lid, 'action': action} for lid, action in self.compensated],
            'skipped': list(self.skipped),
            'recreated': dict(self.recreated),
        }


class RollbackManager:
    """Compensates the applied prefix of a failed plan."""

    def __init__(self, backend: ProvisioningBackend, poller: OperationPoller, store: StateStore):
        self.backend = backend
        self.poller = poller
        self.store = store

    def rollback(
        self,
        plan: ChangePlan,
        applied: list['AppliedChange'],
        state: StackState,
        cause: Optional[Exception] = None,
    ) -> RollbackResult:
        """Reverse the successfully applied changes.

        Args:
            plan: The plan that failed
            applied: Changes that reached success
            state: Stack state to restore (mutated and saved)
            cause: The error that triggered rollback

        Raises:
            RollbackFailureError: If a compensating operation fails
        """
        result = RollbackResult(stack_id=plan.stack_id)
        ordered = sorted(applied, key=lambda a: a.index, reverse=True)
        committed = _committed_replacements(ordered)
        logger.info(f"[rollback] Rolling back {len(ordered)} applied changes for '{plan.stack_id}'...")

        for entry in ordered:
            change = entry.change
            lid = change.logical_id
            if entry.skipped or change.action is ChangeAction.NOOP:
                result.skipped.append(lid)
                continue
            if lid in committed and change.action in (ChangeAction.REPLACE, ChangeAction.DELETE):
                logger.info(f"[rollback] '{lid}' replacement already committed; leaving it")
                result.skipped.append(lid)
                continue

            try:
                action = self._compensate(entry, state, result)
            except Exception as e:
                reason = e.message if isinstance(e, StackError) else f"{type(e).__name__}: {e}"
                logger.error(f"[rollback] Compensation failed for '{lid}': {reason}")
                state.set_status(STATUS_INCONSISTENT)
                self.store.save(state)
                error = RollbackFailureError([lid], reason, cause=cause)
                error.rollback = result
                raise error from e

            result.compensated.append((lid, action))
            self.store.save(state)

        state.set_status(STATUS_ROLLED_BACK)
        self.store.save(state)
        logger.info(f"[rollback] '{plan.stack_id}' reverted ({len(result.compensated)} compensations)")
        return result

    def _compensate(self, entry: 'AppliedChange', state: StackState, result: RollbackResult) -> str:
        change = entry.change
        lid = change.logical_id

        if change.action in (ChangeAction.CREATE, ChangeAction.REPLACE):
            logger.info(f"[rollback] Deleting '{lid}' ({entry.physical_id})")
            self.poller.run(lambda: self.backend.delete(entry.physical_id, change.kind), lid)
            if entry.previous_record is not None:
                state.record(entry.previous_record)
            else:
                state.remove(lid)
            return 'delete'

        if change.action is ChangeAction.UPDATE:
            previous = entry.previous_record
            logger.info(f"[rollback] Restoring previous properties of '{lid}' ({previous.physical_id})")
            self.poller.run(
                lambda: self.backend.update(previous.physical_id, change.kind, previous.properties),
                lid,
            )
            state.record(previous)
            return 'update'

        # Plain delete: bring the resource back under a new physical id
        previous = entry.previous_record
        logger.warning(f"[rollback] Re-creating deleted resource '{lid}' (new physical id)")
        op = self.poller.run(lambda: self.backend.create(change.kind, previous.properties), lid)
        attributes = op.attributes or self.backend.describe(op.physical_id, change.kind) or {}
        state.record(ResourceRecord(
            logical_id=lid,
            physical_id=op.physical_id,
            kind=previous.kind,
            hash=previous.hash,
            properties=previous.properties,
            attributes=attributes,
            depends_on=previous.depends_on,
        ))
        result.recreated[lid] = op.physical_id
        return 'create'


def _committed_replacements(applied: list['AppliedChange']) -> set[str]:
    """Logical ids whose new instance and old-instance delete both succeeded."""
    created = {a.change.logical_id for a in applied if a.change.action is ChangeAction.REPLACE}
    deleted = {a.change.logical_id for a in applied
               if a.change.action is ChangeAction.DELETE and a.change.replaced}
    return created & deleted
