"""Stack orchestration facade.

Wires configuration, resource kinds, the provisioning backend, the state
store, the planner and the execution coordinator together:

    orchestrator = StackOrchestrator.from_config(load_config())
    plan = orchestrator.plan(template, 'prod', {'Env': 'prod'})
    result = orchestrator.apply(plan)

`plan` is read-only. `apply` and `destroy` take the stack's update lock and
reject plans computed against an older state version.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

from config import DriverConfig
from errors import StackInconsistentError, StalePlanError
from kinds import KindRegistry, default_registry
from stack_opr.backend import ProvisioningBackend, create_backend
from stack_opr.executor import AppliedResult, StackExecutor
from stack_opr.graph import StackGraph, build_graph
from stack_opr.planner import ChangePlan, Planner
from stack_opr.polling import OperationPoller
from stack_opr.state import STATUS_INCONSISTENT, STATUS_OK, StackState, StateStore
from template import Template

logger = logging.getLogger(__name__)

MEMORY_BACKEND_FILE = 'memory-backend.json'


@dataclass(frozen=True)
class DriftEntry:
    """Recorded resource compared with what the backend reports."""
    logical_id: str
    physical_id: str
    kind: str
    status: str  # 'present' or 'missing'

    def to_dict(self) -> dict:
        return {
            'logicalId': self.logical_id,
            'physicalId': self.physical_id,
            'kind': self.kind,
            'status': self.status,
        }


class StackOrchestrator:
    """Plans and applies templates to named stacks."""

    def __init__(
        self,
        backend: ProvisioningBackend,
        store: StateStore,
        registry: Optional[KindRegistry] = None,
        poller: Optional[OperationPoller] = None,
        max_workers: int = 4,
    ):
        self.backend = backend
        self.store = store
        self.registry = registry or default_registry()
        self.poller = poller or OperationPoller(backend)
        self.planner = Planner(self.registry)
        self.executor = StackExecutor(
            backend=backend,
            store=store,
            registry=self.registry,
            poller=self.poller,
            max_workers=max_workers,
        )

    @classmethod
    def from_config(cls, config: DriverConfig) -> 'StackOrchestrator':
        store_path = config.state_dir / MEMORY_BACKEND_FILE if config.backend == 'memory' else None
        backend = create_backend(config.backend, endpoint=config.endpoint, store_path=store_path)
        return cls(
            backend=backend,
            store=StateStore(config.state_dir),
            registry=default_registry(config.kinds_file),
            poller=OperationPoller.from_config(backend, config),
            max_workers=config.max_workers,
        )

    def validate(self, template: Template, parameters: Optional[dict[str, Any]] = None) -> StackGraph:
        """Check a template without touching state or the backend.

        Raises:
            TemplateParseError, DanglingReferenceError, GraphCycleError,
            CyclicReferenceError
        """
        graph = build_graph(template, self.registry)
        template.bind_parameters(parameters)
        return graph

    def state(self, stack_id: str) -> StackState:
        return self.store.load(stack_id)

    def plan(
        self,
        template: Template,
        stack_id: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> ChangePlan:
        """Compute the changes that bring a stack to the template."""
        prior = self.store.load(stack_id)
        if prior.status == STATUS_INCONSISTENT:
            logger.warning(f"[plan] Stack '{stack_id}' is marked inconsistent; apply will be refused")
        return self.planner.plan(template, prior, parameters)

    def plan_destroy(self, stack_id: str) -> ChangePlan:
        return self.planner.plan_destroy(self.store.load(stack_id))

    def apply(self, plan: ChangePlan, cancel: Optional[threading.Event] = None) -> AppliedResult:
        """Apply a plan under the stack's update lock.

        Raises:
            StackLockedError: Another apply holds the lock
            StackInconsistentError: A previous rollback failed
            StalePlanError: State moved on since the plan was computed
            ProvisioningError, ApplyCancelledError, RollbackFailureError
        """
        with self.store.lock(plan.stack_id):
            state = self.store.load(plan.stack_id)
            if state.status == STATUS_INCONSISTENT:
                raise StackInconsistentError(plan.stack_id)
            if state.version != plan.state_version:
                raise StalePlanError(plan.stack_id, plan.state_version, state.version)
            if not plan.has_changes and plan.is_destroy:
                logger.info(f"Stack '{plan.stack_id}' has no recorded resources")
            result = self.executor.execute(plan, state, cancel)
            if plan.is_destroy and not len(state) and self.store.exists(plan.stack_id):
                self.store.delete(plan.stack_id)
                logger.info(f"Stack '{plan.stack_id}' destroyed; state file removed")
            return result

    def destroy(self, stack_id: str, cancel: Optional[threading.Event] = None) -> AppliedResult:
        """Delete every recorded resource of a stack."""
        return self.apply(self.plan_destroy(stack_id), cancel)

    def outputs(self, stack_id: str) -> dict[str, Any]:
        return dict(self.store.load(stack_id).outputs)

    def detect_drift(self, stack_id: str) -> list[DriftEntry]:
        """Report recorded resources the backend no longer knows about."""
        state = self.store.load(stack_id)
        entries = []
        for lid, record in state.resources.items():
            found = self.backend.describe(record.physical_id, record.kind)
            status = 'present' if found is not None else 'missing'
            if found is None:
                logger.warning(f"Drift: '{lid}' ({record.physical_id}) is missing from the backend")
            entries.append(DriftEntry(lid, record.physical_id, record.kind, status))
        return entries

    def unlock(self, stack_id: str) -> bool:
        """Clear the inconsistent marker and any stale lock file.

        Returns:
            True if anything was cleared
        """
        cleared = self.store.break_lock(stack_id)
        if self.store.exists(stack_id):
            state = self.store.load(stack_id)
            if state.status != STATUS_OK:
                logger.info(f"Clearing '{state.status}' status of stack '{stack_id}'")
                state.set_status(STATUS_OK)
                self.store.save(state)
                cleared = True
        return cleared
