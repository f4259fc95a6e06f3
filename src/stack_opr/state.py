"""Stack state management.

Tracks, per logical id, the physical resource the backend created for it,
the content hash and resolved properties it was last applied with, and the
attributes the backend reported. State is persisted to
<state_dir>/<stackId>/state.json:

    {stackId, version, status, resources: {logicalId: {physicalId, kind, hash,
     attributes, properties, dependsOn}}, outputs}

Only the execution coordinator and rollback manager mutate state, and only
after a backend operation reached a terminal status.
"""

import copy
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from errors import StackLockedError

logger = logging.getLogger(__name__)

STATUS_OK = 'ok'
STATUS_ROLLED_BACK = 'rolled_back'
STATUS_INCONSISTENT = 'inconsistent'


@dataclass
class ResourceRecord:
    """Recorded state of one resource.

    Attributes:
        logical_id: Template-scoped name
        physical_id: Backend-assigned identity
        kind: Resource kind tag
        hash: Content hash of the last-applied resolved properties
        properties: Last-applied resolved properties
        attributes: Attributes reported by the backend
        depends_on: Logical ids this resource depended on when applied
        updated_at: Timestamp of the last change
    """
    logical_id: str
    physical_id: str
    kind: str
    hash: str = ''
    properties: dict = field(default_factory=dict)
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    updated_at: Optional[float] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'physicalId': self.physical_id,
            'kind': self.kind,
            'hash': self.hash,
            'attributes': self.attributes,
            'properties': self.properties,
        }
        if self.depends_on:
            d['dependsOn'] = list(self.depends_on)
        if self.updated_at is not None:
            d['updatedAt'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, logical_id: str, data: dict) -> 'ResourceRecord':
        return cls(
            logical_id=logical_id,
            physical_id=data['physicalId'],
            kind=data['kind'],
            hash=data.get('hash', ''),
            properties=data.get('properties', {}),
            attributes=data.get('attributes', {}),
            depends_on=list(data.get('dependsOn', [])),
            updated_at=data.get('updatedAt'),
        )


class StackState:
    """Recorded state of one stack.

    The version increases with every recorded mutation so that a plan can
    detect that the stack moved on since it was computed.
    """

    def __init__(self, stack_id: str, version: int = 0, status: str = STATUS_OK):
        self.stack_id = stack_id
        self.version = version
        self.status = status
        self._resources: dict[str, ResourceRecord] = {}
        self.outputs: dict[str, Any] = {}
        self.updated_at: Optional[float] = None

    @property
    def resources(self) -> dict[str, ResourceRecord]:
        return dict(self._resources)

    def get(self, logical_id: str) -> Optional[ResourceRecord]:
        return self._resources.get(logical_id)

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def _touch(self) -> None:
        self.version += 1
        self.updated_at = time.time()

    def record(self, record: ResourceRecord) -> None:
        """Store or replace the record for a logical id."""
        record.updated_at = time.time()
        self._resources[record.logical_id] = record
        self._touch()

    def remove(self, logical_id: str) -> Optional[ResourceRecord]:
        """Drop the record for a logical id, returning it if present."""
        removed = self._resources.pop(logical_id, None)
        if removed is not None:
            self._touch()
        return removed

    def set_status(self, status: str) -> None:
        if status != self.status:
            self.status = status
            self._touch()

    def set_outputs(self, outputs: dict[str, Any]) -> None:
        if outputs != self.outputs:
            self.outputs = dict(outputs)
            self._touch()

    def copy(self) -> 'StackState':
        return StackState.from_dict(copy.deepcopy(self.to_dict()))

    def to_dict(self) -> dict:
        return {
            'stackId': self.stack_id,
            'version': self.version,
            'status': self.status,
            'updatedAt': self.updated_at,
            'resources': {lid: rec.to_dict() for lid, rec in self._resources.items()},
            'outputs': self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'StackState':
        state = cls(
            stack_id=data['stackId'],
            version=data.get('version', 0),
            status=data.get('status', STATUS_OK),
        )
        state.updated_at = data.get('updatedAt')
        for lid, rec in (data.get('resources') or {}).items():
            state._resources[lid] = ResourceRecord.from_dict(lid, rec)
        state.outputs = data.get('outputs') or {}
        return state


class StateStore:
    """File-backed store of stack states with a per-stack update lock.

    State is persisted to <state_dir>/<stackId>/state.json. Writes go to a
    temporary file first and are renamed into place.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self._guard = threading.Lock()
        self._held: set[str] = set()

    def _stack_dir(self, stack_id: str) -> Path:
        if not stack_id or '/' in stack_id or stack_id.startswith('.'):
            raise ValueError(f"Invalid stack id: {stack_id!r}")
        return self.state_dir / stack_id

    def path(self, stack_id: str) -> Path:
        return self._stack_dir(stack_id) / 'state.json'

    def _lock_path(self, stack_id: str) -> Path:
        return self._stack_dir(stack_id) / 'apply.lock'

    def exists(self, stack_id: str) -> bool:
        return self.path(stack_id).exists()

    def load(self, stack_id: str) -> StackState:
        """Load recorded state; a stack never applied yields empty state."""
        path = self.path(stack_id)
        if not path.exists():
            return StackState(stack_id)
        with open(path, encoding='utf-8') as f:
            data = json.load(f)
        state = StackState.from_dict(data)
        logger.debug(f"Loaded state for '{stack_id}' (version {state.version}) from {path}")
        return state

    def save(self, state: StackState) -> Path:
        """Persist state atomically.

        Returns:
            Path where state was saved
        """
        path = self.path(state.stack_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix('.json.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(state.to_dict(), f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        logger.debug(f"Saved state for '{state.stack_id}' (version {state.version}) to {path}")
        return path

    def delete(self, stack_id: str) -> None:
        """Remove the state file of a fully destroyed stack."""
        path = self.path(stack_id)
        if path.exists():
            path.unlink()

    def is_locked(self, stack_id: str) -> bool:
        with self._guard:
            if stack_id in self._held:
                return True
        return self._lock_path(stack_id).exists()

    @contextmanager
    def lock(self, stack_id: str) -> Iterator[None]:
        """Hold the update lock for a stack.

        Concurrent attempts are rejected, not queued.

        Raises:
            StackLockedError: If another apply holds the lock
        """
        with self._guard:
            if stack_id in self._held:
                raise StackLockedError(stack_id)
            self._held.add(stack_id)

        lock_path = self._lock_path(stack_id)
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                raise StackLockedError(stack_id)
            with os.fdopen(fd, 'w') as f:
                f.write(f"{os.getpid()}\n")
        except BaseException:
            with self._guard:
                self._held.discard(stack_id)
            raise

        try:
            yield
        finally:
            lock_path.unlink(missing_ok=True)
            with self._guard:
                self._held.discard(stack_id)

    def break_lock(self, stack_id: str) -> bool:
        """Remove a lock file left behind by a dead process."""
        lock_path = self._lock_path(stack_id)
        if lock_path.exists():
            lock_path.unlink()
            logger.warning(f"Removed stale lock for stack '{stack_id}'")
            return True
        return False
