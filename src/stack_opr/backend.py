"""Provisioning backends.

A backend performs create/update/delete/describe for individual resources.
Mutating calls return an Operation that the coordinator advances by polling
until it reaches a terminal status:

    PENDING -> IN_PROGRESS -> SUCCEEDED | FAILED

Two implementations are provided:
- InMemoryBackend: simulated resources with scripted latency and failure
  injection, optionally persisted to a JSON file
- HttpBackend: generic JSON-over-HTTP resource API
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import requests

from errors import ProvisioningError

logger = logging.getLogger(__name__)


class OperationStatus(Enum):
    PENDING = 'PENDING'
    IN_PROGRESS = 'IN_PROGRESS'
    SUCCEEDED = 'SUCCEEDED'
    FAILED = 'FAILED'

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.SUCCEEDED, OperationStatus.FAILED)


_TRANSITIONS = {
    OperationStatus.PENDING: {OperationStatus.PENDING, OperationStatus.IN_PROGRESS,
                              OperationStatus.SUCCEEDED, OperationStatus.FAILED},
    OperationStatus.IN_PROGRESS: {OperationStatus.IN_PROGRESS,
                                  OperationStatus.SUCCEEDED, OperationStatus.FAILED},
    OperationStatus.SUCCEEDED: set(),
    OperationStatus.FAILED: set(),
}


@dataclass
class Operation:
    """An in-flight backend operation.

    Attributes:
        operation_id: Backend-assigned operation identity
        action: create, update or delete
        kind: Resource kind tag
        physical_id: Physical id (known up front for update/delete)
        status: Current state machine position
        attributes: Attributes reported on success
        message: Failure detail
        transient: Backend marked the failure as retryable
    """
    operation_id: str
    action: str
    kind: str
    physical_id: Optional[str] = None
    status: OperationStatus = OperationStatus.PENDING
    attributes: dict = field(default_factory=dict)
    message: str = ''
    transient: bool = False

    def advance(self, status: OperationStatus, **updates: Any) -> 'Operation':
        """Move to a new status.

        Raises:
            ValueError: On a transition out of a terminal status
        """
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(
                f"Operation {self.operation_id}: invalid transition "
                f"{self.status.value} -> {status.value}"
            )
        self.status = status
        for key, value in updates.items():
            setattr(self, key, value)
        return self


@runtime_checkable
class ProvisioningBackend(Protocol):
    """Protocol for provisioning backends."""

    def create(self, kind: str, properties: dict) -> Operation:
        """Start creating a resource."""

    def update(self, physical_id: str, kind: str, properties: dict) -> Operation:
        """Start updating a resource in place."""

    def delete(self, physical_id: str, kind: str) -> Operation:
        """Start deleting a resource."""

    def describe(self, physical_id: str, kind: str) -> Optional[dict]:
        """Current attributes, or None if the resource does not exist."""

    def poll(self, operation: Operation) -> Operation:
        """Advance an operation to its current status."""


@dataclass
class _Failure:
    action: str
    kind: Optional[str]
    match: dict
    message: str
    transient: bool
    remaining: Optional[int]

    def applies(self, action: str, kind: str, properties: dict) -> bool:
        if self.remaining is not None and self.remaining <= 0:
            return False
        if action != self.action or (self.kind is not None and kind != self.kind):
            return False
        return all(properties.get(k) == v for k, v in self.match.items())


def _default_attributes(kind: str, physical_id: str, properties: dict, serial: int) -> dict:
    """Attributes the simulated backend reports for a resource."""
    attrs: dict[str, Any] = {'id': physical_id}
    if kind == 'network':
        attrs.update(networkId=physical_id, subnetId=f"subnet-{serial:04d}",
                     cidr=properties.get('cidr'))
    elif kind == 'database':
        attrs.update(endpoint=f"{physical_id}.db.internal", port=5432)
    elif kind == 'load_balancer':
        attrs.update(dnsName=f"{physical_id}.lb.internal", arn=f"arn:lb:{physical_id}")
    elif kind == 'service':
        attrs.update(serviceArn=f"arn:service:{physical_id}", url=f"https://{physical_id}.svc.internal")
    elif kind == 'scheduled_job':
        attrs.update(jobId=physical_id)
    return attrs


class InMemoryBackend:
    """Simulated backend for tests, dry runs and local experiments.

    Each operation stays IN_PROGRESS for `latency` polls before reaching a
    terminal status. Failures are injected with `inject_failure`.
    """

    def __init__(self, latency: int = 1, store_path: Optional[Path] = None):
        self.latency = latency
        self.store_path = Path(store_path) if store_path else None
        self.resources: dict[str, dict] = {}
        self.calls: list[tuple[str, str, Optional[str]]] = []
        self._operations: dict[str, dict] = {}
        self._failures: list[_Failure] = []
        self._serial = 0
        self._lock = threading.Lock()
        if self.store_path is not None and self.store_path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.store_path, encoding='utf-8') as f:
            data = json.load(f)
        self.resources = data.get('resources', {})
        self._serial = data.get('serial', len(self.resources))

    def _save(self) -> None:
        if self.store_path is None:
            return
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.store_path, 'w', encoding='utf-8') as f:
            json.dump({'resources': self.resources, 'serial': self._serial}, f, indent=2)

    def inject_failure(
        self,
        action: str,
        kind: Optional[str] = None,
        match: Optional[dict] = None,
        message: str = 'injected failure',
        transient: bool = False,
        times: Optional[int] = None,
    ) -> None:
        """Make matching operations fail.

        Args:
            action: create, update or delete
            kind: Only for this kind (None = any)
            match: Property subset the request must contain (create/update)
            message: Failure message
            transient: Flag the failure as retryable
            times: Fail only this many times (None = always)
        """
        self._failures.append(_Failure(action, kind, dict(match or {}), message, transient, times))

    def _start(self, action: str, kind: str, physical_id: Optional[str], properties: dict) -> Operation:
        with self._lock:
            self.calls.append((action, kind, physical_id))
            op = Operation(operation_id=str(uuid.uuid4()), action=action, kind=kind,
                           physical_id=physical_id)
            failure = None
            if action == 'delete' and physical_id in self.resources:
                properties = self.resources[physical_id]['properties']
            for candidate in self._failures:
                if candidate.applies(action, kind, properties):
                    failure = candidate
                    if candidate.remaining is not None:
                        candidate.remaining -= 1
                    break
            self._operations[op.operation_id] = {
                'properties': dict(properties),
                'polls': 0,
                'failure': failure,
            }
            return op

    def create(self, kind: str, properties: dict) -> Operation:
        return self._start('create', kind, None, properties)

    def update(self, physical_id: str, kind: str, properties: dict) -> Operation:
        return self._start('update', kind, physical_id, properties)

    def delete(self, physical_id: str, kind: str) -> Operation:
        return self._start('delete', kind, physical_id, {})

    def describe(self, physical_id: str, kind: str) -> Optional[dict]:
        with self._lock:
            entry = self.resources.get(physical_id)
            return dict(entry['attributes']) if entry is not None else None

    def poll(self, operation: Operation) -> Operation:
        with self._lock:
            pending = self._operations.get(operation.operation_id)
            if pending is None or operation.status.is_terminal:
                return operation
            pending['polls'] += 1
            if pending['polls'] <= self.latency:
                return operation.advance(OperationStatus.IN_PROGRESS)

            del self._operations[operation.operation_id]
            failure = pending['failure']
            if failure is not None:
                return operation.advance(OperationStatus.FAILED, message=failure.message,
                                         transient=failure.transient)
            return self._complete(operation, pending['properties'])

    def _complete(self, operation: Operation, properties: dict) -> Operation:
        if operation.action == 'create':
            self._serial += 1
            serial = self._serial
            physical_id = f"{operation.kind}-{serial:04d}"
            attrs = _default_attributes(operation.kind, physical_id, properties, serial)
            self.resources[physical_id] = {
                'kind': operation.kind, 'properties': properties, 'attributes': attrs,
            }
            self._save()
            return operation.advance(OperationStatus.SUCCEEDED, physical_id=physical_id,
                                     attributes=dict(attrs))

        if operation.action == 'update':
            entry = self.resources.get(operation.physical_id)
            if entry is None:
                return operation.advance(OperationStatus.FAILED,
                                         message=f"Resource {operation.physical_id} not found")
            entry['properties'] = properties
            entry['attributes'].update(
                {k: v for k, v in properties.items() if k in entry['attributes']}
            )
            self._save()
            return operation.advance(OperationStatus.SUCCEEDED, attributes=dict(entry['attributes']))

        # delete: already-absent resources count as deleted
        if self.resources.pop(operation.physical_id, None) is None:
            logger.debug(f"Delete of absent resource {operation.physical_id}")
        self._save()
        return operation.advance(OperationStatus.SUCCEEDED)


class HttpBackend:
    """Backend speaking a generic JSON resource API.

    Endpoints (relative to base URL):
        POST   /resources                  {kind, properties}  -> operation
        PUT    /resources/{physicalId}     {kind, properties}  -> operation
        DELETE /resources/{physicalId}?kind=...                -> operation
        GET    /resources/{physicalId}?kind=...                -> {attributes} | 404
        GET    /operations/{operationId}                       -> operation

    Operation documents: {operationId, status, physicalId, attributes,
    message, transient}.
    """

    def __init__(self, endpoint: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.endpoint = endpoint.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault('Accept', 'application/json')

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.endpoint}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise ProvisioningError(f"Timeout calling {method} {url}", transient=True)
        except requests.exceptions.ConnectionError as e:
            raise ProvisioningError(f"Cannot connect to {url}: {e}", transient=True)
        except requests.exceptions.RequestException as e:
            raise ProvisioningError(f"Request {method} {url} failed: {e}")
        logger.debug(f"{method} {url} -> {resp.status_code}")
        return resp

    @staticmethod
    def _error(resp: requests.Response, what: str) -> ProvisioningError:
        try:
            detail = resp.json().get('message', '')
        except (ValueError, AttributeError):
            detail = resp.text[:200]
        transient = resp.status_code == 429 or resp.status_code >= 500
        return ProvisioningError(f"{what} failed: HTTP {resp.status_code} {detail}".strip(),
                                 transient=transient)

    @staticmethod
    def _json(resp: requests.Response, what: str) -> dict:
        try:
            data = resp.json()
        except ValueError:
            raise ProvisioningError(f"{what}: response is not JSON (HTTP {resp.status_code})")
        if not isinstance(data, dict):
            raise ProvisioningError(f"{what}: expected a JSON object, got {type(data).__name__}")
        return data

    def _operation(self, resp: requests.Response, action: str, kind: str,
                   physical_id: Optional[str], what: str) -> Operation:
        if resp.status_code not in (200, 201, 202):
            raise self._error(resp, what)
        data = self._json(resp, what)
        if not data.get('operationId'):
            raise ProvisioningError(f"{what}: response has no operationId")
        op = Operation(operation_id=data['operationId'], action=action, kind=kind,
                       physical_id=data.get('physicalId', physical_id))
        return self._apply_status(op, data)

    @staticmethod
    def _apply_status(op: Operation, data: dict) -> Operation:
        try:
            status = OperationStatus(data.get('status', 'PENDING'))
        except ValueError:
            raise ProvisioningError(f"Unknown operation status {data.get('status')!r}")
        if status is op.status:
            return op
        if status not in _TRANSITIONS[op.status]:
            logger.debug(f"Operation {op.operation_id}: ignoring stale status {status.value} "
                         f"(currently {op.status.value})")
            return op
        return op.advance(
            status,
            physical_id=data.get('physicalId') or op.physical_id,
            attributes=data.get('attributes') or op.attributes,
            message=data.get('message', ''),
            transient=bool(data.get('transient', False)),
        )

    def create(self, kind: str, properties: dict) -> Operation:
        resp = self._request('POST', '/resources', json={'kind': kind, 'properties': properties})
        return self._operation(resp, 'create', kind, None, f"create {kind}")

    def update(self, physical_id: str, kind: str, properties: dict) -> Operation:
        resp = self._request('PUT', f'/resources/{physical_id}',
                             json={'kind': kind, 'properties': properties})
        return self._operation(resp, 'update', kind, physical_id, f"update {physical_id}")

    def delete(self, physical_id: str, kind: str) -> Operation:
        resp = self._request('DELETE', f'/resources/{physical_id}', params={'kind': kind})
        return self._operation(resp, 'delete', kind, physical_id, f"delete {physical_id}")

    def describe(self, physical_id: str, kind: str) -> Optional[dict]:
        resp = self._request('GET', f'/resources/{physical_id}', params={'kind': kind})
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise self._error(resp, f"describe {physical_id}")
        attributes: dict = self._json(resp, f"describe {physical_id}").get('attributes') or {}
        return attributes

    def poll(self, operation: Operation) -> Operation:
        if operation.status.is_terminal:
            return operation
        resp = self._request('GET', f'/operations/{operation.operation_id}')
        if resp.status_code != 200:
            raise self._error(resp, f"poll {operation.operation_id}")
        return self._apply_status(operation, self._json(resp, f"poll {operation.operation_id}"))


def create_backend(name: str, endpoint: str = '', store_path: Optional[Path] = None) -> ProvisioningBackend:
    """Instantiate a backend by config name."""
    if name == 'http':
        return HttpBackend(endpoint)
    if name == 'memory':
        return InMemoryBackend(store_path=store_path)
    raise ValueError(f"Unknown backend '{name}'")
