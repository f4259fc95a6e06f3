"""Shared pytest fixtures for stack-driver tests."""

import copy
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from kinds import Mutability, PropertySpec, ResourceKind, default_registry
from stack_opr.backend import InMemoryBackend
from stack_opr.orchestrator import StackOrchestrator
from stack_opr.polling import OperationPoller
from stack_opr.state import StateStore
from template import Template

# Network -> Database -> Service, with parameters, a mapping and a condition
WEB_STACK = {
    'name': 'web',
    'parameters': {
        'Env': {'type': 'String', 'default': 'dev', 'allowed_values': ['dev', 'prod']},
        'Image': {'type': 'String', 'default': 'app:1'},
    },
    'mappings': {
        'Sizes': {
            'dev': {'instanceClass': 'small'},
            'prod': {'instanceClass': 'large'},
        },
    },
    'conditions': {
        'IsProd': {'equals': [{'ref': 'Env'}, 'prod']},
    },
    'resources': {
        'Network': {
            'kind': 'network',
            'properties': {'cidr': '10.0.0.0/16'},
        },
        'Database': {
            'kind': 'database',
            'properties': {
                'engine': 'postgres',
                'subnetId': {'attr': 'Network.subnetId'},
                'instanceClass': {'lookup': ['Sizes', {'ref': 'Env'}, 'instanceClass']},
            },
        },
        'Service': {
            'kind': 'service',
            'properties': {
                'image': {'ref': 'Image'},
                'databaseEndpoint': {'attr': ['Database', 'endpoint']},
            },
        },
    },
    'outputs': {
        'ServiceUrl': {'value': {'attr': 'Service.url'}},
        'Environment': {'value': {'if': ['IsProd', 'production', 'development']}},
    },
}

# Generic kind for ordering and rollback tests
WIDGET_KIND = ResourceKind(
    name='widget',
    properties={
        'name': PropertySpec(required=True, mutability=Mutability.REQUIRES_REPLACEMENT, type='string'),
        'size': PropertySpec(type='number'),
        'parent': PropertySpec(type='string'),
    },
    attributes=('id',),
    allow_extra=True,
)


def web_template(**overrides) -> Template:
    """WEB_STACK with top-level resource property overrides applied.

    overrides: {logical_id: {property: raw value}}
    """
    data = copy.deepcopy(WEB_STACK)
    for logical_id, props in overrides.items():
        data['resources'][logical_id]['properties'].update(props)
    return Template.from_dict(data)


def widget_chain(*names: str, **extra_props) -> Template:
    """Widgets where each one references the previous one's physical id."""
    resources = {}
    previous = None
    for name in names:
        props = {'name': name.lower(), **extra_props.get(name, {})}
        if previous is not None:
            props['parent'] = {'ref': previous}
        resources[name] = {'kind': 'widget', 'properties': props}
        previous = name
    return Template.from_dict({'name': 'chain', 'resources': resources})


@pytest.fixture
def registry():
    """Built-in kinds plus the widget test kind."""
    reg = default_registry()
    reg.register(WIDGET_KIND)
    return reg


@pytest.fixture
def backend():
    """In-memory backend; each operation is IN_PROGRESS for one poll."""
    return InMemoryBackend(latency=1)


@pytest.fixture
def poller(backend):
    """Poller that never actually sleeps."""
    return OperationPoller(backend, interval=0.01, max_interval=0.05, timeout=30,
                           transient_retries=2, sleep=lambda s: None)


@pytest.fixture
def store(tmp_path):
    """State store under a temporary directory."""
    return StateStore(tmp_path / 'states')


@pytest.fixture
def orchestrator(backend, store, registry, poller):
    """Orchestrator wired to the in-memory backend."""
    return StackOrchestrator(backend=backend, store=store, registry=registry,
                             poller=poller, max_workers=4)
