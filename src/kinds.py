"""Resource kind capability descriptors.

Each resource kind declares which properties it accepts, which of them can
be changed in place, and which attributes the backend reports once the
resource exists. Kinds are looked up through a KindRegistry keyed by name.

Extra kinds can be declared in a YAML catalog:

    kinds:
      queue:
        properties:
          name: {required: true, mutability: replace, type: string}
          retention: {type: number}
        attributes: [queueUrl, arn]
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml

from errors import PropertyValidationError, TemplateParseError
from expressions import Unknown

logger = logging.getLogger(__name__)

PROPERTY_TYPES = {
    'string': (str,),
    'number': (int, float),
    'boolean': (bool,),
    'list': (list,),
    'map': (dict,),
}


class Mutability(Enum):
    IN_PLACE = 'in_place'
    REQUIRES_REPLACEMENT = 'replace'


@dataclass(frozen=True)
class PropertySpec:
    """Metadata for one property of a resource kind."""
    required: bool = False
    mutability: Mutability = Mutability.IN_PLACE
    type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'PropertySpec':
        data = data or {}
        mutability = data.get('mutability', 'in_place')
        try:
            mut = Mutability(mutability)
        except ValueError:
            raise TemplateParseError(f"Unknown mutability '{mutability}' (use in_place or replace)")
        ptype = data.get('type')
        if ptype is not None and ptype not in PROPERTY_TYPES:
            raise TemplateParseError(f"Unknown property type '{ptype}'")
        return cls(required=bool(data.get('required', False)), mutability=mut, type=ptype)


def _replace(ptype: Optional[str] = None, required: bool = False) -> PropertySpec:
    return PropertySpec(required=required, mutability=Mutability.REQUIRES_REPLACEMENT, type=ptype)


def _in_place(ptype: Optional[str] = None, required: bool = False) -> PropertySpec:
    return PropertySpec(required=required, mutability=Mutability.IN_PLACE, type=ptype)


@dataclass
class ResourceKind:
    """Capability descriptor for a resource kind.

    Attributes:
        name: Kind tag used in templates (resource `kind` field)
        properties: Declared properties and their metadata
        attributes: Attribute names the backend reports after creation
        allow_extra: Accept undeclared properties (treated as in-place)
    """
    name: str
    properties: dict[str, PropertySpec] = field(default_factory=dict)
    attributes: tuple[str, ...] = ()
    allow_extra: bool = False

    def mutability_of(self, property_name: str) -> Mutability:
        spec = self.properties.get(property_name)
        if spec is None:
            return Mutability.IN_PLACE
        return spec.mutability

    def validate(self, logical_id: str, properties: dict[str, Any]) -> None:
        """Check resolved properties against the declared schema.

        Unknown placeholders pass type checks; they are checked again once
        the value is known at apply time.

        Raises:
            PropertyValidationError: Listing every problem found
        """
        problems: list[str] = []
        for name, spec in self.properties.items():
            if spec.required and properties.get(name) is None:
                problems.append(f"missing required property '{name}'")
        for name, value in properties.items():
            spec = self.properties.get(name)
            if spec is None:
                if not self.allow_extra:
                    problems.append(f"unknown property '{name}'")
                continue
            if spec.type is None or value is None or isinstance(value, Unknown):
                continue
            expected = PROPERTY_TYPES[spec.type]
            if isinstance(value, bool) and spec.type != 'boolean':
                problems.append(f"property '{name}' must be {spec.type}, got boolean")
            elif not isinstance(value, expected):
                problems.append(f"property '{name}' must be {spec.type}, got {type(value).__name__}")
        if problems:
            raise PropertyValidationError(logical_id, self.name, problems)

    def replacement_properties(self, changed: set[str]) -> list[str]:
        """Names among changed that require replacement, sorted."""
        return sorted(
            name for name in changed
            if self.mutability_of(name) is Mutability.REQUIRES_REPLACEMENT
        )

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'ResourceKind':
        if not isinstance(data, dict):
            raise TemplateParseError(f"Kind '{name}' must be a mapping")
        props = {
            prop: PropertySpec.from_dict(spec)
            for prop, spec in (data.get('properties') or {}).items()
        }
        return cls(
            name=name,
            properties=props,
            attributes=tuple(data.get('attributes') or ()),
            allow_extra=bool(data.get('allow_extra', False)),
        )


BUILTIN_KINDS = (
    ResourceKind(
        name='network',
        properties={
            'cidr': _replace('string', required=True),
            'name': _in_place('string'),
            'zones': _replace('list'),
            'tags': _in_place('map'),
        },
        attributes=('networkId', 'subnetId', 'cidr'),
    ),
    ResourceKind(
        name='database',
        properties={
            'engine': _replace('string', required=True),
            'subnetId': _replace('string', required=True),
            'username': _replace('string'),
            'instanceClass': _in_place('string'),
            'storageGb': _in_place('number'),
            'multiAz': _in_place('boolean'),
            'tags': _in_place('map'),
        },
        attributes=('endpoint', 'port'),
    ),
    ResourceKind(
        name='load_balancer',
        properties={
            'subnetId': _replace('string', required=True),
            'scheme': _replace('string'),
            'listeners': _in_place('list'),
            'tags': _in_place('map'),
        },
        attributes=('dnsName', 'arn'),
    ),
    ResourceKind(
        name='service',
        properties={
            'image': _in_place('string', required=True),
            'cluster': _replace('string'),
            'desiredCount': _in_place('number'),
            'environment': _in_place('map'),
            'databaseEndpoint': _in_place('string'),
            'targetGroup': _in_place('string'),
            'tags': _in_place('map'),
        },
        attributes=('serviceArn', 'url'),
    ),
    ResourceKind(
        name='scheduled_job',
        properties={
            'schedule': _in_place('string', required=True),
            'command': _in_place('list'),
            'target': _replace('string'),
            'enabled': _in_place('boolean'),
        },
        attributes=('jobId',),
    ),
)


class KindRegistry:
    """Registry of resource kinds keyed by name."""

    def __init__(self, kinds: tuple[ResourceKind, ...] = ()):
        self._kinds: dict[str, ResourceKind] = {}
        for kind in kinds:
            self.register(kind)

    def register(self, kind: ResourceKind) -> ResourceKind:
        if kind.name in self._kinds:
            logger.debug(f"Overriding resource kind '{kind.name}'")
        self._kinds[kind.name] = kind
        return kind

    def get(self, name: str) -> ResourceKind:
        """Look up a kind.

        Raises:
            TemplateParseError: If the kind is not registered
        """
        try:
            return self._kinds[name]
        except KeyError:
            raise TemplateParseError(
                f"Unknown resource kind '{name}'. Available: {', '.join(self.names())}"
            ) from None

    def __contains__(self, name: str) -> bool:
        return name in self._kinds

    def names(self) -> list[str]:
        return sorted(self._kinds)

    def load_catalog(self, path: Path) -> list[str]:
        """Register kinds from a YAML catalog file.

        Returns:
            Names of the kinds registered

        Raises:
            TemplateParseError: If the file is missing or malformed
        """
        if not path.exists():
            raise TemplateParseError(f"Kind catalog not found: {path}")
        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise TemplateParseError(f"Invalid YAML in kind catalog {path}: {e}")
        kinds = data.get('kinds') if isinstance(data, dict) else None
        if not isinstance(kinds, dict):
            raise TemplateParseError(f"Kind catalog {path} must have a 'kinds' mapping")
        registered = []
        for name, spec in kinds.items():
            self.register(ResourceKind.from_dict(name, spec))
            registered.append(name)
        logger.debug(f"Loaded {len(registered)} kinds from {path}")
        return registered


def default_registry(catalog: Optional[Path] = None) -> KindRegistry:
    """Create a registry with the built-in kinds, plus an optional catalog."""
    registry = KindRegistry(BUILTIN_KINDS)
    if catalog is not None:
        registry.load_catalog(catalog)
    return registry
