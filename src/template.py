"""Template loading and validation for stack orchestration.

Templates declare the desired shape of a stack:

    parameters:  name -> {type, default, allowed_values, description}
    mappings:    name -> {key -> {field -> value}}
    conditions:  name -> boolean expression
    resources:   logicalId -> {kind, properties, condition, dependsOn}
    outputs:     name -> {value, condition, description}

Values may embed intrinsic expressions (see expressions.py). Parsing checks
document structure only; reference targets and cycles are checked by the
graph builder.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from errors import ParameterError, TemplateParseError
from expressions import Expression, parse_expression

logger = logging.getLogger(__name__)

PARAMETER_TYPES = ('String', 'Number', 'Boolean', 'CommaDelimitedList')
TEMPLATE_SECTIONS = {'name', 'description', 'parameters', 'mappings', 'conditions', 'resources', 'outputs'}
RESOURCE_FIELDS = {'kind', 'properties', 'condition', 'dependsOn', 'description'}


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise TemplateParseError(
                    f"Duplicate key '{key}' at line {key_node.start_mark.line + 1}"
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


@dataclass
class Parameter:
    """A template input.

    Attributes:
        name: Parameter name
        type: One of String, Number, Boolean, CommaDelimitedList
        default: Value used when none is supplied (None = required)
        allowed_values: Optional whitelist of accepted values
        description: Free text
    """
    name: str
    type: str = 'String'
    default: Any = None
    allowed_values: Optional[list] = None
    description: str = ''

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict]) -> 'Parameter':
        data = data or {}
        if not isinstance(data, dict):
            raise TemplateParseError(f"Parameter '{name}' must be a mapping")
        ptype = data.get('type', 'String')
        if ptype not in PARAMETER_TYPES:
            raise TemplateParseError(
                f"Parameter '{name}' has unsupported type '{ptype}'. "
                f"Supported: {', '.join(PARAMETER_TYPES)}"
            )
        allowed = data.get('allowed_values')
        if allowed is not None and not isinstance(allowed, list):
            raise TemplateParseError(f"Parameter '{name}' allowed_values must be a list")
        return cls(
            name=name,
            type=ptype,
            default=data.get('default'),
            allowed_values=allowed,
            description=data.get('description', ''),
        )

    def coerce(self, value: Any) -> Any:
        """Convert a supplied value to this parameter's type.

        Raises:
            ParameterError: If the value does not fit the type or allowed values
        """
        if self.type == 'String':
            if isinstance(value, bool) or not isinstance(value, (str, int, float)):
                raise ParameterError(self.name, f"expected String, got {type(value).__name__}")
            result: Any = str(value)
        elif self.type == 'Number':
            if isinstance(value, bool):
                raise ParameterError(self.name, "expected Number, got boolean")
            if isinstance(value, (int, float)):
                result = value
            else:
                try:
                    result = int(value)
                except (TypeError, ValueError):
                    try:
                        result = float(value)
                    except (TypeError, ValueError):
                        raise ParameterError(self.name, f"expected Number, got {value!r}")
        elif self.type == 'Boolean':
            if isinstance(value, bool):
                result = value
            elif isinstance(value, str) and value.lower() in ('true', 'false'):
                result = value.lower() == 'true'
            else:
                raise ParameterError(self.name, f"expected Boolean, got {value!r}")
        else:  # CommaDelimitedList
            if isinstance(value, str):
                result = [item.strip() for item in value.split(',')] if value else []
            elif isinstance(value, list) and all(isinstance(i, str) for i in value):
                result = list(value)
            else:
                raise ParameterError(self.name, f"expected CommaDelimitedList, got {value!r}")

        if self.allowed_values is not None:
            candidates = result if isinstance(result, list) else [result]
            for candidate in candidates:
                if candidate not in self.allowed_values:
                    raise ParameterError(
                        self.name,
                        f"value {candidate!r} not in allowed values {self.allowed_values}",
                    )
        return result


@dataclass
class Resource:
    """A resource declaration.

    Attributes:
        logical_id: Template-scoped resource name
        kind: Resource kind tag (looked up in the KindRegistry)
        properties: Property name -> expression
        condition: Optional condition name guarding inclusion
        depends_on: Explicit ordering hints beyond expression references
    """
    logical_id: str
    kind: str
    properties: dict[str, Expression] = field(default_factory=dict)
    condition: Optional[str] = None
    depends_on: tuple[str, ...] = ()
    description: str = ''

    @classmethod
    def from_dict(cls, logical_id: str, data: dict, parameters: set[str]) -> 'Resource':
        if not isinstance(data, dict):
            raise TemplateParseError(f"Resource '{logical_id}' must be a mapping")
        unknown = sorted(set(data) - RESOURCE_FIELDS)
        if unknown:
            raise TemplateParseError(f"Resource '{logical_id}' has unknown fields: {', '.join(unknown)}")
        if 'kind' not in data or not isinstance(data['kind'], str):
            raise TemplateParseError(f"Resource '{logical_id}' missing required field: kind")

        raw_props = data.get('properties') or {}
        if not isinstance(raw_props, dict):
            raise TemplateParseError(f"Resource '{logical_id}' properties must be a mapping")
        properties = {
            name: parse_expression(value, parameters, f"{logical_id}.properties.{name}")
            for name, value in raw_props.items()
        }

        depends_on = data.get('dependsOn') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise TemplateParseError(f"Resource '{logical_id}' dependsOn must be a name or list of names")

        condition = data.get('condition')
        if condition is not None and not isinstance(condition, str):
            raise TemplateParseError(f"Resource '{logical_id}' condition must be a condition name")

        return cls(
            logical_id=logical_id,
            kind=data['kind'],
            properties=properties,
            condition=condition,
            depends_on=tuple(depends_on),
            description=data.get('description', ''),
        )


@dataclass
class Output:
    """A named value exported after apply."""
    name: str
    value: Expression
    condition: Optional[str] = None
    description: str = ''

    @classmethod
    def from_dict(cls, name: str, data: Any, parameters: set[str]) -> 'Output':
        if not isinstance(data, dict) or 'value' not in data:
            raise TemplateParseError(f"Output '{name}' requires a 'value'")
        return cls(
            name=name,
            value=parse_expression(data['value'], parameters, f"outputs.{name}"),
            condition=data.get('condition'),
            description=data.get('description', ''),
        )


@dataclass
class Template:
    """Parsed stack template.

    Resource declaration order is preserved and used as the tie-break for
    topological ordering.
    """
    name: str = ''
    description: str = ''
    parameters: dict[str, Parameter] = field(default_factory=dict)
    mappings: dict[str, dict] = field(default_factory=dict)
    conditions: dict[str, Expression] = field(default_factory=dict)
    resources: dict[str, Resource] = field(default_factory=dict)
    outputs: dict[str, Output] = field(default_factory=dict)
    source_path: Optional[Path] = None

    def get_resource(self, logical_id: str) -> Resource:
        """Get a resource by logical id.

        Raises:
            KeyError: If not declared
        """
        return self.resources[logical_id]

    def bind_parameters(self, values: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Combine supplied values with defaults and validate them.

        Raises:
            ParameterError: Unknown, missing, or invalid parameter
        """
        values = dict(values or {})
        unknown = sorted(set(values) - set(self.parameters))
        if unknown:
            raise ParameterError(unknown[0], "not declared in template")
        bound: dict[str, Any] = {}
        for name, param in self.parameters.items():
            if name in values:
                bound[name] = param.coerce(values[name])
            elif param.default is not None:
                bound[name] = param.coerce(param.default)
            else:
                raise ParameterError(name, "no value supplied and no default")
        return bound

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Template':
        """Create Template from a parsed document.

        Raises:
            TemplateParseError: If the document is malformed
        """
        if not isinstance(data, dict):
            raise TemplateParseError("Template must be a mapping")
        unknown = sorted(set(data) - TEMPLATE_SECTIONS)
        if unknown:
            raise TemplateParseError(f"Unknown template sections: {', '.join(unknown)}")

        sections = {}
        for section in ('parameters', 'mappings', 'conditions', 'resources', 'outputs'):
            value = data.get(section) or {}
            if not isinstance(value, dict):
                raise TemplateParseError(f"Template section '{section}' must be a mapping")
            sections[section] = value

        if not sections['resources']:
            raise TemplateParseError("Template must declare at least one resource")

        parameters = {
            name: Parameter.from_dict(name, spec)
            for name, spec in sections['parameters'].items()
        }
        param_names = set(parameters)

        for name, mapping in sections['mappings'].items():
            if not isinstance(mapping, dict) or not all(isinstance(v, dict) for v in mapping.values()):
                raise TemplateParseError(f"Mapping '{name}' must be a mapping of mappings")

        conditions = {
            name: parse_expression(expr, param_names, f"conditions.{name}")
            for name, expr in sections['conditions'].items()
        }

        resources: dict[str, Resource] = {}
        for logical_id, spec in sections['resources'].items():
            if not isinstance(logical_id, str) or not logical_id:
                raise TemplateParseError(f"Invalid logical id: {logical_id!r}")
            if logical_id in param_names:
                raise TemplateParseError(
                    f"Resource '{logical_id}' has the same name as a parameter"
                )
            resources[logical_id] = Resource.from_dict(logical_id, spec, param_names)

        outputs = {
            name: Output.from_dict(name, spec, param_names)
            for name, spec in sections['outputs'].items()
        }

        return cls(
            name=data.get('name', ''),
            description=data.get('description', ''),
            parameters=parameters,
            mappings=dict(sections['mappings']),
            conditions=conditions,
            resources=resources,
            outputs=outputs,
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Template':
        """Create Template from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise TemplateParseError(f"Invalid template JSON: {e}")
        return cls.from_dict(data)


class TemplateLoader:
    """Loads templates from YAML or JSON files."""

    def load_file(self, path: Path) -> Template:
        """Load template from a file path.

        Raises:
            TemplateParseError: If file not found or invalid
        """
        if not path.exists():
            raise TemplateParseError(f"Template file not found: {path}")

        text = path.read_text(encoding='utf-8')
        if path.suffix == '.json':
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise TemplateParseError(f"Invalid JSON in template {path}: {e}")
        else:
            data = self.parse_yaml(text, path)

        if not isinstance(data, dict):
            raise TemplateParseError(f"Template {path} must be a YAML object (dict)")

        template = Template.from_dict(data, source_path=path)
        logger.debug(f"Loaded template {path} ({len(template.resources)} resources)")
        return template

    @staticmethod
    def parse_yaml(text: str, path: Optional[Path] = None) -> Any:
        try:
            return yaml.load(text, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as e:
            where = f" {path}" if path else ''
            raise TemplateParseError(f"Invalid YAML in template{where}: {e}")


def load_template(file_path: Optional[str] = None, json_str: Optional[str] = None) -> Template:
    """Load template from a file or inline JSON.

    Priority:
    1. json_str - Inline JSON
    2. file_path - YAML or JSON file

    Raises:
        TemplateParseError: If no source given or the template is invalid
    """
    if json_str:
        return Template.from_json(json_str)
    if file_path:
        return TemplateLoader().load_file(Path(file_path))
    raise TemplateParseError("No template source given (use --template or --template-json)")
