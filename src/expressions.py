"""Intrinsic expressions: AST, parser, and evaluator.

Template values may embed tagged nodes that are resolved at plan/apply time:

    {ref: name}                      parameter value, or a resource's physical id
    {param: name}                    parameter value (explicit)
    {attr: [logicalId, attribute]}   resource attribute ("Id.attr" also accepted)
    {join: [delimiter, [parts...]]}  string join
    {lookup: [map, key, field]}      mappings lookup
    {select: [index, list]}          list indexing
    {equals: [a, b]}, {not: [x]}, {and: [...]}, {or: [...]}
    {condition: name}                value of a named condition
    {if: [condition, whenTrue, whenFalse]}

Expressions are immutable. Evaluation reads from a ResolutionContext, which
is created per planning/apply cycle and memoizes what it resolves.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Collection, Iterator, Optional

from errors import (
    CyclicReferenceError,
    TemplateParseError,
    TypeMismatchError,
    UnresolvedReferenceError,
)

logger = logging.getLogger(__name__)

BOOLEAN_OPS = ('equals', 'not', 'and', 'or')
EXPRESSION_TAGS = frozenset(
    {'ref', 'param', 'attr', 'join', 'lookup', 'select', 'condition', 'if'} | set(BOOLEAN_OPS)
)


class Expression:
    """Base class for expression nodes."""

    def children(self) -> tuple['Expression', ...]:
        return ()

    def walk(self) -> Iterator['Expression']:
        """Yield this node and every nested node, depth first."""
        yield self
        for child in self.children():
            yield from child.walk()


@dataclass(frozen=True)
class Literal(Expression):
    value: Any


@dataclass(frozen=True)
class ParameterRef(Expression):
    name: str


@dataclass(frozen=True)
class ResourceRef(Expression):
    logical_id: str


@dataclass(frozen=True)
class AttributeOf(Expression):
    logical_id: str
    attribute: str


@dataclass(frozen=True)
class Join(Expression):
    delimiter: Expression
    parts: Expression

    def children(self) -> tuple[Expression, ...]:
        return (self.delimiter, self.parts)


@dataclass(frozen=True)
class ListExpr(Expression):
    """A literal list whose items may be expressions."""
    items: tuple[Expression, ...]

    def children(self) -> tuple[Expression, ...]:
        return self.items


@dataclass(frozen=True)
class MapExpr(Expression):
    """A literal mapping whose values may be expressions."""
    entries: tuple[tuple[str, Expression], ...]

    def children(self) -> tuple[Expression, ...]:
        return tuple(value for _, value in self.entries)


@dataclass(frozen=True)
class MapLookup(Expression):
    map_name: str
    key: Expression
    field: Expression

    def children(self) -> tuple[Expression, ...]:
        return (self.key, self.field)


@dataclass(frozen=True)
class Select(Expression):
    index: Expression
    values: Expression

    def children(self) -> tuple[Expression, ...]:
        return (self.index, self.values)


@dataclass(frozen=True)
class BooleanCombinator(Expression):
    op: str
    operands: tuple[Expression, ...]

    def children(self) -> tuple[Expression, ...]:
        return self.operands


@dataclass(frozen=True)
class ConditionRef(Expression):
    name: str


@dataclass(frozen=True)
class If(Expression):
    condition: str
    when_true: Expression
    when_false: Expression

    def children(self) -> tuple[Expression, ...]:
        return (self.when_true, self.when_false)


@dataclass(frozen=True)
class Unknown:
    """Placeholder for a value only known after a pending resource is applied."""
    logical_id: str
    attribute: Optional[str] = None

    def __str__(self) -> str:
        target = self.logical_id if self.attribute is None else f"{self.logical_id}.{self.attribute}"
        return f"(known after apply: {target})"


# Parsing


def parse_expression(raw: Any, parameters: Collection[str] = (), where: str = 'template') -> Expression:
    """Parse a raw template value into an expression tree.

    Args:
        raw: Value loaded from the template document
        parameters: Declared parameter names (decides what {ref: x} means)
        where: Location used in error messages

    Raises:
        TemplateParseError: If a tagged node is malformed
    """
    if isinstance(raw, Expression):
        return raw
    if isinstance(raw, dict):
        if len(raw) == 1:
            tag, arg = next(iter(raw.items()))
            if tag in EXPRESSION_TAGS:
                return _parse_tagged(tag, arg, parameters, where)
        for key in raw:
            if not isinstance(key, str):
                raise TemplateParseError(f"{where}: mapping keys must be strings, got {key!r}")
        return MapExpr(tuple(
            (key, parse_expression(value, parameters, f"{where}.{key}"))
            for key, value in raw.items()
        ))
    if isinstance(raw, (list, tuple)):
        return ListExpr(tuple(
            parse_expression(item, parameters, f"{where}[{i}]") for i, item in enumerate(raw)
        ))
    if raw is None or isinstance(raw, (str, int, float, bool)):
        return Literal(raw)
    raise TemplateParseError(f"{where}: unsupported value type {type(raw).__name__}")


def _expect_list(tag: str, arg: Any, length: Optional[int], where: str) -> list:
    if not isinstance(arg, list):
        raise TemplateParseError(f"{where}: '{tag}' expects a list, got {type(arg).__name__}")
    if length is not None and len(arg) != length:
        raise TemplateParseError(f"{where}: '{tag}' expects {length} items, got {len(arg)}")
    return arg


def _expect_name(tag: str, arg: Any, where: str) -> str:
    if not isinstance(arg, str) or not arg:
        raise TemplateParseError(f"{where}: '{tag}' expects a name string")
    return arg


def _parse_tagged(tag: str, arg: Any, parameters: Collection[str], where: str) -> Expression:
    sub = f"{where}.{tag}"

    if tag == 'ref':
        name = _expect_name(tag, arg, where)
        if name in parameters:
            return ParameterRef(name)
        return ResourceRef(name)

    if tag == 'param':
        return ParameterRef(_expect_name(tag, arg, where))

    if tag == 'attr':
        if isinstance(arg, str):
            if '.' not in arg:
                raise TemplateParseError(f"{where}: 'attr' string form is 'LogicalId.attribute'")
            logical_id, attribute = arg.split('.', 1)
        else:
            logical_id, attribute = _expect_list(tag, arg, 2, where)
        return AttributeOf(_expect_name(tag, logical_id, where), _expect_name(tag, attribute, where))

    if tag == 'join':
        delimiter, parts = _expect_list(tag, arg, 2, where)
        return Join(parse_expression(delimiter, parameters, sub), parse_expression(parts, parameters, sub))

    if tag == 'lookup':
        map_name, key, field = _expect_list(tag, arg, 3, where)
        return MapLookup(
            _expect_name(tag, map_name, where),
            parse_expression(key, parameters, sub),
            parse_expression(field, parameters, sub),
        )

    if tag == 'select':
        index, values = _expect_list(tag, arg, 2, where)
        return Select(parse_expression(index, parameters, sub), parse_expression(values, parameters, sub))

    if tag == 'condition':
        return ConditionRef(_expect_name(tag, arg, where))

    if tag == 'if':
        condition, when_true, when_false = _expect_list(tag, arg, 3, where)
        return If(
            _expect_name(tag, condition, where),
            parse_expression(when_true, parameters, sub),
            parse_expression(when_false, parameters, sub),
        )

    # Boolean combinators
    operands = _expect_list(tag, arg, None, where)
    if tag == 'equals' and len(operands) != 2:
        raise TemplateParseError(f"{where}: 'equals' expects 2 operands, got {len(operands)}")
    if tag == 'not' and len(operands) != 1:
        raise TemplateParseError(f"{where}: 'not' expects 1 operand, got {len(operands)}")
    if tag in ('and', 'or') and len(operands) < 2:
        raise TemplateParseError(f"{where}: '{tag}' expects at least 2 operands")
    return BooleanCombinator(tag, tuple(parse_expression(o, parameters, sub) for o in operands))


# Reference enumeration


def resource_references(expr: Expression) -> set[str]:
    """Logical ids referenced via ResourceRef/AttributeOf anywhere in expr."""
    refs: set[str] = set()
    for node in expr.walk():
        if isinstance(node, (ResourceRef, AttributeOf)):
            refs.add(node.logical_id)
    return refs


def guarded_references(expr: Expression, guards: frozenset = frozenset()) -> Iterator[tuple[str, frozenset]]:
    """Yield (logical id, conditions known true) for each resource reference.

    A reference in the true branch of {if: [c, ...]} is only resolved when
    condition c holds, so c is added to its guards.
    """
    if isinstance(expr, (ResourceRef, AttributeOf)):
        yield expr.logical_id, guards
    elif isinstance(expr, If):
        yield from guarded_references(expr.when_true, guards | {expr.condition})
        yield from guarded_references(expr.when_false, guards)
    else:
        for child in expr.children():
            yield from guarded_references(child, guards)


def parameter_references(expr: Expression) -> set[str]:
    return {node.name for node in expr.walk() if isinstance(node, ParameterRef)}


def condition_references(expr: Expression) -> set[str]:
    """Condition names used via {condition: x} or {if: [x, ...]}."""
    names: set[str] = set()
    for node in expr.walk():
        if isinstance(node, ConditionRef):
            names.add(node.name)
        elif isinstance(node, If):
            names.add(node.condition)
    return names


def mapping_references(expr: Expression) -> set[str]:
    return {node.map_name for node in expr.walk() if isinstance(node, MapLookup)}


def contains_unknown(value: Any) -> bool:
    """True if a resolved value has an Unknown placeholder anywhere inside."""
    if isinstance(value, Unknown):
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


# Evaluation


class ResolutionContext:
    """Per-cycle view of parameters, conditions and resolved resources.

    Resources are registered as they reach a terminal created state (or are
    observed in recorded state). Attribute lookups for a registered resource
    whose attributes were not supplied go through attribute_loader once and
    are memoized for the rest of the cycle.

    With allow_unknown=True (planning), references to resources marked
    pending resolve to Unknown placeholders instead of failing.
    """

    def __init__(
        self,
        parameters: Optional[dict[str, Any]] = None,
        mappings: Optional[dict[str, dict]] = None,
        conditions: Optional[dict[str, Expression]] = None,
        attribute_loader: Optional[Callable[[str, str], Optional[dict]]] = None,
        allow_unknown: bool = False,
    ):
        self.parameters = dict(parameters or {})
        self.mappings = dict(mappings or {})
        self.conditions = dict(conditions or {})
        self.attribute_loader = attribute_loader
        self.allow_unknown = allow_unknown
        self._physical: dict[str, str] = {}
        self._attributes: dict[str, Optional[dict]] = {}
        self._pending: set[str] = set()
        self._condition_values: dict[str, bool] = {}
        self._evaluating: list[str] = []
        self._load_locks: dict[str, threading.Lock] = {}
        self._lock = threading.RLock()

    def mark_resolved(self, logical_id: str, physical_id: str, attributes: Optional[dict] = None) -> None:
        """Register a resource that reached a terminal created state."""
        with self._lock:
            self._physical[logical_id] = physical_id
            self._attributes[logical_id] = dict(attributes) if attributes is not None else None
            self._pending.discard(logical_id)

    def mark_pending(self, logical_id: str) -> None:
        """Forget a resource's values until it is (re)created."""
        with self._lock:
            self._physical.pop(logical_id, None)
            self._attributes.pop(logical_id, None)
            self._pending.add(logical_id)

    def forget(self, logical_id: str) -> None:
        with self._lock:
            self._physical.pop(logical_id, None)
            self._attributes.pop(logical_id, None)
            self._pending.discard(logical_id)

    def is_resolved(self, logical_id: str) -> bool:
        with self._lock:
            return logical_id in self._physical

    def physical_id(self, logical_id: str) -> Any:
        with self._lock:
            if logical_id in self._physical:
                return self._physical[logical_id]
            if self.allow_unknown and logical_id in self._pending:
                return Unknown(logical_id)
        raise UnresolvedReferenceError(
            f"Resource '{logical_id}' has not reached a terminal created state"
        )

    def attributes(self, logical_id: str) -> Any:
        """All attributes of a resolved resource (loaded lazily, memoized).

        The loader runs outside the context lock; a per-resource lock keeps
        concurrent lookups of the same resource to a single load.
        """
        with self._lock:
            if logical_id not in self._physical:
                if self.allow_unknown and logical_id in self._pending:
                    return Unknown(logical_id)
                raise UnresolvedReferenceError(
                    f"Resource '{logical_id}' has not reached a terminal created state"
                )
            cached = self._attributes.get(logical_id)
            if cached is not None:
                logger.debug(f"Attribute cache hit for '{logical_id}'")
                return cached
            physical_id = self._physical[logical_id]
            load_lock = self._load_locks.setdefault(logical_id, threading.Lock())

        with load_lock:
            with self._lock:
                cached = self._attributes.get(logical_id)
                if cached is not None and self._physical.get(logical_id) == physical_id:
                    return cached
            loaded: Optional[dict] = None
            if self.attribute_loader is not None:
                loaded = self.attribute_loader(logical_id, physical_id)
            attributes = dict(loaded or {})
            with self._lock:
                if self._physical.get(logical_id) == physical_id:
                    self._attributes[logical_id] = attributes
            return attributes

    def attribute(self, logical_id: str, name: str) -> Any:
        attrs = self.attributes(logical_id)
        if isinstance(attrs, Unknown):
            return Unknown(logical_id, name)
        if name not in attrs:
            raise UnresolvedReferenceError(f"Resource '{logical_id}' has no attribute '{name}'")
        return attrs[name]

    def condition(self, name: str) -> bool:
        """Evaluate a named condition (memoized, cycle checked)."""
        with self._lock:
            if name in self._condition_values:
                return self._condition_values[name]
            if name not in self.conditions:
                raise UnresolvedReferenceError(f"Unknown condition '{name}'")
            if name in self._evaluating:
                chain = self._evaluating[self._evaluating.index(name):] + [name]
                raise CyclicReferenceError(chain)
            self._evaluating.append(name)
            try:
                value = resolve(self.conditions[name], self)
            finally:
                self._evaluating.pop()
            if not isinstance(value, bool):
                raise TypeMismatchError(
                    f"Condition '{name}' must resolve to a boolean, got {type(value).__name__}"
                )
            self._condition_values[name] = value
            return value


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, (int, float)):
        return 'number'
    return type(value).__name__


def _require_bool(op: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeMismatchError(f"'{op}' operands must be boolean, got {_type_name(value)}")
    return value


def _first_unknown(context: ResolutionContext, *values: Any) -> Optional[Unknown]:
    """First Unknown operand when planning; its node is unknown as a whole."""
    if not context.allow_unknown:
        return None
    for value in values:
        if isinstance(value, Unknown):
            return value
    return None


def _join_part(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise TypeMismatchError(f"'join' parts must be strings or numbers, got {_type_name(value)}")
    return value if isinstance(value, str) else str(value)


def resolve(expr: Expression, context: ResolutionContext) -> Any:
    """Resolve an expression to a plain value.

    Raises:
        UnresolvedReferenceError: Reference target not available in context
        CyclicReferenceError: Conditions refer to each other in a loop
        TypeMismatchError: Operands of incompatible types
    """
    if isinstance(expr, Literal):
        return expr.value

    if isinstance(expr, MapExpr):
        return {key: resolve(value, context) for key, value in expr.entries}

    if isinstance(expr, ListExpr):
        return [resolve(item, context) for item in expr.items]

    if isinstance(expr, ParameterRef):
        if expr.name not in context.parameters:
            raise UnresolvedReferenceError(f"Parameter '{expr.name}' is not bound")
        return context.parameters[expr.name]

    if isinstance(expr, ResourceRef):
        return context.physical_id(expr.logical_id)

    if isinstance(expr, AttributeOf):
        return context.attribute(expr.logical_id, expr.attribute)

    if isinstance(expr, Join):
        delimiter = resolve(expr.delimiter, context)
        unknown = _first_unknown(context, delimiter)
        if unknown is not None:
            return unknown
        if not isinstance(delimiter, str):
            raise TypeMismatchError(f"'join' delimiter must be a string, got {_type_name(delimiter)}")
        parts = resolve(expr.parts, context)
        if isinstance(parts, Unknown):
            return parts
        if not isinstance(parts, list):
            raise TypeMismatchError(f"'join' expects a list of parts, got {_type_name(parts)}")
        for part in parts:
            if isinstance(part, Unknown):
                return part
        return delimiter.join(_join_part(p) for p in parts)

    if isinstance(expr, MapLookup):
        mapping = context.mappings.get(expr.map_name)
        if mapping is None:
            raise UnresolvedReferenceError(f"Unknown mapping '{expr.map_name}'")
        key = resolve(expr.key, context)
        field = resolve(expr.field, context)
        unknown = _first_unknown(context, key, field)
        if unknown is not None:
            return unknown
        for part in (key, field):
            if not isinstance(part, str):
                raise TypeMismatchError(f"'lookup' keys must be strings, got {_type_name(part)}")
        entry = mapping.get(key)
        if not isinstance(entry, dict) or field not in entry:
            raise UnresolvedReferenceError(f"Mapping '{expr.map_name}' has no entry [{key}][{field}]")
        return entry[field]

    if isinstance(expr, Select):
        index = resolve(expr.index, context)
        values = resolve(expr.values, context)
        unknown = _first_unknown(context, values, index)
        if unknown is not None:
            return unknown
        if isinstance(index, bool) or not isinstance(index, int):
            raise TypeMismatchError(f"'select' index must be an integer, got {_type_name(index)}")
        if not isinstance(values, list):
            raise TypeMismatchError(f"'select' expects a list, got {_type_name(values)}")
        if not 0 <= index < len(values):
            raise UnresolvedReferenceError(f"'select' index {index} out of range ({len(values)} items)")
        return values[index]

    if isinstance(expr, ConditionRef):
        return context.condition(expr.name)

    if isinstance(expr, If):
        branch = expr.when_true if context.condition(expr.condition) else expr.when_false
        return resolve(branch, context)

    if isinstance(expr, BooleanCombinator):
        values = [resolve(operand, context) for operand in expr.operands]
        unknown = _first_unknown(context, *values)
        if unknown is not None:
            return unknown
        if expr.op == 'equals':
            left, right = values
            if _type_name(left) not in ('string', 'boolean') or _type_name(left) != _type_name(right):
                raise TypeMismatchError(
                    f"'equals' operands must both be strings or both booleans, "
                    f"got {_type_name(left)} and {_type_name(right)}"
                )
            return left == right
        if expr.op == 'not':
            return not _require_bool('not', values[0])
        if expr.op == 'and':
            return all([_require_bool('and', v) for v in values])
        if expr.op == 'or':
            return any([_require_bool('or', v) for v in values])
        raise TemplateParseError(f"Unknown boolean operator '{expr.op}'")

    raise TemplateParseError(f"Cannot resolve {type(expr).__name__}")
