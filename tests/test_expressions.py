"""Tests for expressions module."""

import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import (
    CyclicReferenceError,
    TemplateParseError,
    TypeMismatchError,
    UnresolvedReferenceError,
)
from expressions import (
    AttributeOf,
    BooleanCombinator,
    ConditionRef,
    If,
    Join,
    Literal,
    MapLookup,
    ParameterRef,
    ResolutionContext,
    ResourceRef,
    Select,
    Unknown,
    condition_references,
    contains_unknown,
    parse_expression,
    resolve,
    resource_references,
)


def _eval(raw, parameters=None, **context_kwargs):
    """Parse and resolve a raw value."""
    params = parameters or {}
    context = ResolutionContext(parameters=params, **context_kwargs)
    return resolve(parse_expression(raw, set(params)), context)


class TestParseExpression:
    """Tests for parse_expression()."""

    def test_scalars(self):
        assert parse_expression('x') == Literal('x')
        assert parse_expression(3) == Literal(3)
        assert parse_expression(None) == Literal(None)

    def test_ref_parameter_or_resource(self):
        assert parse_expression({'ref': 'Env'}, {'Env'}) == ParameterRef('Env')
        assert parse_expression({'ref': 'Net'}, {'Env'}) == ResourceRef('Net')
        assert parse_expression({'param': 'Env'}) == ParameterRef('Env')

    def test_attr_string_form(self):
        assert parse_expression({'attr': 'Db.endpoint'}) == AttributeOf('Db', 'endpoint')

    def test_attr_string_without_dot(self):
        with pytest.raises(TemplateParseError, match='LogicalId.attribute'):
            parse_expression({'attr': 'Db'})

    def test_join(self):
        expr = parse_expression({'join': ['-', ['a', {'ref': 'B'}]]})
        assert isinstance(expr, Join)
        assert resource_references(expr) == {'B'}

    def test_lookup(self):
        expr = parse_expression({'lookup': ['Sizes', 'dev', 'cpu']})
        assert expr == MapLookup('Sizes', Literal('dev'), Literal('cpu'))

    def test_select(self):
        expr = parse_expression({'select': [1, ['a', 'b']]})
        assert isinstance(expr, Select)

    def test_if_and_condition(self):
        expr = parse_expression({'if': ['IsProd', {'condition': 'Big'}, 'small']})
        assert isinstance(expr, If)
        assert condition_references(expr) == {'IsProd', 'Big'}

    def test_boolean_combinators(self):
        expr = parse_expression({'and': [True, {'not': [False]}]})
        assert isinstance(expr, BooleanCombinator)
        assert expr.op == 'and'

    def test_equals_arity(self):
        with pytest.raises(TemplateParseError, match="'equals' expects 2 operands"):
            parse_expression({'equals': ['a']})

    def test_and_arity(self):
        with pytest.raises(TemplateParseError, match='at least 2 operands'):
            parse_expression({'or': [True]})

    def test_map_with_tag_and_other_keys_is_plain_map(self):
        expr = parse_expression({'ref': 'A', 'other': 1})
        assert resource_references(expr) == set()

    def test_nested_references(self):
        expr = parse_expression({'env': {'DB': {'attr': ['Db', 'endpoint']}, 'NET': [{'ref': 'Net'}]}})
        assert resource_references(expr) == {'Db', 'Net'}


class TestResolve:
    """Tests for resolve() on plain values and intrinsics."""

    def test_parameter(self):
        assert _eval({'ref': 'Env'}, {'Env': 'prod'}) == 'prod'

    def test_unbound_parameter(self):
        with pytest.raises(UnresolvedReferenceError, match='not bound'):
            resolve(ParameterRef('Env'), ResolutionContext())

    def test_join_strings_and_numbers(self):
        assert _eval({'join': ['-', ['web', 2, {'ref': 'Env'}]]}, {'Env': 'dev'}) == 'web-2-dev'

    def test_join_rejects_boolean(self):
        with pytest.raises(TypeMismatchError, match="'join' parts"):
            _eval({'join': [',', ['a', True]]})

    def test_join_requires_string_delimiter(self):
        with pytest.raises(TypeMismatchError, match='delimiter'):
            _eval({'join': [1, ['a', 'b']]})

    def test_join_list_parameter(self):
        assert _eval({'join': [',', {'ref': 'Zones'}]}, {'Zones': ['a', 'b']}) == 'a,b'

    def test_lookup(self):
        mappings = {'Sizes': {'dev': {'cpu': 1}, 'prod': {'cpu': 4}}}
        assert _eval({'lookup': ['Sizes', {'ref': 'Env'}, 'cpu']}, {'Env': 'prod'}, mappings=mappings) == 4

    def test_lookup_missing_entry(self):
        mappings = {'Sizes': {'dev': {'cpu': 1}}}
        with pytest.raises(UnresolvedReferenceError, match=r'no entry \[qa\]\[cpu\]'):
            _eval({'lookup': ['Sizes', 'qa', 'cpu']}, mappings=mappings)

    def test_select(self):
        assert _eval({'select': [1, ['a', 'b', 'c']]}) == 'b'

    def test_select_out_of_range(self):
        with pytest.raises(UnresolvedReferenceError, match='out of range'):
            _eval({'select': [3, ['a']]})

    def test_select_index_type(self):
        with pytest.raises(TypeMismatchError, match='integer'):
            _eval({'select': ['0', ['a']]})

    def test_equals_strings(self):
        assert _eval({'equals': [{'ref': 'Env'}, 'prod']}, {'Env': 'prod'}) is True
        assert _eval({'equals': [{'ref': 'Env'}, 'prod']}, {'Env': 'dev'}) is False

    def test_equals_booleans(self):
        assert _eval({'equals': [True, True]}) is True

    def test_equals_mixed_types(self):
        with pytest.raises(TypeMismatchError, match='both strings or both booleans'):
            _eval({'equals': ['1', 1]})

    def test_equals_numbers_rejected(self):
        with pytest.raises(TypeMismatchError):
            _eval({'equals': [1, 1]})

    def test_not_and_or(self):
        assert _eval({'not': [False]}) is True
        assert _eval({'and': [True, False]}) is False
        assert _eval({'or': [False, True]}) is True

    def test_boolean_ops_reject_strings(self):
        with pytest.raises(TypeMismatchError, match="'and' operands must be boolean"):
            _eval({'and': [True, 'true']})


class TestResolutionContext:
    """Tests for resource and condition resolution through the context."""

    def test_resource_physical_id(self):
        context = ResolutionContext()
        context.mark_resolved('Net', 'network-0001', {'subnetId': 'subnet-1'})
        assert resolve(ResourceRef('Net'), context) == 'network-0001'
        assert resolve(AttributeOf('Net', 'subnetId'), context) == 'subnet-1'

    def test_unresolved_resource(self):
        with pytest.raises(UnresolvedReferenceError, match='terminal created state'):
            resolve(ResourceRef('Net'), ResolutionContext())

    def test_missing_attribute(self):
        context = ResolutionContext()
        context.mark_resolved('Net', 'network-0001', {'subnetId': 'subnet-1'})
        with pytest.raises(UnresolvedReferenceError, match="no attribute 'arn'"):
            resolve(AttributeOf('Net', 'arn'), context)

    def test_pending_resource_is_unknown_when_allowed(self):
        context = ResolutionContext(allow_unknown=True)
        context.mark_pending('Net')
        assert resolve(ResourceRef('Net'), context) == Unknown('Net')
        assert resolve(AttributeOf('Net', 'subnetId'), context) == Unknown('Net', 'subnetId')

    def test_pending_resource_fails_when_not_allowed(self):
        context = ResolutionContext()
        context.mark_pending('Net')
        with pytest.raises(UnresolvedReferenceError):
            resolve(ResourceRef('Net'), context)

    def test_unknown_propagates_through_join(self):
        context = ResolutionContext(allow_unknown=True)
        context.mark_pending('Net')
        value = resolve(parse_expression({'join': ['/', ['x', {'attr': 'Net.subnetId'}]]}), context)
        assert isinstance(value, Unknown)
        assert str(value) == '(known after apply: Net.subnetId)'

    def test_attributes_loaded_once(self):
        loader = MagicMock(return_value={'endpoint': 'db.internal'})
        context = ResolutionContext(attribute_loader=loader)
        context.mark_resolved('Db', 'database-0001')
        assert context.attribute('Db', 'endpoint') == 'db.internal'
        assert context.attribute('Db', 'endpoint') == 'db.internal'
        loader.assert_called_once_with('Db', 'database-0001')

    def test_operators_over_unknown(self):
        context = ResolutionContext(allow_unknown=True, mappings={'Sizes': {'dev': {'n': '1'}}})
        context.mark_pending('Net')
        cases = [
            {'equals': [{'attr': 'Net.cidr'}, '10.0.0.0/16']},
            {'and': [True, {'not': [{'equals': [{'ref': 'Net'}, 'x']}]}]},
            {'lookup': ['Sizes', {'attr': 'Net.env'}, 'n']},
            {'select': [{'attr': 'Net.index'}, ['a', 'b']]},
            {'join': [{'attr': 'Net.sep'}, ['a', 'b']]},
        ]
        for raw in cases:
            assert isinstance(resolve(parse_expression(raw), context), Unknown), raw

    def test_non_boolean_still_rejected_when_planning(self):
        context = ResolutionContext(allow_unknown=True)
        with pytest.raises(TypeMismatchError, match="'equals' operands"):
            resolve(parse_expression({'equals': ['a', 1]}), context)

    def test_loader_runs_outside_context_lock(self):
        context = ResolutionContext()
        context.mark_resolved('Net', 'network-0001', {'cidr': '10.0.0.0/16'})
        context.mark_resolved('Db', 'database-0001')
        other_done = threading.Event()
        workers = []

        def lookup_other():
            context.attribute('Net', 'cidr')
            other_done.set()

        def loader(logical_id, physical_id):
            workers.append(threading.Thread(target=lookup_other))
            workers[0].start()
            unblocked = other_done.wait(timeout=5)
            return {'endpoint': 'db.internal', 'unblocked': unblocked}

        context.attribute_loader = loader
        assert context.attribute('Db', 'unblocked') is True
        assert context.attribute('Db', 'endpoint') == 'db.internal'
        workers[0].join(timeout=5)

    def test_condition_memoized(self):
        conditions = {'IsProd': parse_expression({'equals': [{'ref': 'Env'}, 'prod']}, {'Env'})}
        context = ResolutionContext(parameters={'Env': 'prod'}, conditions=conditions)
        assert context.condition('IsProd') is True
        context.parameters['Env'] = 'dev'
        assert context.condition('IsProd') is True

    def test_condition_reference_and_if(self):
        conditions = {
            'IsProd': parse_expression({'equals': [{'ref': 'Env'}, 'prod']}, {'Env'}),
            'IsBig': parse_expression({'condition': 'IsProd'}),
        }
        context = ResolutionContext(parameters={'Env': 'dev'}, conditions=conditions)
        assert resolve(If('IsBig', Literal('large'), Literal('small')), context) == 'small'
        assert resolve(ConditionRef('IsBig'), context) is False

    def test_condition_cycle(self):
        conditions = {
            'A': parse_expression({'condition': 'B'}),
            'B': parse_expression({'not': [{'condition': 'A'}]}),
        }
        context = ResolutionContext(conditions=conditions)
        with pytest.raises(CyclicReferenceError, match='A -> B -> A'):
            context.condition('A')

    def test_condition_must_be_boolean(self):
        context = ResolutionContext(conditions={'Bad': Literal('yes')})
        with pytest.raises(TypeMismatchError, match='must resolve to a boolean'):
            context.condition('Bad')

    def test_unknown_condition(self):
        with pytest.raises(UnresolvedReferenceError, match="Unknown condition 'Nope'"):
            ResolutionContext().condition('Nope')


class TestContainsUnknown:
    """Tests for contains_unknown()."""

    def test_nested(self):
        assert contains_unknown({'a': [1, {'b': Unknown('X')}]}) is True
        assert contains_unknown({'a': [1, {'b': 'x'}]}) is False
