"""Tests for the restricted expression evaluator and template resolver.

Validates:
  - JavaScript-flavoured operators and literals
  - Field access semantics (missing keys, null access, length)
  - Whitelisted helpers and rejection of everything else
  - Template resolution: raw single fragments, text splicing, idempotence
"""

from __future__ import annotations

import pytest

from scenario_engine.cache import VariableCache
from scenario_engine.errors import ExpressionError
from scenario_engine.expressions import (
    evaluate,
    evaluate_predicate,
    resolve_mapping,
    resolve_string,
    resolve_value,
    scope_for,
    to_text,
)


# ── Evaluation ─────────────────────────────────────────────────────


class TestEvaluate:

    def test_strict_equality(self):
        assert evaluate('res.code === 200', {'res': {'code': 200}}) is True
        assert evaluate('res.code !== 200', {'res': {'code': 200}}) is False

    def test_strict_equality_checks_type(self):
        assert evaluate('res.flag === 1', {'res': {'flag': True}}) is False
        assert evaluate('res.flag !== 1', {'res': {'flag': True}}) is True
        assert evaluate("res.code === '200'", {'res': {'code': 200}}) is False
        assert evaluate('res.ratio === 1', {'res': {'ratio': 1.0}}) is True
        assert evaluate('res.flag === true', {'res': {'flag': True}}) is True

    def test_null_and_undefined(self):
        assert evaluate('null === undefined', {}) is False
        assert evaluate('null == undefined', {}) is True
        assert evaluate('res.missing === null', {'res': {}}) is False
        assert evaluate('res.missing == null', {'res': {}}) is True
        assert evaluate('res.present === null', {'res': {'present': None}}) is True
        assert evaluate('res.missing', {'res': {}}) is None

    def test_loose_equality(self):
        assert evaluate('res.flag == 1', {'res': {'flag': True}}) is True
        assert evaluate('res.id != null', {'res': {'id': 'u-1'}}) is True
        assert evaluate('res.id != null', {'res': {}}) is False

    def test_boolean_operators(self):
        scope = {'a': 1, 'b': 0}
        assert evaluate('a > 0 && b === 0', scope) is True
        assert evaluate('a < 0 || b === 0', scope) is True
        assert evaluate('!b', scope) is True

    def test_js_literals(self):
        assert evaluate('true', {}) is True
        assert evaluate('false', {}) is False
        assert evaluate('null', {}) is None
        assert evaluate('undefined', {}) is None

    def test_literals_inside_strings_untouched(self):
        assert evaluate("msg.text === 'true && null'", {'msg': {'text': 'true && null'}}) is True

    def test_missing_key_is_undefined(self):
        assert evaluate('res.missing === undefined', {'res': {}}) is True

    def test_property_of_null_raises(self):
        with pytest.raises(ExpressionError, match='null'):
            evaluate('res.a.b', {'res': {'a': None}})

    def test_subscript_on_mapping_and_list(self):
        scope = {'res': {'items': [{'id': 'x'}]}, 'head': {'content-type': 'application/json'}}
        assert evaluate('res.items[0].id', scope) == 'x'
        assert evaluate("head['content-type']", scope) == 'application/json'
        assert evaluate('res.items[5]', scope) is None

    def test_length(self):
        assert evaluate('res.items.length === 2', {'res': {'items': [1, 2]}}) is True
        assert evaluate("'abc'.length", {}) == 3

    def test_string_helpers(self):
        scope = {'msg': {'topic': 'Devices/42'}}
        assert evaluate("msg.topic.startsWith('Devices')", scope) is True
        assert evaluate("msg.topic.toLowerCase().endsWith('/42')", scope) is True
        assert evaluate("msg.topic.includes('/')", scope) is True
        assert evaluate("msg.topic.indexOf('x')", scope) == -1

    def test_string_concatenation(self):
        assert evaluate("'Bearer ' + token", {'token': 'abc'}) == 'Bearer abc'
        assert evaluate("'n=' + n", {'n': 3}) == 'n=3'

    def test_arithmetic_and_conditional(self):
        assert evaluate('a * 2 + 1', {'a': 4}) == 9
        assert evaluate("'big' if a > 3 else 'small'", {'a': 4}) == 'big'

    def test_whitelisted_functions(self):
        assert evaluate('len(items)', {'items': [1, 2, 3]}) == 3
        assert evaluate("int('7') + 1", {}) == 8

    def test_unknown_name_raises(self):
        with pytest.raises(ExpressionError, match='unknown name'):
            evaluate('nope === 1', {})

    def test_malformed_expression_raises(self):
        with pytest.raises(ExpressionError, match='Malformed'):
            evaluate('res.code ===', {'res': {}})

    @pytest.mark.parametrize('expression', [
        "__import__('os')",
        'res.code.__class__',
        '(lambda: 1)()',
        "open('/etc/passwd')",
        'res.code.bit_length()',
    ])
    def test_general_python_rejected(self, expression: str):
        with pytest.raises(ExpressionError):
            evaluate(expression, {'res': {'code': 1}})

    def test_runtime_error_wrapped(self):
        with pytest.raises(ExpressionError, match='Cannot evaluate'):
            evaluate('a / b', {'a': 1, 'b': 0})

    def test_predicate_coerces_to_bool(self):
        assert evaluate_predicate('res.items', {'res': {'items': []}}) is False
        assert evaluate_predicate('res.items', {'res': {'items': [1]}}) is True


class TestScope:

    def test_cache_keys_and_bindings(self):
        cache = VariableCache({'token': 't'})
        scope = scope_for(cache, res={'a': 1})
        assert scope == {'token': 't', 'res': {'a': 1}}

    def test_scope_is_a_copy(self):
        cache = VariableCache()
        scope = scope_for(cache)
        scope['x'] = 1
        assert 'x' not in cache

    def test_no_cache(self):
        assert scope_for(None, msg=1) == {'msg': 1}


# ── Templates ──────────────────────────────────────────────────────


class TestResolveString:

    def test_single_fragment_returns_raw_value(self):
        assert resolve_string('{{ count }}', {'count': 3}) == 3
        assert resolve_string('{{ user }}', {'user': {'id': 1}}) == {'id': 1}

    def test_fragments_spliced_as_text(self):
        scope = {'host': 'api', 'port': 8080}
        assert resolve_string('http://{{ host }}:{{ port }}/x', scope) == 'http://api:8080/x'

    def test_non_string_values_spliced_as_json(self):
        assert resolve_string('ids={{ ids }}', {'ids': [1, 2]}) == 'ids=[1, 2]'

    def test_plain_text_untouched(self):
        assert resolve_string('no expressions here', {}) == 'no expressions here'
        assert resolve_string(42, {}) == 42

    def test_idempotent(self):
        scope = {'id': 'abc'}
        once = resolve_string('/users/{{ id }}', scope)
        assert resolve_string(once, scope) == once

    def test_unknown_key_raises(self):
        with pytest.raises(ExpressionError):
            resolve_string('/users/{{ missing }}', {})


class TestResolveValue:

    def test_nested_structures(self):
        value = {'user': {'id': '{{ id }}', 'tags': ['{{ tag }}', 'fixed']}, 'n': 1}
        assert resolve_value(value, {'id': 7, 'tag': 'a'}) == {
            'user': {'id': 7, 'tags': ['a', 'fixed']},
            'n': 1,
        }

    def test_resolve_mapping_none(self):
        assert resolve_mapping(None, {}) == {}

    def test_resolve_mapping_does_not_mutate(self):
        original = {'Authorization': 'Bearer {{ token }}'}
        resolved = resolve_mapping(original, {'token': 't'})
        assert resolved == {'Authorization': 'Bearer t'}
        assert original == {'Authorization': 'Bearer {{ token }}'}


class TestToText:

    def test_forms(self):
        assert to_text('a') == 'a'
        assert to_text(b'bytes') == 'bytes'
        assert to_text({'a': 1}) == '{"a": 1}'
        assert to_text(None) == 'null'
