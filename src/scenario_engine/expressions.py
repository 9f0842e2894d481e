"""Restricted expression evaluator and template resolver.

Action definitions embed small expressions in three places:

  - ``{{ expr }}`` fragments inside URLs, headers, payloads and topics,
    resolved against the scenario's variable cache.
  - Response validations (``res.code === 200``, ``head['x-id'] != null``).
  - Message filters and variable rules (``msg.type === 'update'``,
    ``res.items[0].id``).

Expressions are written in a JavaScript-flavoured syntax. The source is
translated lexically (``===``, ``&&``, ``!``, ``true``...) into Python
syntax, parsed with :mod:`ast`, and walked by an evaluator that accepts only
a fixed set of node kinds: literals, names, field access, subscripts,
comparisons, boolean and arithmetic operators, and a whitelist of helper
calls. Names resolve only against the explicit scope (cache keys plus
``res`` / ``head`` / ``msg``). Nothing else is reachable.

``===`` becomes Python's ``is`` and is evaluated as JavaScript strict
equality: booleans never equal numbers, and a missing field reads as
``undefined``, which equals ``null`` only under ``==``.
"""

from __future__ import annotations

import ast
import json
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Mapping

from .cache import VariableCache
from .errors import ExpressionError

_TEMPLATE_RE = re.compile(r'\{\{\s*(.+?)\s*\}\}', re.DOTALL)

# String literals are kept out of the lexical translation.
_STRING_LITERAL_RE = re.compile(r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")""")

_JS_TOKEN_RE = re.compile(
    r'===|!==|&&|\|\||!(?!=)|\b(?:true|false|null)\b'
)

_JS_TOKENS = {
    '===': ' is ',
    '!==': ' is not ',
    '&&': ' and ',
    '||': ' or ',
    '!': ' not ',
    'true': 'True',
    'false': 'False',
    'null': 'None',
}

class _Undefined:
    """Result of reading a missing field or index; equal to null only loosely."""

    __slots__ = ()

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return 'undefined'


UNDEFINED = _Undefined()


def _js_type(value: Any) -> type:
    if isinstance(value, bool):
        return bool
    if isinstance(value, (int, float)):
        return float
    return type(value)


def _strict_eq(a: Any, b: Any) -> bool:
    # ``true === 1`` and ``null === undefined`` are both false.
    return _js_type(a) is _js_type(b) and a == b


def _loose_eq(a: Any, b: Any) -> bool:
    if a is None or a is UNDEFINED:
        return b is None or b is UNDEFINED
    return a == b


_COMPARISONS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: _loose_eq,
    ast.NotEq: lambda a, b: not _loose_eq(a, b),
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: _strict_eq,
    ast.IsNot: lambda a, b: not _strict_eq(a, b),
}

_ARITHMETIC: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_METHODS: dict[str, Callable[..., Any]] = {
    'startsWith': lambda s, prefix: s.startswith(prefix),
    'startswith': lambda s, prefix: s.startswith(prefix),
    'endsWith': lambda s, suffix: s.endswith(suffix),
    'endswith': lambda s, suffix: s.endswith(suffix),
    'includes': lambda s, item: item in s,
    'indexOf': lambda s, item: s.index(item) if item in s else -1,
    'toLowerCase': lambda s: s.lower(),
    'lower': lambda s: s.lower(),
    'toUpperCase': lambda s: s.upper(),
    'upper': lambda s: s.upper(),
    'trim': lambda s: s.strip(),
    'strip': lambda s: s.strip(),
    'split': lambda s, sep=None: s.split(sep),
    'get': lambda m, key, default=None: m.get(key, default),
}

_FUNCTIONS: dict[str, Callable[..., Any]] = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
}


# ── Evaluation ─────────────────────────────────────────────────────


def evaluate(expression: str, scope: Mapping[str, Any]) -> Any:
    """Evaluate a single expression against ``scope``.

    Raises:
        ExpressionError: On syntax errors, unknown names, unsupported
            constructs, or any runtime failure during evaluation.
    """
    tree = _compile(expression)
    try:
        value = _Evaluator(scope).visit(tree)
    except Exception as exc:
        raise ExpressionError(f'Cannot evaluate {expression!r}: {exc}') from exc
    return None if value is UNDEFINED else value


def evaluate_predicate(expression: str, scope: Mapping[str, Any]) -> bool:
    return bool(evaluate(expression, scope))


def scope_for(cache: VariableCache | None, **bindings: Any) -> dict[str, Any]:
    """Build an evaluation scope from the cache plus context bindings."""
    scope = cache.snapshot() if cache is not None else {}
    scope.update(bindings)
    return scope


@lru_cache(maxsize=1024)
def _compile(expression: str) -> ast.Expression:
    source = _translate(expression).strip()
    try:
        return ast.parse(source, mode='eval')
    except SyntaxError as exc:
        raise ExpressionError(
            f'Malformed expression {expression!r}: {exc.msg}'
        ) from exc


def _translate(expression: str) -> str:
    parts = _STRING_LITERAL_RE.split(expression)
    for i in range(0, len(parts), 2):
        parts[i] = _JS_TOKEN_RE.sub(lambda m: _JS_TOKENS[m.group(0)], parts[i])
    return ''.join(parts)


class _Evaluator:
    """Walks a parsed expression, rejecting any node it does not know."""

    def __init__(self, scope: Mapping[str, Any]) -> None:
        self._scope = scope

    def visit(self, node: ast.AST) -> Any:
        handler = getattr(self, f'_eval_{type(node).__name__}', None)
        if handler is None:
            raise ExpressionError(f'unsupported syntax: {type(node).__name__}')
        return handler(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id not in self._scope:
            if node.id == 'undefined':
                return UNDEFINED
            raise ExpressionError(f'unknown name {node.id!r}')
        return self._scope[node.id]

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        return _member(self.visit(node.value), node.attr)

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        target = self.visit(node.value)
        index = self.visit(node.slice)
        if target is None or target is UNDEFINED:
            raise ExpressionError(f'cannot index {_js_name(target)} with {index!r}')
        if isinstance(target, Mapping):
            return target.get(index, UNDEFINED)
        try:
            return target[index]
        except IndexError:
            return UNDEFINED

    def _eval_Slice(self, node: ast.Slice) -> slice:
        def bound(part: ast.AST | None) -> Any:
            return None if part is None else self.visit(part)

        return slice(bound(node.lower), bound(node.upper), bound(node.step))

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _COMPARISONS[type(op)](left, right):
                return False
            left = right
        return True

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        for value in node.values:
            result = self.visit(value)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ExpressionError(f'unsupported operator: {type(node.op).__name__}')

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            return to_text(left) + to_text(right)
        op = _ARITHMETIC.get(type(node.op))
        if op is None:
            raise ExpressionError(f'unsupported operator: {type(node.op).__name__}')
        return op(left, right)

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def _eval_List(self, node: ast.List) -> list[Any]:
        return [self.visit(e) for e in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(e) for e in node.elts)

    def _eval_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        if any(k is None for k in node.keys):
            raise ExpressionError('dict unpacking is not supported')
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def _eval_Call(self, node: ast.Call) -> Any:
        if node.keywords:
            raise ExpressionError('keyword arguments are not supported')
        args = [self.visit(a) for a in node.args]
        func = node.func
        if isinstance(func, ast.Attribute):
            method = _METHODS.get(func.attr)
            if method is None:
                raise ExpressionError(f'unsupported method {func.attr!r}')
            target = self.visit(func.value)
            if target is None or target is UNDEFINED:
                raise ExpressionError(f'cannot call {func.attr!r} on {_js_name(target)}')
            return method(target, *args)
        if isinstance(func, ast.Name) and func.id in _FUNCTIONS:
            return _FUNCTIONS[func.id](*args)
        raise ExpressionError('unsupported function call')


def _js_name(value: Any) -> str:
    return 'null' if value is None else 'undefined'


def _member(value: Any, name: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(name, UNDEFINED)
    if value is None or value is UNDEFINED:
        raise ExpressionError(f'cannot read property {name!r} of {_js_name(value)}')
    if name == 'length' and isinstance(value, (str, bytes, list, tuple)):
        return len(value)
    raise ExpressionError(
        f'unsupported property {name!r} on {type(value).__name__}'
    )


# ── Templates ──────────────────────────────────────────────────────


def resolve_string(template: Any, scope: Mapping[str, Any]) -> Any:
    """Replace every ``{{ expr }}`` fragment in ``template``.

    A template consisting of exactly one fragment resolves to the raw
    evaluated value; otherwise fragments are replaced by their text form.
    Values without fragments are returned unchanged.
    """
    if not isinstance(template, str) or '{{' not in template:
        return template

    matches = list(_TEMPLATE_RE.finditer(template))
    if not matches:
        return template
    if len(matches) == 1 and matches[0].span() == (0, len(template)):
        return evaluate(matches[0].group(1), scope)

    return _TEMPLATE_RE.sub(
        lambda m: to_text(evaluate(m.group(1), scope)),
        template,
    )


def resolve_value(value: Any, scope: Mapping[str, Any]) -> Any:
    """Resolve templates recursively through mappings and lists."""
    if isinstance(value, str):
        return resolve_string(value, scope)
    if isinstance(value, Mapping):
        return {k: resolve_value(v, scope) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(v, scope) for v in value]
    return value


def resolve_mapping(
    mapping: Mapping[str, Any] | None,
    scope: Mapping[str, Any],
) -> dict[str, Any]:
    if not mapping:
        return {}
    return {k: resolve_value(v, scope) for k, v in mapping.items()}


def to_text(value: Any) -> str:
    """Text form used when splicing a value into a larger string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return json.dumps(value, default=str)
