"""
``${{ ... }}`` expressions.

Used for two things:

- interpolation of step parameters, scripts and env values
  (``--public-url /${{ github.event.repository.name }}/``)
- step conditions (``if: github.event_name == 'push' && success()``)

Supported syntax: context references (``github.ref``, ``env.NAME``,
``steps.build.outputs.url``), single-quoted strings (``''`` escapes a quote),
numbers, ``true``/``false``/``null``, ``== != < <= > >=``, ``&& || !``,
parentheses, and the functions ``success() failure() always() cancelled()
contains() startsWith() endsWith() format()``.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterator, List, Mapping, Optional, Set, Tuple

from .errors import ExpressionError

TEMPLATE_PATTERN = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})
# status functions that let a step run after an upstream failure
RUN_ALWAYS_FUNCTIONS = frozenset({"failure", "always", "cancelled"})
STATIC_CONTEXTS = frozenset({"env", "vars", "github", "secrets", "inputs"})

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<number>-?\d+(?:\.\d+)?(?![A-Za-z_]))
      | (?P<string>'(?:[^']|'')*')
      | (?P<op>==|!=|<=|>=|&&|\|\||[<>!(),])
      | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_*][A-Za-z0-9_\-]*)*)
    )""",
    re.VERBOSE,
)

_COMPARATORS = ("==", "!=", "<=", ">=", "<", ">")


@dataclass(frozen=True)
class StatusContext:
    """Outcome of a step's upstream, used by the status functions."""
    failure: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.failure and not self.cancelled


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    stripped_end = len(source.rstrip())
    while pos < stripped_end:
        m = _TOKEN.match(source, pos)
        if not m or m.end() == pos:
            raise ExpressionError(f"unexpected character at offset {pos}", expression=source)
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ExpressionError("unexpected end of expression", expression=self.source)
        self.pos += 1
        return tok

    def _expect(self, value: str) -> None:
        kind, text = self._take()
        if kind != "op" or text != value:
            raise ExpressionError(f"expected '{value}', got '{text}'", expression=self.source)

    def _at(self, value: str) -> bool:
        tok = self._peek()
        return tok is not None and tok[0] == "op" and tok[1] == value

    def parse(self) -> tuple:
        if not self.tokens:
            raise ExpressionError("empty expression", expression=self.source)
        tree = self._or()
        if self._peek() is not None:
            raise ExpressionError(f"unexpected token '{self._peek()[1]}'", expression=self.source)
        return tree

    def _or(self) -> tuple:
        left = self._and()
        while self._at("||"):
            self._take()
            left = ("or", left, self._and())
        return left

    def _and(self) -> tuple:
        left = self._compare()
        while self._at("&&"):
            self._take()
            left = ("and", left, self._compare())
        return left

    def _compare(self) -> tuple:
        left = self._unary()
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] in _COMPARATORS:
            self._take()
            return ("cmp", tok[1], left, self._unary())
        return left

    def _unary(self) -> tuple:
        if self._at("!"):
            self._take()
            return ("not", self._unary())
        return self._primary()

    def _primary(self) -> tuple:
        kind, text = self._take()
        if kind == "number":
            return ("lit", float(text) if "." in text else int(text))
        if kind == "string":
            return ("lit", text[1:-1].replace("''", "'"))
        if kind == "op" and text == "(":
            inner = self._or()
            self._expect(")")
            return inner
        if kind == "ident":
            lowered = text.lower()
            if lowered in ("true", "false"):
                return ("lit", lowered == "true")
            if lowered == "null":
                return ("lit", None)
            if self._at("("):
                return self._call(text)
            return ("ref", text)
        raise ExpressionError(f"unexpected token '{text}'", expression=self.source)

    def _call(self, name: str) -> tuple:
        self._expect("(")
        args: List[tuple] = []
        if not self._at(")"):
            args.append(self._or())
            while self._at(","):
                self._take()
                args.append(self._or())
        self._expect(")")
        fn = name.lower() if name.lower() in STATUS_FUNCTIONS else name
        if fn not in _FUNCTIONS and fn not in STATUS_FUNCTIONS:
            raise ExpressionError(f"unknown function '{name}'", expression=self.source)
        if fn in STATUS_FUNCTIONS and args:
            raise ExpressionError(f"{fn}() takes no arguments", expression=self.source)
        return ("call", fn, tuple(args))


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if value.strip() == "":
            return 0.0
        try:
            return float(value)
        except ValueError:
            return math.nan
    return math.nan


def _compare(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        a, b = a.lower(), b.lower()
    elif type(a) is not type(b) or a is None:
        a, b = _to_number(a), _to_number(b)
    if op == "==":
        return a == b
    if op == "!=":
        return a != b
    try:
        if op == "<":
            return a < b
        if op == "<=":
            return a <= b
        if op == ">":
            return a > b
        return a >= b
    except TypeError:
        return False


def _format(template: Any, *args: Any) -> str:
    out = to_string(template)
    for i, arg in enumerate(args):
        out = out.replace("{" + str(i) + "}", to_string(arg))
    return out


_FUNCTIONS = {
    "contains": lambda hay, needle: (
        any(_compare("==", item, needle) for item in hay)
        if isinstance(hay, (list, tuple))
        else to_string(needle).lower() in to_string(hay).lower()
    ),
    "startsWith": lambda s, prefix: to_string(s).lower().startswith(to_string(prefix).lower()),
    "endsWith": lambda s, suffix: to_string(s).lower().endswith(to_string(suffix).lower()),
    "format": _format,
}


def lookup(context: Mapping[str, Any], path: str) -> Any:
    cur: Any = context
    for part in path.split("."):
        if isinstance(cur, Mapping) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


def _evaluate(node: tuple, context: Mapping[str, Any], status: Optional[StatusContext], source: str) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "ref":
        return lookup(context, node[1])
    if kind == "not":
        return not truthy(_evaluate(node[1], context, status, source))
    if kind == "and":
        left = _evaluate(node[1], context, status, source)
        return _evaluate(node[2], context, status, source) if truthy(left) else left
    if kind == "or":
        left = _evaluate(node[1], context, status, source)
        return left if truthy(left) else _evaluate(node[2], context, status, source)
    if kind == "cmp":
        return _compare(
            node[1],
            _evaluate(node[2], context, status, source),
            _evaluate(node[3], context, status, source),
        )
    if kind == "call":
        name, args = node[1], node[2]
        if name in STATUS_FUNCTIONS:
            if name == "always":
                return True
            if status is None:
                raise ExpressionError(f"{name}() is only available while the run executes", expression=source)
            return getattr(status, name)
        values = [_evaluate(a, context, status, source) for a in args]
        try:
            return _FUNCTIONS[name](*values)
        except TypeError as e:
            raise ExpressionError(f"bad arguments to {name}(): {e}", expression=source) from e
    raise ExpressionError(f"unknown node {kind!r}", expression=source)


def _walk(node: tuple) -> Iterator[tuple]:
    yield node
    kind = node[0]
    if kind in ("not",):
        yield from _walk(node[1])
    elif kind in ("and", "or"):
        yield from _walk(node[1])
        yield from _walk(node[2])
    elif kind == "cmp":
        yield from _walk(node[2])
        yield from _walk(node[3])
    elif kind == "call":
        for arg in node[2]:
            yield from _walk(arg)


@dataclass(frozen=True)
class Expression:
    source: str
    tree: tuple

    @property
    def references(self) -> Tuple[str, ...]:
        return tuple(n[1] for n in _walk(self.tree) if n[0] == "ref")

    @property
    def functions(self) -> Set[str]:
        return {n[1] for n in _walk(self.tree) if n[0] == "call"}

    @property
    def contexts(self) -> Set[str]:
        return {ref.split(".", 1)[0] for ref in self.references}

    @property
    def is_static(self) -> bool:
        """True when the value only depends on the frozen run environment."""
        return not (self.functions & STATUS_FUNCTIONS) and self.contexts <= STATIC_CONTEXTS

    @property
    def runs_always(self) -> bool:
        return bool(self.functions & RUN_ALWAYS_FUNCTIONS)

    def evaluate(self, context: Mapping[str, Any], status: Optional[StatusContext] = None) -> Any:
        return _evaluate(self.tree, context, status, self.source)


@lru_cache(maxsize=1024)
def parse(source: str) -> Expression:
    return Expression(source=source.strip(), tree=_Parser(source.strip()).parse())


def unwrap(text: str) -> str:
    """``"${{ a == b }}"`` -> ``"a == b"``; anything else is returned stripped."""
    stripped = text.strip()
    m = TEMPLATE_PATTERN.fullmatch(stripped)
    if m and "${{" not in m.group(1):
        return m.group(1).strip()
    return stripped


def parse_condition(condition: str) -> Expression:
    return parse(unwrap(condition))


def find_expressions(text: str) -> List[Expression]:
    return [parse(m.group(1)) for m in TEMPLATE_PATTERN.finditer(text)]


def interpolate(text: str, context: Mapping[str, Any], status: Optional[StatusContext] = None) -> str:
    if "${{" not in text:
        return text
    return TEMPLATE_PATTERN.sub(
        lambda m: to_string(parse(m.group(1)).evaluate(context, status)),
        text,
    )
