# conditions.py
# `branches` filters and `if` expressions deciding whether a step runs.
from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import SchemaError


@dataclass(frozen=True)
class BuildContext:
    """The `build.*` facts conditions are evaluated against."""
    branch: Optional[str] = None
    tag: Optional[str] = None
    commit: Optional[str] = None
    message: Optional[str] = None
    source: str = "local"
    pull_request_id: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict, compare=False)

    def variable(self, name: str) -> Any:
        table = {
            "build.branch": self.branch,
            "build.tag": self.tag,
            "build.commit": self.commit,
            "build.message": self.message,
            "build.source": self.source,
            "build.pull_request.id": self.pull_request_id,
        }
        if name not in table:
            raise KeyError(name)
        return table[name]


# ---------------------------------------------------------------------
# branches
# ---------------------------------------------------------------------

def branches_match(patterns: Sequence[str], branch: Optional[str]) -> bool:
    """
    Glob filters, `!pattern` excludes.

    A branch passes when it matches a positive pattern (or there are none) and
    no negative pattern. With no branch known only negation-free filters pass.
    """
    if not patterns:
        return True
    positives = [p for p in patterns if not p.startswith("!")]
    negatives = [p[1:] for p in patterns if p.startswith("!")]
    if branch is None:
        return not negatives
    if any(fnmatchcase(branch, p) for p in negatives):
        return False
    if not positives:
        return True
    return any(fnmatchcase(branch, p) for p in positives)


# ---------------------------------------------------------------------
# if expressions
# ---------------------------------------------------------------------

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<op>&&|\|\||==|!=|=~|!~|!|\(|\)|,)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<name>[a-zA-Z_][a-zA-Z0-9_]*(?:\.[a-zA-Z_][a-zA-Z0-9_]*)*)
    """,
    re.VERBOSE,
)

Token = Tuple[str, Any]
Evaluator = Callable[[BuildContext], Any]


class ExpressionError(ValueError):
    pass


def _read_regex(text: str, pos: int) -> Tuple[Token, int]:
    # pos points at the opening slash
    i = pos + 1
    buf: List[str] = []
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text) and text[i + 1] == "/":
            buf.append("/")
            i += 2
            continue
        if ch == "/":
            i += 1
            flags = 0
            while i < len(text) and text[i] == "i":
                flags |= re.IGNORECASE
                i += 1
            try:
                return ("regex", re.compile("".join(buf), flags)), i
            except re.error as e:
                raise ExpressionError(f"invalid regex /{''.join(buf)}/: {e}") from None
        buf.append(ch)
        i += 1
    raise ExpressionError("unterminated regex literal")


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        if text[pos] == "/" and tokens and tokens[-1] in (("op", "=~"), ("op", "!~")):
            tok, pos = _read_regex(text, pos)
            tokens.append(tok)
            continue
        m = _TOKEN.match(text, pos)
        if not m:
            raise ExpressionError(f"unexpected character {text[pos]!r} at {pos}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        value = m.group(kind)
        if kind == "string":
            value = re.sub(r"\\(.)", r"\1", value[1:-1])
        elif kind == "number":
            value = float(value) if "." in value else int(value)
        tokens.append((kind, value))
    return tokens


def _loose_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is b
    if isinstance(a, (int, float)) != isinstance(b, (int, float)):
        return str(a) == str(b)
    return a == b


class _Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.i = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def take(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise ExpressionError("unexpected end of expression")
        self.i += 1
        return tok

    def expect(self, op: str) -> None:
        tok = self.take()
        if tok != ("op", op):
            raise ExpressionError(f"expected {op!r}, got {tok[1]!r}")

    def parse(self) -> Evaluator:
        node = self.parse_or()
        if self.peek() is not None:
            raise ExpressionError(f"unexpected {self.peek()[1]!r}")
        return node

    def parse_or(self) -> Evaluator:
        left = self.parse_and()
        while self.peek() == ("op", "||"):
            self.take()
            right = self.parse_and()
            left = (lambda l, r: lambda ctx: bool(l(ctx)) or bool(r(ctx)))(left, right)
        return left

    def parse_and(self) -> Evaluator:
        left = self.parse_unary()
        while self.peek() == ("op", "&&"):
            self.take()
            right = self.parse_unary()
            left = (lambda l, r: lambda ctx: bool(l(ctx)) and bool(r(ctx)))(left, right)
        return left

    def parse_unary(self) -> Evaluator:
        if self.peek() == ("op", "!"):
            self.take()
            inner = self.parse_unary()
            return lambda ctx: not inner(ctx)
        return self.parse_comparison()

    def parse_comparison(self) -> Evaluator:
        left = self.parse_primary()
        tok = self.peek()
        if tok in (("op", "=="), ("op", "!=")):
            self.take()
            right = self.parse_primary()
            if tok[1] == "==":
                return lambda ctx: _loose_equal(left(ctx), right(ctx))
            return lambda ctx: not _loose_equal(left(ctx), right(ctx))
        if tok in (("op", "=~"), ("op", "!~")):
            self.take()
            kind, pattern = self.take()
            if kind != "regex":
                raise ExpressionError(f"{tok[1]} must be followed by a /regex/")
            negate = tok[1] == "!~"

            def match(ctx: BuildContext) -> bool:
                v = left(ctx)
                hit = v is not None and pattern.search(str(v)) is not None
                return hit != negate

            return match
        return left

    def parse_primary(self) -> Evaluator:
        kind, value = self.take()
        if (kind, value) == ("op", "("):
            inner = self.parse_or()
            self.expect(")")
            return inner
        if kind in ("string", "number"):
            return lambda ctx: value
        if kind == "name":
            if value == "null":
                return lambda ctx: None
            if value in ("true", "false"):
                literal = value == "true"
                return lambda ctx: literal
            if value == "build.env":
                self.expect("(")
                arg_kind, arg = self.take()
                if arg_kind != "string":
                    raise ExpressionError("build.env() takes a string argument")
                self.expect(")")
                return lambda ctx: ctx.env.get(arg)
            try:
                BuildContext().variable(value)
            except KeyError:
                raise ExpressionError(f"unknown variable {value!r}") from None
            return lambda ctx: ctx.variable(value)
        raise ExpressionError(f"unexpected {value!r}")


@lru_cache(maxsize=256)
def compile_expression(text: str) -> Evaluator:
    return _Parser(tokenize(text)).parse()


def check_expression(text: str, step: Optional[str] = None) -> None:
    try:
        compile_expression(text)
    except ExpressionError as e:
        raise SchemaError([f"invalid if expression {text!r}: {e}"], source=step) from None


def evaluate(text: str, ctx: BuildContext, step: Optional[str] = None) -> bool:
    check_expression(text, step)
    return bool(compile_expression(text)(ctx))


def should_run(
    if_exprs: Iterable[str],
    branch_filters: Iterable[Sequence[str]],
    ctx: BuildContext,
    step: Optional[str] = None,
) -> bool:
    """All inherited filters (group + step) must pass."""
    for patterns in branch_filters:
        if not branches_match(patterns, ctx.branch):
            return False
    for expr in if_exprs:
        if not evaluate(expr, ctx, step):
            return False
    return True
