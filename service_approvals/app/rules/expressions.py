"""
Condition language for decision-table rows.

A small FEEL subset, enough for what the compiler emits and what authors
write by hand:

- unary tests against the table input: ``>= 18``, ``"GOLD", "SILVER"``,
  ``in ("A", "B")``, ``not("X")``, ``-``
- boolean expressions over named inputs: ``age >= 18 and plan in ("A")``,
  ``not(age < 5)``, ``score between 1 and 10``, dotted names

Evaluation uses three-valued logic: comparing against a missing value or a
value of the wrong type yields ``None``, and only ``True`` counts as a match.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterator, List, Optional, Set, Tuple


class ExpressionSyntaxError(ValueError):
    """Condition text could not be parsed."""

    def __init__(self, message: str, position: int = 0):
        super().__init__(f"{message} (at position {position})")
        self.position = position


KEYWORDS = {"and", "or", "not", "in", "between", "true", "false", "null"}
COMPARISON_OPERATORS = {"=", "!=", "<", "<=", ">", ">="}
UNARY_OPERATORS = {"=", "<", "<=", ">", ">="}

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<op>>=|<=|!=|>|<|=)
  | (?P<punct>[(),\[\].\-])
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
""", re.VERBOSE)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match:
            raise ExpressionSyntaxError(f"Unexpected character {text[position]!r}", position)
        kind = match.lastgroup
        if kind != "ws":
            value = match.group()
            if kind == "name" and value in KEYWORDS:
                kind = "keyword"
            tokens.append(Token(kind, value, position))
        position = match.end()
    tokens.append(Token("eof", "", len(text)))
    return tokens


# AST nodes

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    path: Tuple[str, ...]

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Membership:
    operand: Any
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class Between:
    operand: Any
    low: Any
    high: Any


@dataclass(frozen=True)
class BoolOp:
    op: str
    operands: Tuple[Any, ...]


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class AnyValue:
    pass


@dataclass(frozen=True)
class UnaryCompare:
    op: str
    value: Literal


@dataclass(frozen=True)
class UnaryMembership:
    values: Tuple[Literal, ...]


@dataclass(frozen=True)
class UnaryTests:
    tests: Tuple[Any, ...]
    negated: bool = False


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "eof":
            self.index += 1
        return token

    def _check(self, kind: str, text: Optional[str] = None) -> bool:
        token = self.current
        return token.kind == kind and (text is None or token.text == text)

    def _accept(self, kind: str, text: Optional[str] = None) -> Optional[Token]:
        if self._check(kind, text):
            return self._advance()
        return None

    def _expect(self, kind: str, text: Optional[str] = None) -> Token:
        token = self._accept(kind, text)
        if token is None:
            wanted = text or kind
            found = self.current.text or "end of expression"
            raise ExpressionSyntaxError(f"Expected {wanted!r} but found {found!r}", self.current.position)
        return token

    def _expect_end(self):
        if not self._check("eof"):
            raise ExpressionSyntaxError(f"Unexpected {self.current.text!r}", self.current.position)

    # unary tests

    def parse_unary_tests(self) -> UnaryTests:
        if self._accept("punct", "-"):
            if self._check("eof"):
                return UnaryTests((AnyValue(),))
            # "-5" is a negative endpoint, not the "any" test
            self.index -= 1
        if self._check("keyword", "not") and self.tokens[self.index + 1].text == "(":
            self._advance()
            self._expect("punct", "(")
            tests = self._positive_unary_tests()
            self._expect("punct", ")")
            self._expect_end()
            return UnaryTests(tests, negated=True)
        tests = self._positive_unary_tests()
        self._expect_end()
        return UnaryTests(tests)

    def _positive_unary_tests(self) -> Tuple[Any, ...]:
        tests = [self._positive_unary_test()]
        while self._accept("punct", ","):
            tests.append(self._positive_unary_test())
        return tuple(tests)

    def _positive_unary_test(self):
        if self.current.kind == "op":
            op = self._advance().text
            if op not in UNARY_OPERATORS:
                raise ExpressionSyntaxError(f"Operator {op!r} is not a unary test", self.current.position)
            return UnaryCompare(op, self._endpoint())
        if self._accept("keyword", "in"):
            self._expect("punct", "(")
            values = [self._endpoint()]
            while self._accept("punct", ","):
                values.append(self._endpoint())
            self._expect("punct", ")")
            return UnaryMembership(tuple(values))
        return UnaryMembership((self._endpoint(),))

    def _endpoint(self) -> Literal:
        literal = self._literal()
        if literal is None:
            found = self.current.text or "end of expression"
            raise ExpressionSyntaxError(f"Expected a literal but found {found!r}", self.current.position)
        return literal

    def _literal(self) -> Optional[Literal]:
        token = self.current
        if token.kind == "punct" and token.text == "-" and self.tokens[self.index + 1].kind == "number":
            self._advance()
            return Literal(-_number(self._advance().text))
        if token.kind == "number":
            self._advance()
            return Literal(_number(token.text))
        if token.kind == "string":
            self._advance()
            return Literal(_unquote(token.text))
        if token.kind == "keyword" and token.text in ("true", "false", "null"):
            self._advance()
            return Literal({"true": True, "false": False, "null": None}[token.text])
        return None

    # boolean expressions

    def parse_expression(self):
        node = self._or()
        self._expect_end()
        return node

    def _or(self):
        operands = [self._and()]
        while self._accept("keyword", "or"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _and(self):
        operands = [self._not()]
        while self._accept("keyword", "and"):
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _not(self):
        if self._accept("keyword", "not"):
            self._expect("punct", "(")
            inner = self._or()
            self._expect("punct", ")")
            return Not(inner)
        return self._comparison()

    def _comparison(self):
        left = self._operand()
        if self.current.kind == "op":
            op = self._advance().text
            return Compare(op, left, self._operand())
        if self._accept("keyword", "in"):
            return Membership(left, self._value_list())
        if self._accept("keyword", "between"):
            low = self._operand()
            self._expect("keyword", "and")
            return Between(left, low, self._operand())
        return left

    def _value_list(self) -> Tuple[Any, ...]:
        closer = ")" if self._accept("punct", "(") else None
        if closer is None:
            self._expect("punct", "[")
            closer = "]"
        values = [self._operand()]
        while self._accept("punct", ","):
            values.append(self._operand())
        self._expect("punct", closer)
        return tuple(values)

    def _operand(self):
        literal = self._literal()
        if literal is not None:
            return literal
        if self._accept("punct", "("):
            inner = self._or()
            self._expect("punct", ")")
            return inner
        token = self._expect("name")
        path = [token.text]
        while self._accept("punct", "."):
            path.append(self._expect("name").text)
        return Name(tuple(path))


def _number(text: str):
    return float(text) if "." in text else int(text)


def _unquote(text: str) -> str:
    return re.sub(r'\\(.)', r'\1', text[1:-1])


def quote_string(value: str) -> str:
    """Render a Python string as a condition string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        text = repr(value)
        # the tokenizer has no exponent syntax
        return format(Decimal(text), "f") if "e" in text else text
    return quote_string(str(value))


def parse_condition(text: str):
    """Parse a row condition into an AST.

    Unary-test syntax is tried first; text that is not a unary test is
    parsed as a boolean expression, and that parser's error is reported.
    """
    if text is None or not text.strip():
        raise ExpressionSyntaxError("Condition is empty", 0)
    tokens = tokenize(text)
    try:
        return _Parser(tokens).parse_unary_tests()
    except ExpressionSyntaxError:
        return _Parser(tokens).parse_expression()


def referenced_names(node) -> Set[str]:
    """Dotted identifiers used by an expression AST."""
    return {name.dotted for name in _walk_names(node)}


def _walk_names(node) -> Iterator[Name]:
    if isinstance(node, Name):
        yield node
    elif isinstance(node, Compare):
        yield from _walk_names(node.left)
        yield from _walk_names(node.right)
    elif isinstance(node, Membership):
        yield from _walk_names(node.operand)
        for value in node.values:
            yield from _walk_names(value)
    elif isinstance(node, Between):
        for part in (node.operand, node.low, node.high):
            yield from _walk_names(part)
    elif isinstance(node, BoolOp):
        for operand in node.operands:
            yield from _walk_names(operand)
    elif isinstance(node, Not):
        yield from _walk_names(node.operand)


def evaluate_condition(node, value: Any, input_expression: str = "") -> bool:
    """True when the condition matches ``value``."""
    if isinstance(node, UnaryTests):
        matched = any(_unary_matches(test, value) for test in node.tests)
        return not matched if node.negated else matched
    return _eval(node, value, input_expression) is True


def _unary_matches(test, value: Any) -> bool:
    if isinstance(test, AnyValue):
        return True
    if isinstance(test, UnaryCompare):
        return _compare(value, test.op, test.value.value) is True
    return any(_compare(value, "=", literal.value) is True for literal in test.values)


def _eval(node, value: Any, input_expression: str):
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        return _resolve(node.path, value, input_expression)
    if isinstance(node, Compare):
        return _compare(
            _eval(node.left, value, input_expression),
            node.op,
            _eval(node.right, value, input_expression),
        )
    if isinstance(node, Membership):
        operand = _eval(node.operand, value, input_expression)
        results = [_compare(operand, "=", _eval(v, value, input_expression)) for v in node.values]
        if any(r is True for r in results):
            return True
        return None if any(r is None for r in results) else False
    if isinstance(node, Between):
        operand = _eval(node.operand, value, input_expression)
        low = _compare(operand, ">=", _eval(node.low, value, input_expression))
        high = _compare(operand, "<=", _eval(node.high, value, input_expression))
        return _and([low, high])
    if isinstance(node, BoolOp):
        results = [_eval(operand, value, input_expression) for operand in node.operands]
        return _and(results) if node.op == "and" else _or(results)
    if isinstance(node, Not):
        inner = _eval(node.operand, value, input_expression)
        return None if not isinstance(inner, bool) else not inner
    raise TypeError(f"Unknown expression node {node!r}")


def _and(results: List[Any]):
    if any(r is False for r in results):
        return False
    if all(r is True for r in results):
        return True
    return None


def _or(results: List[Any]):
    if any(r is True for r in results):
        return True
    if all(r is False for r in results):
        return False
    return None


def _resolve(path: Tuple[str, ...], value: Any, input_expression: str):
    input_path = tuple(input_expression.split(".")) if input_expression else ()
    if input_path and path[:len(input_path)] == input_path:
        current, rest = value, path[len(input_path):]
    elif isinstance(value, Mapping) and path[0] in value:
        current, rest = value[path[0]], path[1:]
    else:
        return None
    for part in rest:
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _compare(left: Any, op: str, right: Any):
    if left is None or right is None:
        if op == "=":
            return left is None and right is None
        if op == "!=":
            return not (left is None and right is None)
        return None
    if isinstance(left, bool) != isinstance(right, bool):
        # True == 1 in Python but not in the condition language
        return {"=": False, "!=": True}.get(op)
    try:
        if op == "=":
            return left == right
        if op == "!=":
            return left != right
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return None
    raise ExpressionSyntaxError(f"Unknown operator {op!r}")
