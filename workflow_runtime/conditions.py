"""Condition evaluation for `if`, `while` and concern expressions.

Expressions are tokenized and parsed into a small AST over a fixed grammar:

    expr       := or
    or         := and ("||" and)*
    and        := comparison ("&&" comparison)*
    comparison := unary (CMP unary)?
    unary      := ("!" | "-") unary | postfix
    postfix    := primary ("." IDENT ["(" args ")"] | "[" expr "]")*
    primary    := NUMBER | STRING | true | false | null | undefined
                | "${" path "}" | "${" expr "}" | IDENT ("." IDENT)* | "(" expr ")"
                | "[" items "]" | "{" pairs "}"

Placeholders and bare identifiers are resolved to native values through the
template resolver, so quoted text containing operators stays a string.
Evaluation never raises: malformed input logs a warning and yields False.
"""

import functools
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from workflow_runtime.templates import (
    UNDEFINED,
    TemplateResolver,
    is_truthy,
    to_text,
)

logger = logging.getLogger(__name__)

COMPARISON_OPERATORS = ("===", "!==", "==", "!=", ">=", "<=", ">", "<")
_SYMBOLS = ("===", "!==", "==", "!=", ">=", "<=", "&&", "||", ">", "<", "!", "-",
            "(", ")", "[", "]", "{", "}", ",", ".", ":")
_EXPRESSION_OPERATORS = frozenset(COMPARISON_OPERATORS + ("&&", "||", "!"))
_KEYWORDS = {"true": True, "false": False, "null": None, "undefined": UNDEFINED}
_NUMBER = re.compile(r"\d+(\.\d+)?([eE][+-]?\d+)?")
_IDENT = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}


class ConditionSyntaxError(ValueError):
    """Raised by the tokenizer/parser; never escapes `evaluate`."""


# ----------------------------------------------------------------------
# Tokens
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Token:
    kind: str  # NUMBER, STRING, REF, IDENT, OP, EOF
    value: Any
    position: int


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]

        if char.isspace():
            index += 1
            continue

        if text.startswith("${", index):
            depth = 0
            position = index + 1
            while position < length:
                if text[position] == "{":
                    depth += 1
                elif text[position] == "}":
                    depth -= 1
                    if depth == 0:
                        break
                position += 1
            if position >= length:
                raise ConditionSyntaxError(f"Unclosed placeholder at {index}")
            tokens.append(Token("REF", text[index + 2 : position].strip(), index))
            index = position + 1
            continue

        if char in ("'", '"'):
            quote = char
            position = index + 1
            chars = []
            while position < length and text[position] != quote:
                if text[position] == "\\" and position + 1 < length:
                    chars.append(_ESCAPES.get(text[position + 1], text[position + 1]))
                    position += 2
                    continue
                chars.append(text[position])
                position += 1
            if position >= length:
                raise ConditionSyntaxError(f"Unterminated string at {index}")
            tokens.append(Token("STRING", "".join(chars), index))
            index = position + 1
            continue

        number = _NUMBER.match(text, index)
        if number:
            literal = number.group(0)
            value = float(literal) if ("." in literal or "e" in literal.lower()) else int(literal)
            tokens.append(Token("NUMBER", value, index))
            index = number.end()
            continue

        ident = _IDENT.match(text, index)
        if ident:
            tokens.append(Token("IDENT", ident.group(0), index))
            index = ident.end()
            continue

        for symbol in _SYMBOLS:
            if text.startswith(symbol, index):
                tokens.append(Token("OP", symbol, index))
                index += len(symbol)
                break
        else:
            raise ConditionSyntaxError(f"Unexpected character {char!r} at {index}")

    tokens.append(Token("EOF", None, length))
    return tokens


# ----------------------------------------------------------------------
# AST
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    """A `${...}` placeholder or a bare dotted path."""

    path: str


@dataclass(frozen=True)
class Member:
    target: Any
    name: str


@dataclass(frozen=True)
class Index:
    target: Any
    key: Any


@dataclass(frozen=True)
class MethodCall:
    target: Any
    method: str
    args: Tuple[Any, ...]


@dataclass(frozen=True)
class Unary:
    operator: str
    operand: Any


@dataclass(frozen=True)
class Binary:
    operator: str
    left: Any
    right: Any


@dataclass(frozen=True)
class ArrayLiteral:
    items: Tuple[Any, ...]


@dataclass(frozen=True)
class ObjectLiteral:
    pairs: Tuple[Tuple[str, Any], ...]


class Parser:
    """Precedence-climbing parser over the token list."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.position = 0

    def peek(self, offset: int = 0) -> Token:
        index = min(self.position + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        token = self.tokens[self.position]
        self.position += 1
        return token

    def match(self, *symbols: str) -> Optional[Token]:
        token = self.peek()
        if token.kind == "OP" and token.value in symbols:
            return self.advance()
        return None

    def expect(self, symbol: str) -> Token:
        token = self.match(symbol)
        if token is None:
            found = self.peek()
            raise ConditionSyntaxError(
                f"Expected '{symbol}' at {found.position}, found {found.value!r}"
            )
        return token

    def parse(self):
        node = self.parse_or()
        if self.peek().kind != "EOF":
            token = self.peek()
            raise ConditionSyntaxError(f"Unexpected {token.value!r} at {token.position}")
        return node

    def parse_or(self):
        node = self.parse_and()
        while self.match("||"):
            node = Binary("||", node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_comparison()
        while self.match("&&"):
            node = Binary("&&", node, self.parse_comparison())
        return node

    def parse_comparison(self):
        node = self.parse_unary()
        token = self.match(*COMPARISON_OPERATORS)
        if token:
            node = Binary(token.value, node, self.parse_unary())
        return node

    def parse_unary(self):
        token = self.match("!", "-")
        if token:
            return Unary(token.value, self.parse_unary())
        return self.parse_postfix()

    def parse_postfix(self):
        node = self.parse_primary()
        while True:
            if self.match("."):
                name = self.advance()
                if name.kind != "IDENT":
                    raise ConditionSyntaxError(f"Expected member name at {name.position}")
                if self.match("("):
                    node = MethodCall(node, name.value, tuple(self.parse_arguments(")")))
                else:
                    node = Member(node, name.value)
            elif self.match("["):
                key = self.parse_or()
                self.expect("]")
                node = Index(node, key)
            else:
                return node

    def parse_arguments(self, closing: str) -> List[Any]:
        items = []
        if self.match(closing):
            return items
        while True:
            items.append(self.parse_or())
            if self.match(closing):
                return items
            self.expect(",")

    def parse_primary(self):
        token = self.advance()

        if token.kind in ("NUMBER", "STRING"):
            return Literal(token.value)

        if token.kind == "REF":
            return parse_placeholder(token.value)

        if token.kind == "IDENT":
            if token.value in _KEYWORDS:
                return Literal(_KEYWORDS[token.value])
            segments = [token.value]
            # Greedy dotted path, leaving method calls to the postfix loop
            while (
                self.peek().kind == "OP"
                and self.peek().value == "."
                and self.peek(1).kind in ("IDENT", "NUMBER")
                and not (self.peek(2).kind == "OP" and self.peek(2).value == "(")
            ):
                self.advance()
                segments.append(str(self.advance().value))
            return Reference(".".join(segments))

        if token.kind == "OP":
            if token.value == "(":
                node = self.parse_or()
                self.expect(")")
                return node
            if token.value == "[":
                return ArrayLiteral(tuple(self.parse_arguments("]")))
            if token.value == "{":
                return self.parse_object()

        raise ConditionSyntaxError(f"Unexpected {token.value!r} at {token.position}")

    def parse_object(self):
        pairs = []
        if self.match("}"):
            return ObjectLiteral(())
        while True:
            key = self.advance()
            if key.kind not in ("STRING", "IDENT", "NUMBER"):
                raise ConditionSyntaxError(f"Invalid object key at {key.position}")
            self.expect(":")
            pairs.append((str(key.value), self.parse_or()))
            if self.match("}"):
                return ObjectLiteral(tuple(pairs))
            self.expect(",")


@functools.lru_cache(maxsize=512)
def parse_expression(text: str):
    """Parse an expression into an AST (cached; nodes are immutable)."""
    return Parser(tokenize(text)).parse()


def parse_placeholder(body: str):
    """A `${...}` body is a path unless it carries logical or comparison operators."""
    try:
        tokens = tokenize(body)
    except ConditionSyntaxError:
        return Reference(body)
    if any(token.kind == "OP" and token.value in _EXPRESSION_OPERATORS for token in tokens):
        return Parser(tokens).parse()
    return Reference(body)


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        try:
            return float(value.strip()) if value.strip() else 0
        except ValueError:
            return None
    return None


def strict_equals(left: Any, right: Any) -> bool:
    if left is UNDEFINED or right is UNDEFINED:
        return left is right
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    nullish = (None, UNDEFINED)
    if left in nullish or right in nullish:
        return left in nullish and right in nullish
    if strict_equals(left, right):
        return True
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return False
    left_number, right_number = _to_number(left), _to_number(right)
    if left_number is not None and right_number is not None:
        if isinstance(left, str) and isinstance(right, str):
            return False
        return left_number == right_number
    return False


def compare(operator: str, left: Any, right: Any) -> bool:
    """Apply a comparison operator with JS-like coercion; never raises."""
    if operator == "===":
        return strict_equals(left, right)
    if operator == "!==":
        return not strict_equals(left, right)
    if operator == "==":
        return loose_equals(left, right)
    if operator == "!=":
        return not loose_equals(left, right)

    if isinstance(left, str) and isinstance(right, str):
        pair = (left, right)
    else:
        left_number, right_number = _to_number(left), _to_number(right)
        if left_number is None or right_number is None:
            return False
        pair = (left_number, right_number)

    if operator == ">":
        return pair[0] > pair[1]
    if operator == "<":
        return pair[0] < pair[1]
    if operator == ">=":
        return pair[0] >= pair[1]
    if operator == "<=":
        return pair[0] <= pair[1]
    return False


class ConditionEvaluator:
    """Evaluates condition expressions against an ExecutionContext."""

    def __init__(self, resolver: Optional[TemplateResolver] = None):
        self.resolver = resolver or TemplateResolver()

    def evaluate(self, expression: Any, context) -> bool:
        """Evaluate an expression to a boolean. Never raises."""
        if isinstance(expression, bool):
            return expression
        if not isinstance(expression, str):
            return is_truthy(expression)
        if not expression.strip():
            return False

        try:
            node = parse_expression(expression.strip())
            return is_truthy(self.evaluate_node(node, context))
        except Exception as e:
            logger.warning(f"Condition evaluation failed: {expression} ({e})")
            return False

    def evaluate_node(self, node, context) -> Any:
        if isinstance(node, Literal):
            return node.value

        if isinstance(node, Reference):
            return self.resolver.lookup(node.path, context)

        if isinstance(node, Unary):
            operand = self.evaluate_node(node.operand, context)
            if node.operator == "!":
                return not is_truthy(operand)
            number = _to_number(operand)
            if number is None:
                raise ConditionSyntaxError(f"Cannot negate {operand!r}")
            return -number

        if isinstance(node, Binary):
            if node.operator == "&&":
                left = self.evaluate_node(node.left, context)
                return self.evaluate_node(node.right, context) if is_truthy(left) else left
            if node.operator == "||":
                left = self.evaluate_node(node.left, context)
                return left if is_truthy(left) else self.evaluate_node(node.right, context)
            return compare(
                node.operator,
                self.evaluate_node(node.left, context),
                self.evaluate_node(node.right, context),
            )

        if isinstance(node, Member):
            return self._member(self.evaluate_node(node.target, context), node.name)

        if isinstance(node, Index):
            target = self.evaluate_node(node.target, context)
            key = self.evaluate_node(node.key, context)
            if isinstance(target, dict):
                return target.get(to_text(key), UNDEFINED)
            if isinstance(target, (list, str)) and _is_number(key):
                try:
                    return target[int(key)]
                except IndexError:
                    return UNDEFINED
            return UNDEFINED

        if isinstance(node, MethodCall):
            target = self.evaluate_node(node.target, context)
            args = [self.evaluate_node(arg, context) for arg in node.args]
            return self._call(target, node.method, args)

        if isinstance(node, ArrayLiteral):
            return [self.evaluate_node(item, context) for item in node.items]

        if isinstance(node, ObjectLiteral):
            return {key: self.evaluate_node(value, context) for key, value in node.pairs}

        raise ConditionSyntaxError(f"Unknown node {node!r}")

    def _member(self, target: Any, name: str) -> Any:
        if name == "length" and isinstance(target, (list, str, dict, tuple)):
            return len(target)
        if isinstance(target, dict):
            return target.get(name, UNDEFINED)
        return UNDEFINED

    def _call(self, target: Any, method: str, args: List[Any]) -> Any:
        argument = args[0] if args else UNDEFINED
        if method == "includes":
            if isinstance(target, str):
                return argument is not UNDEFINED and to_text(argument) in target
            if isinstance(target, (list, tuple)):
                return any(strict_equals(item, argument) for item in target)
            return False
        if method == "startsWith":
            return isinstance(target, str) and isinstance(argument, str) and target.startswith(argument)
        if method == "endsWith":
            return isinstance(target, str) and isinstance(argument, str) and target.endswith(argument)
        raise ConditionSyntaxError(f"Unsupported method '{method}'")

    def evaluate_switch(self, value: Any, cases: Dict[str, Any]) -> Optional[str]:
        """Pick a case key: exact match, then glob pattern, then `default`."""
        if not isinstance(cases, dict):
            return None
        key = value if isinstance(value, str) else to_text(value)

        if key in cases:
            return key

        for pattern in cases:
            if not isinstance(pattern, str) or not ("*" in pattern or "?" in pattern):
                continue
            regex = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
            if re.fullmatch(regex, key):
                return pattern

        if "default" in cases:
            return "default"
        return None


_default_evaluator = ConditionEvaluator()


def evaluate(expression: Any, context) -> bool:
    """Evaluate with the shared evaluator."""
    return _default_evaluator.evaluate(expression, context)


def evaluate_switch(value: Any, cases: Dict[str, Any]) -> Optional[str]:
    return _default_evaluator.evaluate_switch(value, cases)
