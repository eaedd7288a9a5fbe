"""Template resolution for `${path}` placeholders.

A string that is exactly one placeholder resolves to the referenced value
with its native type; any other string gets every placeholder replaced by
the text form of its value. Paths are looked up in memory, then input, then
the context root view, trying the whole path as a literal key before
walking it segment by segment (so keys like "llm.complete" work).
"""

import ast
import json
import logging
import math
import operator
import re
import time
from typing import Any, Iterator, List, Tuple

logger = logging.getLogger(__name__)


class _Undefined:
    """Marker for a path that resolved to nothing."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()

_INDEX_PATTERN = re.compile(r"\[(-?\d+)\]")
_MATH_ALLOWED = re.compile(r"^[\d\s+\-*/().]+$")
_BARE_PATH = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*")

_ARITHMETIC = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}


def find_placeholders(text: str) -> List[Tuple[int, int, str]]:
    """Locate `${...}` placeholders, allowing nested braces inside them.

    Returns:
        List of (start, end, inner_text) with `end` exclusive
    """
    found = []
    index = 0
    while True:
        start = text.find("${", index)
        if start == -1:
            break
        depth = 0
        position = start + 1
        end = -1
        while position < len(text):
            char = text[position]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = position
                    break
            position += 1
        if end == -1:
            break
        found.append((start, end + 1, text[start + 2 : end]))
        index = end + 1
    return found


def to_text(value: Any) -> str:
    """Text form of a value for interpolation into a larger string."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def is_truthy(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def _split_top_level(text: str, separator: str) -> List[str]:
    """Split on `separator` outside quotes and brackets."""
    parts = []
    depth = 0
    quote = None
    current = []
    index = 0
    while index < len(text):
        char = text[index]
        if quote:
            current.append(char)
            if char == quote and text[index - 1] != "\\":
                quote = None
        elif char in ("'", '"'):
            quote = char
            current.append(char)
        elif char in "([{":
            depth += 1
            current.append(char)
        elif char in ")]}":
            depth -= 1
            current.append(char)
        elif depth == 0 and text.startswith(separator, index):
            parts.append("".join(current))
            current = []
            index += len(separator)
            continue
        else:
            current.append(char)
        index += 1
    parts.append("".join(current))
    return parts


def parse_literal(text: str) -> Any:
    """Parse a literal token; UNDEFINED when `text` is not a literal."""
    token = text.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    if token == "true":
        return True
    if token == "false":
        return False
    if token == "null":
        return None
    if token == "undefined":
        return UNDEFINED
    try:
        number = float(token)
        return int(number) if number.is_integer() and "." not in token and "e" not in token.lower() else number
    except ValueError:
        pass
    if token.startswith(("[", "{")):
        try:
            return json.loads(token)
        except json.JSONDecodeError:
            return UNDEFINED
    return UNDEFINED


def _path_segments(path: str) -> List[str]:
    normalized = _INDEX_PATTERN.sub(r".\1", path)
    return [segment for segment in normalized.split(".") if segment != ""]


def traverse(source: Any, segments: List[str]) -> Any:
    """Walk `segments` through nested mappings and sequences."""
    current = source
    for segment in segments:
        if current is None or current is UNDEFINED:
            return UNDEFINED
        if isinstance(current, dict):
            if segment in current:
                current = current[segment]
                continue
            if segment == "length":
                return len(current)
            return UNDEFINED
        if isinstance(current, (list, tuple, str)):
            if segment == "length":
                current = len(current)
                continue
            try:
                current = current[int(segment)]
                continue
            except (ValueError, IndexError):
                return UNDEFINED
        return UNDEFINED
    return current


def _evaluate_arithmetic(expression: str) -> float:
    """Evaluate digits and + - * / ( ) only."""

    def _eval(node):
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return node.value
        if isinstance(node, ast.BinOp) and type(node.op) in _ARITHMETIC:
            return _ARITHMETIC[type(node.op)](_eval(node.left), _eval(node.right))
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
            value = _eval(node.operand)
            return -value if isinstance(node.op, ast.USub) else value
        raise ValueError(f"Unsupported expression element: {ast.dump(node)}")

    return _eval(ast.parse(expression, mode="eval"))


class TemplateResolver:
    """Resolves `${...}` placeholders against an ExecutionContext."""

    def sources(self, context) -> Iterator[Any]:
        yield context.memory
        yield context.input
        yield context.as_root()

    def lookup(self, path: str, context) -> Any:
        """Resolve a placeholder body to a value, or UNDEFINED."""
        path = path.strip()
        if not path:
            return UNDEFINED

        alternatives = _split_top_level(path, "||")
        if len(alternatives) > 1:
            value = UNDEFINED
            for alternative in alternatives:
                value = self._lookup_single(alternative.strip(), context)
                if is_truthy(value):
                    return value
            return value

        return self._lookup_single(path, context)

    def _lookup_single(self, path: str, context) -> Any:
        is_bare = _BARE_PATH.fullmatch(path) is not None
        literal = parse_literal(path)
        if literal is not UNDEFINED and not is_bare:
            return literal

        segments = _path_segments(path)
        for source in self.sources(context):
            if not isinstance(source, dict):
                continue
            if path in source:
                return source[path]
            value = traverse(source, segments)
            if value is not UNDEFINED:
                return value

        if path == "Date.now()":
            return int(time.time() * 1000)

        if path.startswith("Math.floor(") and path.endswith(")"):
            return self._math_floor(path[len("Math.floor(") : -1], context)

        if path in ("true", "false", "null"):
            return literal

        return UNDEFINED

    def _math_floor(self, inner: str, context) -> int:
        try:
            expression = self.interpolate(inner, context)

            def _replace(match):
                value = self._lookup_single(match.group(0), context)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    return repr(value)
                return match.group(0)

            expression = _BARE_PATH.sub(_replace, expression)
            if not _MATH_ALLOWED.match(expression):
                return 0
            return math.floor(_evaluate_arithmetic(expression))
        except Exception as e:
            logger.debug(f"Math.floor evaluation failed for '{inner}': {e}")
            return 0

    def interpolate(self, text: str, context) -> str:
        """Replace every placeholder with the text form of its value."""
        placeholders = find_placeholders(text)
        if not placeholders:
            return text
        pieces = []
        last = 0
        for start, end, inner in placeholders:
            pieces.append(text[last:start])
            value = self.lookup(inner, context)
            pieces.append("" if value is UNDEFINED else to_text(value))
            last = end
        pieces.append(text[last:])
        return "".join(pieces)

    def resolve_string(self, text: str, context) -> Any:
        placeholders = find_placeholders(text)
        if not placeholders:
            return text
        if len(placeholders) == 1:
            start, end, inner = placeholders[0]
            if start == 0 and end == len(text):
                value = self.lookup(inner, context)
                return None if value is UNDEFINED else value
        return self.interpolate(text, context)

    def resolve(self, value: Any, context) -> Any:
        """Resolve placeholders anywhere inside `value`. Never raises."""
        try:
            return self._resolve(value, context)
        except Exception as e:
            logger.warning(f"Template resolution failed, using raw value: {e}")
            return value

    def _resolve(self, value: Any, context) -> Any:
        if isinstance(value, list):
            return [self._resolve(item, context) for item in value]
        if isinstance(value, tuple):
            return tuple(self._resolve(item, context) for item in value)
        if isinstance(value, dict):
            return {key: self._resolve(item, context) for key, item in value.items()}
        if isinstance(value, str) and "${" in value:
            return self.resolve_string(value, context)
        return value


_default_resolver = TemplateResolver()


def resolve(value: Any, context) -> Any:
    """Resolve with the shared stateless resolver."""
    return _default_resolver.resolve(value, context)


def lookup(path: str, context) -> Any:
    return _default_resolver.lookup(path, context)

