"""Tests for template resolution."""

import time

from workflow_runtime.context import create_context
from workflow_runtime.templates import (
    UNDEFINED,
    TemplateResolver,
    find_placeholders,
    lookup,
    resolve,
    to_text,
)


def make_context(**memory):
    return create_context(agent_id="agent-1", input={"x": 5, "user": "alice"}, memory=memory)


class TestFindPlaceholders:
    def test_nested_braces(self):
        found = find_placeholders("a ${Math.floor({x})} b ${y}")
        assert [inner for _, _, inner in found] == ["Math.floor({x})", "y"]

    def test_unclosed_is_ignored(self):
        assert find_placeholders("${open") == []


class TestResolve:
    """Pure and mixed placeholder resolution."""

    def test_pure_reference_keeps_native_type(self):
        context = make_context(items=[1, 2, 3], config={"a": 1}, flag=False, count=0)
        assert resolve("${items}", context) == [1, 2, 3]
        assert resolve("${config}", context) == {"a": 1}
        assert resolve("${flag}", context) is False
        assert resolve("${count}", context) == 0

    def test_mixed_string(self):
        context = make_context()
        assert resolve("x${input.x}y", context) == "x5y"

    def test_mixed_string_with_object_uses_json(self):
        context = make_context(config={"a": 1})
        assert resolve("cfg=${config}", context) == 'cfg={"a": 1}'

    def test_unresolved_pure_is_none(self):
        assert resolve("${nothing.here}", make_context()) is None

    def test_unresolved_in_mixed_is_empty(self):
        assert resolve("a${nothing}b", make_context()) == "ab"

    def test_recurses_structurally(self):
        context = make_context(name="bob")
        value = {"list": ["${name}", 3, {"deep": "hi ${name}"}], "n": None}
        assert resolve(value, context) == {"list": ["bob", 3, {"deep": "hi bob"}], "n": None}

    def test_scalars_pass_through(self):
        context = make_context()
        assert resolve(42, context) == 42
        assert resolve("no placeholders", context) == "no placeholders"

    def test_dotted_literal_key_wins(self):
        context = make_context(**{"llm.complete": "literal", "llm": {"complete": "nested"}})
        assert resolve("${llm.complete}", context) == "literal"

    def test_memory_before_input(self):
        context = make_context(x=99)
        assert resolve("${x}", context) == 99
        assert resolve("${input.x}", context) == 5

    def test_identity_aliases(self):
        context = make_context()
        assert resolve("${agentId}", context) == "agent-1"
        assert resolve("${context.agentId}", context) == "agent-1"
        assert resolve("${input.user}", context) == "alice"

    def test_array_index_and_length(self):
        context = make_context(items=["a", "b"])
        assert resolve("${items[1]}", context) == "b"
        assert resolve("${items.length}", context) == 2

    def test_alternatives(self):
        context = make_context(name="")
        assert resolve("${name || 'anonymous'}", context) == "anonymous"
        assert resolve("${missing || input.user}", context) == "alice"


class TestSpecialForms:
    def test_date_now(self):
        before = int(time.time() * 1000)
        value = resolve("${Date.now()}", make_context())
        assert isinstance(value, int)
        assert value >= before

    def test_math_floor_with_placeholders(self):
        context = make_context(total=7)
        assert resolve("${Math.floor(${total} / 2)}", context) == 3

    def test_math_floor_with_bare_path(self):
        context = make_context(total=9)
        assert resolve("${Math.floor(total / 4)}", context) == 2

    def test_math_floor_rejects_other_input(self):
        context = make_context(name="bob")
        assert resolve("${Math.floor(name + 1)}", context) == 0


class TestHelpers:
    def test_to_text(self):
        assert to_text(None) == "null"
        assert to_text(True) == "true"
        assert to_text(3.0) == "3"
        assert to_text([1, "a"]) == '[1, "a"]'

    def test_lookup_returns_undefined(self):
        assert lookup("missing", make_context()) is UNDEFINED

    def test_resolver_never_raises(self):
        resolver = TemplateResolver()

        class Exploding(dict):
            def items(self):
                raise RuntimeError("boom")

        value = Exploding(a="${x}")
        assert resolver.resolve(value, make_context()) is value
