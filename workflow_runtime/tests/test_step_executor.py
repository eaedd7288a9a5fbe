"""Tests for the step executor."""

from unittest.mock import AsyncMock

import pytest

from config.types import RuntimeSettings
from workflow_runtime.context import create_context
from workflow_runtime.errors import OperationNotFoundError, StepExecutionError
from workflow_runtime.loader import build_document
from workflow_runtime.step_executor import StepExecutor, step_label
from workflow_runtime.types import RunResult
from workflow_tools.builtins import create_default_registry
from workflow_tools.interfaces import InMemoryOutbox
from workflow_tools.resolver import CapabilityResolver


def make_document(operations):
    return build_document({"self": {"id": "test-doc"}, "operations": operations}, "test-doc.yaml")


@pytest.fixture
def outbox():
    return InMemoryOutbox()


@pytest.fixture
def registry(tmp_path, outbox):
    settings = RuntimeSettings(documents_root=str(tmp_path), auto_generation_enabled=False)
    registry = create_default_registry(settings, channel=outbox)

    async def double(args, context):
        return {"doubled": args["value"] * 2}

    async def fail(args, context):
        raise ValueError("step exploded")

    registry.register_function("math", "double", double)
    registry.register_function("test", "fail", fail)
    return registry


@pytest.fixture
def executor(registry, tmp_path):
    settings = RuntimeSettings(documents_root=str(tmp_path), auto_generation_enabled=False)
    resolver = CapabilityResolver(registry, settings=settings)
    return StepExecutor(resolver, run_workflow=AsyncMock())


class TestSequencing:
    """Ordering, output merging and trace recording."""

    @pytest.mark.asyncio
    async def test_outputs_merge_into_memory(self, executor):
        document = make_document({"default": []})
        context = create_context(input={"n": 4})
        steps = [
            {"math.double": {"value": "${input.n}"}},
            {"return": "${doubled}"},
        ]

        result = await executor.run(steps, context, document)

        assert result.output == 8
        assert context.memory["doubled"] == 8
        assert context.memory["math.double"] == {"doubled": 8}
        assert [entry.step for entry in result.trace] == ["math.double", "return"]
        assert result.trace[0].input == {"value": 4}
        assert len(context.trace) == 2

    @pytest.mark.asyncio
    async def test_none_output_does_not_replace_running_output(self, executor):
        document = make_document({"default": []})
        context = create_context()
        steps = [{"return": "kept"}, {"core.log": "just logging"}]

        result = await executor.run(steps, context, document)

        assert result.output == "kept"
        assert result.trace[1].output is None

    @pytest.mark.asyncio
    async def test_explicit_null_return_clears_output(self, executor):
        document = make_document({"default": []})
        steps = [{"return": 1}, {"return": None}]

        result = await executor.run(steps, create_context(), document)

        assert result.output is None

    @pytest.mark.asyncio
    async def test_set_memory_and_append(self, executor):
        document = make_document({"default": []})
        context = create_context(input={"x": 5})
        steps = [
            {"set_memory": {"y": "${input.x} plus one", "count": "${input.x}"}},
            {"append_to_array": {"array": "seen", "item": "${y}"}},
            {"append_to_array": {"array": "seen", "item": "${count}"}},
        ]

        result = await executor.run(steps, context, document)

        assert context.memory["y"] == "5 plus one"
        assert context.memory["count"] == 5
        assert context.input["y"] == "5 plus one"
        assert result.output == ["5 plus one", 5]

    @pytest.mark.asyncio
    async def test_shorthand_string_calls_core(self, executor):
        document = make_document({"default": []})
        context = create_context(memory={"name": "bob"})

        result = await executor.run(["echo: hello ${name}"], context, document)

        assert result.output == "hello bob"
        assert result.trace[0].step == "echo"

    @pytest.mark.asyncio
    async def test_bare_core_key(self, executor):
        document = make_document({"default": []})
        result = await executor.run([{"echo": {"a": 1}}], create_context(), document)
        assert result.output == {"a": 1}

    @pytest.mark.asyncio
    async def test_unknown_bare_key_fails(self, executor):
        document = make_document({"default": []})
        with pytest.raises(StepExecutionError) as exc_info:
            await executor.run([{"no_such_thing": {}}], create_context(), document)
        assert isinstance(exc_info.value.root_cause, OperationNotFoundError)


class TestControlFlow:
    @pytest.mark.asyncio
    async def test_condition_branches(self, executor):
        document = make_document({"default": []})
        steps = [
            {
                "condition": {
                    "if": "${memory.count} >= 3",
                    "then": [{"return": "many"}],
                    "else": [{"return": "few"}],
                }
            }
        ]

        many = await executor.run(steps, create_context(memory={"count": 5}), document)
        few = await executor.run(steps, create_context(memory={"count": 1}), document)

        assert many.output == "many"
        assert few.output == "few"
        assert len(many.trace) == 1
        assert many.trace[0].children[0].step == "return"

    @pytest.mark.asyncio
    async def test_condition_is_not_pre_resolved(self, executor):
        document = make_document({"default": []})
        context = create_context(memory={"text": "a || b"})
        steps = [{"condition": {"if": "${text} == 'a || b'", "then": [{"return": "match"}]}}]

        result = await executor.run(steps, context, document)

        assert result.output == "match"

    @pytest.mark.asyncio
    async def test_condition_without_branch_outputs_none(self, executor):
        document = make_document({"default": []})
        steps = [{"condition": {"if": "false", "then": [{"return": 1}]}}]
        result = await executor.run(steps, create_context(), document)
        assert result.output is None
        assert result.trace[0].success

    @pytest.mark.asyncio
    async def test_for_each_binds_item_and_index(self, executor):
        document = make_document({"default": []})
        context = create_context(memory={"items": ["a", "b", "c"]})
        steps = [
            {
                "loop": {
                    "forEach": "${items}",
                    "do": [
                        {"append_to_array": {"array": "out", "item": "${index}:${item}"}},
                        {"return": "${item}"},
                    ],
                }
            }
        ]

        result = await executor.run(steps, context, document)

        assert result.output == ["a", "b", "c"]
        assert context.memory["out"] == ["0:a", "1:b", "2:c"]
        assert "item" not in context.memory
        assert len(result.trace) == 1
        assert len(result.trace[0].children) == 3

    @pytest.mark.asyncio
    async def test_loop_writes_reach_input(self, executor):
        document = make_document({"default": []})
        context = create_context(memory={"items": [1, 2]})
        steps = [{"loop": {"forEach": "${items}", "do": [{"set_memory": {"last": "${item}"}}]}}]

        await executor.run(steps, context, document)

        assert context.memory["last"] == 2
        assert context.input["last"] == 2
        assert "item" not in context.input

    @pytest.mark.asyncio
    async def test_nested_loops_distinct_bindings(self, executor):
        document = make_document({"default": []})
        context = create_context(memory={"rows": [1, 2], "cols": ["x", "y"]})
        steps = [
            {
                "loop": {
                    "forEach": "${rows}",
                    "as": "row",
                    "do": [
                        {
                            "loop": {
                                "forEach": "${cols}",
                                "as": "col",
                                "do": [{"append_to_array": {"array": "cells", "item": "${row}${col}"}}],
                            }
                        }
                    ],
                }
            }
        ]

        await executor.run(steps, context, document)

        assert context.memory["cells"] == ["1x", "1y", "2x", "2y"]

    @pytest.mark.asyncio
    async def test_nested_loops_same_binding_shadow(self, executor):
        document = make_document({"default": []})
        context = create_context(memory={"outer": [1, 2], "inner": ["a"]})
        steps = [
            {
                "loop": {
                    "forEach": "${outer}",
                    "do": [
                        {"loop": {"forEach": "${inner}", "do": [{"append_to_array": {"array": "seen", "item": "${item}"}}]}},
                        {"append_to_array": {"array": "seen", "item": "${item}"}},
                    ],
                }
            }
        ]

        await executor.run(steps, context, document)

        assert context.memory["seen"] == ["a", 1, "a", 2]

    @pytest.mark.asyncio
    async def test_while_loop(self, executor):
        document = make_document({"default": []})
        context = create_context(memory={"n": 0})
        steps = [
            {
                "loop": {
                    "while": "${n} < 3",
                    "do": [{"set_memory": {"n": "${Math.floor(${n} + 1)}"}}],
                }
            }
        ]

        result = await executor.run(steps, context, document)

        assert context.memory["n"] == 3
        assert len(result.output) == 3

    @pytest.mark.asyncio
    async def test_switch(self, executor):
        document = make_document({"default": []})
        steps = [
            {
                "switch": {
                    "value": "${kind}",
                    "cases": {"invoice_*": [{"return": "billing"}], "default": [{"return": "other"}]},
                }
            }
        ]

        billing = await executor.run(steps, create_context(memory={"kind": "invoice_paid"}), document)
        other = await executor.run(steps, create_context(memory={"kind": "hello"}), document)

        assert billing.output == "billing"
        assert other.output == "other"


class TestInternalOperations:
    @pytest.mark.asyncio
    async def test_internal_call_gets_payload_and_merges_memory(self, executor):
        document = make_document(
            {
                "default": [],
                "helper": [
                    {"set_memory": {"computed": "${input.value}!"}},
                    {"return": "${computed}"},
                ],
            }
        )
        context = create_context(memory={"v": "hi"})

        result = await executor.run([{"helper": {"value": "${v}"}}], context, document)

        assert result.output == "hi!"
        assert context.memory["computed"] == "hi!"
        assert len(result.trace) == 1
        assert [child.step for child in result.trace[0].children] == ["set_memory", "return"]


class TestRunStep:
    @pytest.mark.asyncio
    async def test_run_forwards_input_and_client(self, executor):
        executor.run_workflow.return_value = RunResult(success=True, result="sub-result")
        document = make_document({"default": []})
        context = create_context(client_id="acme", memory={"x": 5})

        result = await executor.run(
            [{"run": {"file": "other.yaml", "operation": "op2", "input": {"x": "${x}"}}}], context, document
        )

        assert result.output == "sub-result"
        kwargs = executor.run_workflow.call_args.kwargs
        assert kwargs["file"] == "other.yaml"
        assert kwargs["operation"] == "op2"
        assert kwargs["input"] == {"x": 5}
        assert kwargs["client_id"] == "acme"

    @pytest.mark.asyncio
    async def test_sub_run_writes_merge_back(self, executor):
        document = make_document({"default": []})
        context = create_context(user="alice", memory={"x": 5})
        child = create_context(user="bob", input={"x": 5, "y": 1}, memory={"added": "new"})
        executor.run_workflow.return_value = RunResult(success=True, result="done", context=child)

        await executor.run([{"run": {"file": "other.yaml", "input": {"x": 6}}}], context, document)

        assert context.memory["added"] == "new"
        assert context.input["added"] == "new"
        assert context.memory["y"] == 1
        assert context.memory["user"] == "alice"
        assert context.memory["execution_id"] == context.execution_id

    @pytest.mark.asyncio
    async def test_failed_sub_run_raises(self, executor):
        executor.run_workflow.return_value = RunResult(success=False, error="sub failed")
        document = make_document({"default": []})

        with pytest.raises(StepExecutionError, match="sub failed"):
            await executor.run([{"run": "other.yaml"}], create_context(), document)


class TestDelegatedKeywords:
    @pytest.mark.asyncio
    async def test_respond_uses_messaging(self, executor, outbox):
        document = make_document({"default": []})
        context = create_context(input={"user": "alice"}, memory={"total": 3})

        await executor.run([{"respond": "Total is ${total}"}], context, document)

        assert outbox.messages[0]["to"] == "alice"
        assert outbox.messages[0]["text"] == "Total is 3"

    @pytest.mark.asyncio
    async def test_prompt_user(self, executor, outbox):
        document = make_document({"default": []})
        context = create_context(input={"channel": "C1"})

        result = await executor.run([{"prompt.user": {"prompt": "Approve?", "options": ["yes", "no"]}}], context, document)

        assert outbox.messages[0]["kind"] == "prompt"
        assert outbox.messages[0]["options"] == ["yes", "no"]
        assert result.output["awaiting_response"] is True

    @pytest.mark.asyncio
    async def test_self_reflect_uses_trace(self, executor):
        document = make_document({"default": []})
        result = await executor.run([{"return": 1}, {"self.reflect": {"aspect": "speed"}}], create_context(), document)
        assert result.output["source"] == "trace"
        assert "speed" in result.output["reflection"]


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_failure_aborts_with_trace(self, executor):
        document = make_document({"default": []})
        context = create_context()

        with pytest.raises(StepExecutionError) as exc_info:
            await executor.run([{"return": 1}, {"test.fail": {}}, {"return": 2}], context, document)

        error = exc_info.value
        assert error.step_name == "test.fail"
        assert isinstance(error.root_cause, ValueError)
        assert [entry.success for entry in error.trace] == [True, False]
        assert len(context.trace) == 2

    @pytest.mark.asyncio
    async def test_on_error_continues(self, executor):
        document = make_document({"default": []})
        steps = [{"test.fail": {}, "onError": "continue"}, {"return": "after"}]

        result = await executor.run(steps, create_context(), document)

        assert result.output == "after"
        assert result.trace[0].success is False
        assert "step exploded" in result.trace[0].error

    @pytest.mark.asyncio
    async def test_catch_handler_sees_error(self, executor):
        document = make_document({"default": []})
        context = create_context()
        steps = [{"test.fail": {}, "catch": [{"set_memory": {"handled": "${memory.error}"}}]}]

        await executor.run(steps, context, document)

        assert "step exploded" in context.memory["handled"]

    @pytest.mark.asyncio
    async def test_nested_failure_propagates(self, executor):
        document = make_document({"default": [], "inner": [{"test.fail": {}}]})
        steps = [{"condition": {"if": "true", "then": [{"inner": {}}]}}]

        with pytest.raises(StepExecutionError) as exc_info:
            await executor.run(steps, create_context(), document)

        assert isinstance(exc_info.value.root_cause, ValueError)
        assert exc_info.value.trace[0].children[0].step == "inner"


def test_step_label():
    assert step_label("log: hi") == "log"
    assert step_label({"onError": "continue", "a.b": {}}) == "a.b"
