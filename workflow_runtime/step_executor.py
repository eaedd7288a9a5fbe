"""
Step executor: interprets an operation's step list against a context.

Control keywords (`condition`, `loop`, `switch`, `run`, `return`,
`set_memory`, `append_to_array`) are handled here; `respond`, `prompt.user`,
`self.modify` and `self.reflect` are delegated to built-in capabilities;
everything else is either an operation of the same document or a
`module.function` call routed through the capability resolver.

Each top-level step produces exactly one TraceEntry. Steps executed inside a
branch, loop body or internal operation are attached to their parent entry
as `children`.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from workflow_runtime.conditions import ConditionEvaluator
from workflow_runtime.context import ExecutionContext
from workflow_runtime.errors import (
    OperationNotFoundError,
    StepExecutionError,
    WorkflowError,
)
from workflow_runtime.templates import TemplateResolver
from workflow_runtime.types import (
    Document,
    ExecutionResult,
    Step,
    StepOutcome,
    TraceEntry,
)

logger = logging.getLogger(__name__)

ERROR_HANDLING_KEYS = ("onError", "catch")

# Keyword -> built-in capability it delegates to
DELEGATED_KEYWORDS = {
    "respond": "messaging.send_message",
    "prompt.user": "messaging.prompt_user",
    "self.modify": "core.generate_agent",
    "self.reflect": "infer.reflect",
}

DEFAULT_LOOP_BINDING = "item"

# Memory keys a sub-workflow owns; never copied back into the caller
SUB_RUN_IDENTITY_KEYS = ("execution_id", "timestamp", "user", "channel", "client_id", "agent_id")

# async (file, operation, input, context, client_id) -> RunResult
WorkflowRunner = Callable[..., Awaitable[Any]]


def split_step(step: Dict[str, Any]) -> Tuple[Optional[str], Any]:
    """Return the step's main key and value, ignoring error-handling keys."""
    for key, value in step.items():
        if key not in ERROR_HANDLING_KEYS:
            return key, value
    return None, None


def step_label(step: Step) -> str:
    if isinstance(step, str):
        return step.split(":", 1)[0].strip()
    if isinstance(step, dict):
        key, _ = split_step(step)
        return key or "<empty>"
    return type(step).__name__


def error_handler(step: Step) -> Any:
    """The step's onError/catch declaration, or None when it has none."""
    if not isinstance(step, dict):
        return None
    for key in ERROR_HANDLING_KEYS:
        if key in step:
            return step[key]
    return None


def has_error_handling(step: Step) -> bool:
    return isinstance(step, dict) and any(key in step for key in ERROR_HANDLING_KEYS)


def _sub_run_exclusions(child, run_input: Any) -> List[str]:
    """Identity keys plus input keys the sub-workflow left untouched."""
    passed = run_input if isinstance(run_input, dict) else {"value": run_input}
    untouched = [key for key, value in passed.items() if child.memory.get(key) is value]
    return list(SUB_RUN_IDENTITY_KEYS) + untouched


class StepExecutor:
    """Executes step sequences with full control flow.

    Args:
        resolver: Capability resolver exposing `call_module_function` and
            `has_function`
        run_workflow: Interpreter re-entry used by `run` steps
        evaluator: Condition evaluator (a default one is created if omitted)
        templates: Template resolver (a default one is created if omitted)
    """

    def __init__(
        self,
        resolver,
        run_workflow: Optional[WorkflowRunner] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        templates: Optional[TemplateResolver] = None,
    ):
        self.resolver = resolver
        self.run_workflow = run_workflow
        self.templates = templates or TemplateResolver()
        self.evaluator = evaluator or ConditionEvaluator(self.templates)
        self._control_handlers = {
            "condition": self._execute_condition,
            "loop": self._execute_loop,
            "switch": self._execute_switch,
            "run": self._execute_run,
            "return": self._execute_return,
            "set_memory": self._execute_set_memory,
            "append_to_array": self._execute_append_to_array,
        }

    async def run(
        self, steps: List[Step], context: ExecutionContext, document: Document
    ) -> ExecutionResult:
        """Execute a top-level step sequence, recording into `context.trace`."""
        return await self._run_sequence(steps, context, document, top_level=True)

    async def run_block(
        self, steps: List[Step], context: ExecutionContext, document: Document
    ) -> ExecutionResult:
        """Execute a nested block; its trace is returned, not added to the context."""
        return await self._run_sequence(steps, context, document, top_level=False)

    async def _run_sequence(
        self,
        steps: List[Step],
        context: ExecutionContext,
        document: Document,
        top_level: bool,
    ) -> ExecutionResult:
        trace: List[TraceEntry] = []
        output = None

        for step in steps or []:
            label = step_label(step)
            try:
                outcome = await self.execute_step(step, context, document)
            except Exception as e:
                entry = TraceEntry(
                    step=label,
                    success=False,
                    input=self._raw_input(step),
                    error=str(e),
                    children=list(e.trace) if isinstance(e, StepExecutionError) else [],
                )
                trace.append(entry)
                if top_level:
                    context.add_trace(entry)

                if not has_error_handling(step):
                    logger.debug(f"Step {label} failed: {e}")
                    raise StepExecutionError(label, e, trace) from e

                logger.warning(f"Step {label} failed, continuing (error handled): {e}")
                handler = error_handler(step)
                if isinstance(handler, list):
                    context.update_memory("error", str(e))
                    handled = await self.run_block(handler, context, document)
                    entry.children.extend(handled.trace)
                continue

            entry = TraceEntry(
                step=outcome.step_name,
                success=True,
                input=outcome.input,
                output=outcome.output,
                children=outcome.children,
            )
            trace.append(entry)
            if top_level:
                context.add_trace(entry)

            if outcome.output is not None:
                context.merge_step_output(outcome.step_name, outcome.output)
                output = outcome.output
            elif outcome.step_name == "return":
                output = None

        return ExecutionResult(output=output, context=context, trace=trace)

    def _raw_input(self, step: Step) -> Any:
        if isinstance(step, dict):
            return split_step(step)[1]
        return step

    async def execute_step(
        self, step: Step, context: ExecutionContext, document: Document
    ) -> StepOutcome:
        """Dispatch a single step."""
        if isinstance(step, str):
            return await self._execute_shorthand(step, context)

        if not isinstance(step, dict):
            raise WorkflowError(f"Invalid step: {step!r}")

        key, value = split_step(step)
        if key is None:
            raise WorkflowError(f"Step has no action: {step!r}")

        logger.debug(f"Executing step {key}")

        handler = self._control_handlers.get(key)
        if handler is not None:
            return await handler(value, context, document)

        if key in DELEGATED_KEYWORDS:
            return await self._execute_delegated(key, value, context)

        if document is not None and document.has_operation(key):
            return await self._execute_internal_operation(key, value, context, document)

        if "." in key:
            resolved = self.templates.resolve(value, context)
            output = await self.resolver.call_module_function(
                key, resolved, context, resolve=False
            )
            return StepOutcome(key, resolved, output)

        if self.resolver.has_function("core", key):
            resolved = self.templates.resolve(value, context)
            output = await self.resolver.call_module_function(
                f"core.{key}", resolved, context, resolve=False
            )
            return StepOutcome(key, resolved, output)

        raise OperationNotFoundError(key, document.path if document else None)

    async def _execute_shorthand(self, step: str, context: ExecutionContext) -> StepOutcome:
        name, _, argument = step.partition(":")
        name = name.strip()
        argument = argument.strip() or None
        if not self.resolver.has_function("core", name):
            raise OperationNotFoundError(name, "core")
        resolved = self.templates.resolve(argument, context)
        output = await self.resolver.call_module_function(
            f"core.{name}", resolved, context, resolve=False
        )
        return StepOutcome(name, resolved, output)

    # ------------------------------------------------------------------
    # Control flow
    # ------------------------------------------------------------------

    async def _execute_condition(self, value, context, document) -> StepOutcome:
        if not isinstance(value, dict):
            raise WorkflowError("condition step requires an object with 'if'")
        expression = value.get("if", value.get("condition"))
        matched = self.evaluator.evaluate(expression, context)
        branch = value.get("then") if matched else value.get("else")
        step_input = {"if": expression, "result": matched}

        if not branch:
            return StepOutcome("condition", step_input, None)

        result = await self.run_block(self._as_steps(branch), context, document)
        return StepOutcome("condition", step_input, result.output, result.trace)

    async def _execute_loop(self, value, context, document) -> StepOutcome:
        if not isinstance(value, dict) or "do" not in value:
            raise WorkflowError("loop step requires 'do' and either 'forEach' or 'while'")
        body = self._as_steps(value["do"])
        results: List[Any] = []
        children: List[TraceEntry] = []

        if "forEach" in value:
            items = self.templates.resolve(value["forEach"], context)
            if items is None:
                items = []
            if not isinstance(items, (list, tuple)):
                raise WorkflowError(
                    f"forEach expects an array, got {type(items).__name__}"
                )
            binding = value.get("as") or DEFAULT_LOOP_BINDING

            for index, item in enumerate(items):
                iteration = context.derive(memory={binding: item, "index": index})
                try:
                    result = await self.run_block(body, iteration, document)
                finally:
                    context.absorb(iteration, exclude=(binding, "index"))
                results.append(result.output)
                children.append(
                    TraceEntry(
                        step=f"{binding}[{index}]",
                        success=True,
                        input=item,
                        output=result.output,
                        children=result.trace,
                    )
                )
            step_input = {"forEach": value["forEach"], "as": binding, "count": len(items)}

        elif "while" in value:
            index = 0
            while self.evaluator.evaluate(value["while"], context):
                result = await self.run_block(body, context, document)
                results.append(result.output)
                children.append(
                    TraceEntry(
                        step=f"while[{index}]",
                        success=True,
                        output=result.output,
                        children=result.trace,
                    )
                )
                index += 1
            step_input = {"while": value["while"], "count": index}

        else:
            raise WorkflowError("loop step requires 'forEach' or 'while'")

        return StepOutcome("loop", step_input, results, children)

    async def _execute_switch(self, value, context, document) -> StepOutcome:
        if not isinstance(value, dict) or not isinstance(value.get("cases"), dict):
            raise WorkflowError("switch step requires 'value' and a 'cases' object")
        subject = self.templates.resolve(value.get("value"), context)
        selected = self.evaluator.evaluate_switch(subject, value["cases"])

        if selected is not None:
            branch = value["cases"][selected]
        else:
            branch = value.get("default")
            selected = "default" if branch else None

        step_input = {"value": subject, "case": selected}
        if not branch:
            return StepOutcome("switch", step_input, None)

        result = await self.run_block(self._as_steps(branch), context, document)
        return StepOutcome("switch", step_input, result.output, result.trace)

    async def _execute_run(self, value, context, document) -> StepOutcome:
        if self.run_workflow is None:
            raise WorkflowError("No workflow runner configured for 'run' steps")

        if isinstance(value, str):
            file, operation, run_input = value, "default", None
        elif isinstance(value, list) and value:
            file = value[0]
            operation = value[1] if len(value) > 1 else "default"
            run_input = None
        elif isinstance(value, dict):
            file = value.get("file")
            operation = value.get("operation") or "default"
            run_input = value.get("input")
        else:
            raise WorkflowError(f"Invalid run step: {value!r}")

        file = self.templates.resolve(file, context)
        operation = self.templates.resolve(operation, context)
        run_input = self.templates.resolve(run_input, context)
        step_input = {"file": file, "operation": operation, "input": run_input}

        logger.debug(f"Running sub-workflow {file}:{operation}")
        result = await self.run_workflow(
            file=file,
            operation=operation,
            input=run_input,
            context=context,
            client_id=context.client_id,
        )
        if not result.success:
            raise StepExecutionError(
                f"{file}:{operation}", WorkflowError(result.error or "sub-workflow failed"), result.trace
            )
        if result.context is not None:
            context.absorb(result.context, exclude=_sub_run_exclusions(result.context, run_input))
        return StepOutcome("run", step_input, result.result, list(result.trace))

    async def _execute_return(self, value, context, document) -> StepOutcome:
        return StepOutcome("return", value, self.templates.resolve(value, context))

    async def _execute_set_memory(self, value, context, document) -> StepOutcome:
        if not isinstance(value, dict):
            raise WorkflowError("set_memory expects an object of key/value pairs")
        resolved: Dict[str, Any] = {}
        for key, item in value.items():
            resolved[key] = self.templates.resolve(item, context)
            context.update_memory(key, resolved[key])
        return StepOutcome("set_memory", value, resolved)

    async def _execute_append_to_array(self, value, context, document) -> StepOutcome:
        if not isinstance(value, dict) or not value.get("array"):
            raise WorkflowError("append_to_array requires 'array' and 'item'")
        name = self.templates.resolve(value["array"], context)
        item = self.templates.resolve(value.get("item"), context)

        current = context.memory.get(name)
        if current is None:
            current = []
        if not isinstance(current, list):
            raise WorkflowError(f"memory.{name} is not an array")

        updated = current + [item]
        context.update_memory(name, updated)
        return StepOutcome("append_to_array", value, updated)

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    async def _execute_delegated(self, key: str, value, context) -> StepOutcome:
        resolved = self.templates.resolve(value, context)

        if key == "respond":
            args = dict(resolved) if isinstance(resolved, dict) else {"message": resolved}
            if not args.get("to"):
                args["to"] = context.input.get("user") or context.input.get("channel")
        else:
            args = resolved

        output = await self.resolver.call_module_function(
            DELEGATED_KEYWORDS[key], args, context, resolve=False
        )
        return StepOutcome(key, resolved, output)

    async def _execute_internal_operation(self, key, value, context, document) -> StepOutcome:
        payload = self.templates.resolve(value, context)
        child = context.derive(input=payload, operation=key)
        try:
            result = await self.run_block(document.get_operation(key), child, document)
        finally:
            context.absorb(child)
        return StepOutcome(key, payload, result.output, result.trace)

    @staticmethod
    def _as_steps(block: Any) -> List[Step]:
        if isinstance(block, list):
            return block
        return [block]
