"""
Workflow runtime: loads declarative workflow documents and executes their
operations step by step.

The interpreter lives in `workflow_runtime.interpreter` (it depends on
`workflow_tools`, which in turn imports this package's submodules).
"""

from workflow_runtime.context import ExecutionContext, create_context, merge_contexts
from workflow_runtime.errors import (
    CapabilityNotFoundError,
    DocumentNotFoundError,
    DocumentParseError,
    DocumentSchemaError,
    GenerationFailure,
    OperationNotFoundError,
    RetryExhaustedError,
    StepExecutionError,
    WorkflowError,
)
from workflow_runtime.loader import DocumentLoader
from workflow_runtime.types import Document, ExecutionResult, RunResult, TraceEntry

__all__ = [
    "ExecutionContext",
    "create_context",
    "merge_contexts",
    "CapabilityNotFoundError",
    "DocumentNotFoundError",
    "DocumentParseError",
    "DocumentSchemaError",
    "GenerationFailure",
    "OperationNotFoundError",
    "RetryExhaustedError",
    "StepExecutionError",
    "WorkflowError",
    "DocumentLoader",
    "Document",
    "ExecutionResult",
    "RunResult",
    "TraceEntry",
]
