"""Custom exceptions for the workflow runtime."""

from typing import Optional, Any, Dict, List


class WorkflowError(Exception):
    """Base exception for all workflow runtime errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DocumentNotFoundError(WorkflowError):
    """Raised when a workflow document does not exist."""

    def __init__(self, path: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Workflow document not found: {path}", details)
        self.path = path


class DocumentParseError(WorkflowError):
    """Raised when a document is neither valid YAML nor valid JSON."""

    def __init__(self, path: str, reason: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        message = f"Invalid workflow document format in {path}. Expected YAML or JSON."
        if reason:
            message += f" ({reason})"
        super().__init__(message, details)
        self.path = path


class DocumentSchemaError(WorkflowError):
    """Raised when a parsed document violates the structural rules."""

    def __init__(self, path: str, problem: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Invalid workflow document {path}: {problem}", details)
        self.path = path
        self.problem = problem


class OperationNotFoundError(WorkflowError):
    """Raised when an operation cannot be found in a document."""

    def __init__(self, operation: str, source: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        message = f"Operation '{operation}' not found"
        if source:
            message += f" in {source}"
        super().__init__(message, details)
        self.operation = operation
        self.source = source


class StepExecutionError(WorkflowError):
    """Raised when a step fails and the step does not tolerate errors."""

    def __init__(
        self,
        step_name: str,
        cause: Optional[BaseException] = None,
        trace: Optional[List[Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        reason = str(cause) if cause is not None else "unknown error"
        super().__init__(f"Step '{step_name}' failed: {reason}", details)
        self.step_name = step_name
        self.cause = cause
        self.trace = trace or []

    @property
    def root_cause(self) -> Optional[BaseException]:
        """Innermost non-step error, following nested step failures."""
        cause = self.cause
        while isinstance(cause, StepExecutionError):
            cause = cause.cause
        return cause


class CapabilityNotFoundError(WorkflowError):
    """Raised when a module function cannot be resolved from any source."""

    def __init__(self, module: str, function: str, reason: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        message = f"Function {function} not found in module {module}"
        if reason:
            message += f": {reason}"
        super().__init__(message, details)
        self.module = module
        self.function = function


class GenerationFailure(WorkflowError):
    """Raised when a missing capability could not be synthesized."""

    def __init__(self, capability: str, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Auto-generation failed for {capability}: {reason}", details)
        self.capability = capability
        self.reason = reason


class RetryExhaustedError(WorkflowError):
    """Raised when the single retry after synthesis still cannot resolve the capability."""

    def __init__(self, capability: str, cause: Optional[BaseException] = None, details: Optional[Dict[str, Any]] = None):
        message = f"Generated module execution failed for {capability}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message, details)
        self.capability = capability
        self.cause = cause
