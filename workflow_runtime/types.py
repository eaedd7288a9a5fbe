"""
Types used throughout the workflow_runtime package.

Document models are pydantic so the loader can hand back validated
structures; execution records are plain dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# A step is either a shorthand string ("log: hello") or a single-key mapping.
Step = Union[str, Dict[str, Any]]


class DocumentIdentity(BaseModel):
    """The `self` section of a document. Metadata only."""

    id: Optional[str] = None
    intent: Optional[str] = None
    version: Optional[str] = None
    template: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class Concern(BaseModel):
    """A standing health rule: run `action` when `if` holds."""

    condition: str = Field(alias="if")
    priority: float
    action: List[Any]

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Document(BaseModel):
    """A loaded workflow definition containing named operations."""

    identity: Optional[DocumentIdentity] = Field(default=None, alias="self")
    aam: Optional[Any] = None
    operations: Dict[str, List[Any]]
    concern: Optional[Concern] = None
    incoming: Optional[Any] = None
    path: Optional[str] = Field(default=None, exclude=True)

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def id(self) -> Optional[str]:
        return self.identity.id if self.identity else None

    def has_operation(self, name: str) -> bool:
        return isinstance(name, str) and name in self.operations

    def get_operation(self, name: str) -> Optional[List[Step]]:
        return self.operations.get(name)

    def to_dict(self) -> Dict[str, Any]:
        """Return the authored shape (`self`, `if` keys restored)."""
        return self.model_dump(by_alias=True, exclude_none=True)


def utc_timestamp() -> str:
    """ISO-8601 timestamp used for trace entries and context identity."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TraceEntry:
    """One step attempt and its outcome."""

    step: str
    success: bool
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=utc_timestamp)
    children: List["TraceEntry"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "step": self.step,
            "success": self.success,
            "input": self.input,
            "timestamp": self.timestamp,
        }
        if self.success:
            data["output"] = self.output
        else:
            data["error"] = self.error
        if self.children:
            data["children"] = [child.to_dict() for child in self.children]
        return data


@dataclass
class StepOutcome:
    """What a single step produced before it is recorded."""

    step_name: str
    input: Any
    output: Any
    children: List[TraceEntry] = field(default_factory=list)


@dataclass
class ExecutionResult:
    """Result of running a step sequence."""

    output: Any
    context: Any
    trace: List[TraceEntry] = field(default_factory=list)


@dataclass
class RunResult:
    """Structured outcome returned by the interpreter entry point."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    context: Any = None
    trace: List[TraceEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "trace": [entry.to_dict() for entry in self.trace],
        }
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error
        return data
