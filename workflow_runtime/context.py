"""
Execution context threaded through every step.

One canonical store (identity fields, memory, input, metadata, trace) with
read accessors that understand the legacy access shapes documents use:
`${agentId}`, `${input.client_id}`, `${context.user}`, `${memory.x}` and so
on. All writes go through `_write` so the views never diverge.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from workflow_runtime.types import TraceEntry, utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_USER = "system"
DEFAULT_CLIENT_ID = "default"
DEFAULT_AGENT_ID = "unknown"
DEFAULT_OPERATION = "default"

# Identity field -> camelCase alias used by legacy documents
IDENTITY_ALIASES = {
    "agent_id": "agentId",
    "client_id": "clientId",
    "execution_id": "executionId",
    "operation": "operation",
    "timestamp": "timestamp",
    "user": "user",
    "channel": "channel",
}
ALIAS_TO_FIELD = {alias: name for name, alias in IDENTITY_ALIASES.items()}

# Lookup order for each identity field: (section, key); section None means the
# option itself.
_IDENTITY_SOURCES: Dict[str, List[Tuple[Optional[str], str]]] = {
    "user": [
        (None, "user"),
        ("input", "user"),
        ("input", "user_id"),
        ("input", "userId"),
        ("context", "user"),
        ("metadata", "user"),
    ],
    "channel": [
        (None, "channel"),
        ("input", "channel"),
        ("input", "channel_id"),
        ("input", "channelId"),
        ("context", "channel"),
        ("metadata", "channel"),
    ],
    "client_id": [
        (None, "client_id"),
        (None, "clientId"),
        ("input", "client_id"),
        ("input", "clientId"),
        ("context", "client_id"),
        ("context", "clientId"),
        ("metadata", "client_id"),
    ],
    "agent_id": [
        (None, "agent_id"),
        (None, "agentId"),
        ("input", "agent_id"),
        ("input", "agentId"),
        ("context", "agent_id"),
        ("context", "agentId"),
        ("metadata", "agent_id"),
    ],
    "operation": [
        (None, "operation"),
        ("input", "operation"),
        ("context", "operation"),
    ],
}

_IDENTITY_DEFAULTS = {
    "user": DEFAULT_USER,
    "channel": None,
    "client_id": DEFAULT_CLIENT_ID,
    "agent_id": DEFAULT_AGENT_ID,
    "operation": DEFAULT_OPERATION,
}


def generate_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:12]}"


def _extract_identity(options: Dict[str, Any], name: str) -> Any:
    for section, key in _IDENTITY_SOURCES[name]:
        source = options if section is None else options.get(section)
        if not isinstance(source, dict):
            continue
        value = source.get(key)
        if value not in (None, ""):
            return value
    return _IDENTITY_DEFAULTS[name]


@dataclass
class ContextValidation:
    """Outcome of ExecutionContext.validate."""

    valid: bool
    missing: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class ExecutionContext:
    """Per-call state bag: identity, memory, input, trace, metadata."""

    agent_id: str = DEFAULT_AGENT_ID
    client_id: str = DEFAULT_CLIENT_ID
    operation: str = DEFAULT_OPERATION
    user: str = DEFAULT_USER
    channel: Optional[str] = None
    timestamp: str = field(default_factory=utc_timestamp)
    execution_id: str = field(default_factory=generate_execution_id)
    input: Dict[str, Any] = field(default_factory=dict)
    memory: Dict[str, Any] = field(default_factory=dict)
    trace: List[TraceEntry] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    legacy: Dict[str, Any] = field(default_factory=dict)
    document_identity: Dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    @property
    def legacy_view(self) -> Dict[str, Any]:
        """The nested `context.*` shape some documents still read."""
        view = {
            "user": self.user,
            "clientId": self.client_id,
            "agentId": self.agent_id,
        }
        view.update(self.legacy)
        return view

    def as_root(self) -> Dict[str, Any]:
        """Root lookup view used by the template resolver."""
        root: Dict[str, Any] = {}
        for name, alias in IDENTITY_ALIASES.items():
            value = getattr(self, name)
            root[alias] = value
            root[name] = value
        root.update(
            {
                "input": self.input,
                "memory": self.memory,
                "metadata": self.metadata,
                "context": self.legacy_view,
                "self": self.document_identity,
            }
        )
        return root

    def _identity_field(self, key: str) -> Optional[str]:
        if key in IDENTITY_ALIASES:
            return key
        return ALIAS_TO_FIELD.get(key)

    def get_value(self, key: str, default: Any = None) -> Any:
        """Read a value: direct field, then input, memory, metadata, legacy view."""
        identity_field = self._identity_field(key)
        if identity_field is not None:
            value = getattr(self, identity_field)
            if value is not None:
                return value

        for source in (self.input, self.memory, self.metadata, self.legacy_view):
            if isinstance(source, dict) and source.get(key) is not None:
                return source[key]

        return default

    # ------------------------------------------------------------------
    # Single write path
    # ------------------------------------------------------------------

    def _write(self, key: str, value: Any, identity: bool = False) -> None:
        if identity:
            identity_field = self._identity_field(key)
            if identity_field is not None:
                setattr(self, identity_field, value)
        self.memory[key] = value
        self.input[key] = value

    def set_value(self, key: str, value: Any) -> None:
        """Write a value so every legacy read path observes it."""
        self._write(key, value, identity=True)

    def update_memory(self, key: str, value: Any) -> None:
        """Write a memory key, mirrored into input for dual access."""
        self._write(key, value)

    def merge_step_output(self, step_name: str, output: Any) -> None:
        """Accumulate a step result: flattened when a mapping, and by step name."""
        if isinstance(output, dict):
            for key, value in output.items():
                if isinstance(key, str):
                    self._write(key, value)
        self._write(step_name, output)

    def add_trace(self, entry: TraceEntry) -> TraceEntry:
        self.trace.append(entry)
        return entry

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def derive(
        self,
        input: Any = None,
        memory: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
    ) -> "ExecutionContext":
        """Child context for a nested call. Copies, never aliases, the parent's data."""
        if input is None:
            child_input = dict(self.input)
        elif isinstance(input, dict):
            child_input = dict(input)
        else:
            child_input = {"value": input}

        child_memory = dict(self.memory)
        if memory:
            child_memory.update(memory)

        child_metadata = dict(self.metadata)
        child_metadata["parent_execution_id"] = self.execution_id

        return ExecutionContext(
            agent_id=self.agent_id,
            client_id=self.client_id,
            operation=operation or self.operation,
            user=self.user,
            channel=self.channel,
            timestamp=self.timestamp,
            input=child_input,
            memory=child_memory,
            metadata=child_metadata,
            legacy=dict(self.legacy),
            document_identity=dict(self.document_identity),
        )

    def absorb(self, child: "ExecutionContext", exclude: Iterable[str] = ()) -> None:
        """Merge memory writes made in a derived context back into this one.

        Absorbed keys are mirrored into input like any other memory write.
        """
        excluded = set(exclude)
        for key, value in child.memory.items():
            if key in excluded:
                continue
            if key not in self.memory or self.memory[key] is not value:
                self._write(key, value)

    # ------------------------------------------------------------------
    # Validation and serialization
    # ------------------------------------------------------------------

    def validate(self, required_fields: Iterable[str] = ()) -> ContextValidation:
        """Check required fields and basic shape without raising."""
        missing = [
            name for name in required_fields if self.get_value(name) is None
        ]
        errors = []
        if not self.agent_id or not isinstance(self.agent_id, str):
            errors.append("agent_id must be a non-empty string")
        if not self.operation or not isinstance(self.operation, str):
            errors.append("operation must be a non-empty string")
        if not self.timestamp or not isinstance(self.timestamp, str):
            errors.append("timestamp must be a valid ISO string")
        if not isinstance(self.memory, dict):
            errors.append("memory must be an object")
        if not isinstance(self.input, dict):
            errors.append("input must be an object")
        if not isinstance(self.trace, list):
            errors.append("trace must be an array")
        return ContextValidation(
            valid=not missing and not errors, missing=missing, errors=errors
        )

    def request_data(self) -> Dict[str, Any]:
        """Common request fields regardless of which shape the caller used."""
        return {
            "type": self.get_value("type", "unknown"),
            "user": self.get_value("user"),
            "channel": self.get_value("channel"),
            "text": self.get_value("text") or self.get_value("message"),
            "button": self.get_value("button"),
        }

    def serialize(self) -> str:
        """JSON snapshot for persistence; the trace is reduced to its length."""
        return json.dumps(
            {
                "agentId": self.agent_id,
                "clientId": self.client_id,
                "operation": self.operation,
                "user": self.user,
                "channel": self.channel,
                "timestamp": self.timestamp,
                "input": self.input,
                "memory": self.memory,
                "metadata": self.metadata,
                "traceLength": len(self.trace),
            },
            default=str,
        )

    @classmethod
    def deserialize(cls, serialized: str) -> "ExecutionContext":
        data = json.loads(serialized)
        return create_context(
            agent_id=data.get("agentId"),
            client_id=data.get("clientId"),
            operation=data.get("operation"),
            user=data.get("user"),
            channel=data.get("channel"),
            input=data.get("input"),
            memory=data.get("memory"),
            metadata=data.get("metadata"),
        )


def create_context(**options: Any) -> ExecutionContext:
    """Build a context, resolving identity from every shape callers use.

    Identity fields resolve as direct option -> input.* -> context.* ->
    metadata.*, falling back to "system" / "default" / "unknown".
    """
    options = {k: v for k, v in options.items() if v is not None}
    raw_input = options.get("input")
    if raw_input is not None and not isinstance(raw_input, dict):
        raw_input = {"value": raw_input}
        options["input"] = raw_input

    user = _extract_identity(options, "user")
    channel = _extract_identity(options, "channel")
    client_id = _extract_identity(options, "client_id")
    agent_id = _extract_identity(options, "agent_id")
    operation = _extract_identity(options, "operation")

    timestamp = options.get("timestamp") or utc_timestamp()
    execution_id = options.get("execution_id") or generate_execution_id()

    standardized_input: Dict[str, Any] = {
        "user": user,
        "channel": channel,
        "client_id": client_id,
        "agent_id": agent_id,
    }
    standardized_input.update(raw_input or {})
    if user != DEFAULT_USER:
        standardized_input["user"] = user
    if channel:
        standardized_input["channel"] = channel
    if client_id != DEFAULT_CLIENT_ID:
        standardized_input["client_id"] = client_id
    if agent_id != DEFAULT_AGENT_ID:
        standardized_input["agent_id"] = agent_id

    memory: Dict[str, Any] = {"timestamp": timestamp, "execution_id": execution_id}
    memory.update(standardized_input)
    memory.update(options.get("memory") or {})

    metadata = {
        "execution_id": execution_id,
        "created_at": timestamp,
        "context_version": "2.0",
    }
    metadata.update(options.get("metadata") or {})

    legacy = options.get("context") if isinstance(options.get("context"), dict) else {}

    return ExecutionContext(
        agent_id=agent_id,
        client_id=client_id,
        operation=operation,
        user=user,
        channel=channel,
        timestamp=timestamp,
        execution_id=execution_id,
        input=standardized_input,
        memory=memory,
        trace=list(options.get("trace") or []),
        metadata=metadata,
        legacy=dict(legacy),
        document_identity=dict(options.get("document_identity") or {}),
    )


def merge_contexts(base: ExecutionContext, **updates: Any) -> ExecutionContext:
    """New context from `base` with input/memory/metadata merged with `updates`."""
    merged_input = dict(base.input)
    merged_input.update(updates.pop("input", None) or {})
    merged_memory = dict(base.memory)
    merged_memory.update(updates.pop("memory", None) or {})
    merged_metadata = dict(base.metadata)
    merged_metadata.update(updates.pop("metadata", None) or {})
    extra_trace = updates.pop("trace", None) or []

    options = {
        "agent_id": base.agent_id,
        "client_id": base.client_id,
        "operation": base.operation,
        "user": base.user,
        "channel": base.channel,
        "timestamp": base.timestamp,
        "execution_id": base.execution_id,
        "context": base.legacy,
        "document_identity": base.document_identity,
        "trace": list(base.trace) + list(extra_trace),
    }
    options.update(updates)
    options.update(input=merged_input, memory=merged_memory, metadata=merged_metadata)
    return create_context(**options)
