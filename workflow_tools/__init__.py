"""Capabilities for the workflow runtime: registry, directory, resolver and built-ins."""

from workflow_tools.builtins import create_default_registry
from workflow_tools.directory import (
    CapabilityDirectory,
    CapabilityRecord,
    InMemoryCapabilityDirectory,
    JsonCapabilityDirectory,
)
from workflow_tools.interfaces import (
    CapabilityModule,
    InMemoryOutbox,
    OutputChannel,
    TextService,
)
from workflow_tools.registry import FunctionRegistry
from workflow_tools.resolver import CapabilityResolver

__all__ = [
    "create_default_registry",
    "CapabilityDirectory",
    "CapabilityRecord",
    "InMemoryCapabilityDirectory",
    "JsonCapabilityDirectory",
    "CapabilityModule",
    "InMemoryOutbox",
    "OutputChannel",
    "TextService",
    "FunctionRegistry",
    "CapabilityResolver",
]
