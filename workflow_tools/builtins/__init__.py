"""Built-in capability modules."""

from typing import Optional

from config.types import RuntimeSettings
from workflow_runtime.revisions import RevisionStore
from workflow_tools.builtins.capability import CapabilityDirectoryCapabilities
from workflow_tools.builtins.codegen import CodegenCapabilities
from workflow_tools.builtins.core import CoreCapabilities
from workflow_tools.builtins.files import FileCapabilities
from workflow_tools.builtins.infer import InferCapabilities
from workflow_tools.builtins.messaging import MessagingCapabilities
from workflow_tools.builtins.system import SystemCapabilities
from workflow_tools.directory import CapabilityDirectory
from workflow_tools.interfaces import OutputChannel, TextService
from workflow_tools.registry import FunctionRegistry


def create_default_registry(
    settings: Optional[RuntimeSettings] = None,
    channel: Optional[OutputChannel] = None,
    text_service: Optional[TextService] = None,
    revisions: Optional[RevisionStore] = None,
    directory: Optional[CapabilityDirectory] = None,
) -> FunctionRegistry:
    """Registry with every built-in module registered."""
    settings = settings or RuntimeSettings()
    registry = FunctionRegistry()
    for module in (
        CoreCapabilities(settings, revisions),
        MessagingCapabilities(channel),
        InferCapabilities(text_service),
        FileCapabilities(settings),
        SystemCapabilities(),
        CapabilityDirectoryCapabilities(directory),
        CodegenCapabilities(settings),
    ):
        registry.register_module(module.name, module, source="builtin")
    return registry


__all__ = [
    "create_default_registry",
    "CoreCapabilities",
    "MessagingCapabilities",
    "InferCapabilities",
    "FileCapabilities",
    "SystemCapabilities",
    "CapabilityDirectoryCapabilities",
    "CodegenCapabilities",
]
