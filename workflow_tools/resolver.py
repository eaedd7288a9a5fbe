"""
Capability resolution with on-demand synthesis.

`module.function` is resolved from the function registry, then from the
capability directory, then from the conventional generated-module path.
When all three report "not found", the generation workflow writes a new
module, the module is registered, and the call is retried exactly once.
"""

import asyncio
import hashlib
import importlib
import importlib.util
import logging
from pathlib import Path
from types import ModuleType
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from config.types import RuntimeSettings
from workflow_runtime.errors import (
    CapabilityNotFoundError,
    GenerationFailure,
    RetryExhaustedError,
)
from workflow_runtime.templates import TemplateResolver
from workflow_runtime.types import utc_timestamp
from workflow_tools.directory import CapabilityDirectory
from workflow_tools.interfaces import CapabilityFunction
from workflow_tools.registry import FunctionRegistry

logger = logging.getLogger(__name__)

GENERATED_CONFIDENCE = 0.8


def split_capability(path: str) -> Tuple[str, str]:
    """`a.b.c` -> (`a.b`, `c`): the last dot separates the function name."""
    module, dot, function = path.rpartition(".")
    if not dot or not module or not function:
        raise CapabilityNotFoundError(path, path, "expected module.function")
    return module, function


def load_module_from_path(name: str, path: Path) -> ModuleType:
    """Import a Python file under a private module name (not cached in sys.modules)."""
    path_hash = hashlib.sha256(str(path.resolve()).encode("utf-8")).hexdigest()[:8]
    spec = importlib.util.spec_from_file_location(f"workflow_generated.{name}_{path_hash}", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load module from {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def tag_generated(output: Any) -> Dict[str, Any]:
    """Mark a result as produced right after synthesis."""
    tagged = dict(output) if isinstance(output, dict) else {"value": output}
    tagged["_auto_generated"] = True
    tagged["_generation_timestamp"] = utc_timestamp()
    return tagged


class CapabilityResolver:
    """Resolves and invokes `module.function` capabilities.

    Args:
        registry: Function registry consulted first and updated on every import
        directory: Capability directory (optional)
        run_workflow: Interpreter entry used to run the generation workflow
        settings: Runtime settings (generated module dir, generation document)
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        directory: Optional[CapabilityDirectory] = None,
        run_workflow: Optional[Callable[..., Awaitable[Any]]] = None,
        settings: Optional[RuntimeSettings] = None,
        templates: Optional[TemplateResolver] = None,
    ):
        self.registry = registry
        self.directory = directory
        self.run_workflow = run_workflow
        self.settings = settings or RuntimeSettings()
        self.templates = templates or TemplateResolver()
        self.generation_count = 0
        # One lock per module: a module file is generated as a whole
        self._generation_locks: Dict[str, asyncio.Lock] = {}

    @property
    def generated_modules_dir(self) -> Path:
        return self.settings.resolve_path(self.settings.generated_modules_dir)

    def has_function(self, module: str, function: str) -> bool:
        return self.registry.has_function(module, function)

    async def call_module_function(self, path: str, args: Any, context, resolve: bool = True) -> Any:
        """Resolve and call `path` with `args`.

        Args:
            path: `module.function`
            args: Argument payload, template-resolved against `context` unless `resolve` is False
            context: Execution context passed through to the function

        Raises:
            CapabilityNotFoundError: Not found and synthesis is disabled
            GenerationFailure: Synthesis was attempted and failed
            RetryExhaustedError: The capability is still missing after synthesis
        """
        module, function = split_capability(path)
        if resolve and context is not None:
            args = self.templates.resolve(args, context)

        try:
            fn = await self.find_function(module, function, context)
        except CapabilityNotFoundError:
            if not self.settings.auto_generation_enabled:
                raise
            return await self._synthesize_and_call(module, function, args, context)

        return await fn(args, context)

    async def find_function(self, module: str, function: str, context=None) -> CapabilityFunction:
        """Registry -> capability directory -> conventional module path.

        Raises:
            CapabilityNotFoundError: When no source provides the function
        """
        if self.registry.has_function(module, function):
            return self.registry.get_function(module, function)

        if self.directory is not None:
            for capability in (f"{module}_integration", f"{module}_{function}"):
                record = await self.directory.resolve_capability(capability, context)
                if record is None:
                    continue
                try:
                    provider = self.load_provider(module, record.provider)
                except (ImportError, OSError, SyntaxError) as e:
                    logger.warning(f"Provider {record.provider} for {capability} failed to load: {e}")
                    continue
                self.registry.register_module(module, provider, source="directory")
                if self.registry.has_function(module, function):
                    logger.debug(f"Resolved {module}.{function} via directory ({capability})")
                    return self.registry.get_function(module, function)

        conventional = self.generated_modules_dir / f"{module}.py"
        if conventional.is_file():
            try:
                provider = load_module_from_path(module, conventional)
            except (ImportError, OSError, SyntaxError) as e:
                raise CapabilityNotFoundError(module, function, f"{conventional} failed to load: {e}") from e
            self.registry.register_module(module, provider, source="generated")
            if self.registry.has_function(module, function):
                return self.registry.get_function(module, function)

        raise CapabilityNotFoundError(module, function)

    def load_provider(self, module: str, provider: str) -> ModuleType:
        """A provider is a file path (`x/y.py`) or an importable dotted name."""
        if provider.endswith(".py") or "/" in provider or "\\" in provider:
            path = Path(provider)
            if not path.is_absolute():
                path = self.settings.resolve_path(provider)
            if not path.is_file():
                raise ImportError(f"Provider file not found: {path}")
            return load_module_from_path(module, path)
        return importlib.import_module(provider)

    async def _synthesize_and_call(self, module: str, function: str, args: Any, context) -> Dict[str, Any]:
        capability = f"{module}.{function}"
        lock = self._generation_locks.setdefault(module, asyncio.Lock())

        async with lock:
            try:
                fn = await self.find_function(module, function, context)
                logger.debug(f"{capability} became available while waiting for generation")
            except CapabilityNotFoundError:
                await self._generate(module, function, context)
                try:
                    fn = await self.find_function(module, function, context)
                except CapabilityNotFoundError as e:
                    raise RetryExhaustedError(capability, e) from e

        output = await fn(args, context)
        return tag_generated(output)

    async def _generate(self, module: str, function: str, context) -> None:
        capability = f"{module}.{function}"
        if self.run_workflow is None:
            raise GenerationFailure(capability, "no workflow runner configured")

        logger.info(f"Auto-generating {module} module for missing {capability}")
        channel = context.input.get("channel") if context is not None else None
        await self._notify(
            channel,
            f"Auto-generation triggered: generating {module} integration for {function}",
            context,
        )

        existing = self.registry.list_functions(module) if self.registry.sources.get(module) == "generated" else []
        result = await self.run_workflow(
            file=self.settings.generation_document,
            operation=self.settings.generation_operation,
            input={
                "service_name": module,
                "required_function": function,
                "output_dir": str(self.generated_modules_dir),
                "existing_functions": existing,
            },
            context=context,
            client_id=context.client_id if context is not None else None,
        )
        if not result.success:
            raise GenerationFailure(capability, result.error or "generation workflow failed")
        self.generation_count += 1

        generated_path = self.generated_modules_dir / f"{module}.py"
        if isinstance(result.result, dict) and result.result.get("file_path"):
            generated_path = Path(result.result["file_path"])

        if generated_path.is_file():
            try:
                provider = load_module_from_path(module, generated_path)
            except (ImportError, SyntaxError) as e:
                raise GenerationFailure(capability, f"generated module failed to import: {e}") from e
            self.registry.register_module(module, provider, source="generated")
            if self.directory is not None:
                await self.directory.store_capability_provider(
                    f"{module}_{function}", str(generated_path), GENERATED_CONFIDENCE
                )
        else:
            logger.warning(f"Generation workflow for {capability} produced no file at {generated_path}")

        await self._notify(channel, f"{module} integration generated ({function})", context)

    async def _notify(self, channel: Optional[str], text: str, context) -> None:
        if not channel:
            return
        try:
            send = self.registry.get_function("messaging", "send_message")
            await send({"to": channel, "message": text}, context)
        except Exception as e:
            logger.warning(f"Failed to send auto-generation notification: {e}")
