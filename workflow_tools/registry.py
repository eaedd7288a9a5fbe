import inspect
import logging
import re
from types import ModuleType
from typing import Any, Dict, List, Optional, Union

from workflow_runtime.errors import CapabilityNotFoundError
from workflow_tools.interfaces import CapabilityFunction, CapabilityModule

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake_case(name: str) -> str:
    """`sendMessage` -> `send_message`; snake_case names pass through."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def scan_module(module: ModuleType) -> Dict[str, CapabilityFunction]:
    """Public coroutine functions defined in `module` itself."""
    return {
        name: member
        for name, member in inspect.getmembers(module, inspect.iscoroutinefunction)
        if not name.startswith("_") and getattr(member, "__module__", None) == module.__name__
    }


class FunctionRegistry:
    """Registry of capability functions keyed by module and function name.

    Each module's function table is replaced as a whole on registration, and
    every change bumps `version`, so a reader never observes a partially
    registered module.
    """

    def __init__(self):
        self._modules: Dict[str, Dict[str, CapabilityFunction]] = {}
        self.sources: Dict[str, str] = {}
        self.version = 0

    def register_module(
        self,
        name: str,
        module: Union[ModuleType, CapabilityModule, Dict[str, CapabilityFunction]],
        source: str = "code",
    ) -> List[str]:
        """Register every public async function of a module.

        Args:
            name: Module name used in `module.function` steps
            module: A Python module, a CapabilityModule or a name -> function mapping
            source: Where the module came from ("code", "generated", "directory", ...)

        Returns:
            Names of the registered functions

        Raises:
            TypeError: If `module` is not a supported kind of object
        """
        if isinstance(module, CapabilityModule):
            functions = module.functions()
        elif isinstance(module, ModuleType):
            functions = scan_module(module)
        elif isinstance(module, dict):
            functions = dict(module)
        else:
            raise TypeError(f"Cannot register {type(module).__name__} as module {name}")

        merged = dict(self._modules.get(name, {}))
        merged.update(functions)
        self._modules = {**self._modules, name: merged}
        self.sources[name] = source
        self.version += 1

        logger.info(
            f"Registered module {name} ({len(functions)} functions) from {source}, registry v{self.version}"
        )
        return sorted(functions)

    def register_function(
        self, module: str, function: str, fn: CapabilityFunction, source: str = "code"
    ) -> None:
        if not callable(fn):
            raise TypeError(f"{module}.{function} is not callable")
        self.register_module(module, {function: fn}, source=source)

    def unregister_module(self, name: str) -> bool:
        if name not in self._modules:
            return False
        self._modules = {key: value for key, value in self._modules.items() if key != name}
        self.sources.pop(name, None)
        self.version += 1
        return True

    def _find(self, module: str, function: str) -> Optional[CapabilityFunction]:
        functions = self._modules.get(module)
        if not functions:
            return None
        if function in functions:
            return functions[function]
        return functions.get(to_snake_case(function))

    def has_function(self, module: str, function: str) -> bool:
        return self._find(module, function) is not None

    def has_module(self, module: str) -> bool:
        return module in self._modules

    def get_function(self, module: str, function: str) -> CapabilityFunction:
        """Look up a function, accepting camelCase aliases of snake_case names.

        Raises:
            CapabilityNotFoundError: If the module or function is not registered
        """
        fn = self._find(module, function)
        if fn is None:
            reason = "module not registered" if module not in self._modules else None
            raise CapabilityNotFoundError(module, function, reason)
        return fn

    def list_functions(self, module: Optional[str] = None) -> List[str]:
        if module is not None:
            return sorted(self._modules.get(module, {}))
        return sorted(
            f"{name}.{function}"
            for name, functions in self._modules.items()
            for function in functions
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "registered_functions": sum(len(functions) for functions in self._modules.values()),
            "module_count": len(self._modules),
            "version": self.version,
            "sources": dict(self.sources),
        }
