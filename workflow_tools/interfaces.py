"""Interfaces for capability modules and the services they talk to.

Capability functions all share one calling convention:

    async def fn(args, context) -> Any
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

CapabilityFunction = Callable[[Any, Any], Awaitable[Any]]


class CapabilityModule(ABC):
    """A group of capability functions registered under one module name."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Module name used in `module.function` steps."""
        pass

    def functions(self) -> Dict[str, CapabilityFunction]:
        """Public coroutine methods of this object, by name."""
        return {
            name: member
            for name, member in inspect.getmembers(self, inspect.iscoroutinefunction)
            if not name.startswith("_")
        }


class OutputChannel(ABC):
    """Destination for outgoing messages and prompts."""

    @abstractmethod
    async def deliver(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Deliver a message.

        Args:
            message: Message payload; always carries `kind`, `to` and `text`

        Returns:
            Delivery receipt
        """
        pass


class InMemoryOutbox(OutputChannel):
    """Collects messages in a list. Default channel when no transport is bound."""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []

    async def deliver(self, message: Dict[str, Any]) -> Dict[str, Any]:
        self.messages.append(message)
        return {"delivered": True, "message_id": len(self.messages), "to": message.get("to")}

    def clear(self) -> None:
        self.messages.clear()


class TextService(ABC):
    """Opaque text-inference service."""

    @abstractmethod
    async def complete(self, prompt: str, system: Optional[str] = None, **kwargs) -> str:
        """Return a completion for `prompt`."""
        pass
