import logging
from typing import Optional

from workflow_runtime.templates import to_text
from workflow_tools.interfaces import CapabilityModule, InMemoryOutbox, OutputChannel

logger = logging.getLogger(__name__)


class MessagingCapabilities(CapabilityModule):
    """`messaging.*`: outgoing messages and user prompts."""

    def __init__(self, channel: Optional[OutputChannel] = None):
        self.channel = channel or InMemoryOutbox()

    @property
    def name(self) -> str:
        return "messaging"

    def _recipient(self, args, context):
        if isinstance(args, dict) and (args.get("to") or args.get("channel")):
            return args.get("to") or args.get("channel")
        if context is None:
            return None
        return context.input.get("user") or context.input.get("channel") or context.channel

    async def send_message(self, args, context):
        if isinstance(args, dict):
            text = args.get("message", args.get("text"))
            extra = {k: v for k, v in args.items() if k not in ("to", "channel", "message", "text")}
        else:
            text, extra = args, {}
        message = {
            "kind": "message",
            "to": self._recipient(args, context),
            "text": text if isinstance(text, str) else to_text(text),
            **extra,
        }
        logger.debug(f"Sending message to {message['to']}")
        return await self.channel.deliver(message)

    async def prompt_user(self, args, context):
        if isinstance(args, dict):
            text = args.get("prompt", args.get("message", args.get("text")))
            options = args.get("options") or args.get("buttons") or []
        else:
            text, options = args, []
        message = {
            "kind": "prompt",
            "to": self._recipient(args, context),
            "text": text if isinstance(text, str) else to_text(text),
            "options": options,
        }
        receipt = await self.channel.deliver(message)
        return {**receipt, "awaiting_response": True}
