"""
Core built-ins: logging, echo, timing and self-modification.

`generate_agent` backs the `self.modify` keyword. It either modifies an
existing document (`changes` merged into it, or a full `document`
replacement) or writes a new agent document from `intent`/`operations`.
Every write goes through the RevisionStore and is validated first.
"""

import asyncio
import copy
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from config.types import RuntimeSettings
from workflow_runtime.errors import WorkflowError
from workflow_runtime.loader import build_document, parse_document_text
from workflow_runtime.revisions import RevisionStore
from workflow_runtime.types import utc_timestamp
from workflow_tools.interfaces import CapabilityModule

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def deep_merge(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `changes` into a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def make_agent_id(intent: str) -> str:
    cleaned = re.sub(r"[^a-z0-9\s]", "", intent.lower())
    cleaned = re.sub(r"\s+", "-", cleaned.strip())[:30] or "agent"
    return f"{cleaned}-{int(time.time() * 1000) % 36**4:x}"


class CoreCapabilities(CapabilityModule):
    """Functions available as `core.*` and as bare/shorthand steps."""

    def __init__(self, settings: Optional[RuntimeSettings] = None, revisions: Optional[RevisionStore] = None):
        self.settings = settings or RuntimeSettings()
        self.revisions = revisions

    @property
    def name(self) -> str:
        return "core"

    async def log(self, args, context):
        if isinstance(args, dict):
            message = args.get("message", args)
            level = LOG_LEVELS.get(str(args.get("level", "info")).lower(), logging.INFO)
        else:
            message, level = args, logging.INFO
        agent = context.agent_id if context is not None else "-"
        logger.log(level, f"[{agent}] {message}")
        return None

    async def echo(self, args, context):
        return args

    async def sleep(self, args, context):
        if isinstance(args, dict):
            seconds = args.get("seconds")
            if seconds is None:
                seconds = float(args.get("ms", 0)) / 1000
        else:
            seconds = args or 0
        seconds = max(float(seconds), 0.0)
        await asyncio.sleep(seconds)
        return {"slept": seconds}

    async def now(self, args, context):
        return utc_timestamp()

    async def generate_agent(self, args, context):
        """Modify the running document or write a new agent document."""
        if self.revisions is None:
            raise WorkflowError("Document modification requires a revision store")
        args = args if isinstance(args, dict) else {"intent": args}

        if "changes" in args or "document" in args or "content" in args:
            return await self._modify(args, context)
        return await self._create(args, context)

    def _target_path(self, value: Optional[str]) -> Optional[Path]:
        if not value:
            return None
        path = Path(value)
        return path if path.is_absolute() else self.settings.resolve_path(value)

    async def _modify(self, args: Dict[str, Any], context) -> Dict[str, Any]:
        target = self._target_path(args.get("file") or args.get("path"))
        if target is None and context is not None:
            target = self._target_path(context.metadata.get("document_path"))
        if target is None:
            raise WorkflowError("self.modify needs a target document")

        if "changes" in args:
            if not isinstance(args["changes"], dict):
                raise WorkflowError("self.modify changes must be an object")
            current_text = await asyncio.to_thread(target.read_text, encoding="utf-8")
            current = parse_document_text(current_text, str(target))
            content = deep_merge(current, args["changes"])
        else:
            content = args.get("document", args.get("content"))
            if isinstance(content, str):
                content = parse_document_text(content, str(target))

        document = build_document(content, str(target))
        revision = await asyncio.to_thread(
            self.revisions.commit, target, content, args.get("message")
        )
        logger.info(f"Modified {target} -> revision {revision.digest[:12]}")
        return {
            "modified": True,
            "agent_id": document.id,
            "file_path": str(target),
            "revision": revision.digest,
        }

    async def _create(self, args: Dict[str, Any], context) -> Dict[str, Any]:
        intent = args.get("intent") or "custom"
        agent_id = args.get("agent_id") or args.get("agentId") or make_agent_id(intent)
        client_id = args.get("client_id") or (context.client_id if context is not None else None)

        target = self._target_path(args.get("output_path") or args.get("outputPath"))
        if target is None:
            if client_id and client_id != "default":
                target = self.settings.resolve_path(f"clients/{client_id}/{agent_id}.yaml")
            else:
                target = self.settings.resolve_path(f"agents/{agent_id}.yaml")

        content = {
            "self": {
                "id": agent_id,
                "intent": intent,
                "version": "1.0.0",
                "template": args.get("template", "basic_agent"),
            },
            "operations": args.get("operations")
            or {"default": [{"core.log": {"message": f"{agent_id} ready"}}]},
        }
        if args.get("concern"):
            content["concern"] = args["concern"]

        build_document(content, str(target))
        revision = await asyncio.to_thread(
            self.revisions.commit, target, content, args.get("message", f"create {agent_id}")
        )
        logger.info(f"Generated agent {agent_id} at {target}")
        return {
            "agent_id": agent_id,
            "file_path": str(target),
            "revision": revision.digest,
            "content": yaml.safe_load(yaml.safe_dump(content)),
        }
