"""`files.*`: plain filesystem primitives, relative to documents_root."""

import asyncio
from pathlib import Path
from typing import Optional

from config.types import RuntimeSettings
from workflow_runtime.errors import WorkflowError
from workflow_runtime.revisions import atomic_write_text
from workflow_tools.interfaces import CapabilityModule


class FileCapabilities(CapabilityModule):
    def __init__(self, settings: Optional[RuntimeSettings] = None):
        self.settings = settings or RuntimeSettings()

    @property
    def name(self) -> str:
        return "files"

    def _path(self, args) -> Path:
        value = args.get("path") if isinstance(args, dict) else args
        if not value:
            raise WorkflowError("A 'path' argument is required")
        path = Path(str(value))
        return path if path.is_absolute() else self.settings.resolve_path(str(value))

    async def read_file(self, args, context):
        path = self._path(args)
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return {"content": content}

    async def write_file(self, args, context):
        if not isinstance(args, dict) or "content" not in args:
            raise WorkflowError("write_file requires 'path' and 'content'")
        path = self._path(args)
        content = args["content"] if isinstance(args["content"], str) else str(args["content"])
        await asyncio.to_thread(atomic_write_text, path, content)
        return {"size": path.stat().st_size, "path": str(path)}

    async def file_exists(self, args, context):
        return {"exists": self._path(args).exists()}

    async def list_files(self, args, context):
        path = self._path(args)
        entries = await asyncio.to_thread(lambda: sorted(path.iterdir()))
        return {
            "files": [entry.name for entry in entries if entry.is_file()],
            "directories": [entry.name for entry in entries if entry.is_dir()],
        }
