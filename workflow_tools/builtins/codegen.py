import asyncio
from pathlib import Path
from typing import Optional

from config.types import RuntimeSettings
from workflow_runtime.errors import WorkflowError
from workflow_tools import codegen
from workflow_tools.interfaces import CapabilityModule


class CodegenCapabilities(CapabilityModule):
    """`codegen.*`: steps used by the service generation document."""

    def __init__(self, settings: Optional[RuntimeSettings] = None):
        self.settings = settings or RuntimeSettings()

    @property
    def name(self) -> str:
        return "codegen"

    async def render_module(self, args, context):
        if not isinstance(args, dict) or not args.get("service_name"):
            raise WorkflowError("render_module requires 'service_name' and 'functions'")
        functions = args.get("functions") or []
        if isinstance(functions, str):
            functions = [functions]
        functions = list(functions) + list(args.get("extra_functions") or [])
        source = codegen.render_module(args["service_name"], functions)
        return {"source": source, "service_name": args["service_name"], "functions": functions}

    async def write_module(self, args, context):
        if not isinstance(args, dict) or not all(args.get(key) for key in ("path", "source", "required_function")):
            raise WorkflowError("write_module requires 'path', 'source' and 'required_function'")
        path = Path(args["path"])
        if not path.is_absolute():
            path = self.settings.resolve_path(args["path"])
        return await asyncio.to_thread(
            codegen.write_module, path, args["source"], args["required_function"]
        )
