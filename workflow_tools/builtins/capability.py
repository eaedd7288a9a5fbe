from typing import Optional

from workflow_runtime.errors import WorkflowError
from workflow_tools.directory import CapabilityDirectory
from workflow_tools.interfaces import CapabilityModule


class CapabilityDirectoryCapabilities(CapabilityModule):
    """`capability.*`: read and write the capability directory from documents."""

    def __init__(self, directory: Optional[CapabilityDirectory] = None):
        self.directory = directory

    @property
    def name(self) -> str:
        return "capability"

    def _require_directory(self) -> CapabilityDirectory:
        if self.directory is None:
            raise WorkflowError("No capability directory configured")
        return self.directory

    async def resolve(self, args, context):
        capability = args.get("capability") if isinstance(args, dict) else args
        record = await self._require_directory().resolve_capability(capability, context)
        if record is None:
            return {"found": False, "capability": capability}
        return {"found": True, **record.model_dump()}

    async def store_provider(self, args, context):
        if not isinstance(args, dict) or not args.get("capability") or not args.get("provider"):
            raise WorkflowError("store_provider requires 'capability' and 'provider'")
        record = await self._require_directory().store_capability_provider(
            args["capability"], args["provider"], float(args.get("confidence", 1.0))
        )
        return {"stored": True, **record.model_dump()}
