import asyncio
import logging

import psutil

from workflow_tools.interfaces import CapabilityModule

logger = logging.getLogger(__name__)


class SystemCapabilities(CapabilityModule):
    """`system.*`: host statistics for health-check documents."""

    @property
    def name(self) -> str:
        return "system"

    async def stats(self, args, context):
        path = args.get("path", "/") if isinstance(args, dict) else "/"

        def _collect():
            memory = psutil.virtual_memory()
            disk = psutil.disk_usage(path)
            return {
                "cpu_usage": psutil.cpu_percent(interval=0.1),
                "cpu_count": psutil.cpu_count(),
                "memory_usage": memory.percent,
                "memory_available": memory.available,
                "disk_usage": disk.percent,
                "disk_free": disk.free,
            }

        stats = await asyncio.to_thread(_collect)
        logger.debug(f"System stats: cpu={stats['cpu_usage']}% memory={stats['memory_usage']}%")
        return stats
