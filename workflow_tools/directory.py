"""
Capability directory backends.

The directory maps a capability name (`xero_integration`,
`xero_get_invoices`, `file_resolution_agents/x.yaml`, ...) to the provider
that implements it, with a confidence score.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

from workflow_runtime.revisions import atomic_write_text
from workflow_runtime.types import utc_timestamp

logger = logging.getLogger(__name__)


class CapabilityRecord(BaseModel):
    """A provider known to satisfy a capability."""

    capability: str
    provider: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    updated_at: str = Field(default_factory=utc_timestamp)


class CapabilityDirectory(ABC):
    """Abstract base class for capability lookup/write services."""

    def __init__(self, min_confidence: float = 0.0):
        self.min_confidence = min_confidence

    @abstractmethod
    async def _get(self, capability: str) -> Optional[CapabilityRecord]:
        pass

    @abstractmethod
    async def _put(self, record: CapabilityRecord) -> None:
        pass

    async def resolve_capability(self, capability: str, context=None) -> Optional[CapabilityRecord]:
        """Return the provider record, or None when unknown or below min_confidence."""
        record = await self._get(capability)
        if record is None:
            return None
        if record.confidence < self.min_confidence:
            logger.debug(
                f"Ignoring provider {record.provider} for {capability}: "
                f"confidence {record.confidence} < {self.min_confidence}"
            )
            return None
        return record

    async def store_capability_provider(
        self, capability: str, provider: str, confidence: float = 1.0
    ) -> CapabilityRecord:
        record = CapabilityRecord(capability=capability, provider=provider, confidence=confidence)
        await self._put(record)
        logger.info(f"Stored provider {provider} for capability {capability}")
        return record


class InMemoryCapabilityDirectory(CapabilityDirectory):
    """Dictionary-backed directory."""

    def __init__(self, records: Optional[Dict[str, str]] = None, min_confidence: float = 0.0):
        super().__init__(min_confidence)
        self._records: Dict[str, CapabilityRecord] = {}
        for capability, provider in (records or {}).items():
            self._records[capability] = CapabilityRecord(capability=capability, provider=provider)

    async def _get(self, capability: str) -> Optional[CapabilityRecord]:
        return self._records.get(capability)

    async def _put(self, record: CapabilityRecord) -> None:
        self._records[record.capability] = record

    def __len__(self) -> int:
        return len(self._records)


class JsonCapabilityDirectory(CapabilityDirectory):
    """Directory persisted as a JSON file, rewritten atomically on every store."""

    def __init__(self, path: Union[str, Path], min_confidence: float = 0.0):
        super().__init__(min_confidence)
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._logger = logger.getChild("json_directory")

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            self._logger.warning(f"Ignoring unreadable capability directory {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    async def _get(self, capability: str) -> Optional[CapabilityRecord]:
        data = await asyncio.to_thread(self._read_all)
        entry = data.get(capability)
        if not isinstance(entry, dict):
            return None
        return CapabilityRecord(capability=capability, **{k: v for k, v in entry.items() if k != "capability"})

    async def _put(self, record: CapabilityRecord) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            data[record.capability] = record.model_dump(exclude={"capability"})
            content = json.dumps(data, indent=2, sort_keys=True)
            await asyncio.to_thread(atomic_write_text, self.path, content)
            self._logger.debug(f"Persisted {len(data)} capability records to {self.path}")
