"""Workflow document loader.

Reads YAML/JSON documents from disk, validates their structure and keeps a
short-lived cache keyed by absolute path. Cache entries are immutable tuples
that are replaced on refresh, so concurrent readers see either the old or the
new document, never a half-updated one.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional, Union

import yaml
from pydantic import ValidationError

from workflow_runtime.errors import (
    DocumentNotFoundError,
    DocumentParseError,
    DocumentSchemaError,
)
from workflow_runtime.types import Document

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 5.0


class CacheEntry(NamedTuple):
    document: Document
    loaded_at: float


def parse_document_text(content: str, path: str) -> Any:
    """Parse document text as JSON or YAML.

    JSON is tried first when the path ends in .json or the text looks like a
    JSON object; otherwise YAML is tried first and JSON is the fallback.
    """
    trimmed = content.strip()
    looks_like_json = path.endswith(".json") or (
        trimmed.startswith("{") and trimmed.endswith("}")
    )

    if looks_like_json:
        try:
            return json.loads(content)
        except json.JSONDecodeError as json_error:
            if path.endswith(".json"):
                raise DocumentParseError(path, str(json_error)) from json_error

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as yaml_error:
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            raise DocumentParseError(path, str(yaml_error)) from yaml_error


def validate_document_data(data: Any, path: str) -> None:
    """Structural validation only; expressions and module names are not checked."""
    if not isinstance(data, dict):
        raise DocumentSchemaError(path, "must be an object")

    operations = data.get("operations")
    if not isinstance(operations, dict):
        raise DocumentSchemaError(path, "missing 'operations' section")

    identity = data.get("self")
    if identity is not None:
        if not isinstance(identity, dict):
            raise DocumentSchemaError(path, "self must be an object")
        if "id" in identity and not isinstance(identity["id"], str):
            raise DocumentSchemaError(path, "self.id must be a string")

    for op_name, steps in operations.items():
        if not isinstance(steps, list):
            raise DocumentSchemaError(
                path, f"operation '{op_name}' must be an array of steps"
            )

    concern = data.get("concern")
    if concern is not None:
        if not isinstance(concern, dict):
            raise DocumentSchemaError(path, "concern must be an object")
        if not isinstance(concern.get("if"), str) or not concern.get("if"):
            raise DocumentSchemaError(path, "concern.if must be a string")
        if not isinstance(concern.get("action"), list):
            raise DocumentSchemaError(path, "concern.action must be an array")
        priority = concern.get("priority")
        if isinstance(priority, bool) or not isinstance(priority, (int, float)):
            raise DocumentSchemaError(path, "concern.priority must be a number")


def build_document(data: Dict[str, Any], path: str) -> Document:
    """Validate parsed data and wrap it in a Document model."""
    validate_document_data(data, path)
    try:
        document = Document.model_validate(data)
    except ValidationError as e:
        raise DocumentSchemaError(path, str(e)) from e
    document.path = path
    return document


class DocumentLoader:
    """Loads documents with a path-keyed TTL cache."""

    def __init__(self, base_dir: Union[str, Path] = ".", cache_ttl: float = DEFAULT_CACHE_TTL):
        self.base_dir = Path(base_dir)
        self.cache_ttl = cache_ttl
        self._cache: Dict[str, CacheEntry] = {}

    def absolute_path(self, path: Union[str, Path]) -> str:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.base_dir / candidate
        return str(candidate.resolve())

    async def load(self, path: Union[str, Path]) -> Document:
        """Load and validate a document.

        Raises:
            DocumentNotFoundError: The file does not exist
            DocumentParseError: The file is neither YAML nor JSON
            DocumentSchemaError: The structure is invalid
        """
        absolute_path = self.absolute_path(path)

        cached = self._cache.get(absolute_path)
        if cached and time.monotonic() - cached.loaded_at < self.cache_ttl:
            logger.debug(f"Document cache hit: {absolute_path}")
            return cached.document

        file_path = Path(absolute_path)
        if not file_path.is_file():
            raise DocumentNotFoundError(absolute_path)

        try:
            content = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except FileNotFoundError as e:
            raise DocumentNotFoundError(absolute_path) from e
        except UnicodeDecodeError as e:
            raise DocumentParseError(absolute_path, str(e)) from e

        data = parse_document_text(content, absolute_path)
        document = build_document(data, absolute_path)

        self._cache[absolute_path] = CacheEntry(document, time.monotonic())
        logger.debug(f"Loaded document {document.id or '<anonymous>'} from {absolute_path}")
        return document

    def invalidate(self, path: Union[str, Path]) -> None:
        """Drop one cache entry."""
        self._cache.pop(self.absolute_path(path), None)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        entries = list(self._cache.items())
        return {
            "size": len(entries),
            "files": [path for path, _ in entries],
            "last_updated": max((entry.loaded_at for _, entry in entries), default=None),
        }

    async def preload(self, paths) -> Dict[str, Optional[str]]:
        """Warm the cache; returns path -> error message (None when loaded)."""
        results: Dict[str, Optional[str]] = {}
        for path in paths:
            try:
                await self.load(path)
                results[str(path)] = None
            except Exception as e:
                logger.warning(f"Failed to preload {path}: {e}")
                results[str(path)] = str(e)
        return results
