"""
Interpreter entry point.

`Interpreter.run` resolves a document path, loads the document, builds an
execution context and runs one operation. It never raises: every failure
is returned as `RunResult(success=False, error=..., trace=...)`.

`create_interpreter()` wires the default object graph: loader, revision
store, capability directory, function registry with built-ins, capability
resolver and step executor. The resolver and executor receive
`Interpreter.run` as their sub-workflow runner.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from config.types import RuntimeSettings
from workflow_runtime.conditions import ConditionEvaluator
from workflow_runtime.context import (
    DEFAULT_CLIENT_ID,
    DEFAULT_USER,
    ExecutionContext,
    create_context,
)
from workflow_runtime.errors import DocumentNotFoundError, OperationNotFoundError
from workflow_runtime.loader import DocumentLoader
from workflow_runtime.logging_setup import configure_logging
from workflow_runtime.revisions import RevisionStore
from workflow_runtime.step_executor import StepExecutor
from workflow_runtime.templates import TemplateResolver
from workflow_runtime.types import Document, RunResult
from workflow_tools.builtins import create_default_registry
from workflow_tools.directory import (
    CapabilityDirectory,
    InMemoryCapabilityDirectory,
    JsonCapabilityDirectory,
)
from workflow_tools.interfaces import OutputChannel, TextService
from workflow_tools.registry import FunctionRegistry
from workflow_tools.resolver import CapabilityResolver

logger = logging.getLogger(__name__)

SYSTEM_DOCUMENT = "main-system"
CONCERN_OPERATION = "concern"


@dataclass
class ConcernResult:
    """Outcome of checking one document's concern."""

    file: str
    priority: float
    triggered: bool
    result: Optional[RunResult] = None
    error: Optional[str] = None


class Interpreter:
    """Runs operations of workflow documents."""

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        registry: Optional[FunctionRegistry] = None,
        directory: Optional[CapabilityDirectory] = None,
        loader: Optional[DocumentLoader] = None,
        revisions: Optional[RevisionStore] = None,
        channel: Optional[OutputChannel] = None,
        text_service: Optional[TextService] = None,
    ):
        self.settings = settings or RuntimeSettings()
        self.loader = loader or DocumentLoader(
            self.settings.documents_root, self.settings.loader_cache_ttl_seconds
        )
        self.revisions = revisions or RevisionStore(
            self.settings.resolve_path(self.settings.revisions_dir), loader=self.loader
        )
        self.directory = directory
        self.registry = registry or create_default_registry(
            self.settings,
            channel=channel,
            text_service=text_service,
            revisions=self.revisions,
            directory=directory,
        )
        self.templates = TemplateResolver()
        self.evaluator = ConditionEvaluator(self.templates)
        self.resolver = CapabilityResolver(
            self.registry,
            directory=self.directory,
            run_workflow=self.run,
            settings=self.settings,
            templates=self.templates,
        )
        self.executor = StepExecutor(
            self.resolver,
            run_workflow=self.run,
            evaluator=self.evaluator,
            templates=self.templates,
        )

    # ------------------------------------------------------------------
    # Path resolution
    # ------------------------------------------------------------------

    @property
    def documents_root(self) -> Path:
        return Path(self.settings.documents_root)

    def _absolute(self, file: str) -> Path:
        path = Path(file)
        return path if path.is_absolute() else self.documents_root / path

    def candidate_paths(self, file: str, client_id: Optional[str] = None) -> Iterator[Path]:
        """Heuristic search locations, in order."""
        bases = []
        if client_id and client_id != DEFAULT_CLIENT_ID:
            bases.append(self.documents_root / "clients" / client_id)
        bases.append(self.documents_root)
        bases.extend(self.documents_root / prefix for prefix in self.settings.document_search_prefixes)

        extensions = self.settings.document_extensions
        stem = file
        for extension in extensions:
            if file.endswith(extension):
                stem = file[: -len(extension)]
                break
        variants = [file]
        for variant in [stem] + [stem + extension for extension in extensions]:
            if variant not in variants:
                variants.append(variant)

        for base in bases:
            for variant in variants:
                yield base / variant

    async def resolve_document_path(
        self, file: str, client_id: Optional[str] = None, context: Optional[ExecutionContext] = None
    ) -> str:
        """Directory-assisted -> literal -> heuristic search.

        Raises:
            DocumentNotFoundError: If no candidate exists
        """
        if not file or not isinstance(file, str):
            raise DocumentNotFoundError(repr(file))

        if self.directory is not None:
            try:
                record = await self.directory.resolve_capability(f"file_resolution_{file}", context)
            except Exception as e:
                logger.warning(f"Directory file resolution failed for {file}: {e}")
                record = None
            if record is not None:
                resolved = self._absolute(record.provider)
                if resolved.is_file():
                    logger.debug(f"Directory resolved {file} -> {resolved}")
                    return str(resolved)
                logger.warning(f"Directory path {resolved} for {file} does not exist, falling back")

        literal = self._absolute(file)
        if literal.is_file():
            return str(literal)

        for candidate in self.candidate_paths(file, client_id):
            if candidate.is_file():
                logger.warning(f"Resolved {file} by heuristic search -> {candidate}")
                return str(candidate)

        raise DocumentNotFoundError(file)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def build_context(
        self,
        document: Document,
        operation: str,
        input: Any = None,
        parent: Optional[ExecutionContext] = None,
        client_id: Optional[str] = None,
    ) -> ExecutionContext:
        """Fresh context for a document run.

        A parent contributes its identity and its memory; the child's own input
        and execution identity take precedence over inherited memory keys.
        """
        agent_id = document.id or (Path(document.path).stem if document.path else None)
        metadata: Dict[str, Any] = {"document_path": document.path}
        options: Dict[str, Any] = {
            "agent_id": agent_id,
            "operation": operation,
            "input": input,
            "client_id": client_id,
            "document_identity": document.identity.model_dump(exclude_none=True) if document.identity else {},
        }
        if parent is not None:
            metadata["parent_execution_id"] = parent.execution_id
            if parent.user != DEFAULT_USER:
                options["user"] = parent.user
            options["channel"] = parent.channel
            options["context"] = parent.legacy
            if client_id is None and parent.client_id != DEFAULT_CLIENT_ID:
                options["client_id"] = parent.client_id
        options["metadata"] = metadata
        context = create_context(**options)
        if parent is not None:
            memory = dict(parent.memory)
            memory.update(context.memory)
            context.memory = memory
        return context

    async def run(
        self,
        file: str,
        operation: str = "default",
        input: Any = None,
        context: Optional[ExecutionContext] = None,
        client_id: Optional[str] = None,
    ) -> RunResult:
        """Run `operation` of the document at `file`. Never raises."""
        run_context: Optional[ExecutionContext] = None
        operation = operation or "default"
        try:
            path = await self.resolve_document_path(
                file, client_id or (context.client_id if context is not None else None), context
            )
            document = await self.loader.load(path)
            steps = document.get_operation(operation)
            if steps is None:
                raise OperationNotFoundError(operation, path)

            run_context = self.build_context(document, operation, input, context, client_id)
            logger.info(f"Running {run_context.agent_id}:{operation} ({run_context.execution_id})")
            result = await self.executor.run(steps, run_context, document)
            logger.info(f"Finished {run_context.agent_id}:{operation} ({len(result.trace)} steps)")
            return RunResult(success=True, result=result.output, context=run_context, trace=result.trace)
        except Exception as e:
            logger.error(f"Run of {file}:{operation} failed: {e}")
            return RunResult(
                success=False,
                error=str(e),
                context=run_context,
                trace=list(run_context.trace) if run_context is not None else [],
            )

    async def run_system_operation(
        self, operation: str, input: Any = None, client_id: Optional[str] = None
    ) -> RunResult:
        return await self.run(SYSTEM_DOCUMENT, operation, input=input, client_id=client_id)

    async def run_agent_operation(
        self, agent_id: str, operation: str, input: Any = None, client_id: Optional[str] = None
    ) -> RunResult:
        if client_id and client_id != DEFAULT_CLIENT_ID:
            file = f"clients/{client_id}/agents/{agent_id}"
        else:
            file = f"agents/{agent_id}"
        return await self.run(file, operation, input=input, client_id=client_id)

    # ------------------------------------------------------------------
    # Concerns
    # ------------------------------------------------------------------

    async def _load_with_concern(self, file: str, client_id: Optional[str] = None) -> Document:
        path = await self.resolve_document_path(file, client_id)
        return await self.loader.load(path)

    async def _run_concern(self, document: Document, input: Any, client_id: Optional[str]) -> Optional[RunResult]:
        context = self.build_context(document, CONCERN_OPERATION, input, client_id=client_id)
        if not self.evaluator.evaluate(document.concern.condition, context):
            return None
        logger.info(f"Concern of {context.agent_id} triggered (priority {document.concern.priority})")
        try:
            result = await self.executor.run(document.concern.action, context, document)
        except Exception as e:
            return RunResult(success=False, error=str(e), context=context, trace=list(context.trace))
        return RunResult(success=True, result=result.output, context=context, trace=result.trace)

    async def check_concern(
        self, file: str, input: Any = None, client_id: Optional[str] = None
    ) -> Optional[RunResult]:
        """Run the document's concern action when its condition holds; None otherwise."""
        try:
            document = await self._load_with_concern(file, client_id)
        except Exception as e:
            logger.error(f"Concern check of {file} failed: {e}")
            return RunResult(success=False, error=str(e))
        if document.concern is None:
            return None
        return await self._run_concern(document, input, client_id)

    async def check_concerns(
        self, files: List[str], input: Any = None, client_id: Optional[str] = None
    ) -> List[ConcernResult]:
        """Check concerns of many documents, highest priority first."""
        loaded = []
        results: List[ConcernResult] = []
        for file in files:
            try:
                document = await self._load_with_concern(file, client_id)
            except Exception as e:
                logger.error(f"Concern check of {file} failed: {e}")
                results.append(ConcernResult(file=file, priority=0.0, triggered=False, error=str(e)))
                continue
            if document.concern is not None:
                loaded.append((file, document))

        loaded.sort(key=lambda item: item[1].concern.priority, reverse=True)
        checked = []
        for file, document in loaded:
            result = await self._run_concern(document, input, client_id)
            checked.append(
                ConcernResult(
                    file=file,
                    priority=document.concern.priority,
                    triggered=result is not None,
                    result=result,
                    error=result.error if result is not None and not result.success else None,
                )
            )
        return checked + results

    def health(self) -> Dict[str, Any]:
        """Readiness of each component."""
        sample = create_context(agent_id="health-check")
        return {
            "documents_root": self.documents_root.is_dir(),
            "loader": self.loader.cache_stats(),
            "registry": self.registry.stats(),
            "directory": self.directory is not None,
            "auto_generation": self.settings.auto_generation_enabled,
            "context_creation": sample.agent_id == "health-check",
            "generated_modules": self.resolver.generation_count,
        }


def create_directory(settings: RuntimeSettings) -> CapabilityDirectory:
    if settings.capability_directory_path:
        return JsonCapabilityDirectory(
            settings.resolve_path(settings.capability_directory_path),
            min_confidence=settings.capability_min_confidence,
        )
    return InMemoryCapabilityDirectory(min_confidence=settings.capability_min_confidence)


def create_interpreter(settings: Optional[RuntimeSettings] = None, **overrides: Any) -> Interpreter:
    """Build an interpreter with the default object graph.

    Args:
        settings: Runtime settings; read from the environment when omitted,
            in which case logging is also configured from `log_level`
        **overrides: Replacement collaborators (registry, directory, loader,
            revisions, channel, text_service)
    """
    if settings is None:
        from config.manager import env_manager

        settings = env_manager.load().get_runtime_settings()
        configure_logging(settings.log_level)
    overrides.setdefault("directory", create_directory(settings))
    return Interpreter(settings, **overrides)
