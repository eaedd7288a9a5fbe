from typing import Dict, Any, Optional, List
from pydantic import BaseModel, Field

from pathlib import Path

BUILTIN_GENERATION_DOCUMENT = str(
    Path(__file__).resolve().parent.parent
    / "workflow_tools"
    / "templates"
    / "service_integration.yaml"
)


def _split_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if not value:
        return []
    return [item.strip() for item in str(value).split(",") if item.strip()]


class RuntimeSettings(BaseModel):
    """Typed snapshot of the settings the interpreter is built from"""

    documents_root: str = "."
    document_search_prefixes: List[str] = Field(
        default_factory=lambda: ["agents", "system", "templates"]
    )
    document_extensions: List[str] = Field(
        default_factory=lambda: [".yaml", ".yml", ".json", ".r"]
    )
    loader_cache_ttl_seconds: float = 5.0
    generated_modules_dir: str = ".generated"
    revisions_dir: str = ".revisions"
    capability_directory_path: Optional[str] = None
    capability_min_confidence: float = 0.0
    auto_generation_enabled: bool = True
    generation_document: str = BUILTIN_GENERATION_DOCUMENT
    generation_operation: str = "auto_generate_service_module"
    log_level: str = "INFO"

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "RuntimeSettings":
        """Build from an EnvironmentManager settings dictionary"""
        values = {k: v for k, v in settings.items() if k in cls.model_fields and v is not None}
        for key in ("document_search_prefixes", "document_extensions"):
            if key in values:
                values[key] = _split_list(values[key])
        return cls(**values)

    def resolve_path(self, value: str) -> Path:
        """Resolve a setting path against documents_root"""
        path = Path(value)
        if not path.is_absolute():
            path = Path(self.documents_root) / path
        return path
