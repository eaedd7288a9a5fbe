from pathlib import Path
from typing import Dict, Any, Optional, List, Callable
from config.types import RuntimeSettings, BUILTIN_GENERATION_DOCUMENT
import logging
import os


class EnvironmentManager:
    """
    Environment manager holding the runtime settings of the workflow engine.

    Settings start from DEFAULT_SETTINGS, are overridden by the first .env file
    found, then by OS environment variables named after the upper-cased setting.
    """

    _instance = None

    # Default settings with their types
    DEFAULT_SETTINGS = {
        # Document loading
        "documents_root": (".", str),
        "document_search_prefixes": ("agents,system,templates", str),
        "document_extensions": (".yaml,.yml,.json,.r", str),
        "loader_cache_ttl_seconds": (5.0, float),
        # Capability synthesis
        "generated_modules_dir": (".generated", str),
        "auto_generation_enabled": (True, bool),
        "generation_document": (BUILTIN_GENERATION_DOCUMENT, str),
        "generation_operation": ("auto_generate_service_module", str),
        # Capability directory
        "capability_directory_path": (None, str),
        "capability_min_confidence": (0.0, float),
        # Document revisions
        "revisions_dir": (".revisions", str),
        # Logging
        "log_level": ("INFO", str),
    }

    # Create mapping dynamically - each setting can be set via its uppercase env var
    ENV_MAPPING = {setting.upper(): setting for setting in DEFAULT_SETTINGS.keys()}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize environment with default values"""
        self.env_variables: Dict[str, str] = {}
        self._providers: List[Callable[[], Dict[str, Any]]] = []
        self.settings: Dict[str, Any] = {}
        self.logger = logging.getLogger(__name__)

        # Initialize settings with default values
        for key, (default_value, _) in self.DEFAULT_SETTINGS.items():
            self.settings[key] = default_value

        self._load_from_env_file()

    def _convert_value(self, value: str, target_type: type) -> Any:
        """Convert string value to target type"""
        if target_type == bool:
            return value.lower() in ("1", "true", "yes")
        return target_type(value)

    def _apply(self, key: str, value: str) -> None:
        """Store a raw value and update the mapped setting if there is one"""
        self.env_variables[key] = value
        setting_name = self.ENV_MAPPING.get(key)
        if setting_name is None:
            return
        _, target_type = self.DEFAULT_SETTINGS[setting_name]
        try:
            self.settings[setting_name] = self._convert_value(value, target_type)
        except ValueError as e:
            self.logger.warning(f"Ignoring invalid value for {key}: {e}")

    def _load_from_env_file(self):
        """Find and load variables from a .env file"""
        env_file_paths = [Path.cwd() / ".env"]

        try:
            env_file_paths.append(Path.home() / ".env")
        except (RuntimeError, OSError):
            # Skip home directory if it can't be determined
            pass

        for env_path in env_file_paths:
            if env_path.exists() and env_path.is_file():
                self.logger.info(f"Loading environment from: {env_path}")
                self._parse_env_file(env_path)
                break

    def _parse_env_file(self, env_file_path: Path):
        """Parse a .env file and load variables into settings"""
        try:
            with open(env_file_path, "r") as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        key, value = line.split("=", 1)
                        key = key.strip()
                        value = value.strip()

                        # Remove quotes if present
                        if (value.startswith('"') and value.endswith('"')) or (
                            value.startswith("'") and value.endswith("'")
                        ):
                            value = value[1:-1]

                        self._apply(key, value)
        except OSError as e:
            self.logger.error(f"Error parsing .env file {env_file_path}: {e}")

    def register_provider(self, provider: Callable[[], Dict[str, Any]]):
        """Register a provider function that returns additional settings"""
        self._providers.append(provider)
        return self

    def load(self):
        """Load all environment information"""
        self._load_from_env_file()

        for key, value in os.environ.items():
            if key in self.ENV_MAPPING:
                self._apply(key, value)

        for provider in self._providers:
            try:
                additional_data = provider()
                for key, value in additional_data.get("settings", {}).items():
                    if key in self.settings:
                        self.settings[key] = value
            except Exception as e:
                self.logger.error(f"Error from settings provider: {e}")

        return self

    def get_setting(self, name: str, default: Any = None) -> Any:
        """Get a setting value by name"""
        return self.settings.get(name, default)

    def set_setting(self, name: str, value: Any) -> None:
        """Override a setting at runtime"""
        if name not in self.DEFAULT_SETTINGS:
            raise KeyError(f"Unknown setting: {name}")
        self.settings[name] = value

    def get_path_setting(self, name: str) -> Optional[Path]:
        """Get a path setting resolved against documents_root"""
        value = self.settings.get(name)
        if value is None:
            return None
        path = Path(value)
        if not path.is_absolute() and name != "documents_root":
            path = Path(self.settings["documents_root"]) / path
        return path.resolve()

    def get_runtime_settings(self) -> RuntimeSettings:
        """Typed snapshot of the current settings"""
        return RuntimeSettings.from_settings(self.settings)


# Create singleton instance
env_manager = EnvironmentManager()
