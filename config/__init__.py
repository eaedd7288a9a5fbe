"""
Workflow runtime configuration package.

This package contains the environment-driven settings for the workflow runtime.
"""

from config.manager import EnvironmentManager, env_manager
from config.types import RuntimeSettings

# Re-export the singleton instance for easy access
env = env_manager

__all__ = [
    "EnvironmentManager",
    "env_manager",
    "env",
    "RuntimeSettings",
]
