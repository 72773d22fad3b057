from .config import Settings, load_settings
from .exceptions import AuthError, ConfigError, ExportError, PlanningError, QueryError, StorageError, WriteError
from .exporter import ExportOrchestrator, build_orchestrator

__all__ = [
    "AuthError",
    "ConfigError",
    "ExportError",
    "ExportOrchestrator",
    "PlanningError",
    "QueryError",
    "Settings",
    "StorageError",
    "WriteError",
    "build_orchestrator",
    "load_settings",
]
