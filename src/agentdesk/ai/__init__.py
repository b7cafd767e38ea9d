"""AI orchestration layer for agentdesk."""

from .orchestration import CompletionOrchestrator
from .client import ProviderAdapter
from .engines import EngineManager
from .providers import ModelCatalog, ModelProvider, ProviderRegistry

__all__ = [
    "CompletionOrchestrator",
    "EngineManager",
    "ModelCatalog",
    "ModelProvider",
    "ProviderAdapter",
    "ProviderRegistry",
]
