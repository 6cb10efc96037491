"""Built-in inference and tool providers and dynamic provider loading."""

import importlib
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Type

from toolchat.models import (
    Identity,
    Message,
    ModelEvent,
    ModelRequest,
    ReasoningDelta,
    StepFinish,
    TextDelta,
)
from toolchat.services.interfaces import InferenceProvider, ToolExecutor


logger = logging.getLogger(__name__)


class ProviderLoadingError(Exception):
    """Raised when a configured provider cannot be loaded."""
    pass


class EchoInferenceProvider(InferenceProvider):
    """Development provider that answers by echoing the latest user message."""

    def __init__(self, prefix: str = "You said: ", reasoning_models: Optional[List[str]] = None):
        self.prefix = prefix
        self.reasoning_models = reasoning_models or ["chat-model-reasoning"]

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        latest = next(
            (m for m in reversed(request.messages) if isinstance(m, Message) and m.role == "user"),
            None
        )
        text = latest.text_content() if latest else ""

        if request.model_id in self.reasoning_models:
            yield ReasoningDelta(text=f"The user wrote {len(text.split())} words.")

        for word in f"{self.prefix}{text}".split(" "):
            yield TextDelta(text=word + " ")
        yield StepFinish(finish_reason="stop")


class NullToolExecutor(ToolExecutor):
    """Tool executor for deployments without a tool provider."""

    async def get_tool_declarations(self, identity: Identity, tool_slugs: List[str]) -> List[Dict[str, Any]]:
        return []

    async def execute(self, tool_slug: str, arguments: Dict[str, Any], connection_id: Optional[str] = None) -> Any:
        return {"successful": False, "error": "No tool executor configured"}


BUILTIN_PROVIDERS = {
    "echo": "toolchat.services.providers:EchoInferenceProvider",
    "null": "toolchat.services.providers:NullToolExecutor",
}


def import_component(path: str) -> Type:
    """Import a class from ``module:Class`` or ``module.Class``."""
    path = BUILTIN_PROVIDERS.get(path, path)
    if ":" in path:
        module_path, class_name = path.split(":", 1)
    elif "." in path:
        module_path, class_name = path.rsplit(".", 1)
    else:
        raise ProviderLoadingError(f"Provider path must be 'module:Class', got {path!r}")

    try:
        module = importlib.import_module(module_path)
        component = getattr(module, class_name)
    except ImportError as e:
        raise ProviderLoadingError(f"Failed to import {module_path}: {e}")
    except AttributeError as e:
        raise ProviderLoadingError(f"Class {class_name} not found in {module_path}: {e}")

    if not isinstance(component, type):
        raise ProviderLoadingError(f"{class_name} is not a class")
    return component


def load_inference_provider(path: str, options: Optional[Dict[str, Any]] = None) -> InferenceProvider:
    provider_class = import_component(path)
    if not issubclass(provider_class, InferenceProvider):
        raise ProviderLoadingError(f"{provider_class.__name__} must inherit from InferenceProvider")
    logger.info(f"Loaded inference provider {provider_class.__name__}")
    return provider_class(**(options or {}))


def load_tool_executor(path: Optional[str]) -> ToolExecutor:
    executor_class = import_component(path or "null")
    if not issubclass(executor_class, ToolExecutor):
        raise ProviderLoadingError(f"{executor_class.__name__} must inherit from ToolExecutor")
    logger.info(f"Loaded tool executor {executor_class.__name__}")
    return executor_class()
