"""Language-model clients and the model registry."""

from .llm_client import (
    CallLogger,
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponse,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)
from .providers import AnthropicClient, OpenAIClient, RoutingClient, build_client
from .registry import DEFAULT_ORCHESTRATOR, DEFAULT_SUB_AGENT, MODELS, ModelInfo, get_model

__all__ = [
    "AnthropicClient",
    "CallLogger",
    "DEFAULT_ORCHESTRATOR",
    "DEFAULT_SUB_AGENT",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponse",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "MODELS",
    "ModelInfo",
    "OpenAIClient",
    "RoutingClient",
    "build_client",
    "get_model",
]
