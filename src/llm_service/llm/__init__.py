"""
LLM access for the arena: the LiteLLM client, its schemas and the roster.
"""

from llm_service.llm.client import LLMClient
from llm_service.llm.providers import (
    AVAILABLE_MODELS,
    estimate_cost,
    get_model_info,
    list_available_models,
)
from llm_service.llm.schemas import ChatMessage, ChatRequest, ChatResponse, ModelInfo

__all__ = [
    "LLMClient",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ModelInfo",
    "AVAILABLE_MODELS",
    "estimate_cost",
    "get_model_info",
    "list_available_models",
]
