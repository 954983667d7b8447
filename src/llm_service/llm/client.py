"""
LiteLLM-backed completion client for the arena's decision requests.

Every roster model is reached through LiteLLM; most route via OpenRouter
with a single key, direct provider ids work when their key is configured.
"""

import os
import time
import uuid
from typing import Any

import litellm
from litellm import acompletion

from llm_service.config import Settings, get_logger
from llm_service.llm.schemas import ChatRequest, ChatResponse, ResponseMessage, Usage

# Settings field -> environment variable LiteLLM reads
PROVIDER_KEYS = {
    "openrouter_api_key": "OPENROUTER_API_KEY",
    "openai_api_key": "OPENAI_API_KEY",
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "google_api_key": "GOOGLE_API_KEY",
    "xai_api_key": "XAI_API_KEY",
}


class LLMClient:
    """Async chat completions for decision requests."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.logger = get_logger("llm_service.llm.client")

        configured = self._export_keys()
        if "OPENROUTER_API_KEY" not in configured:
            self.logger.warning("OpenRouter API key missing; roster calls will fail")

        # Roster models disagree on supported params; drop rather than fail
        litellm.drop_params = True

        self.logger.info("LLMClient initialized", extra={"providers": sorted(configured)})

    def _export_keys(self) -> list[str]:
        """Copy configured API keys into the environment for LiteLLM."""
        configured = []
        for field, env_key in PROVIDER_KEYS.items():
            value = getattr(self.settings, field, None)
            if value:
                os.environ[env_key] = value
                configured.append(env_key)
        return configured

    @staticmethod
    def _kwargs(request: ChatRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": [m.model_dump() for m in request.messages],
        }
        for name in ("temperature", "max_tokens", "timeout"):
            value = getattr(request, name)
            if value is not None:
                kwargs[name] = value
        return kwargs

    @staticmethod
    def _to_response(raw: Any, model: str, latency_ms: int) -> ChatResponse:
        choice = raw.choices[0]
        usage = None
        raw_usage = getattr(raw, "usage", None)
        if raw_usage:
            usage = Usage(
                prompt_tokens=raw_usage.prompt_tokens or 0,
                completion_tokens=raw_usage.completion_tokens or 0,
                total_tokens=raw_usage.total_tokens or 0,
            )
        return ChatResponse(
            id=getattr(raw, "id", None) or f"chatcmpl-{uuid.uuid4().hex[:8]}",
            model=model,
            message=ResponseMessage(content=choice.message.content),
            usage=usage,
            finish_reason=choice.finish_reason,
            latency_ms=latency_ms,
        )

    async def achat_completion(self, request: ChatRequest) -> ChatResponse:
        """
        Run one chat completion.

        Args:
            request: Model id, messages and sampling options

        Returns:
            ChatResponse with content, token usage and latency

        Raises:
            Exception: Whatever LiteLLM raised; callers decide whether to retry
        """
        started = time.monotonic()
        try:
            raw = await acompletion(**self._kwargs(request))
        except Exception as e:
            self.logger.error(
                f"Completion failed for {request.model}: {e}",
                extra={"model": request.model},
            )
            raise

        response = self._to_response(raw, request.model, int((time.monotonic() - started) * 1000))
        self.logger.info(
            f"Completion from {request.model}",
            extra={
                "model": request.model,
                "finish_reason": response.finish_reason,
                "latency_ms": response.latency_ms,
                "tokens": response.usage.total_tokens if response.usage else None,
            },
        )
        return response
