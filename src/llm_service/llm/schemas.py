"""
Pydantic request/response shapes for decision completions and the model roster.
"""

from typing import Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    role: Literal["system", "user", "assistant"] = Field(
        description="The role of the message sender"
    )
    content: str = Field(description="The content of the message")


class ChatRequest(BaseModel):
    """Request for a chat completion."""

    model: str = Field(
        description="LiteLLM model identifier (e.g., openrouter/openai/gpt-5.1)",
    )
    messages: list[ChatMessage] = Field(
        description="List of messages in the conversation"
    )
    temperature: float | None = Field(
        default=None, ge=0, le=2, description="Sampling temperature"
    )
    max_tokens: int | None = Field(
        default=None, ge=1, description="Maximum tokens to generate"
    )
    timeout: float | None = Field(
        default=None, gt=0, description="Request timeout in seconds"
    )


class ResponseMessage(BaseModel):
    """The assistant's response message."""

    role: Literal["assistant"] = Field(default="assistant")
    content: str | None = Field(default=None, description="Text content of the response")


class Usage(BaseModel):
    """Token usage statistics."""

    prompt_tokens: int = Field(description="Tokens in the prompt")
    completion_tokens: int = Field(description="Tokens in the completion")
    total_tokens: int = Field(description="Total tokens used")


class ChatResponse(BaseModel):
    """Response from a chat completion."""

    id: str = Field(description="Unique response identifier")
    model: str = Field(description="Model used for completion")
    message: ResponseMessage = Field(description="The assistant's response")
    usage: Usage | None = Field(default=None, description="Token usage statistics")
    finish_reason: str | None = Field(
        default=None, description="Reason for completion (stop, length, etc.)"
    )
    latency_ms: int | None = Field(default=None, ge=0, description="Wall-clock request latency")


class ModelInfo(BaseModel):
    """A competing model in the benchmark roster."""

    id: str = Field(description="Stable roster identifier (e.g., gpt-5.1)")
    llm_id: str = Field(description="LiteLLM model identifier used for completions")
    provider: str = Field(description="Provider display name (OpenAI, Anthropic, ...)")
    name: str = Field(description="Human-readable model name")
    color: str = Field(default="#6B7280", description="Chart color for the dashboard")
    input_cost_per_million: float = Field(
        default=2.0, ge=0, description="USD per million prompt tokens"
    )
    output_cost_per_million: float = Field(
        default=8.0, ge=0, description="USD per million completion tokens"
    )


class ModelsResponse(BaseModel):
    """Response from models listing endpoint."""

    models: list[ModelInfo] = Field(description="List of roster models")


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(description="Service status")
    service: str = Field(description="Service name")
    version: str = Field(default="0.1.0", description="Service version")
