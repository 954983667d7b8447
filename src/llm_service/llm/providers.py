"""
The benchmark model roster and token pricing.

Every roster model routes through OpenRouter by default; per-model token
prices drive the cost recorded on each decision.
"""

from llm_service.llm.schemas import ModelInfo, Usage

# Used when a model is not in the roster
DEFAULT_INPUT_COST_PER_MILLION = 2.0
DEFAULT_OUTPUT_COST_PER_MILLION = 8.0


# Default roster; every model is routed through OpenRouter so that a single key
# covers the whole cohort.
AVAILABLE_MODELS: list[ModelInfo] = [
    ModelInfo(
        id="gpt-5.1",
        llm_id="openrouter/openai/gpt-5.1",
        provider="OpenAI",
        name="GPT-5.1",
        color="#10B981",
        input_cost_per_million=5.0,
        output_cost_per_million=15.0,
    ),
    ModelInfo(
        id="gemini-3-pro",
        llm_id="openrouter/google/gemini-3-pro-preview",
        provider="Google",
        name="Gemini 3 Pro",
        color="#3B82F6",
        input_cost_per_million=2.5,
        output_cost_per_million=10.0,
    ),
    ModelInfo(
        id="grok-4",
        llm_id="openrouter/x-ai/grok-4",
        provider="xAI",
        name="Grok 4",
        color="#8B5CF6",
        input_cost_per_million=5.0,
        output_cost_per_million=15.0,
    ),
    ModelInfo(
        id="claude-opus-4.5",
        llm_id="openrouter/anthropic/claude-opus-4.5",
        provider="Anthropic",
        name="Claude Opus 4.5",
        color="#F59E0B",
        input_cost_per_million=15.0,
        output_cost_per_million=75.0,
    ),
    ModelInfo(
        id="deepseek-v3",
        llm_id="openrouter/deepseek/deepseek-v3-0324",
        provider="DeepSeek",
        name="DeepSeek V3",
        color="#EF4444",
        input_cost_per_million=0.5,
        output_cost_per_million=2.0,
    ),
    ModelInfo(
        id="kimi-k2",
        llm_id="openrouter/moonshotai/kimi-k2-thinking",
        provider="Moonshot AI",
        name="Kimi K2",
        color="#EC4899",
        input_cost_per_million=1.0,
        output_cost_per_million=4.0,
    ),
    ModelInfo(
        id="qwen-3",
        llm_id="openrouter/qwen/qwen3-235b-a22b-instruct-2507",
        provider="Alibaba",
        name="Qwen 3",
        color="#06B6D4",
        input_cost_per_million=1.0,
        output_cost_per_million=4.0,
    ),
]


def get_model_info(model_id: str) -> ModelInfo | None:
    """
    Get model information by roster id or LiteLLM id.

    Args:
        model_id: The model identifier

    Returns:
        ModelInfo if found, None otherwise
    """
    for model in AVAILABLE_MODELS:
        if model_id in (model.id, model.llm_id):
            return model
    return None


def list_available_models() -> list[ModelInfo]:
    """List the default roster."""
    return list(AVAILABLE_MODELS)


def estimate_cost(model_id: str, usage: Usage | None) -> float:
    """
    Estimate the USD cost of a completion from its token usage.

    Args:
        model_id: Roster id or LiteLLM id
        usage: Token usage reported by the provider

    Returns:
        Estimated cost in USD (0.0 when usage is unknown)
    """
    if usage is None:
        return 0.0

    model = get_model_info(model_id)
    input_rate = model.input_cost_per_million if model else DEFAULT_INPUT_COST_PER_MILLION
    output_rate = model.output_cost_per_million if model else DEFAULT_OUTPUT_COST_PER_MILLION

    return (
        usage.prompt_tokens / 1_000_000 * input_rate
        + usage.completion_tokens / 1_000_000 * output_rate
    )
