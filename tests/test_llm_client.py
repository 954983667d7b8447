"""LiteLLM client and the decision provider built on it."""

import asyncio
from types import SimpleNamespace

import pytest

from arena.decision import LLMDecisionProvider, RetryFeedback
from llm_service.config import Settings
from llm_service.llm import client as client_module
from llm_service.llm.client import LLMClient
from llm_service.llm.providers import estimate_cost
from llm_service.llm.schemas import ChatMessage, ChatRequest, ChatResponse, ResponseMessage, Usage

from test_decision import make_context


def fake_completion(content, prompt_tokens=120, completion_tokens=30):
    return SimpleNamespace(
        id="chatcmpl-test",
        choices=[SimpleNamespace(
            message=SimpleNamespace(content=content),
            finish_reason="stop",
        )],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


class RecordingLLM:
    """Stands in for LLMClient and keeps every request."""

    def __init__(self, content):
        self.content = content
        self.requests = []

    async def achat_completion(self, request):
        self.requests.append(request)
        return ChatResponse(
            id="r1",
            model=request.model,
            message=ResponseMessage(content=self.content),
            usage=Usage(prompt_tokens=1_000_000, completion_tokens=0, total_tokens=1_000_000),
        )


def test_client_passes_request_options(monkeypatch):
    captured = {}

    async def acompletion(**kwargs):
        captured.update(kwargs)
        return fake_completion('{"action": "HOLD"}')

    monkeypatch.setattr(client_module, "acompletion", acompletion)
    llm = LLMClient(Settings(OPENROUTER_API_KEY=""))
    request = ChatRequest(
        model="openrouter/test/alpha",
        messages=[ChatMessage(role="user", content="hi")],
        temperature=0.0,
        max_tokens=50,
    )

    response = asyncio.run(llm.achat_completion(request))

    assert captured["model"] == "openrouter/test/alpha"
    assert captured["messages"] == [{"role": "user", "content": "hi"}]
    assert captured["temperature"] == 0.0
    assert captured["max_tokens"] == 50
    assert "timeout" not in captured
    assert response.message.content == '{"action": "HOLD"}'
    assert response.usage.total_tokens == 150
    assert response.latency_ms >= 0


def test_client_propagates_provider_errors(monkeypatch):
    async def acompletion(**kwargs):
        raise RuntimeError("upstream 502")

    monkeypatch.setattr(client_module, "acompletion", acompletion)
    llm = LLMClient(Settings())
    request = ChatRequest(model="m", messages=[ChatMessage(role="user", content="x")])

    with pytest.raises(RuntimeError, match="upstream 502"):
        asyncio.run(llm.achat_completion(request))


def test_decision_provider_builds_prompts_and_cost():
    llm = RecordingLLM('{"action": "HOLD", "reasoning": "wait"}')
    provider = LLMDecisionProvider(llm, temperature=0.0, max_tokens=2000)
    context = make_context()

    reply = asyncio.run(provider.request_decision(context))

    [request] = llm.requests
    assert request.model == "openrouter/test/alpha"
    assert [m.role for m in request.messages] == ["system", "user"]
    assert request.max_tokens == 2000
    assert reply.text == '{"action": "HOLD", "reasoning": "wait"}'
    assert reply.tokens_input == 1_000_000
    # Unknown model falls back to the default per-million input price
    assert reply.cost_usd == pytest.approx(2.0)


def test_decision_provider_appends_retry_feedback():
    llm = RecordingLLM('{"action": "HOLD"}')
    provider = LLMDecisionProvider(llm)
    feedback = RetryFeedback(previous_response="x" * 1000, error="No JSON object found")

    reply = asyncio.run(provider.request_decision(make_context(), feedback))

    assert "PREVIOUS RESPONSE WAS INVALID" in reply.user_prompt
    assert "No JSON object found" in reply.user_prompt
    assert "x" * 1000 not in reply.user_prompt


def test_estimate_cost_uses_roster_prices():
    usage = Usage(prompt_tokens=1_000_000, completion_tokens=1_000_000, total_tokens=2_000_000)
    assert estimate_cost("deepseek-v3", usage) == pytest.approx(2.5)
    assert estimate_cost("openrouter/deepseek/deepseek-v3-0324", usage) == pytest.approx(2.5)
    assert estimate_cost("deepseek-v3", None) == 0.0
