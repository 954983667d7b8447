"""LLM Decision handling for the arena.

This module handles:
- The decision context shown to a model
- Prompt construction (system, user and retry prompts)
- Parsing untrusted model output into a tagged decision variant
- Requesting a decision with bounded retries
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal, Protocol, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from llm_service.llm.client import LLMClient
from llm_service.llm.providers import estimate_cost
from llm_service.llm.schemas import ChatMessage, ChatRequest

from .errors import ValidationError
from .models import DecisionAction, MarketType

logger = logging.getLogger(__name__)

# Longest slice of a bad response echoed back in a retry prompt
RETRY_ECHO_CHARS = 500


# =============================================================================
# Decision variants
# =============================================================================

class BetOrder(BaseModel):
    """One bet inside a BET decision."""

    market_id: str = Field(min_length=1)
    side: str = Field(min_length=1, description="YES/NO or an outcome label")
    amount: float = Field(gt=0, description="Dollars to wager")
    confidence: float | None = Field(
        default=None, description="Stated probability that the side wins"
    )


class SellOrder(BaseModel):
    """One sell inside a SELL decision.

    The position is identified by id or by market and side; the quantity by
    shares or by a percentage of the holding.
    """

    position_id: str | None = None
    market_id: str | None = None
    side: str | None = None
    shares: float | None = Field(default=None, gt=0)
    percentage: float | None = Field(default=None, gt=0, le=100)

    @model_validator(mode="after")
    def _check_target(self) -> "SellOrder":
        if not self.position_id and not (self.market_id and self.side):
            raise ValueError("sell requires position_id or market_id and side")
        if (self.shares is None) == (self.percentage is None):
            raise ValueError("sell requires exactly one of shares or percentage")
        return self


def _wrap_flat_order(data: Any, list_key: str, keys: tuple[str, ...]) -> Any:
    """Accept a single flat order and move it into the order list."""
    if not isinstance(data, dict) or list_key in data:
        return data
    order = {k: data[k] for k in keys if k in data}
    if not order:
        return data
    wrapped = {k: v for k, v in data.items() if k not in keys}
    wrapped[list_key] = [order]
    return wrapped


class BetDecision(BaseModel):
    action: Literal["BET"]
    bets: list[BetOrder] = Field(min_length=1)
    reasoning: str = ""
    confidence: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _flat_bet(cls, data: Any) -> Any:
        if isinstance(data, dict) and "amount" not in data and "amount_or_shares" in data:
            data = {**data, "amount": data["amount_or_shares"]}
        data = _wrap_flat_order(data, "bets", ("market_id", "side", "amount"))
        return data


class SellDecision(BaseModel):
    action: Literal["SELL"]
    sells: list[SellOrder] = Field(min_length=1)
    reasoning: str = ""

    @model_validator(mode="before")
    @classmethod
    def _flat_sell(cls, data: Any) -> Any:
        if isinstance(data, dict) and "shares" not in data and "amount_or_shares" in data:
            data = {**data, "shares": data["amount_or_shares"]}
        return _wrap_flat_order(
            data, "sells", ("position_id", "market_id", "side", "shares", "percentage")
        )


class HoldDecision(BaseModel):
    action: Literal["HOLD"]
    reasoning: str = ""


class ErrorDecision(BaseModel):
    action: Literal["ERROR"]
    reasoning: str = ""
    error: str | None = None


ParsedDecision = Annotated[
    Union[BetDecision, SellDecision, HoldDecision, ErrorDecision],
    Field(discriminator="action"),
]

_decision_adapter: TypeAdapter[ParsedDecision] = TypeAdapter(ParsedDecision)


# =============================================================================
# Parsing
# =============================================================================

def extract_json(response: str) -> dict | None:
    """Extract a JSON object from raw model output.

    Tries, in order: the whole text, fenced ```json blocks, any fenced
    block, then the outermost {...} span.
    """
    text = (response or "").strip()
    if not text:
        return None

    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    json_patterns = [
        r'```json\s*([\s\S]*?)\s*```',
        r'```\s*([\s\S]*?)\s*```',
        r'\{[\s\S]*\}',
    ]

    for pattern in json_patterns:
        match = re.search(pattern, text)
        if match:
            try:
                json_str = match.group(1) if '```' in pattern else match.group(0)
                parsed = json.loads(json_str)
            except (json.JSONDecodeError, IndexError):
                continue
            if isinstance(parsed, dict):
                return parsed

    return None


def parse_decision(response: str) -> tuple[ParsedDecision, dict]:
    """Parse raw model output into a decision variant.

    Returns:
        (decision, the JSON payload it was parsed from)

    Raises:
        ValidationError: If no JSON object is found or it does not match
            any decision variant
    """
    payload = extract_json(response)
    if payload is None:
        raise ValidationError("Failed to parse JSON from response", raw_response=response)

    action = payload.get("action")
    if not isinstance(action, str):
        raise ValidationError("Response is missing an action", raw_response=response)
    normalized = {**payload, "action": action.strip().upper()}

    try:
        decision = _decision_adapter.validate_python(normalized)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid decision: {details}", raw_response=response) from None

    return decision, payload


# =============================================================================
# Context and prompts
# =============================================================================

@dataclass
class PositionView:
    """An open position as shown to the model."""
    id: str
    market_id: str
    question: str
    side: str
    shares: float
    avg_entry_price: float
    current_price: float | None
    current_value: float | None


@dataclass
class MarketView:
    """An eligible market as shown to the model."""
    id: str
    question: str
    category: str | None
    market_type: MarketType
    current_price: float | None
    current_prices: dict[str, Any] | None
    outcomes: list[str] | None
    volume: float | None
    close_date: datetime | None


@dataclass
class DecisionContext:
    """Everything a model sees for one decision."""
    agent_id: str
    cohort_id: str
    model_id: str
    llm_id: str
    cohort_number: int
    decision_week: int
    as_of: datetime
    cash_balance: float
    initial_balance: float
    min_bet: float
    max_bet_fraction: float
    methodology_version: str = "v1"
    positions: list[PositionView] = field(default_factory=list)
    markets: list[MarketView] = field(default_factory=list)

    @property
    def max_bet(self) -> float:
        return self.cash_balance * self.max_bet_fraction


SYSTEM_PROMPT = """You are an AI forecaster competing in a prediction-market benchmark ({methodology_version}).
Each cohort starts every model with the same simulated bankroll. You are scored on
portfolio returns and on calibration (Brier score) of the bets you place.

You MUST respond with valid JSON in exactly one of these formats:

FOR PLACING BETS:
{{
  "action": "BET",
  "bets": [
    {{
      "market_id": "<market id>",
      "side": "YES" or "NO" (binary markets) OR the exact outcome name (multi-outcome markets),
      "amount": <dollars>,
      "confidence": <probability 0.0-1.0 that this side wins>
    }}
  ],
  "reasoning": "<your reasoning>"
}}

FOR SELLING POSITIONS:
{{
  "action": "SELL",
  "sells": [
    {{
      "position_id": "<position id>",
      "percentage": <1-100>
    }}
  ],
  "reasoning": "<your reasoning>"
}}

FOR HOLDING:
{{
  "action": "HOLD",
  "reasoning": "<your reasoning>"
}}

RULES:
1. Minimum bet: ${min_bet:,.2f}
2. Maximum bet: {max_pct:.0f}% of your current cash balance (larger bets are reduced)
3. Shares cost the side's current price and pay $1 if that side wins, $0 otherwise
4. One position per market per side; betting again adds to it
5. You may place several bets or sells in one decision

SCORING:
- Brier score uses your stated confidence for every bet (lower is better)
- Portfolio P/L is tracked at market prices

RESPOND WITH VALID JSON ONLY. No markdown, no explanation outside the JSON."""


def build_system_prompt(context: DecisionContext) -> str:
    return SYSTEM_PROMPT.format(
        methodology_version=context.methodology_version,
        min_bet=context.min_bet,
        max_pct=context.max_bet_fraction * 100,
    )


def _pct(price: float | None) -> str:
    return "N/A" if price is None else f"{price * 100:.1f}%"


def build_user_prompt(context: DecisionContext) -> str:
    """Build the prompt describing the agent's portfolio and the markets.

    Args:
        context: Decision context for one agent

    Returns:
        Formatted prompt string
    """
    positions_value = sum(p.current_value or 0.0 for p in context.positions)
    total_value = context.cash_balance + positions_value
    pnl = total_value - context.initial_balance
    pnl_pct = pnl / context.initial_balance * 100 if context.initial_balance else 0.0

    lines = [
        f"CURRENT DATE: {context.as_of.date().isoformat()}",
        f"COHORT: #{context.cohort_number} | DECISION WEEK: {context.decision_week}",
        "",
        "YOUR PORTFOLIO:",
        f"- Cash Balance: ${context.cash_balance:,.2f}",
        f"- Maximum Bet Size: ${context.max_bet:,.2f} ({context.max_bet_fraction * 100:.0f}% of cash)",
        f"- Positions Value: ${positions_value:,.2f}",
        f"- Total Portfolio: ${total_value:,.2f}",
        f"- P/L: ${pnl:,.2f} ({pnl_pct:+.2f}%)",
        "",
    ]

    if context.positions:
        lines.append("YOUR CURRENT POSITIONS:")
        for pos in context.positions:
            value = "N/A" if pos.current_value is None else f"${pos.current_value:,.2f}"
            lines.extend([
                f"- ID: {pos.id}",
                f"  Market: \"{pos.question}\"",
                f"  Side: {pos.side} | Shares: {pos.shares:,.2f}",
                f"  Entry: {_pct(pos.avg_entry_price)} | Current: {_pct(pos.current_price)}",
                f"  Value: {value}",
                "",
            ])
    else:
        lines.extend(["YOUR CURRENT POSITIONS: None", ""])

    lines.append(f"AVAILABLE MARKETS (Top {len(context.markets)} by volume):")
    for market in context.markets:
        lines.extend([
            f"- ID: {market.id}",
            f"  Question: \"{market.question}\"",
            f"  Category: {market.category or 'General'}",
        ])
        if market.market_type == MarketType.BINARY:
            if market.current_price is None:
                lines.append("  Type: Binary (YES/NO) | Prices: (unavailable)")
            else:
                lines.append(
                    f"  Type: Binary (YES/NO) | Prices: {_pct(market.current_price)} YES"
                    f" / {_pct(1 - market.current_price)} NO"
                )
        else:
            lines.append("  Type: Multi-outcome")
            lines.append(f"  Outcomes: {json.dumps(market.outcomes or [])}")
            lines.append(f"  Prices: {json.dumps(market.current_prices or {})}")
        volume = "N/A" if market.volume is None else f"${market.volume:,.0f}"
        closes = market.close_date.date().isoformat() if market.close_date else "N/A"
        lines.extend([f"  Volume: {volume} | Closes: {closes}", ""])

    lines.append("What is your decision? Respond with valid JSON only.")
    return "\n".join(lines)


def build_retry_prompt(original_prompt: str, previous_response: str, error: str) -> str:
    """Append the parse error and the rejected response to the prompt."""
    echoed = previous_response[:RETRY_ECHO_CHARS]
    if len(previous_response) > RETRY_ECHO_CHARS:
        echoed += "..."
    return (
        f"{original_prompt}\n\n---\n"
        f"PREVIOUS RESPONSE WAS INVALID:\nError: {error}\n\n"
        f"Your response: {echoed}\n\n"
        "Please respond with VALID JSON only. No markdown code blocks, "
        "no explanation text - just the JSON object."
    )


# =============================================================================
# Decision collaborator
# =============================================================================

@dataclass
class RetryFeedback:
    """Why the previous attempt was rejected."""
    previous_response: str
    error: str


@dataclass
class ProviderReply:
    """One raw exchange with the decision collaborator."""
    system_prompt: str
    user_prompt: str
    text: str
    tokens_input: int | None = None
    tokens_output: int | None = None
    cost_usd: float | None = None


class DecisionProvider(Protocol):
    """Anything that can turn a decision context into raw model output."""

    async def request_decision(
        self,
        context: DecisionContext,
        feedback: RetryFeedback | None = None,
    ) -> ProviderReply:
        ...


class LLMDecisionProvider:
    """Decision collaborator backed by the LiteLLM client."""

    def __init__(
        self,
        llm_client: LLMClient,
        temperature: float = 0.0,
        max_tokens: int = 2000,
        request_timeout: float | None = None,
    ):
        """Initialize the provider.

        Args:
            llm_client: The LLM client for making API calls
            temperature: Sampling temperature for every request
            max_tokens: Completion token limit
            request_timeout: Per-request timeout in seconds
        """
        self.llm_client = llm_client
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.request_timeout = request_timeout

    async def request_decision(
        self,
        context: DecisionContext,
        feedback: RetryFeedback | None = None,
    ) -> ProviderReply:
        system_prompt = build_system_prompt(context)
        user_prompt = build_user_prompt(context)
        if feedback is not None:
            user_prompt = build_retry_prompt(user_prompt, feedback.previous_response, feedback.error)

        request = ChatRequest(
            model=context.llm_id,
            messages=[
                ChatMessage(role="system", content=system_prompt),
                ChatMessage(role="user", content=user_prompt),
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout=self.request_timeout,
        )

        response = await self.llm_client.achat_completion(request)
        usage = response.usage

        return ProviderReply(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            text=response.message.content or "",
            tokens_input=usage.prompt_tokens if usage else None,
            tokens_output=usage.completion_tokens if usage else None,
            cost_usd=estimate_cost(context.llm_id, usage),
        )


# =============================================================================
# Requesting with retries
# =============================================================================

@dataclass
class DecisionOutcome:
    """Result of requesting a decision, including every retry.

    `decision` is None when the retry budget was exhausted; `error` then
    says why.
    """
    decision: ParsedDecision | None
    payload: dict | None
    system_prompt: str
    user_prompt: str
    raw_response: str | None
    retry_count: int
    response_time_ms: int
    tokens_input: int | None = None
    tokens_output: int | None = None
    cost_usd: float | None = None
    error: str | None = None

    @property
    def action(self) -> DecisionAction:
        if self.decision is None:
            return DecisionAction.ERROR
        return DecisionAction(self.decision.action)

    @property
    def reasoning(self) -> str | None:
        return self.decision.reasoning if self.decision is not None else None


def _add(total: float | int | None, value: float | int | None):
    if value is None:
        return total
    return value if total is None else total + value


async def request_with_retries(
    provider: DecisionProvider,
    context: DecisionContext,
    max_retries: int = 1,
) -> DecisionOutcome:
    """Request and parse a decision, re-requesting on transient failures.

    Provider exceptions and malformed output are retried up to `max_retries`
    times. Usage and latency accumulate across attempts; the prompts and
    response recorded are those of the last attempt.
    """
    feedback: RetryFeedback | None = None
    last_error: str | None = None
    system_prompt = ""
    user_prompt = ""
    raw_response: str | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    cost: float | None = None
    started = time.monotonic()

    for attempt in range(max_retries + 1):
        try:
            reply = await provider.request_decision(context, feedback)
        except Exception as e:
            last_error = f"Decision request failed: {e}"
            logger.warning(
                f"Decision request for {context.model_id} failed (attempt {attempt + 1})",
                extra={"agent_id": context.agent_id, "error": str(e)},
            )
            feedback = None
            continue

        system_prompt = reply.system_prompt
        user_prompt = reply.user_prompt
        raw_response = reply.text
        tokens_in = _add(tokens_in, reply.tokens_input)
        tokens_out = _add(tokens_out, reply.tokens_output)
        cost = _add(cost, reply.cost_usd)

        try:
            decision, payload = parse_decision(reply.text)
        except ValidationError as e:
            last_error = e.message
            logger.warning(
                f"Failed to parse {context.model_id} decision: {e.message}",
                extra={"agent_id": context.agent_id, "raw_response": reply.text[:200]},
            )
            feedback = RetryFeedback(previous_response=reply.text, error=e.message)
            continue

        logger.info(
            f"{context.model_id} decided {decision.action}",
            extra={"agent_id": context.agent_id, "retry_count": attempt},
        )
        return DecisionOutcome(
            decision=decision,
            payload=payload,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            raw_response=raw_response,
            retry_count=attempt,
            response_time_ms=int((time.monotonic() - started) * 1000),
            tokens_input=tokens_in,
            tokens_output=tokens_out,
            cost_usd=cost,
        )

    if not system_prompt:
        system_prompt = build_system_prompt(context)
        user_prompt = build_user_prompt(context)

    return DecisionOutcome(
        decision=None,
        payload=None,
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        raw_response=raw_response,
        retry_count=max_retries,
        response_time_ms=int((time.monotonic() - started) * 1000),
        tokens_input=tokens_in,
        tokens_output=tokens_out,
        cost_usd=cost,
        error=last_error,
    )
