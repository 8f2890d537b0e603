"""
AI Service — Pluggable chat providers (OpenAI GPT, Anthropic Claude) and the
system prompt that embeds a client's aggregated platform data.
"""

import logging
from typing import AsyncIterator, NamedTuple, Optional

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from insighthub.config import get_settings
from insighthub.errors import AuthFailure, InsightHubError, TransientNetworkFailure
from insighthub.platforms import SUPPORTED_PLATFORMS, platform_display_name

logger = logging.getLogger(__name__)

MAX_TOKENS = 4000
TEMPERATURE = 0.3
HISTORY_LIMIT = 20  # most recent messages sent to the model

SYSTEM_PROMPT = """You are a marketing analytics assistant for agencies and in-house marketers.
You help users understand website traffic and paid advertising performance across
Google Analytics, Google Ads, Meta Ads and LinkedIn Ads.

Your role is to:
1. **Explain performance** — sessions, page views, spend, impressions, clicks, conversions
2. **Compare platforms** — where budget goes and what it returns
3. **Recommend next steps** — concrete, prioritized actions backed by the numbers

Key metrics you understand:
- CTR (Click-Through Rate) = Clicks / Impressions × 100
- CPC (Cost Per Click) = Spend / Clicks
- CPA (Cost Per Acquisition) = Spend / Conversions

CRITICAL RULES:
- Only use the numbers provided in the context below. NEVER invent metrics.
- If a platform is not connected, say so and suggest connecting it instead of guessing its data.
- If a platform failed to load, say its data is temporarily unavailable.
- Use markdown tables for multi-column data and keep answers concise."""

GETTING_STARTED_PROMPT = """
## No client selected
The user has not selected a client yet, so no platform data is available.
Help them get started:
- Create a client for the business they want to report on.
- Connect Google Analytics for website traffic.
- Connect Google Ads, Meta Ads or LinkedIn Ads for advertising performance.
Answer general marketing questions, but do not present any numbers as their data."""


# ── System prompt ─────────────────────────────────────────────────────

def _format_metrics(m: dict) -> str:
    parts = []
    if m.get("sessions"):
        parts.append(f"{m['sessions']:,} sessions")
    if m.get("page_views"):
        parts.append(f"{m['page_views']:,} page views")
    if m.get("users"):
        parts.append(f"{m['users']:,} users")
    if m.get("spend"):
        parts.append(f"spend {m['spend']:,.2f}")
    if m.get("impressions"):
        parts.append(f"{m['impressions']:,} impressions")
    if m.get("clicks"):
        parts.append(f"{m['clicks']:,} clicks")
    if m.get("conversions"):
        parts.append(f"{m['conversions']:,.0f} conversions")
    return ", ".join(parts) or "no activity"


def build_system_prompt(
    client_name: Optional[str] = None,
    connected: Optional[list[str]] = None,
    snapshot: Optional[dict] = None,
) -> str:
    """
    System instruction for one chat turn. ``snapshot`` is an AggregatedMetrics
    dump; without a client the prompt carries no platform context at all.
    """
    if not client_name:
        return SYSTEM_PROMPT + "\n" + GETTING_STARTED_PROMPT

    connected = connected or []
    missing = [p for p in SUPPORTED_PLATFORMS if p not in connected]

    parts = [SYSTEM_PROMPT, f"\n## Client: {client_name}"]

    parts.append("\n## Connected platforms")
    if connected:
        for p in connected:
            parts.append(f"- {platform_display_name(p)}")
    else:
        parts.append("- None yet")

    if missing:
        parts.append("\n## Not connected")
        for p in missing:
            parts.append(f"- {platform_display_name(p)}")
        parts.append(
            "If the user asks about a platform listed here, tell them to connect it "
            "from the Platforms settings page."
        )

    if snapshot:
        date_range = snapshot.get("date_range") or {}
        parts.append(f"\n## Performance summary ({date_range.get('start')} to {date_range.get('end')})")
        parts.append(f"- Totals: {_format_metrics(snapshot)}")
        if snapshot.get("ctr"):
            parts.append(f"- CTR: {snapshot['ctr']}%  CPC: {snapshot.get('cpc', 0)}")
        if snapshot.get("top_traffic_source"):
            parts.append(f"- Top traffic source: {snapshot['top_traffic_source']}")

        for breakdown in (snapshot.get("platforms") or {}).values():
            parts.append(f"\n### {breakdown['platform_name']}")
            parts.append(f"- {_format_metrics(breakdown['metrics'])}")
            entities = sorted(
                breakdown.get("entities") or [],
                key=lambda e: (e["metrics"].get("spend", 0), e["metrics"].get("sessions", 0)),
                reverse=True,
            )
            for entity in entities[:5]:
                parts.append(f"  - {entity['kind'].title()} '{entity['name']}': {_format_metrics(entity['metrics'])}")

        errors = snapshot.get("errors") or []
        if errors:
            parts.append("\n## Unavailable data")
            for err in errors:
                parts.append(f"- {err['platform_name']}: {err['message']}")

    return "\n".join(parts)


# ── Providers ─────────────────────────────────────────────────────────

class CompletionResult(NamedTuple):
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


class ChatProvider:
    """Uniform interface the chat pipeline talks to."""

    name = ""

    async def generate_chat_completion(self, messages: list[dict], system_prompt: str) -> CompletionResult:
        raise NotImplementedError

    def generate_streaming_completion(self, messages: list[dict], system_prompt: str) -> AsyncIterator[str]:
        raise NotImplementedError


def _provider_error(provider: str, exc: Exception) -> InsightHubError:
    logger.error(f"{provider} request failed: {type(exc).__name__}: {exc}")
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError,
                        anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return AuthFailure(f"The {provider} API key was rejected. Check the AI provider settings.")
    if isinstance(exc, (openai.RateLimitError, anthropic.RateLimitError)):
        return TransientNetworkFailure(f"{provider} is rate limiting requests. Please try again shortly.", rate_limited=True)
    return TransientNetworkFailure(f"{provider} is temporarily unavailable. Please try again.")


class OpenAIProvider(ChatProvider):
    name = "OpenAI"

    def __init__(self, model: str, api_key: str, client: Optional[AsyncOpenAI] = None):
        self.model = model
        self._client = client or AsyncOpenAI(api_key=api_key)

    def _messages(self, messages: list[dict], system_prompt: str) -> list[dict]:
        return [{"role": "system", "content": system_prompt}] + [
            {"role": m["role"], "content": m["content"]} for m in messages[-HISTORY_LIMIT:]
        ]

    async def generate_chat_completion(self, messages: list[dict], system_prompt: str) -> CompletionResult:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=self._messages(messages, system_prompt),
                temperature=TEMPERATURE,
                max_tokens=MAX_TOKENS,
            )
        except openai.APIError as e:
            raise _provider_error(self.name, e) from e
        usage = response.usage
        return CompletionResult(
            content=response.choices[0].message.content or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )

    async def generate_streaming_completion(self, messages: list[dict], system_prompt: str) -> AsyncIterator[str]:
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=self._messages(messages, system_prompt),
                temperature=TEMPERATURE,
                max_tokens=MAX_TOKENS,
                stream=True,
            )
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except openai.APIError as e:
            raise _provider_error(self.name, e) from e


class AnthropicProvider(ChatProvider):
    name = "Anthropic"

    def __init__(self, model: str, api_key: str, client: Optional[AsyncAnthropic] = None):
        self.model = model
        self._client = client or AsyncAnthropic(api_key=api_key)

    def _messages(self, messages: list[dict]) -> list[dict]:
        converted = [
            {"role": "user" if m["role"] == "user" else "assistant", "content": m["content"]}
            for m in messages[-HISTORY_LIMIT:]
        ]
        # Claude requires the conversation to open with a user turn
        while converted and converted[0]["role"] != "user":
            converted.pop(0)
        return converted or [{"role": "user", "content": "Hello"}]

    async def generate_chat_completion(self, messages: list[dict], system_prompt: str) -> CompletionResult:
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                temperature=TEMPERATURE,
                system=system_prompt,
                messages=self._messages(messages),
            )
        except anthropic.APIError as e:
            raise _provider_error(self.name, e) from e
        text = "".join(block.text for block in response.content if block.type == "text")
        return CompletionResult(
            content=text,
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
        )

    async def generate_streaming_completion(self, messages: list[dict], system_prompt: str) -> AsyncIterator[str]:
        try:
            async with self._client.messages.stream(
                model=self.model,
                max_tokens=MAX_TOKENS,
                temperature=TEMPERATURE,
                system=system_prompt,
                messages=self._messages(messages),
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic.APIError as e:
            raise _provider_error(self.name, e) from e


def _parse_model_id(model_id: Optional[str]) -> tuple[str, str]:
    """Parse 'provider:model' into (provider, model); bare names default to OpenAI."""
    settings = get_settings()
    if model_id and ":" in model_id:
        p, m = model_id.split(":", 1)
        return (p.strip().lower(), m.strip())
    if model_id:
        return ("openai", model_id.strip())
    if settings.default_model_id:
        return _parse_model_id(settings.default_model_id)
    if not settings.openai_api_key and settings.anthropic_api_key:
        return ("anthropic", settings.anthropic_model)
    return ("openai", settings.openai_model)


def create_chat_provider(model_id: Optional[str] = None) -> ChatProvider:
    """Factory used by the chat router. Raises ValueError when the provider has no key."""
    settings = get_settings()
    provider, model = _parse_model_id(model_id)
    if provider == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY not configured.")
        return OpenAIProvider(model=model, api_key=settings.openai_api_key)
    if provider == "anthropic":
        if not settings.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY not configured.")
        return AnthropicProvider(model=model, api_key=settings.anthropic_api_key)
    raise ValueError(f"Unknown AI provider: {provider}")
