"""Contextual prefixes for chunks, generated by a small Claude model.

Each chunk gets a 1-2 sentence annotation (who, what, when) that is
prepended to its text before embedding. Failure never blocks ingestion: a
chunk whose context could not be generated is stored with status ``failed``
and embedded from its raw content.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol

from anthropic import Anthropic, APIError
from anthropic.types import TextBlock

from session_memory.config import Settings
from session_memory.errors import ConfigurationError, ProviderError
from session_memory.ingestion.formatting import format_local_date, resolve_speaker_names
from session_memory.ingestion.models import ContextStatus, SessionChunk

logger = logging.getLogger(__name__)

CONTEXT_PROMPT = """Given this chunk from a conversation transcript, write a brief context \
(1-2 sentences, ~50 tokens max) that explains:
- Who is speaking (if identifiable)
- What topic/decision this relates to
- When this occurred (if timestamp available)

Session: {source_id}
Date: {date}
Participants: {participants}

Chunk:
{excerpt}

Context (be concise, 1-2 sentences):"""


@dataclass
class TokenUsage:
    """Token cost of one provider call, handed to the usage hook."""

    model: str
    input_tokens: int
    output_tokens: int


@dataclass
class Completion:
    """Raw text returned by a context provider plus its usage."""

    text: str
    usage: TokenUsage


@dataclass
class ContextResult:
    """Outcome of context generation for one chunk."""

    context: str | None
    status: ContextStatus
    usage: TokenUsage | None = None


UsageHook = Callable[[TokenUsage], None]


class ContextProvider(Protocol):
    """Anything that turns a prompt into a short completion."""

    def complete(self, prompt: str) -> Completion: ...


class AnthropicContextProvider:
    """Context provider backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: float = 30.0,
        max_tokens: int = 100,
        temperature: float = 0.3,
    ) -> None:
        self.client = Anthropic(api_key=api_key, timeout=timeout, max_retries=1)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    def complete(self, prompt: str) -> Completion:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except APIError as exc:
            raise ProviderError(f"Context generation failed: {exc}") from exc

        text = "".join(block.text for block in response.content if isinstance(block, TextBlock))
        return Completion(
            text=text,
            usage=TokenUsage(
                model=response.model,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
        )


def log_usage(usage: TokenUsage) -> None:
    """Default usage hook: record token counts in the log for cost accounting."""
    logger.debug(
        "Context usage: model=%s input_tokens=%d output_tokens=%d",
        usage.model,
        usage.input_tokens,
        usage.output_tokens,
    )


class ContextGenerator:
    """Build prompts, call the provider, and shape the result."""

    def __init__(
        self,
        provider: ContextProvider,
        timezone: str = "UTC",
        speaker_names: Mapping[str, str] | None = None,
        max_excerpt_chars: int = 1500,
        usage_hook: UsageHook | None = log_usage,
    ) -> None:
        self.provider = provider
        self.timezone = timezone
        self.speaker_names = dict(speaker_names or {})
        self.max_excerpt_chars = max_excerpt_chars
        self.usage_hook = usage_hook

    def build_prompt(self, chunk: SessionChunk) -> str:
        return CONTEXT_PROMPT.format(
            source_id=chunk.source_id or "unknown",
            date=format_local_date(chunk.timestamp, self.timezone),
            participants=resolve_speaker_names(chunk.speakers, self.speaker_names),
            excerpt=chunk.content[: self.max_excerpt_chars],
        )

    def generate(self, chunk: SessionChunk) -> ContextResult:
        """Generate a context prefix for *chunk*.

        Returns a ``complete`` result with ``[Context: ...]`` text, or a
        ``failed`` result with ``context=None``. Provider errors never
        propagate.
        """
        try:
            completion = self.provider.complete(self.build_prompt(chunk))
        except ProviderError as exc:
            logger.warning(
                "Context generation failed for %s#%d: %s", chunk.source_id, chunk.chunk_index, exc
            )
            return ContextResult(context=None, status=ContextStatus.FAILED)

        self._report_usage(completion.usage)

        text = completion.text.strip()
        if not text:
            return ContextResult(context=None, status=ContextStatus.FAILED, usage=completion.usage)
        return ContextResult(
            context=f"[Context: {text}]",
            status=ContextStatus.COMPLETE,
            usage=completion.usage,
        )

    def apply(self, chunk: SessionChunk) -> ContextResult:
        """Generate context and store it on *chunk*, replacing any previous value."""
        result = self.generate(chunk)
        chunk.context_prefix = result.context
        chunk.context_status = result.status
        return result

    def _report_usage(self, usage: TokenUsage) -> None:
        if self.usage_hook is None:
            return
        try:
            self.usage_hook(usage)
        except Exception:
            logger.exception("Usage hook failed for model %s", usage.model)


def create_context_generator(
    settings: Settings,
    max_excerpt_chars: int = 1500,
    usage_hook: UsageHook | None = log_usage,
) -> ContextGenerator:
    """Build a Claude-backed context generator from settings.

    Raises:
        ConfigurationError: If no Anthropic API key is configured.
    """
    if not settings.anthropic_api_key:
        raise ConfigurationError("ANTHROPIC_API_KEY is not configured; context generation unavailable")
    provider = AnthropicContextProvider(
        api_key=settings.anthropic_api_key,
        model=settings.context_model,
        timeout=settings.request_timeout_seconds,
    )
    return ContextGenerator(
        provider,
        timezone=settings.context_timezone,
        speaker_names={
            "user": settings.user_display_name,
            "assistant": settings.assistant_display_name,
        },
        max_excerpt_chars=max_excerpt_chars,
        usage_hook=usage_hook,
    )
