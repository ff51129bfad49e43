#!/usr/bin/env python3
"""Async OpenAI-compatible chat client.

``LLMClient.complete`` sends one chat completion to the configured endpoint,
accumulates token usage into a shared ``TokenUsage`` and retries transient failures
with exponential backoff. A call that runs past ``LLM_TIMEOUT`` is aborted and raised
as ``LLMTimeoutError``; missing settings raise ``LLMNotConfiguredError`` before any
request is made.
"""
from __future__ import annotations

from asyncio import TimeoutError, sleep, wait_for
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import (
    AsyncOpenAI,
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAIError,
    RateLimitError,
)

from config import LLMSettings, config, get_llm_settings, get_logger
from errors import LLMRequestError, LLMTimeoutError
from telemetry import trace_span

logger = get_logger("llm_client")

TRANSIENT_ERRORS = (RateLimitError, APIConnectionError, InternalServerError)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, usage: Any) -> None:
        """Accumulate an OpenAI ``usage`` object (or dict); missing fields count as zero."""
        if usage is None:
            return

        def _field(name: str) -> int:
            value = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, None)
            return int(value or 0)

        prompt = _field("prompt_tokens")
        completion = _field("completion_tokens")
        self.prompt_tokens += prompt
        self.completion_tokens += completion
        self.total_tokens += _field("total_tokens") or (prompt + completion)

    def as_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def _extract_text(resp: Any) -> str:
    """Join the text of every choice; list-style content parts are flattened."""
    fragments: List[str] = []
    for choice in getattr(resp, "choices", None) or []:
        message = getattr(choice, "message", None)
        content = getattr(message, "content", None) if message is not None else None
        if isinstance(content, str):
            if content.strip():
                fragments.append(content.strip())
        elif isinstance(content, list):
            for part in content:
                text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
                if isinstance(text, str) and text.strip():
                    fragments.append(text.strip())
    return "\n".join(fragments).strip()


class LLMClient:
    """Chat-completion client bound to one endpoint/model."""

    def __init__(
        self,
        settings: LLMSettings,
        *,
        client: Optional[Any] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> None:
        self.settings = settings
        self.timeout = timeout or config.LLM_TIMEOUT
        self.max_retries = config.LLM_MAX_RETRIES if max_retries is None else max_retries
        self.temperature = config.LLM_TEMPERATURE if temperature is None else temperature
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=self.timeout,
            max_retries=0,
        )

    @classmethod
    async def from_config(cls, db, **kwargs) -> "LLMClient":
        """Build a client from resolved settings; raises LLMNotConfiguredError when incomplete."""
        return cls(await get_llm_settings(db), **kwargs)

    @property
    def model(self) -> str:
        return self.settings.model

    @trace_span(
        "llm.complete",
        tracer_name="llm",
        attr_from_args=lambda self, messages, *, purpose="generic", token_usage=None: {
            "llm.purpose": purpose,
            "llm.messages": len(messages or []),
        },
    )
    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        purpose: str = "generic",
        token_usage: Optional[TokenUsage] = None,
    ) -> str:
        """Run one chat completion and return its text.

        Raises:
            LLMTimeoutError: the request exceeded the configured timeout.
            LLMRequestError: the API failed (after retries for transient errors) or
                returned no content.
        """
        attempt = 0
        while True:
            try:
                resp = await wait_for(
                    self._client.chat.completions.create(
                        model=self.settings.model,
                        messages=messages,
                        temperature=self.temperature,
                    ),
                    timeout=self.timeout,
                )
            except (TimeoutError, APITimeoutError) as e:
                logger.error(f"{purpose} request timed out after {self.timeout:.0f}s")
                raise LLMTimeoutError() from e
            except TRANSIENT_ERRORS as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise LLMRequestError(f"{purpose} request failed after {self.max_retries} retries: {e}") from e
                delay = config.LLM_RETRY_DELAY_BASE * (2 ** (attempt - 1))
                logger.warning(f"{purpose} transient LLM error: {e}. Backoff {delay}s (attempt {attempt}/{self.max_retries})")
                await sleep(delay)
                continue
            except OpenAIError as e:
                raise LLMRequestError(f"{purpose} request failed: {e}") from e

            if token_usage is not None:
                token_usage.add(getattr(resp, "usage", None))

            text = _extract_text(resp)
            if not text:
                finish_reasons = {getattr(c, "finish_reason", None) for c in getattr(resp, "choices", None) or []}
                raise LLMRequestError(f"Empty content in {purpose} response (finish_reasons={finish_reasons})")
            return text
