"""Language-model completion client.

The feed generator only sees ``CompletionClient``: one request in, text out,
or a ``CompletionError`` that says whether trying another model could help.
``OpenAICompletionClient`` speaks the OpenAI chat-completions protocol, which
also covers Gemini and most hosted providers through ``base_url``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import openai
import structlog
from openai import NOT_GIVEN, AsyncOpenAI

if TYPE_CHECKING:
    from pagefeed.config import LLMSettings

log = structlog.get_logger()

# Rate limited / service unavailable: another model may well succeed.
TRANSIENT_STATUSES = frozenset({429, 503})


@dataclass(frozen=True)
class CompletionRequest:
    model: str
    system: str
    user: str
    temperature: float = 0.0
    seed: int | None = None
    max_tokens: int | None = None


class CompletionError(Exception):
    def __init__(self, message: str, *, status: int | None = None, retryable: bool) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.retryable = retryable


class CompletionClient(Protocol):
    async def complete(self, request: CompletionRequest) -> str: ...


def classify_openai_error(exc: openai.OpenAIError) -> CompletionError:
    if isinstance(exc, openai.APIStatusError):
        return CompletionError(
            str(exc),
            status=exc.status_code,
            retryable=exc.status_code in TRANSIENT_STATUSES,
        )
    if isinstance(exc, openai.APITimeoutError):
        return CompletionError("Completion request timed out", retryable=True)
    if isinstance(exc, openai.APIConnectionError):
        return CompletionError(f"Completion service unreachable: {exc}", retryable=True)
    return CompletionError(str(exc), retryable=False)


class OpenAICompletionClient:
    def __init__(self, settings: LLMSettings) -> None:
        api_key = settings.api_key.get_secret_value() if settings.api_key is not None else None
        if not api_key:
            log.warning("llm_api_key_missing")
        # Fallback across models replaces the SDK's own retries.
        self._client = AsyncOpenAI(
            api_key=api_key or "",
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            max_retries=0,
        )

    async def complete(self, request: CompletionRequest) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=request.model,
                messages=[
                    {"role": "system", "content": request.system},
                    {"role": "user", "content": request.user},
                ],
                temperature=request.temperature,
                seed=request.seed if request.seed is not None else NOT_GIVEN,
                max_tokens=request.max_tokens or NOT_GIVEN,
            )
        except openai.OpenAIError as exc:
            raise classify_openai_error(exc) from exc

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def aclose(self) -> None:
        await self._client.close()
