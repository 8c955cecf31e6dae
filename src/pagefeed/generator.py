"""RSS generation with ordered model fallback.

Candidates are tried cheapest first. Each attempt is reduced to a tagged
``Attempt``; the driver loop in ``FeedGenerator.generate`` stops on the first
SUCCESS or FATAL and moves on after RETRYABLE. Rate limits, unavailability,
timeouts and structurally invalid output are retryable: another model may
do better. Anything else means the request itself is broken, and switching
models will not fix it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from pagefeed.cache import TTLCache
from pagefeed.completion import CompletionError, CompletionRequest
from pagefeed.errors import FeedValidationError, GenerationError, PageFeedError
from pagefeed.models.feed import GenerationResult, ModelCandidate
from pagefeed.sanitize import normalize_items

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pagefeed.cache import CacheStore
    from pagefeed.completion import CompletionClient
    from pagefeed.config import LLMSettings
    from pagefeed.models.cache import CacheLookup

log = structlog.get_logger()

SYSTEM_PROMPT = """\
You are an RSS feed generator. Analyze the provided web page content and output
a single VALID RSS 2.0 document.

Structure:
- Root: <rss version="2.0"><channel> ... </channel></rss>
- Channel: <title>, <link> (the page URL) and <description> summarizing the site.
- Items: the 5 to 10 most recent article-like entries on the page, newest first.
- Each <item> has:
  - <title>: the entry title.
  - <link>: the absolute URL of the entry. Resolve relative links against the page URL.
  - <guid>: exactly the same text as <link>, character for character.
  - <description>: one or two sentences summarizing the entry.
  - <pubDate>: the publish date in RFC 822 format (e.g. Mon, 06 Jan 2025 08:00:00 GMT).
    If no date can be found, use the current UTC time.

Output ONLY the raw XML. No markdown code fences, no commentary.
"""

_FENCE_LINE = re.compile(r"^[ \t]*```[\w-]*[ \t]*$", re.MULTILINE)
_DOCUMENT_START = re.compile(r"<\?xml|<rss\b")
_DOCUMENT_END = "</rss>"


def extract_feed_xml(text: str) -> str:
    """Drop markdown fence lines and any prose around the ``<rss>`` document."""
    text = _FENCE_LINE.sub("", text)
    start = _DOCUMENT_START.search(text)
    end = text.rfind(_DOCUMENT_END)
    if start is not None and end > start.start():
        text = text[start.start() : end + len(_DOCUMENT_END)]
    return text.strip()


def looks_like_rss(xml: str) -> bool:
    return "<rss" in xml and "<channel>" in xml


class AttemptOutcome(StrEnum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class Attempt:
    outcome: AttemptOutcome
    model: str
    xml: str = ""
    error: PageFeedError | None = None


def build_user_prompt(url: str, content: str, max_chars: int) -> str:
    if len(content) > max_chars:
        content = content[:max_chars]
    return f"Page URL: {url}\n\nPage content:\n{content}"


class FeedGenerator:
    """Turns page content into RSS XML, trying each model candidate in order."""

    def __init__(
        self,
        client: CompletionClient,
        settings: LLMSettings,
        candidates: Sequence[ModelCandidate] | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self.candidates: tuple[ModelCandidate, ...] = tuple(
            candidates
            if candidates is not None
            else (ModelCandidate(id=m) for m in settings.models)
        )
        if not self.candidates:
            raise ValueError("FeedGenerator needs at least one model candidate")

    async def _attempt(self, candidate: ModelCandidate, url: str, content: str) -> Attempt:
        request = CompletionRequest(
            model=candidate.id,
            system=SYSTEM_PROMPT,
            user=build_user_prompt(url, content, self._settings.max_content_chars),
            temperature=self._settings.temperature,
            seed=self._settings.seed,
            max_tokens=self._settings.max_tokens,
        )
        try:
            raw = await self._client.complete(request)
        except CompletionError as exc:
            error = GenerationError(exc.message, status=exc.status, model=candidate.id)
            outcome = AttemptOutcome.RETRYABLE if exc.retryable else AttemptOutcome.FATAL
            return Attempt(outcome, candidate.id, error=error)

        xml = extract_feed_xml(raw)
        if not looks_like_rss(xml):
            error = FeedValidationError(
                "Model output is missing <rss> or <channel>", model=candidate.id
            )
            return Attempt(AttemptOutcome.RETRYABLE, candidate.id, error=error)
        return Attempt(AttemptOutcome.SUCCESS, candidate.id, xml=xml)

    async def generate(self, url: str, content: str) -> GenerationResult:
        """Return the first valid feed. Raises ``GenerationError``."""
        attempted: list[str] = []
        last: Attempt | None = None

        for candidate in self.candidates:
            attempted.append(candidate.id)
            log.info("model_attempt", model=candidate.id, url=url)
            last = await self._attempt(candidate, url, content)

            if last.outcome is AttemptOutcome.SUCCESS:
                now = datetime.now(UTC)
                log.info("model_success", model=candidate.id, url=url, attempts=len(attempted))
                return GenerationResult(
                    xml=normalize_items(last.xml, now),
                    model_used=candidate.id,
                    generated_at=now,
                )
            if last.outcome is AttemptOutcome.FATAL:
                log.error("model_fatal", model=candidate.id, url=url, error=str(last.error))
                break
            log.warning("model_fallback", model=candidate.id, url=url, error=str(last.error))

        if last is None or last.error is None:
            raise GenerationError("No model candidate was attempted", models_attempted=attempted)
        if last.outcome is AttemptOutcome.FATAL:
            message = f"Model {last.model} failed: {last.error.message}"
        else:
            message = (
                f"All {len(attempted)} model candidates failed; "
                f"last error: {last.error.message}"
            )
        raise GenerationError(
            message,
            status=last.error.status,
            recoverable=last.outcome is AttemptOutcome.RETRYABLE,
            models_attempted=attempted,
        )


class GenerationCache:
    """Long-lived memo of generated feeds, keyed by content fingerprint.

    This is what pins the XML for an unchanged page: the model is only asked
    again once the fingerprint changes or the entry expires.
    """

    namespace = "generation"

    def __init__(self, generator: FeedGenerator, store: CacheStore, ttl: timedelta) -> None:
        self._generator = generator
        self._cache: TTLCache[GenerationResult] = TTLCache(
            store, self.namespace, GenerationResult, ttl
        )

    @staticmethod
    def url_tag(url: str) -> str:
        return f"url:{url}"

    async def get_or_generate(
        self, fingerprint: str, url: str, content: str
    ) -> CacheLookup[GenerationResult]:
        return await self._cache.get_or_compute(
            fingerprint,
            lambda: self._generator.generate(url, content),
            tags=(self.url_tag(url),),
        )

    async def evict_url(self, url: str) -> int:
        return await self._cache.evict_tag(self.url_tag(url))
