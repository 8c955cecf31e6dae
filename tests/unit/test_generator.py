"""Unit tests for pagefeed.generator."""

from __future__ import annotations

import asyncio
import xml.etree.ElementTree as ET
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest
from fakes import SAMPLE_FEED, FakeCompletionClient, bad_request, rate_limited, unavailable

from pagefeed.errors import ErrorCode, GenerationError
from pagefeed.generator import (
    SYSTEM_PROMPT,
    AttemptOutcome,
    FeedGenerator,
    GenerationCache,
    build_user_prompt,
    extract_feed_xml,
    looks_like_rss,
)
from pagefeed.models.cache import CacheStatus
from pagefeed.models.feed import ModelCandidate
from pagefeed.sanitize import sanitize_xml

if TYPE_CHECKING:
    from pagefeed.cache import MemoryStore
    from pagefeed.config import Settings

URL = "https://example.com/blog"
CONTENT = "# Blog\n\n## Fish & Chips\n"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestExtractFeedXml:
    def test_xml_fence(self) -> None:
        assert extract_feed_xml("```xml\n<rss></rss>\n```") == "<rss></rss>"

    def test_bare_fence(self) -> None:
        assert extract_feed_xml("```\n<rss/>\n```\n") == "<rss/>"

    def test_no_fence(self) -> None:
        assert extract_feed_xml("  <rss/>  ") == "<rss/>"

    def test_inner_backticks_kept(self) -> None:
        text = "<rss><d>use ``` for code</d></rss>"
        assert extract_feed_xml(text) == text

    def test_trailing_prose_after_fence_removed(self) -> None:
        raw = (
            '```xml\n<rss version="2.0"><channel><title>t</title></channel></rss>\n```\n'
            "Note: dates estimated."
        )
        xml = extract_feed_xml(raw)
        assert xml == '<rss version="2.0"><channel><title>t</title></channel></rss>'
        ET.fromstring(xml)

    def test_leading_prose_removed(self) -> None:
        raw = "Here is your feed:\n\n```xml\n<?xml version=\"1.0\"?>\n<rss><channel/></rss>\n```"
        assert extract_feed_xml(raw) == '<?xml version="1.0"?>\n<rss><channel/></rss>'


class TestLooksLikeRss:
    def test_valid(self) -> None:
        assert looks_like_rss('<rss version="2.0"><channel></channel></rss>')

    def test_missing_channel(self) -> None:
        assert not looks_like_rss('<rss version="2.0"></rss>')

    def test_prose(self) -> None:
        assert not looks_like_rss("I could not find any articles on this page.")


class TestBuildUserPrompt:
    def test_includes_url_and_content(self) -> None:
        prompt = build_user_prompt(URL, CONTENT, 1000)
        assert URL in prompt
        assert CONTENT in prompt

    def test_truncates_content(self) -> None:
        prompt = build_user_prompt(URL, "x" * 50, 10)
        assert "x" * 10 in prompt
        assert "x" * 11 not in prompt


# ---------------------------------------------------------------------------
# FeedGenerator
# ---------------------------------------------------------------------------


class TestFeedGenerator:
    async def test_first_candidate_wins(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        result = await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)
        assert result.model_used == "model-a"
        assert fake_llm.models_called == ["model-a"]

    async def test_request_is_deterministic(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)
        request = fake_llm.calls[0]
        assert request.system == SYSTEM_PROMPT
        assert request.temperature == 0.0
        assert request.seed == 42
        assert request.max_tokens == settings.llm.max_tokens
        assert URL in request.user

    async def test_rate_limit_falls_back_in_order(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        fake_llm.script["model-a"] = rate_limited()
        result = await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)
        assert result.model_used == "model-b"
        assert fake_llm.models_called == ["model-a", "model-b"]

    async def test_unavailable_falls_back(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        fake_llm.script["model-a"] = unavailable()
        fake_llm.script["model-b"] = unavailable()
        result = await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)
        assert result.model_used == "model-c"

    async def test_non_retryable_error_short_circuits(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        fake_llm.script["model-a"] = bad_request()
        with pytest.raises(GenerationError) as exc_info:
            await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)

        assert fake_llm.models_called == ["model-a"]
        assert exc_info.value.code == ErrorCode.GENERATION_FAILED
        assert exc_info.value.status == 400
        assert exc_info.value.recoverable is False
        assert exc_info.value.context["models_attempted"] == ["model-a"]

    async def test_invalid_output_is_soft_failure(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        fake_llm.script["model-a"] = "Sorry, I cannot help with that."
        result = await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)
        assert result.model_used == "model-b"

    async def test_all_candidates_exhausted(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        fake_llm.script["model-a"] = rate_limited()
        fake_llm.script["model-b"] = "not a feed"
        fake_llm.script["model-c"] = unavailable()
        with pytest.raises(GenerationError) as exc_info:
            await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)

        assert fake_llm.models_called == ["model-a", "model-b", "model-c"]
        assert exc_info.value.status == 503
        assert exc_info.value.recoverable is True
        assert exc_info.value.context["models_attempted"] == ["model-a", "model-b", "model-c"]
        assert "All 3 model candidates failed" in exc_info.value.message

    async def test_code_fences_stripped(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        fake_llm.script["model-a"] = f"```xml\n{SAMPLE_FEED}\n```"
        result = await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)
        assert result.xml.startswith("<?xml")
        assert "```" not in result.xml

    async def test_commentary_after_fence_not_stored(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        fake_llm.script["model-a"] = f"```xml\n{SAMPLE_FEED}\n```\nNote: dates estimated."
        result = await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)
        assert result.xml.rstrip().endswith("</rss>")
        assert "Note:" not in result.xml
        ET.fromstring(sanitize_xml(result.xml).encode())

    async def test_no_candidates_left_raises_generation_error(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        generator = FeedGenerator(fake_llm, settings.llm)
        generator.candidates = ()
        with pytest.raises(GenerationError) as exc_info:
            await generator.generate(URL, CONTENT)
        assert exc_info.value.context["models_attempted"] == []
        assert fake_llm.calls == []

    async def test_every_item_guid_equals_link(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        result = await FeedGenerator(fake_llm, settings.llm).generate(URL, CONTENT)
        root = ET.fromstring(sanitize_xml(result.xml).encode())
        items = list(root.iter("item"))
        assert len(items) == 2
        for item in items:
            assert item.findtext("guid") == item.findtext("link")
            assert item.findtext("pubDate")

    async def test_explicit_candidates_override_settings(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        fake_llm.script["x"] = rate_limited()
        generator = FeedGenerator(
            fake_llm, settings.llm, [ModelCandidate(id="x"), ModelCandidate(id="y")]
        )
        result = await generator.generate(URL, CONTENT)
        assert result.model_used == "y"

    def test_empty_candidates_rejected(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        with pytest.raises(ValueError):
            FeedGenerator(fake_llm, settings.llm, [])

    async def test_attempt_outcomes(
        self, settings: Settings, fake_llm: FakeCompletionClient
    ) -> None:
        generator = FeedGenerator(fake_llm, settings.llm)
        candidate = ModelCandidate(id="model-a")

        assert (await generator._attempt(candidate, URL, CONTENT)).outcome is (
            AttemptOutcome.SUCCESS
        )
        fake_llm.script["model-a"] = rate_limited()
        assert (await generator._attempt(candidate, URL, CONTENT)).outcome is (
            AttemptOutcome.RETRYABLE
        )
        fake_llm.script["model-a"] = bad_request()
        assert (await generator._attempt(candidate, URL, CONTENT)).outcome is (
            AttemptOutcome.FATAL
        )


# ---------------------------------------------------------------------------
# GenerationCache
# ---------------------------------------------------------------------------


class TestGenerationCache:
    async def test_unchanged_content_returns_identical_xml(
        self, settings: Settings, fake_llm: FakeCompletionClient, memory_store: MemoryStore
    ) -> None:
        # The model would answer differently the second time.
        fake_llm.script["model-a"] = [SAMPLE_FEED, SAMPLE_FEED.replace("Second", "Other")]
        cache = GenerationCache(
            FeedGenerator(fake_llm, settings.llm), memory_store, timedelta(days=7)
        )

        first = await cache.get_or_generate("fp", URL, CONTENT)
        second = await cache.get_or_generate("fp", URL, CONTENT)

        assert first.status is CacheStatus.MISS
        assert second.status is CacheStatus.HIT
        assert second.value.xml == first.value.xml
        assert len(fake_llm.calls) == 1

    async def test_new_fingerprint_regenerates(
        self, settings: Settings, fake_llm: FakeCompletionClient, memory_store: MemoryStore
    ) -> None:
        cache = GenerationCache(
            FeedGenerator(fake_llm, settings.llm), memory_store, timedelta(days=7)
        )
        await cache.get_or_generate("fp1", URL, CONTENT)
        await cache.get_or_generate("fp2", URL, CONTENT + "new post")
        assert len(fake_llm.calls) == 2

    async def test_concurrent_requests_generate_once(
        self, settings: Settings, memory_store: MemoryStore
    ) -> None:
        gate = asyncio.Event()

        class SlowClient(FakeCompletionClient):
            async def complete(self, request):
                await gate.wait()
                return await super().complete(request)

        client = SlowClient()
        cache = GenerationCache(
            FeedGenerator(client, settings.llm), memory_store, timedelta(days=7)
        )
        tasks = [asyncio.create_task(cache.get_or_generate("fp", URL, CONTENT)) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert len(client.calls) == 1
        assert len({r.value.xml for r in results}) == 1
        assert [r.status for r in results].count(CacheStatus.MISS) == 1

    async def test_failed_generation_not_cached(
        self, settings: Settings, fake_llm: FakeCompletionClient, memory_store: MemoryStore
    ) -> None:
        fake_llm.script["model-a"] = [bad_request(), SAMPLE_FEED]
        cache = GenerationCache(
            FeedGenerator(fake_llm, settings.llm), memory_store, timedelta(days=7)
        )
        with pytest.raises(GenerationError):
            await cache.get_or_generate("fp", URL, CONTENT)
        lookup = await cache.get_or_generate("fp", URL, CONTENT)
        assert lookup.status is CacheStatus.MISS

    async def test_evict_url(
        self, settings: Settings, fake_llm: FakeCompletionClient, memory_store: MemoryStore
    ) -> None:
        cache = GenerationCache(
            FeedGenerator(fake_llm, settings.llm), memory_store, timedelta(days=7)
        )
        await cache.get_or_generate("fp", URL, CONTENT)
        assert await cache.evict_url(URL) == 1
        lookup = await cache.get_or_generate("fp", URL, CONTENT)
        assert lookup.status is CacheStatus.MISS
        assert len(fake_llm.calls) == 2
