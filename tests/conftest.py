"""Shared fixtures: settings and a scriptable completion client."""

from __future__ import annotations

import pytest
from fakes import FakeCompletionClient

from pagefeed.config import Settings


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        extractor={"reader_url": "https://reader.test"},
        llm={"api_key": "test-key", "models": ["model-a", "model-b", "model-c"]},
        cache={"backend": "memory"},
    )


@pytest.fixture()
def fake_llm() -> FakeCompletionClient:
    return FakeCompletionClient()
