"""Integration test fixtures.

Provides the ASGI app wired with an in-memory cache store, a respx-mocked
reader service and the scriptable completion client from tests/fakes.py.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import httpx
import pytest
import respx
from fakes import PAGE_MARKDOWN

from pagefeed.app import create_app
from pagefeed.cache import MemoryStore
from pagefeed.state import build_state

if TYPE_CHECKING:
    from fakes import FakeCompletionClient

    from pagefeed.config import Settings
    from pagefeed.state import AppState


@pytest.fixture()
def reader():
    """Mocked reader service; yields the route so tests can count calls."""
    with respx.mock(assert_all_called=False) as mock:
        route = mock.get(url__startswith="https://reader.test/").mock(
            return_value=httpx.Response(200, text=PAGE_MARKDOWN)
        )
        yield route


@pytest.fixture()
async def app_state(settings: Settings, fake_llm: FakeCompletionClient) -> AppState:
    async with httpx.AsyncClient() as outbound:
        yield build_state(settings, MemoryStore(), outbound, fake_llm)


@pytest.fixture()
async def client(settings: Settings, app_state: AppState, reader) -> httpx.AsyncClient:
    app = create_app(settings, state=app_state)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture()
def subprocess_env() -> dict[str, str]:
    env = os.environ.copy()
    env["PAGEFEED__CACHE__BACKEND"] = "memory"
    return env
