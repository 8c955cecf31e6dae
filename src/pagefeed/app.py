"""HTTP surface: ``GET /api/rss?url=...``."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from starlette.applications import Starlette
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

from pagefeed.cache import open_store, run_periodic_cleanup
from pagefeed.completion import OpenAICompletionClient
from pagefeed.config import Settings
from pagefeed.errors import (
    ExtractionError,
    GenerationError,
    InvalidUrlError,
    MissingParameterError,
)
from pagefeed.fetcher import build_http_client
from pagefeed.fingerprint import short_fingerprint
from pagefeed.state import build_state

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from starlette.requests import Request

    from pagefeed.pipeline import FeedResult
    from pagefeed.state import AppState

log = structlog.get_logger()

USAGE = 'Error: Missing "url" parameter. Usage: /api/rss?url=https://site.com'


def _feed_headers(result: FeedResult, settings: Settings) -> dict[str, str]:
    return {
        "Cache-Control": (
            f"s-maxage={settings.http.cdn_max_age_seconds}, "
            f"stale-while-revalidate={settings.http.stale_while_revalidate_seconds}"
        ),
        "X-Model-Used": result.model_used,
        "X-Content-Source": result.source,
        "X-Content-Cache": result.content_cache.value,
        "X-Generation-Cache": result.generation_cache.value,
        "X-Content-Hash": short_fingerprint(result.fingerprint),
    }


async def rss_feed(request: Request) -> Response:
    state: AppState = request.app.state.pagefeed
    url = request.query_params.get("url", "")
    try:
        result = await state.service.build(url)
    except MissingParameterError:
        return PlainTextResponse(USAGE, status_code=400)
    except InvalidUrlError as exc:
        return JSONResponse(
            {"error": "Invalid url parameter", "message": exc.message, "url": url},
            status_code=400,
        )
    except ExtractionError as exc:
        log.warning("extraction_failed", **exc.to_dict())
        return JSONResponse(
            {"error": "Failed to fetch page content", "message": exc.message, "url": url},
            status_code=502,
        )
    except GenerationError as exc:
        log.error("generation_failed", url=url, **exc.to_dict())
        body: dict[str, Any] = {
            "error": "Failed to generate feed",
            "message": exc.message,
            "status": exc.status if exc.status is not None else "unknown",
            "models_attempted": exc.context.get("models_attempted", []),
        }
        return JSONResponse(body, status_code=500)

    return Response(
        result.xml,
        media_type="application/xml; charset=utf-8",
        headers=_feed_headers(result, state.settings),
    )


async def _unhandled_error(request: Request, exc: Exception) -> Response:
    log.error("unhandled_error", path=request.url.path, exc_info=exc)
    return JSONResponse(
        {"error": "Internal error", "message": "Unexpected server error", "status": 500},
        status_code=500,
    )


def create_app(settings: Settings | None = None, state: AppState | None = None) -> Starlette:
    """Build the ASGI app.

    With ``state`` given the lifespan wires nothing; tests use this to inject
    fakes. Otherwise the lifespan opens the cache store, the outbound HTTP
    client and the completion client, and closes them on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if state is not None:
            app.state.pagefeed = state
            yield
            return

        cfg = settings if settings is not None else Settings()
        completion = OpenAICompletionClient(cfg.llm)
        async with open_store(cfg.cache) as store, build_http_client(cfg.extractor) as client:
            removed = await store.cleanup_expired()
            log.info("cache_cleanup_complete", removed=removed, backend=cfg.cache.backend)
            app.state.pagefeed = build_state(cfg, store, client, completion)
            sweeper = asyncio.create_task(
                run_periodic_cleanup(store, cfg.cache.cleanup_interval_seconds)
            )
            log.info("startup_complete", models=cfg.llm.models)
            try:
                yield
            finally:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
                await completion.aclose()

    app = Starlette(
        routes=[Route("/api/rss", rss_feed, methods=["GET"])],
        lifespan=lifespan,
        exception_handlers={Exception: _unhandled_error},
    )
    if state is not None:
        # ASGI test transports do not run the lifespan.
        app.state.pagefeed = state
    return app
