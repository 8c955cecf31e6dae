"""XML clean-up for model-written feeds.

Models routinely emit "Fish & Chips" or "a < b" in titles and descriptions,
which breaks every XML parser downstream. ``sanitize_xml`` splits the
document into markup and text runs and escapes only the text runs, so tag
structure is never rewritten. It is idempotent: escaped output contains no
raw ``<``/``>`` in text and every ``&`` starts a known entity.

``normalize_items`` enforces the per-item invariants readers depend on for
deduplication: ``<guid>`` is textually identical to ``<link>`` and every item
carries a ``<pubDate>``.
"""

from __future__ import annotations

import re
from email.utils import format_datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

_MARKUP = re.compile(
    r"<!\[CDATA\[.*?\]\]>"
    r"|<!--.*?-->"
    r"|<\?.*?\?>"
    r"|<![A-Za-z][^<>]*>"
    r"|</?[A-Za-z_][\w:.\-]*(?:\s+[^<>]*?)?/?>",
    re.DOTALL,
)

_BARE_AMPERSAND = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#[0-9]+|#[xX][0-9a-fA-F]+);)")

_ITEM = re.compile(r"(<item\b[^>]*>)(.*?)(</item>)", re.DOTALL)
_LINK = re.compile(r"<link>(.*?)</link>", re.DOTALL)
_GUID = re.compile(r"<guid\b[^>]*/>|<guid\b[^>]*>.*?</guid>", re.DOTALL)
_PUBDATE = re.compile(r"<pubDate>\s*\S.*?</pubDate>", re.DOTALL)
_EMPTY_PUBDATE = re.compile(r"<pubDate\s*/>|<pubDate>\s*</pubDate>")


def _escape_text(text: str) -> str:
    text = _BARE_AMPERSAND.sub("&amp;", text)
    return text.replace("<", "&lt;").replace(">", "&gt;")


def _escape_markup(markup: str) -> str:
    # Element tags may carry bare ampersands in attribute values.
    if markup.startswith("<!") or markup.startswith("<?"):
        return markup
    return _BARE_AMPERSAND.sub("&amp;", markup)


def sanitize_xml(xml: str) -> str:
    parts: list[str] = []
    pos = 0
    for match in _MARKUP.finditer(xml):
        parts.append(_escape_text(xml[pos : match.start()]))
        parts.append(_escape_markup(match.group()))
        pos = match.end()
    parts.append(_escape_text(xml[pos:]))
    return "".join(parts)


def _normalize_item(body: str, pub_date: str) -> str:
    link = _LINK.search(body)
    if link is not None and link.group(1).strip():
        guid = f'<guid isPermaLink="true">{link.group(1)}</guid>'
        if _GUID.search(body):
            body = _GUID.sub(lambda _: guid, body, count=1)
        else:
            body = body[: link.end()] + guid + body[link.end() :]

    if not _PUBDATE.search(body):
        body = _EMPTY_PUBDATE.sub("", body) + f"<pubDate>{pub_date}</pubDate>"
    return body


def normalize_items(xml: str, now: datetime) -> str:
    """Force guid == link and default missing pubDates to ``now`` (RFC 822)."""
    pub_date = format_datetime(now, usegmt=True)
    return _ITEM.sub(
        lambda m: m.group(1) + _normalize_item(m.group(2), pub_date) + m.group(3),
        xml,
    )
