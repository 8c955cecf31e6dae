"""Content fingerprints used as generation-cache keys."""

from __future__ import annotations

import hashlib


def fingerprint(url: str, content: str) -> str:
    """SHA-256 hex digest of ``url + ":" + content``.

    The URL length is prepended so that a colon inside the URL can never
    shift bytes between the two halves: ("a:b", "c") and ("a", "b:c") hash
    differently.
    """
    payload = f"{len(url)}:{url}:{content}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def short_fingerprint(digest: str, length: int = 16) -> str:
    return digest[:length]
