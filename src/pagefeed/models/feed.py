from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator


class FetchResult(BaseModel):
    """Markdown-like text extracted from a page by the reader service."""

    model_config = ConfigDict(frozen=True)

    url: str
    content: str
    fetched_at: datetime
    source: str  # Reader tag, surfaced as X-Content-Source


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    xml: str
    model_used: str
    generated_at: datetime


class ModelCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str


class FeedRequest(BaseModel):
    url: str

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if len(v) > 2048:
            raise ValueError("url must not exceed 2048 characters")
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must use http or https scheme")
        if any(c.isspace() for c in v):
            raise ValueError("url must not contain whitespace")
        return v
