"""Generated content endpoints.

The generation service's replies are posted here as they arrive (raw text or
JSON), normalized, and kept for a short while so clients can share them.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from betledger.api.dependencies import get_content_cache
from betledger.services.cache import GeneratedContentCache

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/content", tags=["content"])


class ContentResponse(BaseModel):
    key: str
    data: Any


@router.put("/{key}", response_model=ContentResponse)
async def store_content(
    key: str,
    request: Request,
    content: GeneratedContentCache = Depends(get_content_cache),
):
    """
    Normalize and cache a generation-service reply.

    Refusals and unparseable replies are rejected with 422 and not cached.
    """
    raw = (await request.body()).decode("utf-8", errors="replace")

    async def fetch() -> str:
        return raw

    data = await content.get_or_fetch(key, fetch, force_refresh=True)
    if data is None:
        raise HTTPException(status_code=422, detail="Reply contains no usable data")

    logger.info("generated_content_stored", key=key, size=len(raw))
    return ContentResponse(key=key, data=data)


@router.get("/{key}", response_model=ContentResponse)
async def get_content(
    key: str,
    content: GeneratedContentCache = Depends(get_content_cache),
):
    """Get a cached generation payload."""
    data = await content.get(key)
    if data is None:
        raise HTTPException(status_code=404, detail="No fresh content for this key")
    return ContentResponse(key=key, data=data)
