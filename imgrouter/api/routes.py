"""Gateway route: OpenAI-style chat completions backed by image providers."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from imgrouter.api.auth import bearer_credential, get_key_pool
from imgrouter.api.schemas import ChatCompletionRequest
from imgrouter.core.dispatcher import Dispatcher
from imgrouter.core.models import CanonicalRequest
from imgrouter.services.formatter import build_completion, iter_sse_chunks
from imgrouter.services.key_pool import KeyPoolManager

logger = logging.getLogger("imgrouter.api")

router = APIRouter(prefix="/v1", tags=["gateway"])


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


@router.post("/chat/completions")
async def chat_completions(
    req: ChatCompletionRequest,
    credential: str = Depends(bearer_credential),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    pool: KeyPoolManager = Depends(get_key_pool),
):
    """Generate images for the last user message.

    A Bearer equal to the configured access token draws a key from the pool;
    any other Bearer is treated as a provider credential and classified.
    """
    canonical = CanonicalRequest.from_chat(req.model_dump())

    access_token = pool.settings.access_token
    if access_token and credential == access_token:
        result = await dispatcher.handle_pooled(canonical)
    else:
        result = await dispatcher.handle(canonical, credential)

    logger.info(
        "Generation done: provider=%s images=%d stream=%s",
        result.provider.value, len(result.image_references), canonical.streaming,
    )

    if canonical.streaming:
        return StreamingResponse(
            iter_sse_chunks(result, req.model),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )
    return build_completion(result, req.model)
