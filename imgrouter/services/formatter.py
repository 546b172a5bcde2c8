"""Render a CanonicalResult as an OpenAI chat-completion reply (JSON or SSE)."""

from __future__ import annotations

import json
import time
import uuid
from typing import Iterator

from imgrouter.core.models import CanonicalResult, ImageReference

GENERATION_FAILED_TEXT = "图片生成失败"


def render_reference(ref: ImageReference) -> str:
    if ref.kind == "b64":
        return f"![Generated Image](data:image/png;base64,{ref.value})"
    return f"![Generated Image]({ref.value})"


def render_content(result: CanonicalResult) -> str:
    """Markdown image list; never blank."""
    content = "\n\n".join(render_reference(r) for r in result.image_references)
    return content or GENERATION_FAILED_TEXT


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


def build_completion(result: CanonicalResult, model: str | None) -> dict:
    return {
        "id": new_completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model or "unknown-model",
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": render_content(result)},
            "finish_reason": "stop",
        }],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def iter_sse_chunks(result: CanonicalResult, model: str | None) -> Iterator[str]:
    """Content chunk, stop chunk, then [DONE]."""
    completion_id = new_completion_id()
    model_name = model or "unknown-model"

    def chunk(delta: dict, finish_reason: str | None) -> str:
        payload = {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": model_name,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"

    yield chunk({"role": "assistant", "content": render_content(result)}, None)
    yield chunk({}, "stop")
    yield "data: [DONE]\n\n"
