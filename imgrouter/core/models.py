"""Provider-agnostic request/result types shared by the dispatch core."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from imgrouter.api.schemas import Provider, TaskStatus

DEFAULT_PROMPT = "A beautiful scenery"


@dataclass
class CanonicalRequest:
    prompt: str = ""
    reference_images: list[str] = field(default_factory=list)
    target_size: str = ""
    model_hint: Optional[str] = None
    streaming: bool = False

    @property
    def effective_prompt(self) -> str:
        return self.prompt or DEFAULT_PROMPT

    @classmethod
    def from_chat(cls, body: dict) -> "CanonicalRequest":
        """Build from a chat-completion body; the last user message supplies prompt and images."""
        prompt, images = _extract_prompt_and_images(body.get("messages") or [])
        return cls(
            prompt=prompt,
            reference_images=images,
            target_size=body.get("size") or "",
            model_hint=body.get("model") or None,
            streaming=body.get("stream") is True,
        )


def _extract_prompt_and_images(messages: list[Any]) -> tuple[str, list[str]]:
    for message in reversed(messages):
        if not isinstance(message, dict) or message.get("role") != "user":
            continue

        content = message.get("content")
        if isinstance(content, str):
            return content, []
        if not isinstance(content, list):
            return "", []

        prompt = ""
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                prompt = part.get("text") or ""
                break

        images: list[str] = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "image_url":
                url = (part.get("image_url") or {}).get("url") or ""
                if url:
                    images.append(url)
        return prompt, images

    return "", []


@dataclass(frozen=True)
class ImageReference:
    kind: str  # "url" | "b64"
    value: str

    @classmethod
    def url(cls, value: str) -> "ImageReference":
        return cls(kind="url", value=value)

    @classmethod
    def b64(cls, value: str) -> "ImageReference":
        return cls(kind="b64", value=value)


@dataclass
class CanonicalResult:
    provider: Provider
    image_references: list[ImageReference] = field(default_factory=list)


@dataclass
class GenerationTask:
    """An async provider job. Only TaskPoller changes status/attempts_made."""
    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    attempts_made: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status != TaskStatus.PENDING


@dataclass
class PollResult:
    """One status check, already decoded by the adapter."""
    status: TaskStatus
    images: list[str] = field(default_factory=list)
    raw: Any = None
