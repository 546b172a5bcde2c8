"""Provider adapters: translate a CanonicalRequest to each provider's wire format.

Each adapter issues its HTTP calls via aiohttp and turns the reply into a
CanonicalResult. Any non-2xx status is a hard failure carrying the upstream
body verbatim; adapters never retry.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from imgrouter.api.schemas import Provider, TaskStatus
from imgrouter.core.classifier import mask_credential
from imgrouter.core.errors import MalformedUpstreamResponse, UpstreamError
from imgrouter.core.models import (
    CanonicalRequest,
    CanonicalResult,
    GenerationTask,
    ImageReference,
    PollResult,
)
from imgrouter.core.poller import (
    MAX_POLL_ATTEMPTS,
    POLL_INTERVAL_SECONDS,
    TaskPoller,
    TransientPollError,
)

logger = logging.getLogger("imgrouter.adapters")

DEFAULT_TIMEOUT_SECONDS = 120.0


class ProviderAdapter:
    """Base adapter: shared HTTP plumbing, one subclass per provider."""

    provider: Provider
    default_model: str = ""
    default_size: str = "1024x1024"
    async_generation: bool = False

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.provider.value

    async def generate(self, credential: str, request: CanonicalRequest) -> CanonicalResult:
        raise NotImplementedError

    def describe(self) -> dict:
        return {
            "name": self.name,
            "default_model": self.default_model,
            "default_size": self.default_size,
            "async_generation": self.async_generation,
        }

    async def _send(
        self,
        method: str,
        url: str,
        credential: str,
        payload: Optional[dict] = None,
        extra_headers: Optional[dict] = None,
    ) -> tuple[int, str]:
        """Issue one HTTP call and return (status, body text)."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credential}",
        }
        if extra_headers:
            headers.update(extra_headers)

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                url,
                json=payload,
                headers=headers,
                timeout=timeout,
            ) as resp:
                return resp.status, await resp.text()

    async def _call_json(
        self,
        method: str,
        url: str,
        credential: str,
        payload: Optional[dict] = None,
        extra_headers: Optional[dict] = None,
        label: str = "API",
    ) -> Any:
        """Like _send, but raises UpstreamError on failure and decodes the JSON body."""
        start = time.time()
        logger.debug(
            "%s %s %s key=%s body=%s",
            self.name, method, url, mask_credential(credential),
            json.dumps(payload, ensure_ascii=False)[:500] if payload else "",
        )

        try:
            status, body = await self._send(method, url, credential, payload, extra_headers)
        except asyncio.TimeoutError:
            logger.error("%s %s timeout after %.0fs", self.name, label, self.timeout)
            raise UpstreamError(
                self.name,
                f"{self.name} {label} timed out after {self.timeout:.0f}s",
                upstream_status=504,
            )
        except aiohttp.ClientError as e:
            error_msg = f"Connection error: {type(e).__name__}: {e}"
            logger.error("%s %s error: %s", self.name, label, error_msg)
            raise UpstreamError(
                self.name,
                f"{self.name} {label} {error_msg}",
                upstream_status=502,
                body=error_msg,
            )

        elapsed_ms = int((time.time() - start) * 1000)
        if not 200 <= status < 300:
            logger.warning(
                "%s %s failed: status=%d time=%dms body=%s",
                self.name, label, status, elapsed_ms, body[:500],
            )
            raise UpstreamError(
                self.name,
                f"{self.name} {label} Error ({status}): {body}",
                upstream_status=status,
                body=body,
            )

        logger.info("%s %s success: status=%d time=%dms", self.name, label, status, elapsed_ms)
        try:
            return json.loads(body)
        except json.JSONDecodeError:
            raise MalformedUpstreamResponse(
                self.name,
                f"{self.name} {label} returned non-JSON body: {body[:500]}",
                upstream_status=status,
                body=body,
            )


class VolcEngineAdapter(ProviderAdapter):
    provider = Provider.VOLCENGINE
    default_model = "doubao-seedream-4-0-250828"
    default_size = "4096x4096"

    async def generate(self, credential: str, request: CanonicalRequest) -> CanonicalResult:
        body = {
            "model": request.model_hint or self.default_model,
            "prompt": request.effective_prompt,
            "image": list(request.reference_images),
            "response_format": "url",
            "size": request.target_size or self.default_size,
            "seed": -1,
            "stream": False,
            "watermark": False,
        }
        data = await self._call_json(
            "POST", self.base_url, credential, body, extra_headers={"Connection": "close"},
        )

        entries = data.get("data") if isinstance(data, dict) else None
        refs = [
            ImageReference.url(item["url"])
            for item in entries or []
            if isinstance(item, dict) and item.get("url")
        ]
        return CanonicalResult(provider=self.provider, image_references=refs)


class GiteeAdapter(ProviderAdapter):
    provider = Provider.GITEE
    default_model = "z-image-turbo"
    default_size = "1024x1024"

    def _resolve_model(self, hint: Optional[str]) -> str:
        if hint and "z-image" in hint:
            return hint
        return self.default_model

    async def generate(self, credential: str, request: CanonicalRequest) -> CanonicalResult:
        body = {
            "model": self._resolve_model(request.model_hint),
            "prompt": request.effective_prompt,
            "size": request.target_size or self.default_size,
            "n": 1,
            "response_format": "url",
        }
        data = await self._call_json(
            "POST", self.base_url, credential, body,
            extra_headers={"User-Agent": "Doubao-Seedream-Proxy/1.0"},
        )

        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list) or not entries:
            raise MalformedUpstreamResponse(
                self.name,
                f"Gitee API returned unexpected data: {json.dumps(data, ensure_ascii=False)}",
                upstream_status=200,
                body=json.dumps(data, ensure_ascii=False),
            )

        refs: list[ImageReference] = []
        for item in entries:
            if not isinstance(item, dict):
                continue
            if item.get("url"):
                refs.append(ImageReference.url(item["url"]))
            elif item.get("b64_json"):
                refs.append(ImageReference.b64(item["b64_json"]))
        return CanonicalResult(provider=self.provider, image_references=refs)


class ModelScopeAdapter(ProviderAdapter):
    """Submit-then-poll. Async mode is forced on submit; the provider may block otherwise."""

    provider = Provider.MODELSCOPE
    default_model = "Tongyi-MAI/Z-Image-Turbo"
    default_size = "2048x2048"
    async_generation = True

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(base_url, timeout)
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self._sleep = sleep

    def _resolve_model(self, hint: Optional[str]) -> str:
        if hint and "Z-Image" in hint:
            return hint
        return self.default_model

    async def generate(self, credential: str, request: CanonicalRequest) -> CanonicalResult:
        task = await self.submit(credential, request)
        poller = TaskPoller(
            functools.partial(self.check_task, credential),
            provider=self.name,
            max_attempts=self.max_poll_attempts,
            interval=self.poll_interval,
            sleep=self._sleep,
        )
        urls = await poller.run(task)
        return CanonicalResult(
            provider=self.provider,
            image_references=[ImageReference.url(u) for u in urls],
        )

    async def submit(self, credential: str, request: CanonicalRequest) -> GenerationTask:
        body = {
            "model": self._resolve_model(request.model_hint),
            "prompt": request.effective_prompt,
            "size": request.target_size or self.default_size,
            "n": 1,
        }
        data = await self._call_json(
            "POST",
            f"{self.base_url}/images/generations",
            credential,
            body,
            extra_headers={"X-ModelScope-Async-Mode": "true"},
            label="Submit",
        )

        task_id = data.get("task_id") if isinstance(data, dict) else None
        if not task_id:
            raise MalformedUpstreamResponse(
                self.name,
                f"ModelScope submit returned no task_id: {json.dumps(data, ensure_ascii=False)}",
                upstream_status=200,
                body=json.dumps(data, ensure_ascii=False),
            )
        logger.info("ModelScope task submitted: %s, polling...", task_id)
        return GenerationTask(task_id=str(task_id))

    async def check_task(self, credential: str, task_id: str) -> PollResult:
        """One status check. Transport errors, non-2xx and bad JSON are transient."""
        try:
            status, body = await self._send(
                "GET",
                f"{self.base_url}/tasks/{task_id}",
                credential,
                extra_headers={"X-ModelScope-Task-Type": "image_generation"},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientPollError(f"{type(e).__name__}: {e}")

        if not 200 <= status < 300:
            raise TransientPollError(f"status={status} body={body[:200]}", status_code=status)

        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise TransientPollError(f"undecodable body: {body[:200]}", status_code=status)
        if not isinstance(data, dict):
            raise TransientPollError(f"unexpected body: {body[:200]}", status_code=status)

        task_status = data.get("task_status")
        if task_status == "SUCCEED":
            images = [u for u in data.get("output_images") or [] if isinstance(u, str) and u]
            return PollResult(status=TaskStatus.SUCCEEDED, images=images, raw=data)
        if task_status == "FAILED":
            return PollResult(status=TaskStatus.FAILED, raw=data)
        return PollResult(status=TaskStatus.PENDING, raw=data)


def build_adapters(
    volcengine_url: str,
    gitee_url: str,
    modelscope_url: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict[Provider, ProviderAdapter]:
    """One adapter per dispatchable provider. Unknown and HuggingFace have none."""
    return {
        Provider.VOLCENGINE: VolcEngineAdapter(volcengine_url, timeout),
        Provider.GITEE: GiteeAdapter(gitee_url, timeout),
        Provider.MODELSCOPE: ModelScopeAdapter(modelscope_url, timeout),
    }
