"""Dispatch: route a canonical request to the adapter for its credential's provider.

Two entry points:
- handle():        the caller supplied a provider credential; classify it
- handle_pooled(): the caller holds the gateway token; draw a key from the pool
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from imgrouter.api.schemas import Provider
from imgrouter.core.adapters import ProviderAdapter
from imgrouter.core.classifier import classify, mask_credential
from imgrouter.core.errors import ClassificationFailed, NoKeyAvailable
from imgrouter.core.models import CanonicalRequest, CanonicalResult
from imgrouter.services.key_pool import KeyPoolManager

logger = logging.getLogger("imgrouter.dispatcher")


class Dispatcher:
    """Stateless between calls; pool state lives in the KeyPoolManager."""

    def __init__(
        self,
        adapters: dict[Provider, ProviderAdapter],
        key_pool: KeyPoolManager,
    ) -> None:
        self._adapters = adapters
        self._pool = key_pool

    def adapter_for(self, provider: Provider) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ClassificationFailed(
                "Invalid API Key format. Could not detect provider."
                if provider == Provider.UNKNOWN
                else f"Provider {provider.value} is not supported by the gateway"
            )
        return adapter

    @property
    def adapters(self) -> dict[Provider, ProviderAdapter]:
        return dict(self._adapters)

    def apply_timeout(self, seconds: float) -> None:
        """Set the per-call upstream timeout; calls already in flight keep theirs."""
        for adapter in self._adapters.values():
            adapter.timeout = seconds
        logger.info("Upstream timeout set to %.0fs", seconds)

    async def handle(self, request: CanonicalRequest, credential: str) -> CanonicalResult:
        provider = classify(credential)
        adapter = self.adapter_for(provider)
        logger.info(
            "Routing to %s (key=%s, images=%d, stream=%s)",
            provider.value, mask_credential(credential),
            len(request.reference_images), request.streaming,
        )
        return await adapter.generate(credential, self._with_size(request, provider))

    async def handle_pooled(
        self,
        request: CanonicalRequest,
        provider_filter: Optional[str] = None,
    ) -> CanonicalResult:
        if provider_filter is None:
            provider_filter = self._pool.settings.active_provider

        record = await self._pool.select_next(provider_filter)
        if record is None:
            raise NoKeyAvailable(
                f"No API key available (provider filter: {provider_filter or 'auto'})"
            )

        adapter = self.adapter_for(record.provider)
        logger.info(
            "Routing to %s via pooled key %s (%s)",
            record.provider.value, record.name, mask_credential(record.credential),
        )
        return await adapter.generate(record.credential, self._with_size(request, record.provider))

    def _with_size(self, request: CanonicalRequest, provider: Provider) -> CanonicalRequest:
        """Fill an empty target_size from the stored per-provider size settings."""
        if request.target_size:
            return request
        sizes = self._pool.settings.model_sizes.get(provider.value)
        if sizes is None:
            return request
        size = sizes.imageEdit if request.reference_images else sizes.textToImage
        if not size:
            return request
        logger.debug("Using configured size %s for %s", size, provider.value)
        return replace(request, target_size=size)
