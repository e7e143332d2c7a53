"""Model catalog cache and resolution policy."""

from __future__ import annotations

import asyncio

from cachetools import TTLCache

from streamchat.core import AppError, get_logger
from streamchat.providers.base import BaseProvider, ModelInfo

logger = get_logger(__name__)

CATALOG_KEY = "free_models"


class ModelCatalog:
    """Free-tier models from the provider, cached for the cache's TTL."""

    def __init__(self, provider: BaseProvider, cache: TTLCache):
        self.provider = provider
        self.cache = cache
        self._lock = asyncio.Lock()
        self.fetches = 0

    async def free_models(self) -> list[ModelInfo]:
        cached = self.cache.get(CATALOG_KEY)
        if cached is not None:
            return cached

        async with self._lock:
            # Another caller may have refilled while we waited.
            cached = self.cache.get(CATALOG_KEY)
            if cached is not None:
                return cached
            self.fetches += 1
            models = await self.provider.list_models()
            free = sorted(
                (model for model in models if model.is_free),
                key=lambda model: (model.name or model.id).lower(),
            )
            self.cache[CATALOG_KEY] = free
            logger.info("Model catalog refreshed", data={"free_models": len(free)})
            return free

    def invalidate(self) -> None:
        self.cache.pop(CATALOG_KEY, None)

    async def contains(self, model_id: str) -> bool:
        return any(model.id == model_id for model in await self.free_models())


class ModelResolver:
    """Picks the model for a request: a known free model, or the default."""

    def __init__(self, catalog: ModelCatalog, default_model: str):
        self.catalog = catalog
        self.default_model = default_model

    async def resolve(self, requested: str | None) -> str:
        if not requested:
            return self.default_model
        try:
            known = await self.catalog.contains(requested)
        except AppError as exc:
            logger.warning(
                "Model catalog unavailable; using default model",
                data={"requested": requested, "code": exc.code.value},
            )
            return self.default_model
        if not known:
            logger.info(
                "Requested model not in catalog; using default model",
                data={"requested": requested, "default": self.default_model},
            )
            return self.default_model
        return requested
