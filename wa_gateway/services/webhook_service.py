"""
Webhook Service

Looks up the webhooks configured for an account. Active webhook lists are
cached in Redis when REDIS_URL is set; a missing or broken cache is never an
outage, lookups simply go to the database.
"""
import json

import redis.asyncio as redis
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wa_gateway.config import settings
from wa_gateway.logging_config import get_logger
from wa_gateway.models.webhook import Webhook


logger = get_logger(component="webhook_service")


class WebhookTarget(BaseModel):
    """The slice of a webhook configuration the delivery engine needs."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    url: str
    secret: str | None = None
    is_active: bool = True
    max_retries: int | None = None


def cache_key(account_id: str) -> str:
    return f"webhooks:active:{account_id}"


class WebhookService:
    """Read access to per-account webhook configuration."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        redis_url: str | None = None,
        cache_ttl: int | None = None,
    ):
        if session_factory is None:
            from wa_gateway.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.redis_url = redis_url if redis_url is not None else settings.REDIS_URL
        self.cache_ttl = cache_ttl or settings.WEBHOOK_CACHE_TTL
        self._cache_client = None

    async def get_cache_client(self):
        """Get or create Redis cache client. None when caching is disabled."""
        if not self.redis_url:
            return None
        if self._cache_client is None:
            self._cache_client = redis.from_url(self.redis_url)
        return self._cache_client

    async def _get_cached(self, account_id: str) -> list[WebhookTarget] | None:
        try:
            client = await self.get_cache_client()
            if client is None:
                return None
            cached = await client.get(cache_key(account_id))
        except Exception as e:
            logger.warning("webhook_cache_get_failed", account_id=account_id, error=str(e))
            return None

        if not cached:
            return None
        try:
            return [WebhookTarget(**item) for item in json.loads(cached)]
        except (ValueError, TypeError) as e:
            # Corrupt or old-format entry: drop it and read from the database
            logger.warning("webhook_cache_get_failed", account_id=account_id, error=str(e))
            await self.invalidate(account_id)
            return None

    async def _set_cached(self, account_id: str, webhooks: list[WebhookTarget]):
        try:
            client = await self.get_cache_client()
            if client is None:
                return
            value = json.dumps([webhook.model_dump() for webhook in webhooks])
            await client.setex(cache_key(account_id), self.cache_ttl, value)
        except Exception as e:
            logger.warning("webhook_cache_set_failed", account_id=account_id, error=str(e))

    async def invalidate(self, account_id: str):
        """Drop the cached webhook list of an account."""
        try:
            client = await self.get_cache_client()
            if client is not None:
                await client.delete(cache_key(account_id))
        except Exception as e:
            logger.warning("webhook_cache_invalidate_failed", account_id=account_id, error=str(e))

    async def get_webhook(self, account_id: str, webhook_id: str) -> WebhookTarget | None:
        """Get one webhook within an account."""
        async with self.session_factory() as db:
            stmt = select(Webhook).where(
                Webhook.id == webhook_id,
                Webhook.account_id == account_id
            )
            result = await db.execute(stmt)
            webhook = result.scalar_one_or_none()
        return WebhookTarget.model_validate(webhook) if webhook else None

    async def get_active_webhooks(self, account_id: str) -> list[WebhookTarget]:
        """Active webhooks of an account, oldest first."""
        cached = await self._get_cached(account_id)
        if cached is not None:
            return cached

        async with self.session_factory() as db:
            stmt = (
                select(Webhook)
                .where(Webhook.account_id == account_id, Webhook.is_active.is_(True))
                .order_by(Webhook.created_at.asc())
            )
            result = await db.execute(stmt)
            webhooks = [WebhookTarget.model_validate(row) for row in result.scalars().all()]

        await self._set_cached(account_id, webhooks)
        return webhooks


# Singleton instance
webhook_service = WebhookService()
