import logging
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from threadline.config_secrets import FEED_CACHE_TTL_SECONDS, REDIS_URL
from threadline.schemas.schemas import CachedFeedPage, SortOrder

logger = logging.getLogger(__name__)

# Redis connection
redis_client: Optional[redis.Redis] = None

# Set holding the key of every cached feed page, so pages can be patched in bulk
FEED_PAGE_INDEX_KEY = "feed:pages"

# Optimistic rewrites of one page before it is dropped instead
CACHE_PATCH_ATTEMPTS = 3


async def init_cache():
    """Initialize Redis connection"""
    global redis_client
    redis_client = redis.from_url(REDIS_URL, decode_responses=True)


async def close_cache():
    """Close Redis connection"""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def feed_page_key(filter_key: str, order: SortOrder, limit: int) -> str:
    return f"feed:{filter_key}:{order.value}:{limit}"


# Feed page cache functions
async def cache_feed_page(page: CachedFeedPage, expiry: int = FEED_CACHE_TTL_SECONDS):
    """Cache a first feed page"""
    if not redis_client:
        return

    key = feed_page_key(page.filter_key, page.order, page.limit)
    try:
        pipe = redis_client.pipeline()
        pipe.setex(key, expiry, page.to_redis())
        pipe.sadd(FEED_PAGE_INDEX_KEY, key)
        await pipe.execute()
    except RedisError:
        logger.warning("Failed to cache feed page %s", key, exc_info=True)


async def get_cached_feed_page(filter_key: str, order: SortOrder, limit: int) -> Optional[CachedFeedPage]:
    """Get a cached first feed page, None on a miss"""
    if not redis_client:
        return None

    key = feed_page_key(filter_key, order, limit)
    try:
        cached = await redis_client.get(key)
    except RedisError:
        logger.warning("Failed to read feed page %s", key, exc_info=True)
        return None

    if not cached:
        return None
    return CachedFeedPage.from_redis(cached)


async def _rewrite_cached_page(key: str, updater: Callable[[CachedFeedPage], CachedFeedPage]):
    """
    Read-modify-write one cached page under WATCH.

    A write by anyone else between the read and the write aborts the
    transaction and the page is re-read. After CACHE_PATCH_ATTEMPTS lost
    rounds the page is dropped.
    """
    async with redis_client.pipeline(transaction=True) as pipe:
        for _ in range(CACHE_PATCH_ATTEMPTS):
            try:
                await pipe.watch(key)
                page = CachedFeedPage.from_redis(await pipe.get(key))
                if page is None:
                    await redis_client.srem(FEED_PAGE_INDEX_KEY, key)
                    return
                updated = updater(page)
                if updated == page:
                    return
                pipe.multi()
                pipe.set(key, updated.to_redis(), keepttl=True)
                await pipe.execute()
                return
            except WatchError:
                continue

    logger.warning("Cached feed page %s kept changing, dropping it", key)
    await redis_client.delete(key)


async def update_cached_feed_pages(updater: Callable[[CachedFeedPage], CachedFeedPage]):
    """
    Rewrite every cached feed page through ``updater``.

    Pages keep their remaining TTL. Index entries whose page already expired
    are dropped along the way.
    """
    if not redis_client:
        return

    try:
        keys = await redis_client.smembers(FEED_PAGE_INDEX_KEY)
        for key in keys:
            await _rewrite_cached_page(key, updater)
    except RedisError:
        logger.warning("Failed to update cached feed pages, invalidating them", exc_info=True)
        await invalidate_feed_pages()


# Cache invalidation functions
async def invalidate_feed_pages():
    """Drop every cached feed page"""
    if not redis_client:
        return

    try:
        keys = await redis_client.smembers(FEED_PAGE_INDEX_KEY)
        await redis_client.delete(FEED_PAGE_INDEX_KEY, *keys)
    except RedisError:
        logger.exception("Failed to invalidate cached feed pages")
