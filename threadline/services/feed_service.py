import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from asyncpg import Connection

from threadline.config_secrets import FEED_DEFAULT_LIMIT, FEED_MAX_LIMIT
from threadline.core import store
from threadline.core.cache import cache_feed_page, get_cached_feed_page
from threadline.core.db import get_connection
from threadline.core.errors import AuthenticationError, InvalidRequestError
from threadline.schemas.schemas import (
    CachedFeedPage,
    FeedFilter,
    FeedItem,
    FeedResponse,
    MediaVariant,
    SortOrder,
)
from threadline.services.cache_updates import live_fields, patch_feed_item
from threadline.services.serializers import post_to_feed_item

logger = logging.getLogger(__name__)


def clamp_limit(limit: Optional[int]) -> int:
    """Bound a client-supplied page size to [1, FEED_MAX_LIMIT]"""
    if limit is None:
        limit = FEED_DEFAULT_LIMIT
    return max(1, min(limit, FEED_MAX_LIMIT))


def parse_cursor(cursor: Optional[str]) -> Optional[datetime]:
    """
    Decode a pagination cursor.

    Cursors are the ISO-8601 createdAt of the last item of the previous page.
    Naive timestamps are taken as UTC.

    Raises:
        InvalidRequestError: if the cursor is not a timestamp
    """
    if cursor is None or cursor == "":
        return None
    try:
        value = datetime.fromisoformat(cursor.replace(" ", "+"))
    except ValueError as exc:
        raise InvalidRequestError(f"Invalid cursor: {cursor!r}") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


async def refresh_cached_items(conn: Connection, items: list[FeedItem]) -> Optional[list[FeedItem]]:
    """
    Overlay the stored counters and text of each post onto cached items.

    A cached page fixes which posts are shown, with their authors and media;
    likesCount, repliesCount and the editable fields always come from the
    store. Returns None when a cached post no longer exists, so the page is
    rebuilt from scratch.
    """
    posts_by_id = await store.get_posts_by_ids(conn, [item.id for item in items])
    if len(posts_by_id) != len(items):
        return None
    return [patch_feed_item(item, live_fields(posts_by_id[item.id])) for item in items]


async def get_feed(
    feed_filter: FeedFilter,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    viewer_id: Optional[UUID] = None,
    order: SortOrder = SortOrder.DESC,
) -> FeedResponse:
    """
    Get one page of a feed.

    This function assembles a page in a fixed number of queries:
    1. One query for the page of posts, with authors joined in
    2. One batch query for the media of every post on the page
    3. One batch query for which of those posts the viewer liked
    4. In-memory assembly, no per-post queries

    A cached first page replaces step 1 and 2 with a single batch read of the
    page's posts, so counters are never served from the cache.

    Parameters:
    - feed_filter: which posts the feed draws from
    - cursor: createdAt of the last item already seen, None for the first page
    - limit: requested page size, clamped to FEED_MAX_LIMIT
    - viewer_id: the signed-in user, drives isLiked
    - order: "desc" (newest first) or "asc"

    An empty page carries nextCursor=None and marks the end of the feed.
    """
    if feed_filter.liked_only and viewer_id is None:
        raise AuthenticationError("Sign in to see liked posts")

    after = parse_cursor(cursor)
    limit = clamp_limit(limit)

    # Viewer-agnostic first pages may come from the cache
    filter_key = feed_filter.cache_key()
    use_cache = after is None and filter_key is not None

    items: Optional[list[FeedItem]] = None
    if use_cache:
        cached_page = await get_cached_feed_page(filter_key, order, limit)
        if cached_page is not None:
            items = cached_page.items

    async with get_connection() as conn:
        if items:
            items = await refresh_cached_items(conn, items)

        if items is None:
            rows = await store.fetch_feed_page(conn, feed_filter, after, limit, order, viewer_id)
            post_ids = [post.id for post, _ in rows]

            media_by_post_id = {}
            if post_ids:
                media_by_post_id = await store.get_media_for_posts(conn, post_ids)

            items = [
                post_to_feed_item(post, author, media_by_post_id.get(post.id, []), False, MediaVariant.FEED)
                for post, author in rows
            ]
            if use_cache:
                await cache_feed_page(CachedFeedPage(filter_key=filter_key, order=order, limit=limit, items=items))

        liked_post_ids: set[UUID] = set()
        if viewer_id is not None and items:
            liked_post_ids = await store.get_liked_post_ids(conn, viewer_id, [item.id for item in items])

    items = [item.model_copy(update={"is_liked": item.id in liked_post_ids}) for item in items]
    next_cursor = items[-1].created_at if items else None

    return FeedResponse(items=items, next_cursor=next_cursor)
