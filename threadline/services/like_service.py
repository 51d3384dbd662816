import logging
from functools import partial
from uuid import UUID

from pydantic import BaseModel

from threadline.config_secrets import LIKE_TOGGLE_ATTEMPTS
from threadline.core import store
from threadline.core.cache import update_cached_feed_pages
from threadline.core.db import get_connection
from threadline.core.errors import DuplicateLikeError, LikeConflictError, PostNotFoundError
from threadline.services.cache_updates import patch_feed_page

logger = logging.getLogger(__name__)


class LikeToggleResult(BaseModel):
    liked: bool
    likes_count: int


async def _flip_like(user_id: UUID, post_id: UUID) -> bool:
    """
    Flip the like state in one transaction and return the new state.

    The post row lock serializes toggles on the same post; the unique
    (user, post) constraint catches anything that still slips through.
    """
    async with get_connection() as conn, conn.transaction():
        post = await store.lock_post(conn, post_id)
        if post is None:
            raise PostNotFoundError(f"Post {post_id} not found")

        like_id = await store.find_like(conn, user_id, post_id)
        if like_id is not None:
            await store.delete_like(conn, like_id)
            await store.adjust_likes_count(conn, post_id, -1)
            return False

        await store.insert_like(conn, user_id, post_id)
        await store.adjust_likes_count(conn, post_id, 1)
        return True


async def toggle_like(user_id: UUID, post_id: UUID) -> LikeToggleResult:
    """
    Like the post if the user has not liked it yet, otherwise unlike it.

    A lost race on the unique constraint rolls the transaction back and the
    toggle is retried from a fresh read, up to LIKE_TOGGLE_ATTEMPTS times.
    The returned count is re-read after commit.

    Raises:
        PostNotFoundError: if the post does not exist
        LikeConflictError: if every attempt lost the race
    """
    for attempt in range(1, LIKE_TOGGLE_ATTEMPTS + 1):
        try:
            liked = await _flip_like(user_id, post_id)
            break
        except DuplicateLikeError:
            logger.warning("Like toggle on post %s lost a race (attempt %d)", post_id, attempt)
    else:
        raise LikeConflictError(f"Could not toggle like on post {post_id}, try again")

    async with get_connection() as conn:
        likes_count = await store.get_likes_count(conn, post_id)

    await update_cached_feed_pages(partial(patch_feed_page, post_id=post_id, patch={"likes_count": likes_count}))

    return LikeToggleResult(liked=liked, likes_count=likes_count)
