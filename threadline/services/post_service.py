import logging
from datetime import timedelta
from functools import partial
from typing import Optional, Sequence
from uuid import UUID

from threadline.config_secrets import POST_EDIT_WINDOW_MINUTES
from threadline.core import store
from threadline.core.cache import invalidate_feed_pages, update_cached_feed_pages
from threadline.core.db import get_connection
from threadline.core.errors import (
    EditWindowExpiredError,
    InvalidRequestError,
    PermissionDeniedError,
    PostNotFoundError,
)
from threadline.models.models import MediaUpload, UploadedAsset, utcnow
from threadline.schemas.schemas import CreatePostResponse, MediaVariant, PostOut
from threadline.services.cache_updates import patch_feed_page
from threadline.services.media_service import discard_assets, serialize_media, upload_files
from threadline.services.serializers import post_to_response

logger = logging.getLogger(__name__)

TEXT_MIN_LENGTH = 3
TEXT_MAX_LENGTH = 1000
POST_MEDIA_FOLDER = "posts"


def validate_post_text(text: Optional[str]) -> str:
    """Trim post text and check it is 3 to 1000 characters long"""
    text = (text or "").strip()
    if not TEXT_MIN_LENGTH <= len(text) <= TEXT_MAX_LENGTH:
        raise InvalidRequestError(
            f"Text must be between {TEXT_MIN_LENGTH} and {TEXT_MAX_LENGTH} characters long",
        )
    return text


async def create_post(
    author_id: UUID,
    text: str,
    parent_post_id: Optional[UUID] = None,
    files: Sequence[MediaUpload] = (),
) -> CreatePostResponse:
    """
    Create a post, optionally as a reply, with its media.

    Files are uploaded first; the post row, the parent's replies counter and
    the media rows are then written in one transaction. If anything fails
    after an upload, the uploaded assets are deleted again.
    """
    text = validate_post_text(text)

    # Fail fast before uploading anything for a reply to a missing post
    if parent_post_id is not None:
        async with get_connection() as conn:
            if await store.get_post(conn, parent_post_id) is None:
                raise PostNotFoundError(f"Parent post {parent_post_id} not found")

    uploaded: list[UploadedAsset] = []
    try:
        uploaded = await upload_files(files, POST_MEDIA_FOLDER)

        async with get_connection() as conn, conn.transaction():
            # Locked until commit, so the parent cannot be deleted under the new reply
            if parent_post_id is not None and await store.lock_post(conn, parent_post_id) is None:
                raise PostNotFoundError(f"Parent post {parent_post_id} not found")

            post = await store.insert_post(conn, author_id, text, parent_post_id)
            if parent_post_id is not None:
                await store.adjust_replies_count(conn, parent_post_id, 1)
            media = await store.insert_media(conn, post.id, uploaded)
    except Exception:
        if uploaded:
            logger.warning("Post creation by %s failed, discarding %d uploaded assets", author_id, len(uploaded))
            await discard_assets(asset.public_id for asset in uploaded)
        raise

    # New posts land at the head of feeds, and the parent's reply count moved
    await invalidate_feed_pages()

    return CreatePostResponse(
        post=post_to_response(post),
        media=serialize_media(media, MediaVariant.FEED),
    )


async def update_post(post_id: UUID, editor_id: UUID, text: str) -> PostOut:
    """
    Replace a post's text.

    Only the author may edit, and only within POST_EDIT_WINDOW_MINUTES of
    creation (a window of 0 means no limit).
    """
    text = validate_post_text(text)

    async with get_connection() as conn, conn.transaction():
        post = await store.lock_post(conn, post_id)
        if post is None:
            raise PostNotFoundError(f"Post {post_id} not found")
        if post.author_id != editor_id:
            raise PermissionDeniedError("Only the author can edit this post")
        if POST_EDIT_WINDOW_MINUTES > 0 and utcnow() - post.created_at > timedelta(minutes=POST_EDIT_WINDOW_MINUTES):
            raise EditWindowExpiredError(
                f"Posts can only be edited within {POST_EDIT_WINDOW_MINUTES} minutes of creation",
            )
        updated = await store.update_post_text(conn, post_id, text)

    await update_cached_feed_pages(
        partial(
            patch_feed_page,
            post_id=post_id,
            patch={"text": updated.text, "is_edited": True, "updated_at": updated.updated_at},
        ),
    )
    return post_to_response(updated)


async def delete_post(post_id: UUID, requester_id: UUID) -> None:
    """
    Delete a post together with its replies, media and likes.

    Rows go in one transaction (cascading foreign keys) and the parent's
    replies counter is decremented. Stored assets of the whole subtree are
    deleted afterwards on a best-effort basis.
    """
    async with get_connection() as conn, conn.transaction():
        post = await store.lock_post(conn, post_id)
        if post is None:
            raise PostNotFoundError(f"Post {post_id} not found")
        if post.author_id != requester_id:
            raise PermissionDeniedError("Only the author can delete this post")

        media = await store.get_subtree_media(conn, post_id)
        await store.delete_post(conn, post_id)
        if post.parent_post_id is not None:
            await store.adjust_replies_count(conn, post.parent_post_id, -1)

    await discard_assets(item.public_id for item in media)
    await invalidate_feed_pages()
    logger.info("Deleted post %s with %d media assets", post_id, len(media))
