from __future__ import annotations

from typing import Iterable, Optional
from uuid import UUID

from threadline.core.errors import DataIntegrityError
from threadline.models.models import Media, MediaType, Post, User
from threadline.schemas.schemas import Author, FeedItem, MediaVariant, PostOut
from threadline.services.media_service import build_media_url, serialize_media


def avatar_url_for(user: User, variant: MediaVariant = MediaVariant.THUMB) -> str:
    """Stored asset id through the media resolver, else the raw stored URL, else empty."""
    if user.avatar_public_id:
        return build_media_url(MediaType.IMAGE, user.avatar_public_id, variant)
    return user.avatar_url or ""


def serialize_author(user: Optional[User], author_id: Optional[UUID] = None) -> Author:
    """Project a user into the public author shape.

    A post whose author cannot be resolved is a data-integrity bug, so this
    refuses to render it instead of leaving the author out.
    """
    if user is None:
        raise DataIntegrityError(f"User with id {author_id or 'unknown'} not found for post author")
    return Author(
        id=user.id,
        user_name=user.user_name,
        full_name=user.full_name,
        avatar_url=avatar_url_for(user),
    )


def post_to_response(post: Post) -> PostOut:
    return PostOut(
        id=post.id,
        author=post.author_id,
        parent_post=post.parent_post_id,
        text=post.text,
        likes_count=post.likes_count,
        replies_count=post.replies_count,
        is_edited=post.is_edited,
        created_at=post.created_at,
        updated_at=post.updated_at,
    )


def post_to_feed_item(
    post: Post,
    author: Optional[User],
    media: Iterable[Media],
    is_liked: bool,
    variant: MediaVariant = MediaVariant.FEED,
) -> FeedItem:
    return FeedItem(
        id=post.id,
        parent_post=post.parent_post_id,
        text=post.text,
        author=serialize_author(author, post.author_id),
        likes_count=post.likes_count,
        replies_count=post.replies_count,
        is_liked=is_liked,
        is_edited=post.is_edited,
        created_at=post.created_at,
        updated_at=post.updated_at,
        media=serialize_media(media, variant),
    )
