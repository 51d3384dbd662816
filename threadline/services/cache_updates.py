"""
Pure update functions for cached feed pages.

Each takes a page and returns a new one, leaving the input untouched, so the
same function serves both for applying a change and for rebuilding a page
from a previous snapshot.
"""
from typing import Any, Mapping
from uuid import UUID

from threadline.models.models import Post
from threadline.schemas.schemas import CachedFeedPage, FeedItem

# Fields of a FeedItem that may be patched in place
PATCHABLE_FIELDS = frozenset({"text", "likes_count", "replies_count", "is_edited", "updated_at"})


def patch_feed_item(item: FeedItem, patch: Mapping[str, Any]) -> FeedItem:
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot patch feed item fields: {sorted(unknown)}")
    return item.model_copy(update=dict(patch))


def patch_feed_page(page: CachedFeedPage, post_id: UUID, patch: Mapping[str, Any]) -> CachedFeedPage:
    """Apply ``patch`` to the item for ``post_id``, if the page holds it"""
    items = [patch_feed_item(item, patch) if item.id == post_id else item for item in page.items]
    return page.model_copy(update={"items": items})


def live_fields(post: Post) -> dict[str, Any]:
    """The patchable fields of a stored post, as a patch for its feed item"""
    return {field: getattr(post, field) for field in PATCHABLE_FIELDS}
