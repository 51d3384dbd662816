import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Optional
from uuid import UUID

from threadline.core import store
from threadline.core.db import get_connection
from threadline.core.errors import PostNotFoundError
from threadline.models.models import Media, Post, User
from threadline.schemas.schemas import MediaVariant, SortOrder, ThreadNode, ThreadSort
from threadline.services.media_service import serialize_media
from threadline.services.serializers import serialize_author

logger = logging.getLogger(__name__)


def sort_key_for(sort: ThreadSort, order: SortOrder = SortOrder.ASC) -> tuple[Callable[[Post], Any], bool]:
    """
    Return a (key, reverse) pair for ordering one group of sibling replies.

    ``chronological`` orders by createdAt in the requested direction. ``top``
    orders by engagement (likes + replies) descending, newest first on ties,
    and ignores ``order``.
    """
    if sort is ThreadSort.TOP:
        return (lambda post: (post.engagement_score, post.created_at)), True
    return (lambda post: post.created_at), order is SortOrder.DESC


def group_children(descendants: Iterable[Post], sort: ThreadSort, order: SortOrder) -> dict[UUID, list[Post]]:
    """Index replies by parent id, each sibling list sorted once"""
    children_by_parent: dict[UUID, list[Post]] = {}
    for post in descendants:
        if post.parent_post_id is None:
            continue
        children_by_parent.setdefault(post.parent_post_id, []).append(post)

    key, reverse = sort_key_for(sort, order)
    for siblings in children_by_parent.values():
        siblings.sort(key=key, reverse=reverse)
    return children_by_parent


def build_tree(
    root: Post,
    descendants: Iterable[Post],
    users_by_id: Mapping[UUID, User],
    media_by_post_id: Mapping[UUID, list[Media]],
    liked_post_ids: set[UUID],
    sort: ThreadSort = ThreadSort.CHRONOLOGICAL,
    order: SortOrder = SortOrder.ASC,
) -> ThreadNode:
    """
    Rebuild a reply tree from a root post and its flat list of descendants.

    Replies are grouped by parent once and each sibling group is sorted once,
    so the tree costs O(D log D) to order and O(D) to hydrate. Hydration walks
    an explicit stack instead of recursing, so deep threads cannot exhaust
    the interpreter's call stack.

    Raises:
        DataIntegrityError: if any node's author is missing from users_by_id
    """
    children_by_parent = group_children(descendants, sort, order)

    def hydrate(post: Post) -> ThreadNode:
        return ThreadNode(
            id=post.id,
            parent_post=post.parent_post_id,
            text=post.text,
            author=serialize_author(users_by_id.get(post.author_id), post.author_id),
            likes_count=post.likes_count,
            replies_count=post.replies_count,
            is_liked=post.id in liked_post_ids,
            is_edited=post.is_edited,
            created_at=post.created_at,
            updated_at=post.updated_at,
            media=serialize_media(media_by_post_id.get(post.id, []), MediaVariant.FULL),
        )

    tree = hydrate(root)
    stack: list[tuple[Post, ThreadNode]] = [(root, tree)]
    while stack:
        post, node = stack.pop()
        for child in children_by_parent.get(post.id, []):
            child_node = hydrate(child)
            node.replies.append(child_node)
            stack.append((child, child_node))
    return tree


async def get_post_thread(
    post_id: UUID,
    viewer_id: Optional[UUID] = None,
    sort: ThreadSort = ThreadSort.CHRONOLOGICAL,
    order: SortOrder = SortOrder.ASC,
) -> ThreadNode:
    """
    Load a post with every reply under it, as a nested tree.

    The thread is read as one flat list; authors, media and the viewer's
    likes are each fetched with a single batch query for the whole thread.
    """
    async with get_connection() as conn:
        root, descendants = await store.get_thread_posts(conn, post_id)
        if root is None:
            raise PostNotFoundError(f"Post {post_id} not found")

        thread_posts = [root, *descendants]
        thread_post_ids = [post.id for post in thread_posts]

        users_by_id = await store.get_users_by_ids(conn, {post.author_id for post in thread_posts})
        media_by_post_id = await store.get_media_for_posts(conn, thread_post_ids)

        liked_post_ids: set[UUID] = set()
        if viewer_id is not None:
            liked_post_ids = await store.get_liked_post_ids(conn, viewer_id, thread_post_ids)

    logger.debug("Building thread %s with %d replies", post_id, len(descendants))
    return build_tree(root, descendants, users_by_id, media_by_post_id, liked_post_ids, sort, order)
