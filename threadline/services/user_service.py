import logging
from typing import List, Optional
from uuid import UUID

from threadline.config_secrets import USER_SEARCH_DEFAULT_LIMIT, USER_SEARCH_MAX_LIMIT
from threadline.core import store
from threadline.core.cache import invalidate_feed_pages
from threadline.core.db import get_connection
from threadline.core.errors import InvalidRequestError, UserNotFoundError
from threadline.models.models import MediaUpload
from threadline.schemas.schemas import Author
from threadline.services.media_service import discard_assets, upload_files
from threadline.services.serializers import serialize_author

logger = logging.getLogger(__name__)

AVATAR_MEDIA_FOLDER = "avatars"


async def get_author(user_id: UUID) -> Author:
    async with get_connection() as conn:
        user = await store.get_user(conn, user_id)
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")
    return serialize_author(user, user_id)


async def get_author_by_user_name(user_name: str) -> Author:
    """Resolve a profile handle to the public author shape"""
    async with get_connection() as conn:
        user = await store.get_user_by_user_name(conn, user_name)
    if user is None:
        raise UserNotFoundError(f"User @{user_name} not found")
    return serialize_author(user, user.id)


async def search_authors(query: str, limit: Optional[int] = None) -> List[Author]:
    """
    Find users whose user name or full name contains the query.

    Matching ignores case; results are ordered by user name and capped at
    USER_SEARCH_MAX_LIMIT.

    Raises:
        InvalidRequestError: if the query is blank
    """
    query = query.strip()
    if not query:
        raise InvalidRequestError("Search query must not be empty")
    if limit is None:
        limit = USER_SEARCH_DEFAULT_LIMIT
    limit = max(1, min(limit, USER_SEARCH_MAX_LIMIT))

    async with get_connection() as conn:
        users = await store.search_users(conn, query, limit)
    return [serialize_author(user, user.id) for user in users]


async def replace_avatar(user_id: UUID, upload: MediaUpload) -> Author:
    """
    Store a new avatar for the user and delete the one it replaces.

    The old asset is only deleted once the user row points at the new one.
    """
    (asset,) = await upload_files([upload], AVATAR_MEDIA_FOLDER)

    try:
        async with get_connection() as conn, conn.transaction():
            previous = await store.update_user_avatar(conn, user_id, asset)
            if previous is None:
                raise UserNotFoundError(f"User {user_id} not found")
            user = await store.get_user(conn, user_id)
    except Exception:
        await discard_assets([asset.public_id])
        raise

    if previous.avatar_public_id:
        await discard_assets([previous.avatar_public_id])

    logger.info("Replaced avatar for user %s", user_id)

    # Cached pages embed author avatar URLs
    await invalidate_feed_pages()

    return serialize_author(user, user_id)
