"""
Flat store access for posts, media, likes and users.

Every function takes an open asyncpg connection so callers decide the
transaction boundaries. Counters are only ever adjusted relatively.
"""
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID, uuid4

import asyncpg
from asyncpg import Connection, Record

from threadline.core.errors import DuplicateLikeError
from threadline.models.models import Media, Post, UploadedAsset, User, utcnow
from threadline.schemas.schemas import FeedFilter, FeedScope, SortOrder

POST_COLUMNS = """
    p.id, p.author_id, p.parent_post_id, p.text, p.likes_count, p.replies_count,
    p.is_edited, p.created_at, p.updated_at
"""

RETURNING_COLUMNS = """
    id, author_id, parent_post_id, text, likes_count, replies_count,
    is_edited, created_at, updated_at
"""

AUTHOR_COLUMNS = """
    u.id AS author_ref, u.user_name AS author_user_name, u.full_name AS author_full_name,
    u.email AS author_email, u.avatar_public_id AS author_avatar_public_id,
    u.avatar_url AS author_avatar_url, u.created_at AS author_created_at,
    u.updated_at AS author_updated_at
"""


def _post_from_record(row: Record) -> Post:
    return Post(
        id=row["id"],
        author_id=row["author_id"],
        parent_post_id=row["parent_post_id"],
        text=row["text"],
        likes_count=row["likes_count"],
        replies_count=row["replies_count"],
        is_edited=row["is_edited"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _author_from_record(row: Record) -> Optional[User]:
    # LEFT JOIN: a dangling author reference comes back as NULL columns
    if row["author_ref"] is None:
        return None
    return User(
        id=row["author_ref"],
        user_name=row["author_user_name"],
        full_name=row["author_full_name"],
        email=row["author_email"],
        avatar_public_id=row["author_avatar_public_id"],
        avatar_url=row["author_avatar_url"],
        created_at=row["author_created_at"],
        updated_at=row["author_updated_at"],
    )


# Users
async def get_user(conn: Connection, user_id: UUID) -> Optional[User]:
    row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
    if row is None:
        return None
    return User(**dict(row))


async def get_users_by_ids(conn: Connection, user_ids: Iterable[UUID]) -> dict[UUID, User]:
    rows = await conn.fetch("SELECT * FROM users WHERE id = ANY($1::uuid[])", list(set(user_ids)))
    return {row["id"]: User(**dict(row)) for row in rows}


async def get_user_by_user_name(conn: Connection, user_name: str) -> Optional[User]:
    row = await conn.fetchrow("SELECT * FROM users WHERE user_name = $1", user_name)
    if row is None:
        return None
    return User(**dict(row))


def _contains_pattern(text: str) -> str:
    """ILIKE pattern matching ``text`` anywhere, with its wildcards escaped"""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


async def search_users(conn: Connection, query: str, limit: int) -> list[User]:
    """Users whose user name or full name contains ``query``, case-insensitively"""
    rows = await conn.fetch(
        """
        SELECT * FROM users
        WHERE user_name ILIKE $1 OR full_name ILIKE $1
        ORDER BY user_name
        LIMIT $2
        """,
        _contains_pattern(query),
        limit,
    )
    return [User(**dict(row)) for row in rows]


async def update_user_avatar(conn: Connection, user_id: UUID, asset: UploadedAsset) -> Optional[User]:
    """Point the user at a new avatar, returning the user as it was before the change"""
    row = await conn.fetchrow("SELECT * FROM users WHERE id = $1 FOR UPDATE", user_id)
    if row is None:
        return None
    await conn.execute(
        """
        UPDATE users
        SET avatar_public_id = $2, avatar_url = $3, updated_at = $4
        WHERE id = $1
        """,
        user_id,
        asset.public_id,
        asset.url,
        utcnow(),
    )
    return User(**dict(row))


# Posts
async def get_post(conn: Connection, post_id: UUID) -> Optional[Post]:
    row = await conn.fetchrow(f"SELECT {POST_COLUMNS} FROM posts p WHERE p.id = $1", post_id)
    if row is None:
        return None
    return _post_from_record(row)


async def get_posts_by_ids(conn: Connection, post_ids: Iterable[UUID]) -> dict[UUID, Post]:
    rows = await conn.fetch(
        f"SELECT {POST_COLUMNS} FROM posts p WHERE p.id = ANY($1::uuid[])",
        list(post_ids),
    )
    return {row["id"]: _post_from_record(row) for row in rows}


async def lock_post(conn: Connection, post_id: UUID) -> Optional[Post]:
    """Load a post and hold its row lock until the surrounding transaction ends"""
    row = await conn.fetchrow(f"SELECT {POST_COLUMNS} FROM posts p WHERE p.id = $1 FOR UPDATE", post_id)
    if row is None:
        return None
    return _post_from_record(row)


async def get_thread_posts(conn: Connection, root_id: UUID) -> tuple[Optional[Post], list[Post]]:
    """
    Fetch a root post and every post transitively replying to it.

    Uses a recursive CTE over parent_post_id, so the whole thread comes back
    in one round trip with no depth limit. Returns (root, descendants) with
    descendants in no particular order.
    """
    rows = await conn.fetch(
        f"""
        WITH RECURSIVE thread AS (
            SELECT p.*, 0 AS depth FROM posts p WHERE p.id = $1
            UNION ALL
            SELECT c.*, t.depth + 1 FROM posts c JOIN thread t ON c.parent_post_id = t.id
        )
        SELECT {POST_COLUMNS}, p.depth FROM thread p
        """,
        root_id,
    )
    root = None
    descendants = []
    for row in rows:
        if row["depth"] == 0:
            root = _post_from_record(row)
        else:
            descendants.append(_post_from_record(row))
    return root, descendants


async def fetch_feed_page(
    conn: Connection,
    feed_filter: FeedFilter,
    cursor: Optional[datetime],
    limit: int,
    order: SortOrder,
    viewer_id: Optional[UUID] = None,
) -> list[tuple[Post, Optional[User]]]:
    """
    Fetch one feed page with the author joined in the same query.

    The cursor is exclusive: strictly older than it for descending order,
    strictly newer for ascending order.
    """
    conditions = []
    params: list = []

    if feed_filter.scope is FeedScope.ROOT:
        conditions.append("p.parent_post_id IS NULL")
    elif feed_filter.scope is FeedScope.REPLIES:
        conditions.append("p.parent_post_id IS NOT NULL")

    if feed_filter.author_id is not None:
        params.append(feed_filter.author_id)
        conditions.append(f"p.author_id = ${len(params)}")

    if feed_filter.liked_only:
        params.append(viewer_id)
        conditions.append(f"EXISTS (SELECT 1 FROM likes l WHERE l.post_id = p.id AND l.user_id = ${len(params)})")

    if cursor is not None:
        params.append(cursor)
        comparison = "<" if order is SortOrder.DESC else ">"
        conditions.append(f"p.created_at {comparison} ${len(params)}")

    params.append(limit)
    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    direction = "DESC" if order is SortOrder.DESC else "ASC"

    query = f"""
        SELECT {POST_COLUMNS}, {AUTHOR_COLUMNS}
        FROM posts p
        LEFT JOIN users u ON p.author_id = u.id
        {where_clause}
        ORDER BY p.created_at {direction}
        LIMIT ${len(params)}
    """
    rows = await conn.fetch(query, *params)
    return [(_post_from_record(row), _author_from_record(row)) for row in rows]


async def insert_post(
    conn: Connection,
    author_id: UUID,
    text: str,
    parent_post_id: Optional[UUID] = None,
) -> Post:
    now = utcnow()
    row = await conn.fetchrow(
        f"""
        INSERT INTO posts (id, author_id, parent_post_id, text, created_at, updated_at)
        VALUES ($1, $2, $3, $4, $5, $5)
        RETURNING {RETURNING_COLUMNS}
        """,
        uuid4(),
        author_id,
        parent_post_id,
        text,
        now,
    )
    return _post_from_record(row)


async def adjust_replies_count(conn: Connection, post_id: UUID, delta: int) -> None:
    await conn.execute(
        "UPDATE posts SET replies_count = replies_count + $2 WHERE id = $1",
        post_id,
        delta,
    )


async def update_post_text(conn: Connection, post_id: UUID, text: str) -> Optional[Post]:
    row = await conn.fetchrow(
        f"""
        UPDATE posts
        SET text = $2, is_edited = TRUE, updated_at = $3
        WHERE id = $1
        RETURNING {RETURNING_COLUMNS}
        """,
        post_id,
        text,
        utcnow(),
    )
    if row is None:
        return None
    return _post_from_record(row)


async def delete_post(conn: Connection, post_id: UUID) -> None:
    """Delete a post; replies, media rows and likes go with it through ON DELETE CASCADE"""
    await conn.execute("DELETE FROM posts WHERE id = $1", post_id)


# Media
async def insert_media(conn: Connection, post_id: UUID, assets: Iterable[UploadedAsset]) -> list[Media]:
    media = [
        Media(post_id=post_id, type=asset.resource_type, public_id=asset.public_id, url=asset.url)
        for asset in assets
    ]
    if media:
        await conn.executemany(
            """
            INSERT INTO media (id, post_id, type, public_id, url, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            [(m.id, m.post_id, m.type.value, m.public_id, m.url, m.created_at) for m in media],
        )
    return media


async def get_media_for_posts(conn: Connection, post_ids: Iterable[UUID]) -> dict[UUID, list[Media]]:
    """Batch-load media for a set of posts, grouped by post id"""
    rows = await conn.fetch(
        """
        SELECT id, post_id, type, public_id, url, created_at
        FROM media
        WHERE post_id = ANY($1::uuid[])
        ORDER BY created_at, id
        """,
        list(post_ids),
    )
    media_by_post_id: dict[UUID, list[Media]] = {}
    for row in rows:
        media_by_post_id.setdefault(row["post_id"], []).append(Media(**dict(row)))
    return media_by_post_id


async def get_subtree_media(conn: Connection, post_id: UUID) -> list[Media]:
    """Media of a post and of every post transitively replying to it"""
    rows = await conn.fetch(
        """
        WITH RECURSIVE subtree AS (
            SELECT id FROM posts WHERE id = $1
            UNION ALL
            SELECT c.id FROM posts c JOIN subtree s ON c.parent_post_id = s.id
        )
        SELECT m.id, m.post_id, m.type, m.public_id, m.url, m.created_at
        FROM media m
        JOIN subtree s ON m.post_id = s.id
        """,
        post_id,
    )
    return [Media(**dict(row)) for row in rows]


# Likes
async def get_liked_post_ids(conn: Connection, user_id: UUID, post_ids: Iterable[UUID]) -> set[UUID]:
    """Which of the given posts the user has liked"""
    rows = await conn.fetch(
        "SELECT post_id FROM likes WHERE user_id = $1 AND post_id = ANY($2::uuid[])",
        user_id,
        list(post_ids),
    )
    return {row["post_id"] for row in rows}


async def find_like(conn: Connection, user_id: UUID, post_id: UUID) -> Optional[UUID]:
    return await conn.fetchval(
        "SELECT id FROM likes WHERE user_id = $1 AND post_id = $2",
        user_id,
        post_id,
    )


async def insert_like(conn: Connection, user_id: UUID, post_id: UUID) -> UUID:
    """
    Insert a like.

    Raises:
        DuplicateLikeError: if a concurrent transaction already inserted the same pair
    """
    like_id = uuid4()
    try:
        await conn.execute(
            """
            INSERT INTO likes (id, user_id, post_id, created_at)
            VALUES ($1, $2, $3, $4)
            """,
            like_id,
            user_id,
            post_id,
            utcnow(),
        )
    except asyncpg.UniqueViolationError as exc:
        raise DuplicateLikeError(f"User {user_id} already likes post {post_id}") from exc
    return like_id


async def delete_like(conn: Connection, like_id: UUID) -> None:
    await conn.execute("DELETE FROM likes WHERE id = $1", like_id)


async def adjust_likes_count(conn: Connection, post_id: UUID, delta: int) -> None:
    await conn.execute(
        "UPDATE posts SET likes_count = likes_count + $2 WHERE id = $1",
        post_id,
        delta,
    )


async def get_likes_count(conn: Connection, post_id: UUID) -> int:
    count = await conn.fetchval("SELECT likes_count FROM posts WHERE id = $1", post_id)
    return count or 0
