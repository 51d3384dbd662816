"""In-memory stand-ins for ``threadline.core.store`` and Redis, plus small test helpers.

The store fake mirrors the store functions one for one (same names, connection first) and
the pieces of PostgreSQL behaviour the services rely on: transactions roll
back on error, ``lock_post`` holds a row lock until the transaction ends, and
the (user, post) uniqueness of likes is enforced at insert time. Every call
yields to the event loop once so concurrent tasks interleave.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from uuid import UUID, uuid4

from botocore.exceptions import ClientError
from jose import jwt
from redis.exceptions import WatchError

from threadline.config_secrets import JWT_ALGORITHM, JWT_SECRET_KEY
from threadline.core.errors import DuplicateLikeError
from threadline.models.models import Like, Media, MediaType, Post, UploadedAsset, User, utcnow
from threadline.schemas.schemas import FeedFilter, FeedScope, SortOrder

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(seconds: int) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def s3_error(operation: str = "PutObject") -> ClientError:
    return ClientError({"Error": {"Code": "InternalError", "Message": "S3 unavailable"}}, operation)


def auth_header(user: User) -> dict[str, str]:
    token = jwt.encode({"sub": str(user.id)}, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


class FakeTransaction:
    def __init__(self, conn: "FakeConnection"):
        self.conn = conn

    async def __aenter__(self):
        self.conn.undo_log = []
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            for undo in reversed(self.conn.undo_log):
                undo()
        self.conn.undo_log = None
        for lock in self.conn.held_locks:
            lock.release()
        self.conn.held_locks = []
        return False


class FakeConnection:
    def __init__(self):
        self.undo_log: Optional[list] = None
        self.held_locks: list[asyncio.Lock] = []

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    def record(self, undo) -> None:
        if self.undo_log is not None:
            self.undo_log.append(undo)


class FakeStore:
    def __init__(self, row_locks: bool = True):
        self.users: dict[UUID, User] = {}
        self.posts: dict[UUID, Post] = {}
        self.media: dict[UUID, Media] = {}
        self.likes: dict[UUID, Like] = {}
        self.row_locks = row_locks
        self.calls: list[str] = []
        self._locks: dict[UUID, asyncio.Lock] = {}

    @asynccontextmanager
    async def connection(self):
        yield FakeConnection()

    # Seeding helpers
    def add_user(self, user_name: str = "someone", **fields) -> User:
        user = User(user_name=user_name, full_name=fields.pop("full_name", user_name.title()),
                    email=fields.pop("email", f"{user_name}@example.com"), **fields)
        self.users[user.id] = user
        return user

    def add_post(self, author: User, text: str = "hello there", parent: Optional[Post] = None, **fields) -> Post:
        post = Post(author_id=author.id, text=text, parent_post_id=parent.id if parent else None, **fields)
        self.posts[post.id] = post
        if parent is not None:
            self.posts[parent.id] = self.posts[parent.id].model_copy(
                update={"replies_count": self.posts[parent.id].replies_count + 1},
            )
        return post

    def add_media(self, post: Post, media_type: MediaType = MediaType.IMAGE, public_id: Optional[str] = None) -> Media:
        item = Media(post_id=post.id, type=media_type, public_id=public_id or f"posts/{uuid4().hex}",
                     url="https://bucket.example.com/raw")
        self.media[item.id] = item
        return item

    def add_like(self, user: User, post: Post) -> Like:
        like = Like(user_id=user.id, post_id=post.id)
        self.likes[like.id] = like
        self.posts[post.id] = self.posts[post.id].model_copy(
            update={"likes_count": self.posts[post.id].likes_count + 1},
        )
        return like

    def like_rows(self, user_id: UUID, post_id: UUID) -> list[Like]:
        return [like for like in self.likes.values() if like.user_id == user_id and like.post_id == post_id]

    async def _step(self, name: str) -> None:
        self.calls.append(name)
        await asyncio.sleep(0)

    def _replace_post(self, conn: FakeConnection, post_id: UUID, **update) -> Post:
        previous = self.posts[post_id]
        self.posts[post_id] = previous.model_copy(update=update)
        conn.record(lambda: self.posts.__setitem__(post_id, previous))
        return self.posts[post_id]

    # Users
    async def get_user(self, conn, user_id: UUID) -> Optional[User]:
        await self._step("get_user")
        return self.users.get(user_id)

    async def get_users_by_ids(self, conn, user_ids: Iterable[UUID]) -> dict[UUID, User]:
        await self._step("get_users_by_ids")
        return {user_id: self.users[user_id] for user_id in set(user_ids) if user_id in self.users}

    async def get_user_by_user_name(self, conn, user_name: str) -> Optional[User]:
        await self._step("get_user_by_user_name")
        return next((user for user in self.users.values() if user.user_name == user_name), None)

    async def search_users(self, conn, query: str, limit: int) -> list[User]:
        await self._step("search_users")
        needle = query.lower()
        found = [
            user for user in self.users.values()
            if needle in user.user_name.lower() or needle in user.full_name.lower()
        ]
        return sorted(found, key=lambda user: user.user_name)[:limit]

    async def update_user_avatar(self, conn, user_id: UUID, asset: UploadedAsset) -> Optional[User]:
        await self._step("update_user_avatar")
        previous = self.users.get(user_id)
        if previous is None:
            return None
        self.users[user_id] = previous.model_copy(
            update={"avatar_public_id": asset.public_id, "avatar_url": asset.url},
        )
        conn.record(lambda: self.users.__setitem__(user_id, previous))
        return previous

    # Posts
    async def get_post(self, conn, post_id: UUID) -> Optional[Post]:
        await self._step("get_post")
        return self.posts.get(post_id)

    async def get_posts_by_ids(self, conn, post_ids: Iterable[UUID]) -> dict[UUID, Post]:
        await self._step("get_posts_by_ids")
        return {post_id: self.posts[post_id] for post_id in post_ids if post_id in self.posts}

    async def lock_post(self, conn, post_id: UUID) -> Optional[Post]:
        await self._step("lock_post")
        if post_id not in self.posts:
            return None
        if self.row_locks:
            lock = self._locks.setdefault(post_id, asyncio.Lock())
            await lock.acquire()
            conn.held_locks.append(lock)
        return self.posts.get(post_id)

    async def get_thread_posts(self, conn, root_id: UUID) -> tuple[Optional[Post], list[Post]]:
        await self._step("get_thread_posts")
        root = self.posts.get(root_id)
        if root is None:
            return None, []
        return root, [self.posts[post_id] for post_id in self._subtree_ids(root_id) if post_id != root_id]

    async def fetch_feed_page(
        self,
        conn,
        feed_filter: FeedFilter,
        cursor: Optional[datetime],
        limit: int,
        order: SortOrder,
        viewer_id: Optional[UUID] = None,
    ) -> list[tuple[Post, Optional[User]]]:
        await self._step("fetch_feed_page")
        posts = list(self.posts.values())
        if feed_filter.scope is FeedScope.ROOT:
            posts = [p for p in posts if p.parent_post_id is None]
        elif feed_filter.scope is FeedScope.REPLIES:
            posts = [p for p in posts if p.parent_post_id is not None]
        if feed_filter.author_id is not None:
            posts = [p for p in posts if p.author_id == feed_filter.author_id]
        if feed_filter.liked_only:
            liked = {like.post_id for like in self.likes.values() if like.user_id == viewer_id}
            posts = [p for p in posts if p.id in liked]
        if cursor is not None:
            if order is SortOrder.DESC:
                posts = [p for p in posts if p.created_at < cursor]
            else:
                posts = [p for p in posts if p.created_at > cursor]
        posts.sort(key=lambda p: p.created_at, reverse=order is SortOrder.DESC)
        return [(post, self.users.get(post.author_id)) for post in posts[:limit]]

    async def insert_post(self, conn, author_id: UUID, text: str, parent_post_id: Optional[UUID] = None) -> Post:
        await self._step("insert_post")
        post = Post(author_id=author_id, text=text, parent_post_id=parent_post_id)
        self.posts[post.id] = post
        conn.record(lambda: self.posts.pop(post.id, None))
        return post

    async def adjust_replies_count(self, conn, post_id: UUID, delta: int) -> None:
        await self._step("adjust_replies_count")
        if post_id in self.posts:
            self._replace_post(conn, post_id, replies_count=self.posts[post_id].replies_count + delta)

    async def update_post_text(self, conn, post_id: UUID, text: str) -> Optional[Post]:
        await self._step("update_post_text")
        if post_id not in self.posts:
            return None
        return self._replace_post(conn, post_id, text=text, is_edited=True, updated_at=utcnow())

    async def delete_post(self, conn, post_id: UUID) -> None:
        await self._step("delete_post")
        doomed = set(self._subtree_ids(post_id))
        removed_posts = {pid: self.posts.pop(pid) for pid in doomed if pid in self.posts}
        removed_media = {mid: m for mid, m in self.media.items() if m.post_id in doomed}
        removed_likes = {lid: lk for lid, lk in self.likes.items() if lk.post_id in doomed}
        for mid in removed_media:
            del self.media[mid]
        for lid in removed_likes:
            del self.likes[lid]

        def undo():
            self.posts.update(removed_posts)
            self.media.update(removed_media)
            self.likes.update(removed_likes)

        conn.record(undo)

    def _subtree_ids(self, root_id: UUID) -> list[UUID]:
        found = [root_id]
        frontier = [root_id]
        while frontier:
            parent_id = frontier.pop()
            for post in self.posts.values():
                if post.parent_post_id == parent_id:
                    found.append(post.id)
                    frontier.append(post.id)
        return found

    # Media
    async def insert_media(self, conn, post_id: UUID, assets: Iterable[UploadedAsset]) -> list[Media]:
        await self._step("insert_media")
        created = [
            Media(post_id=post_id, type=asset.resource_type, public_id=asset.public_id, url=asset.url)
            for asset in assets
        ]
        for item in created:
            self.media[item.id] = item
        conn.record(lambda: [self.media.pop(item.id, None) for item in created])
        return created

    async def get_media_for_posts(self, conn, post_ids: Iterable[UUID]) -> dict[UUID, list[Media]]:
        await self._step("get_media_for_posts")
        wanted = set(post_ids)
        grouped: dict[UUID, list[Media]] = {}
        for item in self.media.values():
            if item.post_id in wanted:
                grouped.setdefault(item.post_id, []).append(item)
        return grouped

    async def get_subtree_media(self, conn, post_id: UUID) -> list[Media]:
        await self._step("get_subtree_media")
        subtree = set(self._subtree_ids(post_id))
        return [item for item in self.media.values() if item.post_id in subtree]

    # Likes
    async def get_liked_post_ids(self, conn, user_id: UUID, post_ids: Iterable[UUID]) -> set[UUID]:
        await self._step("get_liked_post_ids")
        wanted = set(post_ids)
        return {like.post_id for like in self.likes.values() if like.user_id == user_id and like.post_id in wanted}

    async def find_like(self, conn, user_id: UUID, post_id: UUID) -> Optional[UUID]:
        await self._step("find_like")
        rows = self.like_rows(user_id, post_id)
        return rows[0].id if rows else None

    async def insert_like(self, conn, user_id: UUID, post_id: UUID) -> UUID:
        await self._step("insert_like")
        if self.like_rows(user_id, post_id):
            raise DuplicateLikeError(f"User {user_id} already likes post {post_id}")
        like = Like(user_id=user_id, post_id=post_id)
        self.likes[like.id] = like
        conn.record(lambda: self.likes.pop(like.id, None))
        return like.id

    async def delete_like(self, conn, like_id: UUID) -> None:
        await self._step("delete_like")
        like = self.likes.pop(like_id, None)
        if like is not None:
            conn.record(lambda: self.likes.__setitem__(like_id, like))

    async def adjust_likes_count(self, conn, post_id: UUID, delta: int) -> None:
        await self._step("adjust_likes_count")
        if post_id in self.posts:
            self._replace_post(conn, post_id, likes_count=self.posts[post_id].likes_count + delta)

    async def get_likes_count(self, conn, post_id: UUID) -> int:
        await self._step("get_likes_count")
        post = self.posts.get(post_id)
        return post.likes_count if post else 0


class FakePipeline:
    """
    The slice of a redis.asyncio pipeline the cache uses.

    Commands after ``multi()`` (or on a pipeline that never watched) are
    buffered until ``execute()``. Reads on a watching pipeline run at once.
    ``execute()`` raises WatchError when a watched key was written meanwhile.
    """

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.watched: dict[str, int] = {}
        self.commands: list = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.reset()
        return False

    async def reset(self) -> None:
        self.watched = {}
        self.commands = []

    async def watch(self, *keys: str) -> None:
        await asyncio.sleep(0)
        for key in keys:
            self.watched[key] = self.redis.versions.get(key, 0)

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    def multi(self) -> None:
        pass

    def set(self, key: str, value: str, keepttl: bool = False) -> "FakePipeline":
        self.commands.append(lambda: self.redis.write(key, value, self.redis.ttls.get(key) if keepttl else None))
        return self

    def setex(self, key: str, ttl: int, value: str) -> "FakePipeline":
        self.commands.append(lambda: self.redis.write(key, value, ttl))
        return self

    def sadd(self, key: str, *members: str) -> "FakePipeline":
        self.commands.append(lambda: self.redis.add_members(key, members))
        return self

    async def execute(self) -> list:
        await asyncio.sleep(0)
        try:
            for key, version in self.watched.items():
                if self.redis.versions.get(key, 0) != version:
                    raise WatchError("Watched variable changed.")
            return [command() for command in self.commands]
        finally:
            await self.reset()


class FakeRedis:
    """Dict-backed async Redis. Every write bumps the key's version and every call yields once."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.versions: dict[str, int] = {}

    def touch(self, key: str) -> None:
        """Mark ``key`` as written by another client"""
        self.versions[key] = self.versions.get(key, 0) + 1

    def write(self, key: str, value: str, ttl: Optional[int]) -> bool:
        self.values[key] = value
        if ttl is None:
            self.ttls.pop(key, None)
        else:
            self.ttls[key] = ttl
        self.touch(key)
        return True

    def add_members(self, key: str, members: Iterable[str]) -> int:
        current = self.sets.setdefault(key, set())
        added = set(members) - current
        current.update(added)
        self.touch(key)
        return len(added)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def get(self, key: str) -> Optional[str]:
        await asyncio.sleep(0)
        return self.values.get(key)

    async def set(self, key: str, value: str, keepttl: bool = False) -> bool:
        await asyncio.sleep(0)
        return self.write(key, value, self.ttls.get(key) if keepttl else None)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        await asyncio.sleep(0)
        return self.write(key, value, ttl)

    async def smembers(self, key: str) -> set[str]:
        await asyncio.sleep(0)
        return set(self.sets.get(key, set()))

    async def sadd(self, key: str, *members: str) -> int:
        await asyncio.sleep(0)
        return self.add_members(key, members)

    async def srem(self, key: str, *members: str) -> int:
        await asyncio.sleep(0)
        current = self.sets.get(key, set())
        removed = current & set(members)
        current.difference_update(removed)
        self.touch(key)
        return len(removed)

    async def delete(self, *keys: str) -> int:
        await asyncio.sleep(0)
        deleted = 0
        for key in keys:
            if self.values.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                deleted += 1
            self.ttls.pop(key, None)
            self.touch(key)
        return deleted

    async def aclose(self) -> None:
        pass
