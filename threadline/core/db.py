from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from asyncpg import Connection, Pool

from threadline.config_secrets import DATABASE_URL, DB_POOL_MAX_SIZE, DB_POOL_MIN_SIZE

# Database connection pool
pool: Optional[Pool] = None


async def init_db():
    """Initialize database connection pool"""
    global pool
    pool = await asyncpg.create_pool(
        DATABASE_URL,
        min_size=DB_POOL_MIN_SIZE,
        max_size=DB_POOL_MAX_SIZE,
    )

    # Initialize database schema
    await _create_tables()


async def close_db():
    """Close database connection pool"""
    global pool
    if pool:
        await pool.close()
        pool = None


@asynccontextmanager
async def get_connection() -> AsyncIterator[Connection]:
    """Acquire a connection from the pool for the duration of the block"""
    if pool is None:
        await init_db()
    assert pool is not None
    async with pool.acquire() as conn:
        yield conn


# Create tables
async def _create_tables():
    """Create database tables if they don't exist"""
    async with pool.acquire() as conn:
        # Users table
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id UUID PRIMARY KEY,
                user_name TEXT UNIQUE NOT NULL,
                full_name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                avatar_public_id TEXT,
                avatar_url TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_users_user_name ON users(user_name);
        """)

        # Posts table, self-referential through parent_post_id
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS posts (
                id UUID PRIMARY KEY,
                author_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                parent_post_id UUID REFERENCES posts(id) ON DELETE CASCADE,
                text TEXT NOT NULL CHECK (char_length(text) BETWEEN 3 AND 1000),
                likes_count INTEGER NOT NULL DEFAULT 0 CHECK (likes_count >= 0),
                replies_count INTEGER NOT NULL DEFAULT 0 CHECK (replies_count >= 0),
                is_edited BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_posts_created_at ON posts(created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_posts_parent_created ON posts(parent_post_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_posts_author_created ON posts(author_id, created_at DESC);
        """)

        # Media table
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS media (
                id UUID PRIMARY KEY,
                post_id UUID NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
                type TEXT NOT NULL CHECK (type IN ('image', 'video')),
                public_id TEXT NOT NULL,
                url TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_media_post_id ON media(post_id);
        """)

        # Likes table, at most one like per (user, post)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS likes (
                id UUID PRIMARY KEY,
                user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                post_id UUID NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
                created_at TIMESTAMPTZ NOT NULL,
                UNIQUE(user_id, post_id)
            );
            CREATE INDEX IF NOT EXISTS idx_likes_post_id ON likes(post_id);
            CREATE INDEX IF NOT EXISTS idx_likes_user_id ON likes(user_id);
        """)
