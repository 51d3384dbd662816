"""API router package for the Threadline backend."""

from threadline.api import likes, posts, users

__all__ = ["likes", "posts", "users"]
