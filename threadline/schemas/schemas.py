import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from threadline.models.models import MediaType, utcnow

logger = logging.getLogger(__name__)


class ApiModel(BaseModel):
    """Base for response shapes: camelCase on the wire, snake_case in code"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Query enums
class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class FeedScope(str, Enum):
    ROOT = "posts"
    REPLIES = "replies"
    ALL = "all"


class ThreadSort(str, Enum):
    CHRONOLOGICAL = "chronological"
    TOP = "top"


class MediaVariant(str, Enum):
    THUMB = "thumb"
    FEED = "feed"
    FULL = "full"


# Request schemas
class PostUpdate(BaseModel):
    text: str


class FeedFilter(BaseModel):
    """Which posts a feed page draws from.

    Root-only and replies-only are one enum value, so they cannot be combined;
    author and liked-only compose with either.
    """

    scope: FeedScope = FeedScope.ROOT
    author_id: Optional[UUID] = None
    liked_only: bool = False

    def cache_key(self) -> Optional[str]:
        """Key for the shared first-page cache, None when the page depends on the viewer"""
        if self.liked_only:
            return None
        return f"{self.scope.value}:{self.author_id or '*'}"


# Response schemas
class Author(ApiModel):
    id: UUID = Field(alias="_id")
    user_name: str
    full_name: str
    avatar_url: str = ""


class MediaOut(ApiModel):
    type: MediaType
    url: str


class PostOut(ApiModel):
    id: UUID = Field(alias="_id")
    author: UUID
    parent_post: Optional[UUID] = None
    text: str
    likes_count: int
    replies_count: int
    is_edited: bool = False
    created_at: datetime
    updated_at: datetime


class CreatePostResponse(ApiModel):
    post: PostOut
    media: List[MediaOut] = Field(default_factory=list)


class FeedItem(ApiModel):
    id: UUID = Field(alias="_id")
    parent_post: Optional[UUID] = None
    text: str
    author: Author
    likes_count: int
    replies_count: int
    is_liked: bool = False
    is_edited: bool = False
    created_at: datetime
    updated_at: datetime
    media: List[MediaOut] = Field(default_factory=list)


class ThreadNode(FeedItem):
    replies: List["ThreadNode"] = Field(default_factory=list)


class FeedResponse(ApiModel):
    items: List[FeedItem]
    next_cursor: Optional[datetime] = None

    @model_validator(mode="after")
    def check_cursor(self) -> "FeedResponse":
        # An empty page is the end-of-feed signal and must not carry a cursor
        if not self.items and self.next_cursor is not None:
            raise ValueError("An empty page cannot carry a next cursor")
        return self


class LikeToggleResponse(ApiModel):
    message: str
    liked: bool
    likes_count: int


class MessageResponse(BaseModel):
    message: str


# Redis Data Models
class RedisModel(ApiModel):
    """Base model for Redis data structures with serialization/deserialization methods"""

    @classmethod
    def from_redis(cls, data: Union[str, bytes, None]) -> Optional["RedisModel"]:
        """Create an instance from Redis data, None when missing or unreadable"""
        if data is None:
            return None
        try:
            return cls.model_validate_json(data)
        except ValidationError:
            logger.warning("Discarding unreadable %s cache entry", cls.__name__)
            return None

    def to_redis(self) -> str:
        """Convert to JSON string for Redis storage"""
        return self.model_dump_json(by_alias=True)


class CachedFeedPage(RedisModel):
    """A viewer-agnostic first feed page; isLiked is recomputed per request"""

    filter_key: str
    order: SortOrder
    limit: int
    items: List[FeedItem] = Field(default_factory=list)
    cached_at: datetime = Field(default_factory=utcnow)
