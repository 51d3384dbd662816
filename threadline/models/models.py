from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


# Database models
class User(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_name: str
    full_name: str
    email: str
    avatar_public_id: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Post(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    author_id: UUID
    parent_post_id: Optional[UUID] = None  # None for root posts
    text: str
    likes_count: int = 0
    replies_count: int = 0
    is_edited: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def engagement_score(self) -> int:
        return self.likes_count + self.replies_count


class Media(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    post_id: UUID
    type: MediaType
    public_id: str
    url: str  # direct URL returned by the asset host
    created_at: datetime = Field(default_factory=utcnow)


class Like(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    post_id: UUID
    created_at: datetime = Field(default_factory=utcnow)


class UploadedAsset(BaseModel):
    """An asset already stored on the asset host, tracked for rollback"""

    public_id: str
    resource_type: MediaType
    url: str


class MediaUpload(BaseModel):
    """A file received from a client, not yet stored"""

    content: bytes
    content_type: Optional[str] = None
    filename: Optional[str] = None
