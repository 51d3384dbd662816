from typing import Annotated, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status

from threadline.api.errors import to_http_exception
from threadline.core.auth import RequestContext, get_request_context, require_viewer
from threadline.core.errors import ServiceError
from threadline.models.models import MediaUpload
from threadline.schemas.schemas import (
    CreatePostResponse,
    FeedFilter,
    FeedResponse,
    FeedScope,
    MessageResponse,
    PostOut,
    PostUpdate,
    SortOrder,
    ThreadNode,
    ThreadSort,
)
from threadline.services.feed_service import get_feed
from threadline.services.post_service import create_post, delete_post, update_post
from threadline.services.thread_service import get_post_thread

router = APIRouter(prefix="/api/posts", tags=["posts"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_new_post(
    context: Annotated[RequestContext, Depends(require_viewer)],
    text: Annotated[str, Form()],
    parent_post: Annotated[Optional[UUID], Form(alias="parentPost")] = None,
    files: Annotated[Optional[List[UploadFile]], File()] = None,
) -> CreatePostResponse:
    """
    Create a post, or a reply when parentPost is given.

    Parameters:
    - **text**: Post text, 3 to 1000 characters after trimming
    - **parentPost**: Optional id of the post being replied to
    - **files**: Optional images/videos, sent as multipart form data

    Returns:
    - **CreatePostResponse**: The created post and its media

    Raises:
    - **400 Bad Request**: If the text is too short or too long
    - **401 Unauthorized**: If not authenticated
    - **404 Not Found**: If the parent post does not exist
    - **502 Bad Gateway**: If the media host rejected an upload
    """
    uploads = [
        MediaUpload(content=await upload.read(), content_type=upload.content_type, filename=upload.filename)
        for upload in files or []
    ]
    try:
        return await create_post(
            author_id=context.viewer_id,
            text=text,
            parent_post_id=parent_post,
            files=uploads,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/feed", status_code=status.HTTP_200_OK)
async def posts_feed(
    context: Annotated[RequestContext, Depends(get_request_context)],
    limit: Optional[int] = None,
    order: SortOrder = SortOrder.DESC,
    cursor: Optional[str] = None,
    author: Optional[UUID] = None,
    filter_type: Annotated[FeedScope, Query(alias="filterType")] = FeedScope.ROOT,
    liked: bool = False,
) -> FeedResponse:
    """
    Get one page of the post feed.

    Parameters:
    - **limit**: Page size (default: 10, clamped to 1..20)
    - **order**: "desc" (newest first, default) or "asc"
    - **cursor**: nextCursor from the previous page
    - **author**: Only posts by this user
    - **filterType**: "posts" (top-level, default), "replies" or "all"
    - **liked**: Only posts the viewer liked (requires authentication)

    Returns:
    - **FeedResponse**: Items and the cursor for the next page

    Notes:
    - An empty page has nextCursor=null and marks the end of the feed
    """
    feed_filter = FeedFilter(scope=filter_type, author_id=author, liked_only=liked)
    try:
        return await get_feed(feed_filter, cursor, limit, context.viewer_id, order)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/liked", status_code=status.HTTP_200_OK)
async def liked_posts(
    context: Annotated[RequestContext, Depends(require_viewer)],
    limit: Optional[int] = None,
    order: SortOrder = SortOrder.DESC,
    cursor: Optional[str] = None,
) -> FeedResponse:
    """
    Get posts and replies liked by the authenticated user.

    Raises:
    - **401 Unauthorized**: If not authenticated
    """
    feed_filter = FeedFilter(scope=FeedScope.ALL, liked_only=True)
    try:
        return await get_feed(feed_filter, cursor, limit, context.viewer_id, order)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{post_id}/thread", status_code=status.HTTP_200_OK)
async def post_thread(
    post_id: UUID,
    context: Annotated[RequestContext, Depends(get_request_context)],
    order: SortOrder = SortOrder.ASC,
    sort: ThreadSort = ThreadSort.CHRONOLOGICAL,
) -> ThreadNode:
    """
    Get a post with all of its replies as a nested tree.

    Parameters:
    - **post_id**: UUID of the root of the thread
    - **sort**: "chronological" (default) or "top" (likes + replies)
    - **order**: Direction for chronological sorting, "asc" (default) or "desc"

    Returns:
    - **ThreadNode**: The post with nested `replies`

    Raises:
    - **404 Not Found**: If the post does not exist
    """
    try:
        return await get_post_thread(post_id, context.viewer_id, sort, order)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.patch("/{post_id}", status_code=status.HTTP_200_OK)
async def edit_post(
    post_id: UUID,
    payload: PostUpdate,
    context: Annotated[RequestContext, Depends(require_viewer)],
) -> PostOut:
    """
    Update a post's text (author only, within the edit window).

    Raises:
    - **400 Bad Request**: If the text is too short or too long
    - **403 Forbidden**: If not the author, or the edit window has closed
    - **404 Not Found**: If the post does not exist
    """
    try:
        return await update_post(post_id, context.viewer_id, payload.text)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.delete("/{post_id}", status_code=status.HTTP_200_OK)
async def remove_post(
    post_id: UUID,
    context: Annotated[RequestContext, Depends(require_viewer)],
) -> MessageResponse:
    """
    Delete a post with its replies, media and likes.

    Raises:
    - **403 Forbidden**: If not the author
    - **404 Not Found**: If the post does not exist
    """
    try:
        await delete_post(post_id, context.viewer_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    return MessageResponse(message="Post deleted")
