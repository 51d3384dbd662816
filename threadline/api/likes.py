from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status

from threadline.api.errors import to_http_exception
from threadline.core.auth import RequestContext, require_viewer
from threadline.core.errors import ServiceError
from threadline.schemas.schemas import LikeToggleResponse
from threadline.services.like_service import toggle_like

router = APIRouter(prefix="/api/likes", tags=["likes"])


@router.post("/{post_id}/toggle", status_code=status.HTTP_200_OK)
async def toggle_post_like(
    post_id: UUID,
    context: Annotated[RequestContext, Depends(require_viewer)],
) -> LikeToggleResponse:
    """
    Like a post, or unlike it if the user already likes it.

    Parameters:
    - **post_id**: UUID of the post

    Returns:
    - **LikeToggleResponse**: The new like state and the post's like count

    Raises:
    - **401 Unauthorized**: If not authenticated
    - **404 Not Found**: If the post does not exist
    - **409 Conflict**: If concurrent toggles kept colliding; safe to retry
    """
    try:
        result = await toggle_like(context.viewer_id, post_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc

    return LikeToggleResponse(
        message="Post liked" if result.liked else "Post unliked",
        liked=result.liked,
        likes_count=result.likes_count,
    )
