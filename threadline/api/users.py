from typing import Annotated, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, UploadFile, status

from threadline.api.errors import to_http_exception
from threadline.core.auth import RequestContext, get_request_context, require_viewer
from threadline.core.errors import ServiceError
from threadline.models.models import MediaUpload
from threadline.schemas.schemas import Author
from threadline.services.serializers import serialize_author
from threadline.services.user_service import (
    get_author,
    get_author_by_user_name,
    replace_avatar,
    search_authors,
)

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", status_code=status.HTTP_200_OK)
async def current_author(context: Annotated[RequestContext, Depends(require_viewer)]) -> Author:
    """
    Get the authenticated user's public author profile.

    Raises:
    - **401 Unauthorized**: If not authenticated
    """
    return serialize_author(context.viewer, context.viewer_id)


@router.put("/me/avatar", status_code=status.HTTP_200_OK)
async def update_avatar(
    context: Annotated[RequestContext, Depends(require_viewer)],
    file: Annotated[UploadFile, File()],
) -> Author:
    """
    Replace the authenticated user's avatar.

    Returns:
    - **Author**: The public author profile with the new avatar URL

    Raises:
    - **401 Unauthorized**: If not authenticated
    - **502 Bad Gateway**: If the media host rejected the upload
    """
    upload = MediaUpload(content=await file.read(), content_type=file.content_type, filename=file.filename)
    try:
        return await replace_avatar(context.viewer_id, upload)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/search", status_code=status.HTTP_200_OK)
async def search_users(
    context: Annotated[RequestContext, Depends(get_request_context)],
    q: str,
    limit: Optional[int] = None,
) -> List[Author]:
    """
    Search users by user name or full name.

    Parameters:
    - **q**: Text to look for, matched anywhere and ignoring case
    - **limit**: Maximum number of results (default: 10, clamped to 1..20)

    Returns:
    - **List[Author]**: Matching users ordered by user name

    Raises:
    - **400 Bad Request**: If the query is blank
    """
    try:
        return await search_authors(q, limit)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/username/{user_name}", status_code=status.HTTP_200_OK)
async def author_by_user_name(
    user_name: str,
    context: Annotated[RequestContext, Depends(get_request_context)],
) -> Author:
    """
    Get a user's public author profile by user name.

    Raises:
    - **404 Not Found**: If no user has this user name
    """
    try:
        return await get_author_by_user_name(user_name)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


# Declared last so the fixed paths above are not parsed as ids
@router.get("/{user_id}", status_code=status.HTTP_200_OK)
async def author_by_id(
    user_id: UUID,
    context: Annotated[RequestContext, Depends(get_request_context)],
) -> Author:
    """
    Get a user's public author profile by id.

    Raises:
    - **404 Not Found**: If the user does not exist
    """
    try:
        return await get_author(user_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
