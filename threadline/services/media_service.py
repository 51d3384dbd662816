"""
Media storage and URL resolution.

Uploaded files live in an S3 bucket fronted by an image CDN. Stored media only
keep the storage key (``public_id``) and the direct S3 URL; deliverable URLs
are derived per request from a size/quality preset.
"""
import asyncio
import logging
from typing import Iterable, List, Optional, Sequence
from urllib.parse import urlencode
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from threadline.config_secrets import (
    AWS_ACCESS_KEY_ID,
    AWS_REGION,
    AWS_SECRET_ACCESS_KEY,
    MEDIA_CDN_BASE_URL,
    MEDIA_S3_BUCKET,
    MEDIA_S3_PREFIX,
)
from threadline.core.errors import MediaUploadError
from threadline.models.models import Media, MediaType, MediaUpload, UploadedAsset
from threadline.schemas.schemas import MediaOut, MediaVariant

logger = logging.getLogger(__name__)

# Initialize S3 client
s3_client = boto3.client(
    "s3",
    region_name=AWS_REGION,
    aws_access_key_id=AWS_ACCESS_KEY_ID,
    aws_secret_access_key=AWS_SECRET_ACCESS_KEY,
)

IMAGE_PRESETS: dict[MediaVariant, dict[str, str]] = {
    MediaVariant.THUMB: {"width": "200", "fit": "fill", "quality": "auto", "format": "auto"},
    MediaVariant.FEED: {"width": "900", "fit": "limit", "quality": "auto", "format": "auto"},
    MediaVariant.FULL: {"width": "1600", "fit": "limit", "quality": "auto", "format": "auto"},
}


def get_media_s3_key(folder: str) -> str:
    """
    Generate a fresh S3 key for an uploaded file

    Args:
        folder: Logical folder, e.g. "posts" or "avatars"

    Returns:
        The S3 key, which doubles as the asset's public id
    """
    return f"{MEDIA_S3_PREFIX}{folder}/{uuid4().hex}"


def build_media_url(
    media_type: MediaType,
    public_id: str,
    variant: MediaVariant = MediaVariant.FEED,
) -> str:
    """
    Build the deliverable URL for a stored asset.

    Images are served through the CDN with one of the fixed presets applied;
    videos are returned raw, the variant is ignored for them.
    """
    base_url = f"{MEDIA_CDN_BASE_URL.rstrip('/')}/{public_id}"
    if media_type is MediaType.IMAGE:
        return f"{base_url}?{urlencode(IMAGE_PRESETS[variant])}"
    return base_url


def serialize_media(items: Iterable[Media], variant: MediaVariant = MediaVariant.FEED) -> List[MediaOut]:
    """Resolve stored media into the public {type, url} shape"""
    return [
        MediaOut(
            type=item.type,
            url=build_media_url(item.type, item.public_id, variant) if item.public_id else item.url,
        )
        for item in items
    ]


def upload_media_buffer(
    buffer: bytes,
    folder: str,
    resource_type: MediaType,
    content_type: Optional[str] = None,
) -> UploadedAsset:
    """
    Upload a byte buffer to the media bucket.

    Blocking; async callers run it through ``asyncio.to_thread``.

    Raises:
        MediaUploadError: if the asset host rejects the upload
    """
    key = get_media_s3_key(folder)

    extra_args = {}
    if content_type:
        extra_args["ContentType"] = content_type

    try:
        s3_client.put_object(
            Bucket=MEDIA_S3_BUCKET,
            Key=key,
            Body=buffer,
            **extra_args,
        )
    except (BotoCoreError, ClientError) as exc:
        logger.exception("Failed to upload %s to S3", resource_type.value)
        raise MediaUploadError(f"Failed to upload {resource_type.value}") from exc

    return UploadedAsset(
        public_id=key,
        resource_type=resource_type,
        url=f"https://{MEDIA_S3_BUCKET}.s3.{AWS_REGION}.amazonaws.com/{key}",
    )


def delete_media_asset(public_id: str) -> None:
    """
    Delete one asset from the media bucket.

    Raises the underlying botocore error; callers doing compensation log it.
    """
    s3_client.delete_object(
        Bucket=MEDIA_S3_BUCKET,
        Key=public_id,
    )


def resource_type_for(content_type: Optional[str]) -> MediaType:
    """Videos are detected by MIME type, everything else is stored as an image"""
    if content_type and content_type.startswith("video/"):
        return MediaType.VIDEO
    return MediaType.IMAGE


async def upload_files(files: Sequence[MediaUpload], folder: str) -> List[UploadedAsset]:
    """
    Upload files concurrently.

    All-or-nothing: if any upload fails, the ones that succeeded are deleted
    again before the first error is re-raised.
    """
    results = await asyncio.gather(
        *(
            asyncio.to_thread(
                upload_media_buffer,
                upload.content,
                folder,
                resource_type_for(upload.content_type),
                upload.content_type,
            )
            for upload in files
        ),
        return_exceptions=True,
    )
    uploaded = [result for result in results if isinstance(result, UploadedAsset)]
    failures = [result for result in results if isinstance(result, BaseException)]
    if failures:
        await discard_assets(asset.public_id for asset in uploaded)
        raise failures[0]
    return uploaded


async def discard_assets(public_ids: Iterable[str]) -> None:
    """Best-effort deletion of stored assets; failures are logged, never raised"""

    async def discard(public_id: str) -> None:
        try:
            await asyncio.to_thread(delete_media_asset, public_id)
        except Exception:
            logger.exception("Failed to delete media asset %s", public_id)

    await asyncio.gather(*(discard(public_id) for public_id in public_ids))
