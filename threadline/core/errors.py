"""Service-layer exceptions, each mapped to one HTTP status at the API boundary."""

from fastapi import status


class ServiceError(Exception):
    """Base service exception."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class InvalidRequestError(ServiceError):
    """Raised when request input is malformed."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(ServiceError):
    """Raised when a viewer identity is required but missing or invalid."""

    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDeniedError(ServiceError):
    """Raised when the viewer may not act on a post."""

    status_code = status.HTTP_403_FORBIDDEN


class EditWindowExpiredError(PermissionDeniedError):
    """Raised when a post is edited after its edit window closed."""


class PostNotFoundError(ServiceError):
    """Raised when a post id does not resolve."""

    status_code = status.HTTP_404_NOT_FOUND


class UserNotFoundError(ServiceError):
    """Raised when a user id does not resolve."""

    status_code = status.HTTP_404_NOT_FOUND


class DuplicateLikeError(ServiceError):
    """Raised when the (user, post) uniqueness constraint on likes trips."""

    status_code = status.HTTP_409_CONFLICT


class LikeConflictError(ServiceError):
    """Raised when a like toggle keeps losing the race against concurrent toggles."""

    status_code = status.HTTP_409_CONFLICT


class DataIntegrityError(ServiceError):
    """Raised when stored data references a record that does not exist."""


class MediaUploadError(ServiceError):
    """Raised when the asset host rejects or fails an upload."""

    status_code = status.HTTP_502_BAD_GATEWAY
