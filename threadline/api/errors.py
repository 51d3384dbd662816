from fastapi import HTTPException

from threadline.core.errors import ServiceError


def to_http_exception(exc: ServiceError) -> HTTPException:
    """Map a service error to the HTTP response the client sees"""
    return HTTPException(status_code=exc.status_code, detail=str(exc) or exc.__class__.__name__)
