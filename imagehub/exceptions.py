"""
Exception taxonomy for the image service and the FastAPI handlers that
render it.
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from imagehub.log import get_logger

logger = get_logger("exceptions")


class ImageHubError(Exception):
    """Base class. Carries the failing operation and its identifiers."""

    status_code = 500
    error_code = "internal_error"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.operation = operation
        self.context = context or {}
        super().__init__(message)

    @property
    def details(self) -> Any:
        return None


class ValidationError(ImageHubError):
    """The image violates one or more upload constraints."""

    status_code = 400
    error_code = "validation_error"

    def __init__(self, reasons: List[str], operation: str = "VALIDATE_IMAGE", context=None):
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons), operation, context)

    @property
    def details(self) -> List[str]:
        return self.reasons


class DecodeError(ImageHubError):
    status_code = 400
    error_code = "decode_error"


class ProcessingError(ImageHubError):
    status_code = 422
    error_code = "processing_error"


class UnsupportedFormatError(ImageHubError):
    status_code = 400
    error_code = "unsupported_format"


class InvalidCropError(ImageHubError):
    status_code = 400
    error_code = "invalid_crop"


class UnsupportedOperationError(ImageHubError):
    status_code = 400
    error_code = "unsupported_operation"


class StoreError(ImageHubError):
    status_code = 502
    error_code = "store_error"


class StoreWriteError(StoreError):
    error_code = "store_write_error"


class StoreReadError(StoreError):
    error_code = "store_read_error"

    def __init__(self, message: str, operation=None, context=None, not_found: bool = False):
        super().__init__(message, operation, context)
        self.not_found = not_found
        if not_found:
            self.status_code = 404


class StoreDeleteError(StoreError):
    error_code = "store_delete_error"


class CatalogError(ImageHubError):
    """A DynamoDB call on the image catalog failed."""

    status_code = 502
    error_code = "catalog_error"


class ImageNotFoundError(ImageHubError):
    status_code = 404
    error_code = "image_not_found"

    def __init__(self, image_id: str):
        super().__init__(f"Image {image_id} not found", "FIND_IMAGE", {"image_id": image_id})


class UploadRejectedError(ImageHubError):
    """Raised by the HTTP layer before a file enters the pipeline."""

    status_code = 400
    error_code = "upload_rejected"


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ImageHubError)
    async def image_hub_error_handler(request: Request, exc: ImageHubError):
        logger.error(
            f"{exc.error_code}: {exc.message} "
            f"(operation={exc.operation}, path={request.url.path})"
        )
        body = {"code": exc.error_code, "message": exc.message}
        if exc.details is not None:
            body["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content={"error": body})
