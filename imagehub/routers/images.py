import json
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Header, Query, Request, Response, UploadFile
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from imagehub.config import settings
from imagehub.exceptions import ImageNotFoundError, InvalidCropError, UploadRejectedError
from imagehub.models import (
    BatchUploadOutcome,
    CropRegion,
    ImageDetail,
    ImagePage,
    ImageStats,
    TransformSpec,
    UploadedImage,
    UploadFileInput,
)
from imagehub.services.catalog import CatalogService
from imagehub.services.processing import ImageProcessor, ProcessingConfig
from imagehub.services.storage import StorageService
from imagehub.services.uploads import UploadService
from imagehub.utils import format_file_size, pagination_meta

router = APIRouter(prefix="/images", tags=["images"])

MAX_PAGE_SIZE = 50

_processor = ImageProcessor(ProcessingConfig(max_pixels=settings.MAX_IMAGE_PIXELS))


# Dependency Injection for services
async def get_storage_service(request: Request) -> StorageService:
    return StorageService(request.app.state.s3_client)


async def get_catalog_service(request: Request) -> CatalogService:
    return CatalogService(request.app.state.catalog_table)


def get_image_processor() -> ImageProcessor:
    return _processor


async def get_upload_service(
    processor: ImageProcessor = Depends(get_image_processor),
    storage: StorageService = Depends(get_storage_service),
    catalog: CatalogService = Depends(get_catalog_service),
) -> UploadService:
    return UploadService(processor, storage, catalog, cleanup_on_failure=settings.CLEANUP_ON_FAILURE)


async def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_user_id or None


async def read_upload(file: UploadFile) -> UploadFileInput:
    content_type = (file.content_type or "").lower()
    if content_type not in settings.allowed_file_types:
        raise UploadRejectedError(
            f"Unsupported file type: {content_type or 'unknown'}",
            "READ_UPLOAD",
            {"filename": file.filename},
        )
    data = await file.read()
    if len(data) > settings.MAX_FILE_SIZE:
        raise UploadRejectedError(
            f"Max file size is {settings.MAX_FILE_SIZE} bytes",
            "READ_UPLOAD",
            {"filename": file.filename, "size": len(data)},
        )
    return UploadFileInput(data=data, original_name=file.filename or "upload", mime_type=content_type)


@router.post("/upload", response_model=UploadedImage, status_code=201)
async def upload_image(
    image: UploadFile = File(...),
    user_id: Optional[str] = Depends(get_user_id),
    uploads: UploadService = Depends(get_upload_service),
):
    return await uploads.upload_single(await read_upload(image), user_id)


@router.post("/upload/multiple", response_model=BatchUploadOutcome)
async def upload_multiple(
    images: List[UploadFile] = File(...),
    user_id: Optional[str] = Depends(get_user_id),
    uploads: UploadService = Depends(get_upload_service),
):
    if len(images) > settings.MAX_FILES:
        raise UploadRejectedError(
            f"At most {settings.MAX_FILES} files per request", "READ_UPLOAD", {"count": len(images)}
        )
    files = [await read_upload(image) for image in images]
    return await uploads.upload_batch(files, user_id)


@router.get("/", response_model=ImagePage)
async def list_images(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    filename: Optional[str] = Query(None, description="Filter by partial filename"),
    user_id: Optional[str] = Depends(get_user_id),
    catalog: CatalogService = Depends(get_catalog_service),
):
    limit = min(limit, MAX_PAGE_SIZE)
    valid_filename = filename if filename and filename.strip() else None
    images, total = await catalog.list_images(user_id, page, limit, valid_filename)
    return ImagePage(images=images, pagination=pagination_meta(page, limit, total))


@router.get("/stats", response_model=ImageStats)
async def image_stats(
    user_id: Optional[str] = Depends(get_user_id),
    catalog: CatalogService = Depends(get_catalog_service),
):
    return await catalog.image_stats(user_id)


@router.get("/{image_id}", response_model=ImageDetail)
async def get_image(
    image_id: str,
    user_id: Optional[str] = Depends(get_user_id),
    catalog: CatalogService = Depends(get_catalog_service),
    storage: StorageService = Depends(get_storage_service),
):
    image = await catalog.find_image(image_id, user_id)
    if not image:
        raise ImageNotFoundError(image_id)

    return ImageDetail(
        **image.model_dump(),
        size_formatted=format_file_size(image.size),
        download_url=await storage.generate_presigned_url(image.s3_key),
    )


@router.delete("/{image_id}")
async def delete_image(
    image_id: str,
    user_id: Optional[str] = Depends(get_user_id),
    catalog: CatalogService = Depends(get_catalog_service),
    uploads: UploadService = Depends(get_upload_service),
):
    image = await catalog.find_image(image_id, user_id)
    if not image:
        raise ImageNotFoundError(image_id)

    await uploads.delete_image(image)
    return {"message": "Image deleted successfully", "id": image_id}


@router.get("/{image_id}/transformed")
async def transform_image(
    image_id: str,
    width: Optional[int] = Query(None, ge=1, le=5000),
    height: Optional[int] = Query(None, ge=1, le=5000),
    format: str = Query("jpeg"),
    quality: int = Query(80, ge=1, le=100),
    rotate: Optional[int] = Query(None),
    crop: Optional[str] = Query(None, description='JSON object {"x","y","width","height"}'),
    user_id: Optional[str] = Depends(get_user_id),
    catalog: CatalogService = Depends(get_catalog_service),
    storage: StorageService = Depends(get_storage_service),
    processor: ImageProcessor = Depends(get_image_processor),
):
    image = await catalog.find_image(image_id, user_id)
    if not image:
        raise ImageNotFoundError(image_id)

    spec = TransformSpec(
        width=width,
        height=height,
        format=processor.resolve_output_format(format),
        quality=quality,
        rotate=rotate,
        crop=_parse_crop(crop),
    )
    original = await storage.download_file(image.s3_key)
    transformed = await run_in_threadpool(processor.transform_image, original, spec)

    return Response(
        content=transformed,
        media_type=spec.format.mime_type,
        headers={"Cache-Control": "public, max-age=31536000"},
    )


def _parse_crop(raw: Optional[str]) -> Optional[CropRegion]:
    if not raw:
        return None
    try:
        return CropRegion(**json.loads(raw))
    except (ValueError, TypeError, PydanticValidationError) as e:
        raise InvalidCropError(f"Invalid crop parameter: {e}", "TRANSFORM_IMAGE", {"crop": raw}) from e
