"""
Upload Orchestrator.

Runs one file through validate -> metadata -> original upload -> thumbnails
-> thumbnail upload -> catalog record, and runs batches as independent
single uploads.
"""

import os
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from imagehub.exceptions import ImageHubError, StoreDeleteError, StoreWriteError, ValidationError
from imagehub.log import get_logger
from imagehub.models import (
    BatchUploadOutcome,
    FailedUpload,
    ImageRecord,
    ThumbnailLink,
    ThumbnailRecord,
    UploadedImage,
    UploadFileInput,
    ValidationConstraints,
)
from imagehub.services.catalog import CatalogService
from imagehub.services.processing import ImageProcessor
from imagehub.services.storage import StorageService

logger = get_logger("uploads")

ORIGINALS_FOLDER = "images"
THUMBNAILS_FOLDER = "thumbnails"

DEFAULT_CONSTRAINTS = ValidationConstraints(
    min_width=50,
    min_height=50,
    max_width=5000,
    max_height=5000,
    max_size=10 * 1024 * 1024,
)


class UploadService:
    def __init__(
        self,
        processor: ImageProcessor,
        storage: StorageService,
        catalog: CatalogService,
        constraints: Optional[ValidationConstraints] = None,
        cleanup_on_failure: bool = False,
    ):
        self.processor = processor
        self.storage = storage
        self.catalog = catalog
        self.constraints = constraints or DEFAULT_CONSTRAINTS
        self.cleanup_on_failure = cleanup_on_failure

    async def upload_single(self, file: UploadFileInput, user_id: Optional[str] = None) -> UploadedImage:
        """
        Run the whole pipeline for one file.

        Any stage failure is re-raised. Blobs uploaded before the failing
        stage stay in the store unless ``cleanup_on_failure`` is set.
        """
        uploaded_keys: List[str] = []
        try:
            return await self._run_pipeline(file, user_id, uploaded_keys)
        except ImageHubError as e:
            if uploaded_keys:
                logger.warning(
                    f"UPLOAD_SINGLE failed for {file.original_name} at {e.operation}; "
                    f"already stored: {uploaded_keys}"
                )
                if self.cleanup_on_failure:
                    await self._cleanup(uploaded_keys)
            raise

    async def upload_batch(self, files: List[UploadFileInput], user_id: Optional[str] = None) -> BatchUploadOutcome:
        outcome = BatchUploadOutcome()
        for file in files:
            try:
                outcome.successful.append(await self.upload_single(file, user_id))
            except ValidationError as e:
                outcome.failed.append(FailedUpload(file=file.original_name, error="validation failed", details=e.reasons))
            except ImageHubError as e:
                outcome.failed.append(FailedUpload(file=file.original_name, error=e.message))

        logger.info(
            f"UPLOAD_BATCH for user={user_id}: total={len(files)}, "
            f"successful={len(outcome.successful)}, failed={len(outcome.failed)}"
        )
        return outcome

    async def delete_image(self, record: ImageRecord):
        await self.storage.delete_file(record.s3_key)
        thumbnail_keys = [t.s3_key for t in record.thumbnails.values()]
        if thumbnail_keys:
            await self.storage.delete_multiple_files(thumbnail_keys)
        await self.catalog.delete_image_record(record.id)

    async def _run_pipeline(self, file: UploadFileInput, user_id: Optional[str], uploaded_keys: List[str]) -> UploadedImage:
        data = file.data or b""

        await run_in_threadpool(self.processor.validate_image, data, self.constraints)
        metadata = await run_in_threadpool(self.processor.extract_metadata, data)

        original = await self.storage.upload_file(
            data,
            file.original_name,
            file.mime_type or metadata.format.mime_type,
            ORIGINALS_FOLDER,
            {
                "width": metadata.width,
                "height": metadata.height,
                "format": metadata.format.value,
                "userid": user_id,
            },
        )
        uploaded_keys.append(original.key)

        thumbnails = await run_in_threadpool(self.processor.create_thumbnails, data)

        stem = os.path.splitext(original.filename)[0]
        batch = await self.storage.upload_multiple_files([
            UploadFileInput(
                data=thumb.data,
                original_name=f"{label}_{stem}.{thumb.format.value}",
                mime_type=thumb.format.mime_type,
                folder=f"{THUMBNAILS_FOLDER}/{label}",
                metadata={
                    "width": str(thumb.width),
                    "height": str(thumb.height),
                    "parentkey": original.key,
                    "label": label,
                },
            )
            for label, thumb in thumbnails.items()
        ])
        uploaded_keys.extend(r.key for r in batch.successful)
        if batch.failed:
            raise StoreWriteError(
                f"Failed to upload {len(batch.failed)} thumbnail(s): "
                + "; ".join(f.error for f in batch.failed),
                "UPLOAD_THUMBNAILS",
                {"parent_key": original.key},
            )

        # thumbnails/<label>/<filename>
        stored = {r.key.split("/")[1]: r for r in batch.successful}
        thumbnail_records = {
            label: ThumbnailRecord(
                s3_key=stored[label].key, url=stored[label].url, width=thumb.width, height=thumb.height
            )
            for label, thumb in thumbnails.items()
        }

        record = await self.catalog.create_image_record({
            "user_id": user_id,
            "original_name": file.original_name,
            "filename": original.filename,
            "s3_key": original.key,
            "mime_type": original.mime_type,
            "size": len(data),
            "width": metadata.width,
            "height": metadata.height,
            "format": metadata.format,
            "url": original.url,
            "thumbnails": thumbnail_records,
        })

        return UploadedImage(
            id=record.id,
            original_name=record.original_name,
            filename=record.filename,
            url=record.url,
            thumbnails=[
                ThumbnailLink(size=label, url=t.url, width=t.width, height=t.height)
                for label, t in thumbnail_records.items()
            ],
        )

    async def _cleanup(self, keys: List[str]):
        try:
            await self.storage.delete_multiple_files(keys)
            logger.info(f"Removed orphaned objects: {keys}")
        except StoreDeleteError as e:
            logger.error(f"Could not remove orphaned objects {keys}: {e}")
