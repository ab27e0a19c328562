import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from imagehub.config import aws_client_kwargs, s3_transport_config, settings
from imagehub.exceptions import (
    StoreDeleteError,
    StoreReadError,
    StoreWriteError,
    UnsupportedOperationError,
)
from imagehub.log import get_logger
from imagehub.models import BatchUploadResult, FailedUpload, StoredObject, UploadFileInput, UploadResult
from imagehub.utils import generate_unique_filename, md5_hex

logger = get_logger("storage")

STORE_ERRORS = (ClientError, BotoCoreError)

PRESIGN_OPERATIONS = {
    "getObject": "get_object",
    "putObject": "put_object",
}

DELETE_BATCH_SIZE = 1000


@asynccontextmanager
async def open_s3_client(session: Optional[aioboto3.Session] = None):
    """The process-wide S3 client. Opened once in the app lifespan."""
    session = session or aioboto3.Session()
    async with session.client("s3", config=s3_transport_config(), **aws_client_kwargs()) as s3:
        yield s3


def _is_not_found(error: ClientError) -> bool:
    code = error.response.get("Error", {}).get("Code")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in ("404", "NoSuchKey", "NotFound") or status == 404


class StorageService:
    """
    Object Store Adapter over an aioboto3 S3 client.

    The client is shared and never reconfigured here; every call is a single
    request against ``bucket_name``.
    """

    def __init__(self, client, bucket_name: Optional[str] = None, concurrency: Optional[int] = None):
        self.client = client
        self.bucket_name = bucket_name or settings.BUCKET_NAME
        self.concurrency = concurrency or settings.UPLOAD_CONCURRENCY

    def public_url(self, key: str) -> str:
        if settings.S3_PUBLIC_URL:
            return f"{settings.S3_PUBLIC_URL.rstrip('/')}/{key}"
        if settings.aws_endpoint:
            return f"{settings.aws_endpoint.rstrip('/')}/{self.bucket_name}/{key}"
        return f"https://{self.bucket_name}.s3.{settings.AWS_REGION}.amazonaws.com/{key}"

    def _object_settings(self) -> Dict[str, str]:
        params = {"CacheControl": settings.S3_CACHE_CONTROL}
        if settings.S3_OBJECT_ACL:
            params["ACL"] = settings.S3_OBJECT_ACL
        if settings.S3_SERVER_SIDE_ENCRYPTION:
            params["ServerSideEncryption"] = settings.S3_SERVER_SIDE_ENCRYPTION
        return params

    async def upload_file(
        self,
        data: bytes,
        original_name: str,
        mime_type: str,
        folder: Optional[str] = "uploads",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UploadResult:
        filename = generate_unique_filename(original_name)
        key = f"{folder}/{filename}" if folder else filename

        # S3 user metadata must be ASCII.
        object_metadata = {"originalname": quote(original_name)}
        for name, value in (metadata or {}).items():
            if value is not None:
                object_metadata[name.lower()] = quote(str(value))

        try:
            result = await self.client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=mime_type,
                Metadata=object_metadata,
                **self._object_settings(),
            )
        except STORE_ERRORS as e:
            logger.error(f"S3_UPLOAD failed for {original_name} ({mime_type}) as {key}: {e}")
            raise StoreWriteError(
                f"Failed to upload file to S3: {e}",
                "S3_UPLOAD",
                {"filename": original_name, "key": key},
            ) from e

        logger.info(f"File uploaded to S3: key={key}, size={len(data)}, mimetype={mime_type}")
        return UploadResult(
            key=key,
            filename=filename,
            original_name=original_name,
            mime_type=mime_type,
            size=len(data),
            etag=result.get("ETag"),
            url=self.public_url(key),
            upload_date=datetime.now(timezone.utc).isoformat(),
            hash=md5_hex(data),
        )

    async def download_file(self, key: str) -> bytes:
        try:
            response = await self.client.get_object(Bucket=self.bucket_name, Key=key)
            async with response["Body"] as stream:
                data = await stream.read()
        except ClientError as e:
            not_found = _is_not_found(e)
            logger.error(f"S3_DOWNLOAD failed for {key}: {e}")
            raise StoreReadError(
                f"Failed to download file from S3: {e}", "S3_DOWNLOAD", {"key": key}, not_found=not_found
            ) from e
        except BotoCoreError as e:
            logger.error(f"S3_DOWNLOAD failed for {key}: {e}")
            raise StoreReadError(f"Failed to download file from S3: {e}", "S3_DOWNLOAD", {"key": key}) from e

        logger.info(f"File downloaded from S3: key={key}, size={len(data)}")
        return data

    async def delete_file(self, key: str) -> bool:
        try:
            await self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except STORE_ERRORS as e:
            logger.error(f"S3_DELETE failed for {key}: {e}")
            raise StoreDeleteError(f"Failed to delete file from S3: {e}", "S3_DELETE", {"key": key}) from e

        logger.info(f"File deleted from S3: key={key}")
        return True

    async def delete_multiple_files(self, keys: List[str]) -> int:
        """Delete ``keys`` in batches; returns how many were deleted."""
        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            chunk = keys[start:start + DELETE_BATCH_SIZE]
            try:
                response = await self.client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={"Objects": [{"Key": k} for k in chunk], "Quiet": False},
                )
            except STORE_ERRORS as e:
                logger.error(f"S3_DELETE_MULTIPLE failed for {len(chunk)} keys: {e}")
                raise StoreDeleteError(
                    f"Failed to delete files from S3: {e}", "S3_DELETE_MULTIPLE", {"keys": chunk}
                ) from e

            errors = response.get("Errors", [])
            if errors:
                failed_keys = [err.get("Key") for err in errors]
                logger.error(f"S3_DELETE_MULTIPLE could not delete {failed_keys}")
                raise StoreDeleteError(
                    f"Failed to delete {len(errors)} file(s) from S3",
                    "S3_DELETE_MULTIPLE",
                    {"keys": failed_keys},
                )
            deleted += len(response.get("Deleted", chunk))

        logger.info(f"Deleted {deleted} files from S3")
        return deleted

    async def file_exists(self, key: str) -> bool:
        try:
            await self.client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            logger.error(f"S3_HEAD_OBJECT failed for {key}: {e}")
            raise StoreReadError(
                f"Failed to check file existence: {e}", "S3_HEAD_OBJECT", {"key": key}
            ) from e

    async def get_file_metadata(self, key: str) -> StoredObject:
        try:
            response = await self.client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            logger.error(f"S3_GET_METADATA failed for {key}: {e}")
            raise StoreReadError(
                f"Failed to get file metadata: {e}", "S3_GET_METADATA", {"key": key}, not_found=_is_not_found(e)
            ) from e

        last_modified = response.get("LastModified")
        return StoredObject(
            key=key,
            size=response.get("ContentLength", 0),
            mime_type=response.get("ContentType"),
            last_modified=last_modified.isoformat() if last_modified else None,
            etag=response.get("ETag"),
            metadata=response.get("Metadata") or {},
        )

    async def copy_file(self, source_key: str, destination_key: str, metadata: Optional[Dict[str, str]] = None) -> dict:
        try:
            result = await self.client.copy_object(
                Bucket=self.bucket_name,
                Key=destination_key,
                CopySource={"Bucket": self.bucket_name, "Key": source_key},
                Metadata=metadata or {},
                MetadataDirective="REPLACE" if metadata else "COPY",
            )
        except STORE_ERRORS as e:
            logger.error(f"S3_COPY failed {source_key} -> {destination_key}: {e}")
            raise StoreWriteError(
                f"Failed to copy file: {e}",
                "S3_COPY",
                {"source_key": source_key, "destination_key": destination_key},
            ) from e

        logger.info(f"File copied in S3: {source_key} -> {destination_key}")
        return {
            "success": True,
            "source_key": source_key,
            "destination_key": destination_key,
            "etag": result.get("CopyObjectResult", {}).get("ETag"),
        }

    async def generate_presigned_url(self, key: str, expires_in: Optional[int] = None, operation: str = "getObject") -> str:
        if operation not in PRESIGN_OPERATIONS:
            raise UnsupportedOperationError(
                f"Unsupported operation: {operation}", "S3_PRESIGNED_URL", {"key": key, "operation": operation}
            )
        expires_in = expires_in or settings.PRESIGNED_URL_EXPIRES
        try:
            url = await self.client.generate_presigned_url(
                PRESIGN_OPERATIONS[operation],
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=expires_in,
            )
        except STORE_ERRORS as e:
            logger.error(f"S3_PRESIGNED_URL failed for {key} ({operation}): {e}")
            raise StoreReadError(
                f"Failed to generate presigned URL: {e}", "S3_PRESIGNED_URL", {"key": key, "operation": operation}
            ) from e

        logger.info(f"Presigned URL generated: key={key}, operation={operation}, expires_in={expires_in}")
        return url

    async def upload_multiple_files(self, files: List[UploadFileInput], folder: str = "uploads") -> BatchUploadResult:
        """
        Upload ``files`` through a fixed pool of ``self.concurrency`` workers.

        Every file settles on its own: failures are collected, never raised.
        Result order follows completion order, not input order.
        """
        result = BatchUploadResult(total_processed=len(files))
        queue: asyncio.Queue = asyncio.Queue()
        for file in files:
            queue.put_nowait(file)

        async def worker():
            while True:
                try:
                    file = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result.successful.append(await self._upload_entry(file, folder))
                except Exception as e:  # all-settle: any failure is recorded, never raised
                    logger.error(
                        f"UPLOAD_FILE_FAILURE {file.original_name} "
                        f"(mimetype={file.mime_type}, has_buffer={bool(file.data)}): {e}"
                    )
                    result.failed.append(FailedUpload(
                        file=file.original_name,
                        error=f'Failed to upload "{file.original_name}": {e}',
                    ))
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(files)))]
        await asyncio.gather(*workers)

        logger.info(
            f"Batch upload completed: total={len(files)}, "
            f"successful={len(result.successful)}, failed={len(result.failed)}"
        )
        return result

    async def _upload_entry(self, file: UploadFileInput, folder: str) -> UploadResult:
        if not file.data:
            raise ValueError("Missing or invalid file buffer")
        if not file.mime_type:
            raise ValueError("Missing file mimetype")
        return await self.upload_file(
            file.data,
            file.original_name,
            file.mime_type,
            file.folder or folder,
            file.metadata,
        )
