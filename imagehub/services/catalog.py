import uuid
from collections import Counter
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aioboto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from imagehub.config import aws_client_kwargs, settings
from imagehub.exceptions import CatalogError
from imagehub.log import get_logger
from imagehub.models import FormatCount, ImageRecord, ImageStats, RecentUpload
from imagehub.utils import format_file_size

logger = get_logger("catalog")


@asynccontextmanager
async def open_catalog_table(session: Optional[aioboto3.Session] = None):
    session = session or aioboto3.Session()
    async with session.resource("dynamodb", **aws_client_kwargs()) as dynamo:
        yield await dynamo.Table(settings.TABLE_NAME)


@contextmanager
def _dynamo(operation: str, **context):
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        logger.error(f"{operation} failed ({context}): {e}")
        raise CatalogError(f"Catalog request failed: {e}", operation, context) from e


class CatalogService:
    """Image records stored in a DynamoDB table keyed by ``id``."""

    def __init__(self, table):
        self.table = table

    async def create_image_record(self, fields: Dict[str, Any]) -> ImageRecord:
        record = ImageRecord(
            id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc).isoformat(),
            **fields,
        )
        with _dynamo("CREATE_IMAGE_RECORD", image_id=record.id, s3_key=record.s3_key):
            await self.table.put_item(Item=record.model_dump(mode="json", exclude_none=True))
        logger.info(f"Image record created: id={record.id}, key={record.s3_key}")
        return record

    async def find_image(self, image_id: str, user_id: Optional[str] = None) -> Optional[ImageRecord]:
        with _dynamo("FIND_IMAGE", image_id=image_id):
            response = await self.table.get_item(Key={"id": image_id})
        item = response.get("Item")
        if not item:
            return None
        record = ImageRecord(**item)
        if user_id is not None and record.user_id != user_id:
            return None
        return record

    async def delete_image_record(self, image_id: str):
        with _dynamo("DELETE_IMAGE_RECORD", image_id=image_id):
            await self.table.delete_item(Key={"id": image_id})
        logger.info(f"Image record deleted: id={image_id}")

    async def list_images(
        self,
        user_id: Optional[str],
        page: int = 1,
        limit: int = 10,
        filename: Optional[str] = None,
    ) -> Tuple[List[ImageRecord], int]:
        records = await self._scan(user_id, filename)
        records.sort(key=lambda r: r.created_at, reverse=True)
        offset = (page - 1) * limit
        return records[offset:offset + limit], len(records)

    async def image_stats(self, user_id: Optional[str]) -> ImageStats:
        records = await self._scan(user_id)
        records.sort(key=lambda r: r.created_at, reverse=True)
        total_size = sum(r.size for r in records)
        formats = Counter(r.format.value for r in records)
        return ImageStats(
            total_images=len(records),
            total_size_bytes=total_size,
            total_size_formatted=format_file_size(total_size),
            format_distribution=[FormatCount(format=f, count=c) for f, c in formats.most_common()],
            recent_uploads=[
                RecentUpload(id=r.id, original_name=r.original_name, size=r.size, created_at=r.created_at)
                for r in records[:5]
            ],
        )

    async def _scan(self, user_id: Optional[str], filename: Optional[str] = None) -> List[ImageRecord]:
        # Simple scan with filter expression, following pagination
        scan_kwargs = {}
        filter_expression = None

        if user_id:
            filter_expression = Attr("user_id").eq(user_id)

        if filename:
            condition = Attr("filename").contains(filename)
            filter_expression = condition if filter_expression is None else filter_expression & condition

        if filter_expression is not None:
            scan_kwargs["FilterExpression"] = filter_expression

        items = []
        while True:
            with _dynamo("SCAN_IMAGES", user_id=user_id, filename=filename):
                response = await self.table.scan(**scan_kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key
        return [ImageRecord(**item) for item in items]
