import asyncio
import copy
import hashlib
import io
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError
from httpx import ASGITransport, AsyncClient
from PIL import Image

from imagehub.main import app
from imagehub.routers.images import get_catalog_service, get_storage_service
from imagehub.services.catalog import CatalogService
from imagehub.services.processing import ImageProcessor
from imagehub.services.storage import StorageService

TEST_BUCKET = "test-images-bucket"


def client_error(code: str, operation: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeBody:
    def __init__(self, data: bytes):
        self._data = data

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def read(self) -> bytes:
        return self._data


class FakeS3Client:
    """In-memory stand-in for an aioboto3 S3 client."""

    def __init__(self, delay: float = 0.0):
        self.objects = {}
        self.delay = delay
        self.fail_on = set()  # key substrings whose puts fail
        self.raise_on = {}  # key substring -> exception raised as-is
        self.put_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def put_object(self, Bucket, Key, Body, ContentType, Metadata=None, **kwargs):
        self.put_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            for marker, exc in self.raise_on.items():
                if marker in Key:
                    raise exc
            if any(marker in Key for marker in self.fail_on):
                raise client_error("InternalError", "PutObject", 500)
            self.objects[Key] = {
                "Body": Body,
                "ContentType": ContentType,
                "Metadata": dict(Metadata or {}),
                "LastModified": datetime.now(timezone.utc),
                "Extra": kwargs,
            }
            return {"ETag": f'"{hashlib.md5(Body).hexdigest()}"'}
        finally:
            self.in_flight -= 1

    async def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise client_error("NoSuchKey", "GetObject", 404)
        body = self.objects[Key]["Body"]
        return {"Body": FakeBody(body), "ContentLength": len(body)}

    async def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise client_error("404", "HeadObject", 404)
        obj = self.objects[Key]
        return {
            "ContentLength": len(obj["Body"]),
            "ContentType": obj["ContentType"],
            "LastModified": obj["LastModified"],
            "ETag": f'"{hashlib.md5(obj["Body"]).hexdigest()}"',
            "Metadata": obj["Metadata"],
        }

    async def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)
        return {}

    async def delete_objects(self, Bucket, Delete):
        keys = [o["Key"] for o in Delete["Objects"]]
        for key in keys:
            self.objects.pop(key, None)
        return {"Deleted": [{"Key": k} for k in keys]}

    async def copy_object(self, Bucket, Key, CopySource, Metadata, MetadataDirective):
        source = self.objects[CopySource["Key"]]
        copied = copy.deepcopy(source)
        if MetadataDirective == "REPLACE":
            copied["Metadata"] = dict(Metadata)
        self.objects[Key] = copied
        return {"CopyObjectResult": {"ETag": '"copied"'}}

    async def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        return f"https://signed.test/{Params['Bucket']}/{Params['Key']}?op={ClientMethod}&expires={ExpiresIn}"


def _matches(item, condition) -> bool:
    expression = condition.get_expression()
    operator = expression["operator"]
    values = expression["values"]
    if operator == "AND":
        return all(_matches(item, c) for c in values)
    attr, expected = values
    actual = item.get(attr.name)
    if operator == "=":
        return actual == expected
    if operator == "contains":
        return actual is not None and expected in actual
    raise NotImplementedError(operator)


class FakeTable:
    """In-memory stand-in for an aioboto3 DynamoDB Table."""

    def __init__(self):
        self.items = {}
        self.failing_puts = 0

    async def put_item(self, Item):
        if self.failing_puts:
            self.failing_puts -= 1
            raise client_error("ProvisionedThroughputExceededException", "PutItem")
        self.items[Item["id"]] = copy.deepcopy(Item)
        return {}

    async def get_item(self, Key):
        item = self.items.get(Key["id"])
        return {"Item": copy.deepcopy(item)} if item else {}

    async def delete_item(self, Key):
        self.items.pop(Key["id"], None)
        return {}

    async def scan(self, FilterExpression=None, ExclusiveStartKey=None):
        items = [copy.deepcopy(i) for i in self.items.values()]
        if FilterExpression is not None:
            items = [i for i in items if _matches(i, FilterExpression)]
        return {"Items": items}


def _make_image(width=800, height=600, fmt="PNG", mode="RGB", color=(200, 80, 40)) -> bytes:
    if mode in ("RGBA", "LA") and len(color) == 3:
        color = tuple(color) + (128,)
    if mode in ("L", "LA"):
        color = color[0] if mode == "L" else (color[0], color[-1])
    image = Image.new(mode, (width, height), color)
    # A second colour block keeps encoders honest about dimensions
    image.paste(Image.new(mode, (max(1, width // 4), max(1, height // 4))), (0, 0))
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def make_image():
    return _make_image


@pytest.fixture
def processor():
    return ImageProcessor()


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def catalog_table():
    return FakeTable()


@pytest.fixture
def storage(s3_client):
    return StorageService(s3_client, bucket_name=TEST_BUCKET, concurrency=5)


@pytest.fixture
def catalog(catalog_table):
    return CatalogService(catalog_table)


@pytest_asyncio.fixture
async def client(s3_client, catalog_table):
    app.dependency_overrides[get_storage_service] = lambda: StorageService(s3_client, bucket_name=TEST_BUCKET)
    app.dependency_overrides[get_catalog_service] = lambda: CatalogService(catalog_table)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
