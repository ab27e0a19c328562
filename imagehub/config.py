import os
import re
from typing import List, Optional

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import field_validator
from pydantic_settings import BaseSettings

from imagehub.log import get_logger

logger = get_logger("config")


class Settings(BaseSettings):
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str = "test"
    AWS_SECRET_ACCESS_KEY: str = "test"
    AWS_ENDPOINT_URL: Optional[str] = None
    ENV: str = "dev"
    LOG_LEVEL: str = "info"

    # These will be populated from SSM or defaults
    BUCKET_NAME: str = "imagehub-images"
    TABLE_NAME: str = "imagehub-catalog"

    # Upload limits
    MAX_FILE_SIZE: int = 10 * 1024 * 1024
    MAX_FILES: int = 5
    ALLOWED_FILE_TYPES: str = "image/jpeg,image/png,image/webp,image/gif"

    # S3 transport and object settings
    UPLOAD_CONCURRENCY: int = 5
    S3_REQUEST_TIMEOUT: int = 30
    S3_MAX_ATTEMPTS: int = 3
    S3_MAX_POOL_CONNECTIONS: int = 25
    S3_OBJECT_ACL: Optional[str] = None
    S3_CACHE_CONTROL: str = "max-age=31536000"
    S3_SERVER_SIDE_ENCRYPTION: Optional[str] = "AES256"
    S3_PUBLIC_URL: Optional[str] = None
    PRESIGNED_URL_EXPIRES: int = 3600

    # Processing
    MAX_IMAGE_PIXELS: int = 50_000_000
    CLEANUP_ON_FAILURE: bool = False

    @field_validator("MAX_FILE_SIZE", mode="before")
    @classmethod
    def parse_file_size(cls, value):
        """Accepts plain byte counts as well as values like ``10mb``."""
        if isinstance(value, int):
            return value
        match = re.fullmatch(r"\s*(\d+)\s*(mb)?\s*", str(value), re.IGNORECASE)
        if not match:
            raise ValueError(f"Invalid MAX_FILE_SIZE: {value!r}")
        size = int(match.group(1))
        return size * 1024 * 1024 if match.group(2) else size

    @property
    def aws_endpoint(self) -> Optional[str]:
        if self.AWS_ENDPOINT_URL:
            return self.AWS_ENDPOINT_URL
        localstack_host = os.environ.get("LOCALSTACK_HOSTNAME")
        if localstack_host:
            return f"http://{localstack_host}:4566"
        return None

    @property
    def allowed_file_types(self) -> List[str]:
        return [t.strip().lower() for t in self.ALLOWED_FILE_TYPES.split(",") if t.strip()]

    model_config = {
        "env_file": "dev.env",
        "extra": "ignore"
    }


settings = Settings()


def aws_client_kwargs() -> dict:
    """Connection arguments shared by every aioboto3 client and resource."""
    return {
        "region_name": settings.AWS_REGION,
        "endpoint_url": settings.aws_endpoint,
        "aws_access_key_id": settings.AWS_ACCESS_KEY_ID,
        "aws_secret_access_key": settings.AWS_SECRET_ACCESS_KEY,
    }


def s3_transport_config() -> Config:
    # Retries happen inside botocore; the services never retry on their own.
    return Config(
        connect_timeout=settings.S3_REQUEST_TIMEOUT,
        read_timeout=settings.S3_REQUEST_TIMEOUT,
        retries={"max_attempts": settings.S3_MAX_ATTEMPTS, "mode": "standard"},
        max_pool_connections=settings.S3_MAX_POOL_CONNECTIONS,
    )


async def fetch_ssm_params():
    """
    Fetches configuration from SSM Parameter Store.
    Updates the global settings object.
    """
    session = aioboto3.Session()
    logger.debug(f"Connecting to SSM at {settings.aws_endpoint}")
    try:
        async with session.client("ssm", **aws_client_kwargs()) as ssm:
            response = await ssm.get_parameters(
                Names=["/imagehub/bucket_name", "/imagehub/table_name"],
                WithDecryption=True
            )

            for param in response.get("Parameters", []):
                if param["Name"] == "/imagehub/bucket_name":
                    settings.BUCKET_NAME = param["Value"]
                elif param["Name"] == "/imagehub/table_name":
                    settings.TABLE_NAME = param["Value"]

            logger.info(f"Loaded config from SSM: Bucket={settings.BUCKET_NAME}, Table={settings.TABLE_NAME}")

    except (ClientError, BotoCoreError) as e:
        logger.warning(f"Failed to fetch parameters from SSM: {e}. Using default values or env vars.")
