import os
from contextlib import AsyncExitStack, asynccontextmanager

import aioboto3
import uvicorn
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import FastAPI
from mangum import Mangum

from imagehub.config import fetch_ssm_params, settings
from imagehub.exceptions import setup_exception_handlers
from imagehub.log import get_logger, setup_logging
from imagehub.routers import images
from imagehub.services.catalog import open_catalog_table
from imagehub.services.storage import open_s3_client

setup_logging(settings.LOG_LEVEL)
logger = get_logger("main")


async def bootstrap_local_resources(s3, table):
    """Create bucket and table on LocalStack when they do not exist yet."""
    try:
        await s3.head_bucket(Bucket=settings.BUCKET_NAME)
        logger.info(f"Bucket {settings.BUCKET_NAME} exists.")
    except ClientError:
        logger.info(f"Creating bucket {settings.BUCKET_NAME}...")
        await s3.create_bucket(Bucket=settings.BUCKET_NAME)

    try:
        await table.load()
        logger.info(f"Table {settings.TABLE_NAME} exists.")
    except ClientError:
        logger.info(f"Creating table {settings.TABLE_NAME}...")
        client = table.meta.client
        await client.create_table(
            TableName=settings.TABLE_NAME,
            KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'id', 'AttributeType': 'S'}],
            ProvisionedThroughput={'ReadCapacityUnits': 5, 'WriteCapacityUnits': 5}
        )


async def check_s3_connection(s3) -> bool:
    try:
        await s3.head_bucket(Bucket=settings.BUCKET_NAME)
        logger.info(f"S3 connection established successfully to bucket: {settings.BUCKET_NAME}")
        return True
    except (ClientError, BotoCoreError) as e:
        logger.error(f"S3 connection failed for bucket {settings.BUCKET_NAME}: {e}")
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up...")

    # 1. Fetch SSM Params
    await fetch_ssm_params()

    # 2. Shared S3 client and catalog table for the life of the process
    session = aioboto3.Session()
    async with AsyncExitStack() as stack:
        s3 = await stack.enter_async_context(open_s3_client(session))
        table = await stack.enter_async_context(open_catalog_table(session))
        app.state.s3_client = s3
        app.state.catalog_table = table

        # 3. Bootstrap LocalStack (Ensure Bucket and Table exist)
        if settings.ENV in ("dev", "local"):
            try:
                await bootstrap_local_resources(s3, table)
            except (ClientError, BotoCoreError) as e:
                logger.error(f"Failed to bootstrap local resources: {e}")

        await check_s3_connection(s3)

        yield

    logger.info("Shutting down...")


root_path = os.environ.get("ROOT_PATH", "")
app = FastAPI(title="ImageHub Image Service", lifespan=lifespan, root_path=root_path)

setup_exception_handlers(app)
app.include_router(images.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to ImageHub Image Service"}


# Adapter for AWS Lambda
handler = Mangum(app)


if __name__ == "__main__":
    uvicorn.run("imagehub.main:app", host="0.0.0.0", port=8000, reload=True, env_file="dev.env")
