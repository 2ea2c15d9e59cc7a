"""Fixtures for integration tests against real tools and an S3 endpoint."""

import os
import shutil
import uuid
from collections.abc import Generator

import pytest

from walarchiver.config import S3Config
from walarchiver.s3_client import create_s3_client

S3_ENDPOINT_ENV = "WALARCHIVER_TEST_S3_ENDPOINT"


@pytest.fixture
def zstd_binary() -> str:
    path = shutil.which("zstd")
    if path is None:
        pytest.skip("zstd binary not installed")
    return path


@pytest.fixture
def s3_config() -> Generator[S3Config, None, None]:
    """Fresh buckets on the endpoint from WALARCHIVER_TEST_S3_ENDPOINT (e.g. MinIO)."""
    endpoint = os.getenv(S3_ENDPOINT_ENV)
    if not endpoint:
        pytest.skip(f"{S3_ENDPOINT_ENV} not set")

    suffix = uuid.uuid4().hex[:8]
    config = S3Config(
        endpoint=endpoint,
        s3_bucket_wal=f"walarchiver-test-wal-{suffix}",
        s3_bucket_backup=f"walarchiver-test-base-{suffix}",
        use_ssl=endpoint.startswith("https"),
        access_key_id=os.getenv("WALARCHIVER_TEST_S3_ACCESS_KEY", "minioadmin"),
        secret_access_key=os.getenv("WALARCHIVER_TEST_S3_SECRET_KEY", "minioadmin"),
    )
    yield config

    client = create_s3_client(config)
    for bucket in (config.s3_bucket_wal, config.s3_bucket_backup):
        try:
            objects = client.list_objects_v2(Bucket=bucket).get("Contents", [])
        except client.exceptions.NoSuchBucket:
            continue
        for obj in objects:
            client.delete_object(Bucket=bucket, Key=obj["Key"])
        client.delete_bucket(Bucket=bucket)
