"""boto3 client construction and S3 error helpers."""

from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from structlog import BoundLogger

from walarchiver.config import S3Config
from walarchiver.exceptions import S3Error
from utils.logging import get_logger
from utils.retry import RetryConfig

NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NoSuchBucket", "NotFound"})

# Listing and deleting are safe to repeat; uploads are not retried here.
IDEMPOTENT_RETRY = RetryConfig(
    max_attempts=3,
    initial_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=(ClientError, BotoCoreError),
)


def error_code(error: ClientError) -> str:
    """Return the S3 error code of a ClientError."""
    return str(error.response.get("Error", {}).get("Code", "Unknown"))


def is_not_found(error: ClientError) -> bool:
    return error_code(error) in NOT_FOUND_CODES


def create_s3_client(config: S3Config, logger: Optional[BoundLogger] = None) -> Any:
    """Create a boto3 S3 client for the configured endpoint.

    Args:
        config: S3 configuration
        logger: Optional logger instance

    Returns:
        boto3 S3 client

    Raises:
        S3Error: If the client cannot be created
    """
    logger = logger or get_logger("s3")
    try:
        credentials = config.get_credentials()
        if credentials:
            session = boto3.Session(
                aws_access_key_id=credentials["aws_access_key_id"],
                aws_secret_access_key=credentials["aws_secret_access_key"],
            )
        else:
            # Default credential chain (IAM role, AWS credentials file, env vars)
            session = boto3.Session()

        s3_kwargs: dict[str, Any] = {
            "service_name": "s3",
            "region_name": config.s3_location,
            "use_ssl": config.use_ssl,
        }
        if config.endpoint:
            s3_kwargs["endpoint_url"] = config.endpoint

        client = session.client(**s3_kwargs)
    except Exception as e:
        raise S3Error(
            f"Failed to create S3 client: {e}",
            context={"endpoint": config.endpoint or "AWS S3"},
        ) from e

    logger.debug(
        "S3 client initialized",
        endpoint=config.endpoint or "AWS S3",
        region=config.s3_location,
    )
    return client
