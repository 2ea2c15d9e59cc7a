"""Unit tests for S3 client module."""

import os
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from walarchiver.config import S3Config
from walarchiver.exceptions import S3Error
from walarchiver.s3_client import create_s3_client, error_code, is_not_found


@patch("boto3.Session")
def test_create_client_default_chain(mock_session: MagicMock) -> None:
    """Test client creation with the default credential chain."""
    with patch.dict(os.environ, {}, clear=True):
        client = create_s3_client(S3Config(s3_location="eu-west-1"))

    mock_session.assert_called_once_with()
    mock_session.return_value.client.assert_called_once_with(
        service_name="s3", region_name="eu-west-1", use_ssl=True
    )
    assert client is mock_session.return_value.client.return_value


@patch("boto3.Session")
def test_create_client_custom_endpoint(mock_session: MagicMock) -> None:
    """Test client creation for an S3-compatible endpoint."""
    config = S3Config(
        endpoint="http://localhost:9000",
        use_ssl=False,
        access_key_id="minioadmin",
        secret_access_key="minioadmin",
    )
    with pytest.warns(UserWarning):
        create_s3_client(config)

    mock_session.assert_called_once_with(
        aws_access_key_id="minioadmin", aws_secret_access_key="minioadmin"
    )
    mock_session.return_value.client.assert_called_once_with(
        service_name="s3",
        region_name="us-east-1",
        use_ssl=False,
        endpoint_url="http://localhost:9000",
    )


@patch("boto3.Session")
def test_create_client_failure(mock_session: MagicMock) -> None:
    """Test that client creation errors become S3Error."""
    mock_session.return_value.client.side_effect = ValueError("bad endpoint")
    with pytest.raises(S3Error, match="Failed to create S3 client"):
        create_s3_client(S3Config(endpoint="not a url"))


def test_error_helpers() -> None:
    """Test error code extraction."""
    missing = ClientError({"Error": {"Code": "NoSuchKey", "Message": "gone"}}, "HeadObject")
    denied = ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "HeadObject")
    assert error_code(missing) == "NoSuchKey"
    assert is_not_found(missing)
    assert not is_not_found(denied)
    assert error_code(ClientError({}, "HeadObject")) == "Unknown"
