from urllib.parse import parse_qs, urlparse

import boto3
import pytest
from botocore.config import Config
from botocore.stub import Stubber

from app.errors import TransientError
from app.storage import S3BlobStore


@pytest.fixture
def s3():
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="AKIDTEST",
        aws_secret_access_key="secret",
        config=Config(signature_version="s3v4"),
    )
    with Stubber(client) as stubber:
        yield client, stubber


def test_exists(s3):
    client, stubber = s3
    params = {"Bucket": "course-bucket", "Key": "courses/current.zip"}
    stubber.add_response("head_object", {"ContentLength": 10}, params)
    stubber.add_client_error("head_object", service_error_code="404", http_status_code=404, expected_params=params)

    store = S3BlobStore(client, "course-bucket")
    assert store.exists("courses/current.zip") is True
    assert store.exists("courses/current.zip") is False


def test_exists_other_errors_are_transient(s3):
    client, stubber = s3
    stubber.add_client_error("head_object", service_error_code="AccessDenied", http_status_code=403)

    with pytest.raises(TransientError):
        S3BlobStore(client, "course-bucket").exists("courses/current.zip")


def test_presigned_urls(s3):
    client, _ = s3
    store = S3BlobStore(client, "course-bucket")

    read = urlparse(store.read_url("courses/current.zip", 900))
    assert read.path.endswith("courses/current.zip")
    assert parse_qs(read.query)["X-Amz-Expires"] == ["900"]

    write = urlparse(store.write_url("courses/current.zip", 600, "application/zip"))
    assert parse_qs(write.query)["X-Amz-Expires"] == ["600"]
