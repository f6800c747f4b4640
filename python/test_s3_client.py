"""S3クライアントとS3ObjectStoreのテスト"""
import io
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from multipart_uploader.core.s3_client import S3ClientManager
from multipart_uploader.core.store import S3ObjectStore
from multipart_uploader.errors import BackendError, ObjectNotFoundError
from multipart_uploader.models.config import StorageConfig, UploadOptions
from multipart_uploader.models.upload import CompletedPart


def _client_error(code: str, message: str = "boom", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class TestS3ClientManager:
    """認証情報の注入とクライアント作成"""

    def test_r2_endpoint_and_credentials_are_injected(self):
        config = StorageConfig(
            bucket="uploads",
            account_id="abc123",
            access_key_id="key",
            secret_access_key="secret",
            read_timeout=30,
        )

        with patch("multipart_uploader.core.s3_client.boto3") as mock_boto3:
            client = S3ClientManager(config).get_client()

        assert client is mock_boto3.client.return_value
        _, kwargs = mock_boto3.client.call_args
        assert kwargs["endpoint_url"] == "https://abc123.r2.cloudflarestorage.com"
        assert kwargs["aws_access_key_id"] == "key"
        assert kwargs["aws_secret_access_key"] == "secret"
        assert kwargs["region_name"] == "auto"
        assert kwargs["config"].read_timeout == 30

    def test_profile_session_is_used_without_explicit_keys(self):
        config = StorageConfig(bucket="uploads", profile="dev", region="us-east-1")

        with patch("multipart_uploader.core.s3_client.boto3") as mock_boto3:
            S3ClientManager(config).get_client()

        mock_boto3.Session.assert_called_once_with(profile_name="dev")
        mock_boto3.Session.return_value.client.assert_called_once()
        mock_boto3.client.assert_not_called()

    def test_client_is_cached(self):
        config = StorageConfig(bucket="uploads")

        with patch("multipart_uploader.core.s3_client.boto3") as mock_boto3:
            manager = S3ClientManager(config)
            assert manager.get_client() is manager.get_client()

        assert mock_boto3.client.call_count == 1


class TestS3ObjectStore:
    """boto3クライアントをモックした S3ObjectStore のテスト"""

    @pytest.fixture
    def mock_s3(self):
        return MagicMock()

    @pytest.fixture
    def store(self, mock_s3):
        return S3ObjectStore(mock_s3, "uploads", UploadOptions())

    def test_create_multipart(self, store, mock_s3):
        mock_s3.create_multipart_upload.return_value = {"UploadId": "up-1"}

        upload_id = store.create_multipart("video.mp4", {"upload-type": "multipart"})

        assert upload_id == "up-1"
        mock_s3.create_multipart_upload.assert_called_once_with(
            Bucket="uploads",
            Key="video.mp4",
            ContentType="application/octet-stream",
            CacheControl="no-cache",
            Metadata={"upload-type": "multipart"},
        )

    def test_create_multipart_missing_upload_id(self, store, mock_s3):
        mock_s3.create_multipart_upload.return_value = {}

        with pytest.raises(BackendError, match="UploadId"):
            store.create_multipart("video.mp4")

    def test_create_multipart_rejected(self, store, mock_s3):
        mock_s3.create_multipart_upload.side_effect = _client_error("InvalidArgument", "bad key")

        with pytest.raises(BackendError) as exc_info:
            store.create_multipart("")

        assert exc_info.value.code == "InvalidArgument"
        assert exc_info.value.details == "bad key"

    def test_upload_part_returns_etag(self, store, mock_s3):
        mock_s3.upload_part.return_value = {"ETag": '"etag-2"'}

        etag = store.upload_part("video.mp4", "up-1", 2, b"data")

        assert etag == '"etag-2"'
        mock_s3.upload_part.assert_called_once_with(
            Bucket="uploads", Key="video.mp4", UploadId="up-1", PartNumber=2, Body=b"data"
        )

    def test_upload_part_unknown_upload(self, store, mock_s3):
        mock_s3.upload_part.side_effect = _client_error("NoSuchUpload")

        with pytest.raises(BackendError) as exc_info:
            store.upload_part("video.mp4", "gone", 1, b"data")

        assert exc_info.value.code == "NoSuchUpload"

    def test_upload_part_connection_error(self, store, mock_s3):
        mock_s3.upload_part.side_effect = EndpointConnectionError(endpoint_url="https://r2")

        with pytest.raises(BackendError):
            store.upload_part("video.mp4", "up-1", 1, b"data")

    def test_complete_sorts_parts(self, store, mock_s3):
        parts = [CompletedPart(3, "c"), CompletedPart(1, "a"), CompletedPart(2, "b")]

        store.complete_multipart("video.mp4", "up-1", parts)

        mock_s3.complete_multipart_upload.assert_called_once_with(
            Bucket="uploads",
            Key="video.mp4",
            UploadId="up-1",
            MultipartUpload={
                "Parts": [
                    {"ETag": "a", "PartNumber": 1},
                    {"ETag": "b", "PartNumber": 2},
                    {"ETag": "c", "PartNumber": 3},
                ]
            },
        )

    def test_complete_duplicate_parts_never_reach_backend(self, store, mock_s3):
        with pytest.raises(BackendError, match="Duplicate"):
            store.complete_multipart("video.mp4", "up-1", [CompletedPart(1, "a"), CompletedPart(1, "a")])

        mock_s3.complete_multipart_upload.assert_not_called()

    def test_complete_rejected_by_backend(self, store, mock_s3):
        mock_s3.complete_multipart_upload.side_effect = _client_error("InvalidPart", "part missing")

        with pytest.raises(BackendError) as exc_info:
            store.complete_multipart("video.mp4", "up-1", [CompletedPart(1, "a")])

        assert exc_info.value.code == "InvalidPart"
        assert not isinstance(exc_info.value, ObjectNotFoundError)

    def test_abort_unknown_upload_is_noop(self, store, mock_s3):
        mock_s3.abort_multipart_upload.side_effect = _client_error("NoSuchUpload")

        store.abort_multipart("video.mp4", "gone")

    def test_abort_other_errors_are_raised(self, store, mock_s3):
        mock_s3.abort_multipart_upload.side_effect = _client_error("AccessDenied")

        with pytest.raises(BackendError):
            store.abort_multipart("video.mp4", "up-1")

    def test_put_object_bytes(self, store, mock_s3):
        store.put_object("small.txt", b"hi", "text/plain")

        mock_s3.put_object.assert_called_once_with(
            Bucket="uploads", Key="small.txt", Body=b"hi", ContentType="text/plain"
        )

    def test_put_object_streams_file_objects(self, store, mock_s3):
        fileobj = io.BytesIO(b"hi")

        store.put_object("small.txt", fileobj)

        args, kwargs = mock_s3.upload_fileobj.call_args
        assert args == (fileobj, "uploads", "small.txt")
        assert kwargs["ExtraArgs"] == {"ContentType": "application/octet-stream"}
        assert kwargs["Config"] is store.transfer_config

    def test_get_object(self, store, mock_s3):
        body = MagicMock()
        body.iter_chunks.return_value = iter([b"ab", b"c"])
        mock_s3.get_object.return_value = {
            "Body": body,
            "ContentLength": 3,
            "ContentType": "text/plain",
        }

        stored = store.get_object("small.txt")

        assert stored.size == 3
        assert stored.content_type == "text/plain"
        assert b"".join(stored.body) == b"abc"

    def test_get_missing_object(self, store, mock_s3):
        mock_s3.get_object.side_effect = _client_error("NoSuchKey")

        with pytest.raises(ObjectNotFoundError):
            store.get_object("missing.txt")

    def test_list_objects_reads_all_pages(self, store, mock_s3):
        uploaded = datetime(2024, 1, 2, tzinfo=timezone.utc)
        mock_s3.get_paginator.return_value.paginate.return_value = [
            {"Contents": [{"Key": "a", "Size": 1, "LastModified": uploaded}]},
            {"Contents": [{"Key": "b", "Size": 2, "LastModified": uploaded}]},
            {},
        ]

        objects = store.list_objects()

        assert [(o.key, o.size) for o in objects] == [("a", 1), ("b", 2)]
        mock_s3.get_paginator.assert_called_once_with("list_objects_v2")
