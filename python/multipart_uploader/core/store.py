"""オブジェクトストアのアダプター

単一PUT、マルチパート（作成/パート送信/完了/中止）、取得、一覧の操作を
バックエンドに依存しない共通インターフェースで提供する。
"""
import hashlib
import json
import mimetypes
import os
import shutil
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, BinaryIO, Dict, Iterable, Iterator, List, Optional, Union

from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import BackendError, ObjectNotFoundError
from ..models.config import MAX_PARTS, Config, UploadOptions
from ..models.upload import CompletedPart, ObjectSummary, StoredObject
from ..utils.file_utils import STREAM_CHUNK_SIZE, copy_stream, iter_file
from ..utils.logger import LoggerManager
from .s3_client import S3ClientManager
from .transfer import TransferConfigManager

DEFAULT_CONTENT_TYPE = "application/octet-stream"

ObjectData = Union[bytes, BinaryIO]


def sorted_parts(parts: Iterable[CompletedPart]) -> List[CompletedPart]:
    """パート番号順に並べ替える（重複や空のリストはエラー）"""
    ordered = sorted(parts, key=lambda p: p.part_number)
    if not ordered:
        raise BackendError("No parts given for completion", code="InvalidRequest")

    seen = set()
    for part in ordered:
        if part.part_number in seen:
            raise BackendError(
                f"Duplicate part number {part.part_number} in completion request",
                code="InvalidPartOrder",
            )
        seen.add(part.part_number)
    return ordered


class ObjectStore(ABC):
    """オブジェクトストアの共通インターフェース"""

    @abstractmethod
    def put_object(self, key: str, data: ObjectData, content_type: Optional[str] = None) -> None:
        """オブジェクトを一括で保存（既存のオブジェクトは上書き）"""

    @abstractmethod
    def create_multipart(self, key: str, metadata: Optional[Dict[str, str]] = None) -> str:
        """マルチパートアップロードを開始してアップロードIDを返す"""

    @abstractmethod
    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        """パートを送信してETagを返す（同じパート番号の再送信は上書き）"""

    @abstractmethod
    def complete_multipart(self, key: str, upload_id: str, parts: Iterable[CompletedPart]) -> None:
        """パートを結合して1つのオブジェクトにする"""

    @abstractmethod
    def abort_multipart(self, key: str, upload_id: str) -> None:
        """マルチパートアップロードを中止（存在しないセッションは何もしない）"""

    @abstractmethod
    def get_object(self, key: str) -> StoredObject:
        """オブジェクトを取得（本体はストリーム）"""

    @abstractmethod
    def list_objects(self) -> List[ObjectSummary]:
        """オブジェクト一覧を取得"""


class S3ObjectStore(ObjectStore):
    """S3互換ストア（AWS S3, Cloudflare R2, MinIO など）"""

    def __init__(self, s3_client: Any, bucket: str, options: Optional[UploadOptions] = None):
        self.s3_client = s3_client
        self.bucket = bucket
        self.options = options or UploadOptions()
        self.transfer_config = TransferConfigManager.create_config(self.options)
        self.logger = LoggerManager.get_logger()

    @classmethod
    def from_config(cls, config: Config) -> 'S3ObjectStore':
        client_manager = S3ClientManager(config.storage)
        return cls(client_manager.get_client(), config.storage.bucket, config.options)

    def _error(self, action: str, e: Exception, key: str) -> BackendError:
        """botocoreの例外をBackendErrorに変換"""
        if isinstance(e, ClientError):
            error = e.response.get("Error", {}) or {}
            code = error.get("Code", "")
            message = error.get("Message", "") or str(e)
        else:
            code = type(e).__name__
            message = str(e)

        self.logger.error(f"Failed to {action} {self.bucket}/{key}: [{code}] {message}")
        if code in ("NoSuchKey", "NotFound", "404"):
            return ObjectNotFoundError(f"Object not found: {key}", details=message, code=code)
        return BackendError(f"Failed to {action}", details=message, code=code)

    def put_object(self, key: str, data: ObjectData, content_type: Optional[str] = None) -> None:
        content_type = content_type or DEFAULT_CONTENT_TYPE
        try:
            if isinstance(data, (bytes, bytearray)):
                self.s3_client.put_object(
                    Bucket=self.bucket, Key=key, Body=bytes(data), ContentType=content_type
                )
            else:
                self.s3_client.upload_fileobj(
                    data,
                    self.bucket,
                    key,
                    ExtraArgs={'ContentType': content_type},
                    Config=self.transfer_config,
                )
        except (ClientError, BotoCoreError, Boto3Error) as e:
            raise self._error("put object", e, key) from e

        self.logger.info(f"Stored object {self.bucket}/{key}")

    def create_multipart(self, key: str, metadata: Optional[Dict[str, str]] = None) -> str:
        params: Dict[str, Any] = {
            'Bucket': self.bucket,
            'Key': key,
            'ContentType': DEFAULT_CONTENT_TYPE,
            'CacheControl': 'no-cache',
        }
        if metadata:
            params['Metadata'] = metadata

        try:
            response = self.s3_client.create_multipart_upload(**params)
        except (ClientError, BotoCoreError) as e:
            raise self._error("create multipart upload", e, key) from e

        upload_id = response.get("UploadId")
        if not upload_id:
            raise BackendError("S3 response missing UploadId")

        self.logger.info(f"Multipart upload created for {self.bucket}/{key}: {upload_id}")
        return str(upload_id)

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        try:
            response = self.s3_client.upload_part(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=int(part_number),
                Body=data,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._error(f"upload part {part_number}", e, key) from e

        etag = response.get("ETag")
        if not etag:
            raise BackendError(f"S3 response missing ETag for part {part_number}")
        return str(etag)

    def complete_multipart(self, key: str, upload_id: str, parts: Iterable[CompletedPart]) -> None:
        ordered = sorted_parts(parts)
        payload = {
            'Parts': [
                {'ETag': part.etag, 'PartNumber': int(part.part_number)}
                for part in ordered
            ]
        }

        try:
            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload=payload,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._error("complete multipart upload", e, key) from e

        self.logger.info(f"Multipart upload completed for {self.bucket}/{key} ({len(ordered)} parts)")

    def abort_multipart(self, key: str, upload_id: str) -> None:
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "NoSuchUpload":
                self.logger.warning(f"Multipart upload {upload_id} already finished or unknown, nothing to abort")
                return
            raise self._error("abort multipart upload", e, key) from e
        except BotoCoreError as e:
            raise self._error("abort multipart upload", e, key) from e

        self.logger.info(f"Multipart upload aborted for {self.bucket}/{key}: {upload_id}")

    def get_object(self, key: str) -> StoredObject:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._error("get object", e, key) from e

        return StoredObject(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            body=response["Body"].iter_chunks(STREAM_CHUNK_SIZE),
        )

    def list_objects(self) -> List[ObjectSummary]:
        objects: List[ObjectSummary] = []
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket):
                for item in page.get("Contents", []):
                    objects.append(ObjectSummary(
                        key=item["Key"],
                        size=int(item["Size"]),
                        uploaded_at=item["LastModified"],
                    ))
        except (ClientError, BotoCoreError) as e:
            raise self._error("list objects", e, "") from e
        return objects


class FileSystemObjectStore(ObjectStore):
    """ローカルディスク上のストア

    オブジェクトは <root>/objects/<key>、未確定のパートは
    <root>/.multipart/<upload_id>/part-<n> に置く。ETagはパートのMD5。
    """

    def __init__(self, root_dir: str):
        self.root_dir = os.path.abspath(root_dir)
        self.objects_dir = os.path.join(self.root_dir, "objects")
        self.multipart_dir = os.path.join(self.root_dir, ".multipart")
        os.makedirs(self.objects_dir, exist_ok=True)
        os.makedirs(self.multipart_dir, exist_ok=True)
        # 完了と中止はセッション単位で直列化する
        self._lock = threading.Lock()
        self.logger = LoggerManager.get_logger()

    def _object_path(self, key: str) -> str:
        segments = key.split("/")
        if not key or key.startswith("/") or any(s in ("", ".", "..") for s in segments):
            raise BackendError(f"Invalid object key: {key!r}", code="InvalidKey")
        return os.path.join(self.objects_dir, *segments)

    def _session_dir(self, key: str, upload_id: str) -> str:
        session_dir = os.path.join(self.multipart_dir, os.path.basename(upload_id))
        key_file = os.path.join(session_dir, "key")
        if not upload_id or not os.path.isfile(key_file):
            raise BackendError(f"Unknown upload id: {upload_id}", code="NoSuchUpload")
        with open(key_file, "r", encoding="utf-8") as f:
            if f.read() != key:
                raise BackendError(f"Upload {upload_id} does not belong to {key}", code="NoSuchUpload")
        return session_dir

    def _write_atomic(self, path: str, chunks: Iterable[bytes]) -> str:
        """一時ファイルに書き込んでから置き換える。MD5を返す"""
        os.makedirs(os.path.dirname(path), exist_ok=True)
        md5 = hashlib.md5()
        fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as out:
                for chunk in chunks:
                    md5.update(chunk)
                    out.write(chunk)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return md5.hexdigest()

    def put_object(self, key: str, data: ObjectData, content_type: Optional[str] = None) -> None:
        path = self._object_path(key)
        if isinstance(data, (bytes, bytearray)):
            chunks: Iterable[bytes] = [bytes(data)]
        else:
            chunks = iter_file(data)
        try:
            self._write_atomic(path, chunks)
        except OSError as e:
            self.logger.error(f"Failed to store {key}: {e}")
            raise BackendError("Failed to put object", details=str(e)) from e
        self.logger.info(f"Stored object {key}")

    def create_multipart(self, key: str, metadata: Optional[Dict[str, str]] = None) -> str:
        self._object_path(key)
        upload_id = uuid.uuid4().hex
        session_dir = os.path.join(self.multipart_dir, upload_id)
        try:
            os.makedirs(session_dir)
            with open(os.path.join(session_dir, "meta.json"), "w", encoding="utf-8") as f:
                json.dump(metadata or {}, f)
            # keyファイルの存在がセッションの有効性を表すので最後に書く
            with open(os.path.join(session_dir, "key"), "w", encoding="utf-8") as f:
                f.write(key)
        except OSError as e:
            self.logger.error(f"Failed to create multipart upload for {key}: {e}")
            shutil.rmtree(session_dir, ignore_errors=True)
            raise BackendError("Failed to create multipart upload", details=str(e)) from e

        self.logger.info(f"Multipart upload created for {key}: {upload_id}")
        return upload_id

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        if not 1 <= part_number <= MAX_PARTS:
            raise BackendError(f"Invalid part number: {part_number}", code="InvalidArgument")
        session_dir = self._session_dir(key, upload_id)
        try:
            return self._write_atomic(os.path.join(session_dir, f"part-{part_number}"), [data])
        except OSError as e:
            raise BackendError(f"Failed to upload part {part_number}", details=str(e)) from e

    def complete_multipart(self, key: str, upload_id: str, parts: Iterable[CompletedPart]) -> None:
        ordered = sorted_parts(parts)
        with self._lock:
            session_dir = self._session_dir(key, upload_id)

            for expected, part in enumerate(ordered, 1):
                if part.part_number != expected:
                    raise BackendError(f"Missing part {expected}", code="InvalidPart")
                part_path = os.path.join(session_dir, f"part-{expected}")
                if not os.path.isfile(part_path):
                    raise BackendError(f"Part {expected} was never uploaded", code="InvalidPart")

            def assembled() -> Iterator[bytes]:
                for part in ordered:
                    with open(os.path.join(session_dir, f"part-{part.part_number}"), "rb") as f:
                        part_md5 = hashlib.md5()
                        for chunk in iter_file(f):
                            part_md5.update(chunk)
                            yield chunk
                    if part_md5.hexdigest() != part.etag.strip('"'):
                        raise BackendError(f"ETag mismatch for part {part.part_number}", code="InvalidPart")

            try:
                self._write_atomic(self._object_path(key), assembled())
            except OSError as e:
                self.logger.error(f"Failed to assemble {key} from upload {upload_id}: {e}")
                raise BackendError("Failed to complete multipart upload", details=str(e)) from e
            shutil.rmtree(session_dir, ignore_errors=True)

        self.logger.info(f"Multipart upload completed for {key} ({len(ordered)} parts)")

    def abort_multipart(self, key: str, upload_id: str) -> None:
        with self._lock:
            try:
                session_dir = self._session_dir(key, upload_id)
            except BackendError:
                self.logger.warning(f"Multipart upload {upload_id} already finished or unknown, nothing to abort")
                return
            shutil.rmtree(session_dir)
        self.logger.info(f"Multipart upload aborted for {key}: {upload_id}")

    def get_object(self, key: str) -> StoredObject:
        path = self._object_path(key)
        if not os.path.isfile(path):
            raise ObjectNotFoundError(f"Object not found: {key}", code="NoSuchKey")

        def body() -> Iterator[bytes]:
            with open(path, "rb") as f:
                yield from iter_file(f)

        content_type, _ = mimetypes.guess_type(key)
        return StoredObject(
            key=key,
            size=os.path.getsize(path),
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            body=body(),
        )

    def list_objects(self) -> List[ObjectSummary]:
        objects: List[ObjectSummary] = []
        for root, _, files in os.walk(self.objects_dir):
            for name in files:
                if name.startswith(".tmp-"):
                    continue
                path = os.path.join(root, name)
                stat = os.stat(path)
                objects.append(ObjectSummary(
                    key=os.path.relpath(path, self.objects_dir).replace(os.sep, "/"),
                    size=stat.st_size,
                    uploaded_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ))
        return sorted(objects, key=lambda o: o.key)


def create_store(config: Config) -> ObjectStore:
    """設定に応じたストアを作成"""
    if config.storage.backend == "filesystem":
        return FileSystemObjectStore(config.storage.root_dir)
    return S3ObjectStore.from_config(config)
