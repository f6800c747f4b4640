"""アップロードの送信経路

RelayTransport はリレーサーバーにHTTPで送る。DirectTransport は同じプロセス内の
コーディネーターを使ってストアに直接送る。
"""
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional
from urllib.parse import quote

import requests

from ..core.coordinator import UploadCoordinator
from ..core.planner import PartPlanner
from ..core.store import ObjectStore
from ..errors import (
    BackendError,
    ConfigError,
    NetworkError,
    ObjectNotFoundError,
    UploadError,
    ValidationError,
)
from ..models.config import UploadOptions
from ..models.upload import (
    CompletedPart,
    ObjectSummary,
    PartDescriptor,
    StoredObject,
    UploadMode,
    UploadSession,
    UploadState,
)
from ..utils.file_utils import STREAM_CHUNK_SIZE, ProgressReader, filename_from_disposition
from ..utils.logger import LoggerManager

ReadCallback = Callable[[int], None]

# ゲートウェイ系のステータスは通信エラーとして扱う（リトライ対象）
RETRYABLE_STATUS = (502, 503, 504)


class UploadTransport(ABC):
    """UploadClientから見た送信経路のインターフェース"""

    @abstractmethod
    def initiate(self, filename: str, file_size: int) -> UploadSession:
        """アップロードを開始して計画を受け取る"""

    @abstractmethod
    def upload_simple(self, session: UploadSession, fileobj: BinaryIO, size: int,
                      on_read: ReadCallback) -> None:
        """simpleモードで一括送信"""

    @abstractmethod
    def upload_part(self, session: UploadSession, part: PartDescriptor, data: bytes) -> str:
        """1パート送信してETagを返す"""

    @abstractmethod
    def complete(self, session: UploadSession, parts: List[CompletedPart]) -> None:
        """マルチパートアップロードを完了"""

    @abstractmethod
    def abort(self, session: UploadSession) -> None:
        """マルチパートアップロードを中止"""

    @abstractmethod
    def list_objects(self) -> List[ObjectSummary]:
        """オブジェクト一覧"""

    @abstractmethod
    def open_download(self, key: str) -> StoredObject:
        """ダウンロード用のストリームを開く（keyには保存用のファイル名が入る）"""


class RelayTransport(UploadTransport):
    """リレーサーバー経由の送信"""

    def __init__(self, relay_url: str, options: Optional[UploadOptions] = None,
                 session: Optional[requests.Session] = None):
        self.relay_url = relay_url.rstrip("/")
        self.options = options or UploadOptions()
        self.session = session or requests.Session()
        self.planner = PartPlanner(self.options.min_part_size, self.options.max_parts)
        self.logger = LoggerManager.get_logger()

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.options.timeout_seconds, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e

        if not response.ok:
            raise self._http_error(response)
        return response

    @staticmethod
    def _http_error(response: requests.Response) -> UploadError:
        """エラーレスポンスを例外に変換"""
        error = response.reason or "Request failed"
        details = None
        try:
            body = response.json()
            if isinstance(body, dict):
                error = body.get("error") or error
                details = body.get("details")
        except ValueError:
            details = response.text or None

        message = f"{error} (Status: {response.status_code})"
        if response.status_code == 400:
            return ValidationError(f"{message}: {details}" if details else message)
        if response.status_code == 404:
            return ObjectNotFoundError(message, details=str(details) if details else None)
        if response.status_code in RETRYABLE_STATUS:
            return NetworkError(message)
        return BackendError(message, details=str(details) if details else None)

    def initiate(self, filename: str, file_size: int) -> UploadSession:
        # バイト範囲はクライアント側の計画から求め、URLはリレーの応答を使う
        plan = self.planner.plan(file_size, self.options.chunk_size)

        response = self._request(
            "POST",
            f"{self.relay_url}/upload/initiate",
            json={"filename": filename, "fileSize": file_size},
        )
        try:
            data = response.json()
            mode = UploadMode(data["mode"])
        except (ValueError, KeyError) as e:
            raise BackendError("Failed to parse server response", details=str(e)) from e

        session = UploadSession(
            key=data.get("filename", filename),
            mode=mode,
            total_size=file_size,
            chunk_size=plan.chunk_size,
            upload_id=data.get("uploadId"),
            upload_url=data.get("uploadUrl"),
            state=UploadState.AWAITING_PARTS,
        )

        if mode == UploadMode.MULTIPART:
            try:
                urls: Dict[int, str] = {p["partNumber"]: p["url"] for p in data.get("parts") or []}
            except (KeyError, TypeError) as e:
                if session.upload_id:
                    self._abort_quietly(session)
                raise BackendError("Failed to parse server response", details=str(e)) from e
            if sorted(urls) != [p.part_number for p in plan.parts] or not session.upload_id:
                if session.upload_id:
                    self._abort_quietly(session)
                raise ConfigError(
                    f"Relay planned {len(urls)} parts but chunk size "
                    f"{self.options.chunk_size} gives {plan.part_count}"
                )
            session.parts = [replace(p, url=urls[p.part_number]) for p in plan.parts]
        elif plan.mode != mode:
            raise ConfigError(
                f"Relay chose '{mode.value}' but chunk size {self.options.chunk_size} "
                f"implies '{plan.mode.value}'"
            )

        return session

    def _abort_quietly(self, session: UploadSession):
        try:
            self.abort(session)
        except UploadError as e:
            self.logger.error(f"Failed to abort mismatched upload {session.upload_id}: {e}")

    def upload_simple(self, session: UploadSession, fileobj: BinaryIO, size: int,
                      on_read: ReadCallback) -> None:
        if not session.upload_url:
            raise BackendError("Relay did not return an upload URL")
        url = session.upload_url
        if url.startswith("/"):
            url = f"{self.relay_url}{url}"
        self._request(
            "PUT",
            url,
            data=ProgressReader(fileobj, size, on_read),
            headers={"Content-Type": "application/octet-stream"},
        )

    def upload_part(self, session: UploadSession, part: PartDescriptor, data: bytes) -> str:
        response = self._request(
            "PUT",
            part.url,
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        try:
            etag = response.json().get("etag")
        except ValueError:
            etag = None
        if not etag:
            raise BackendError(f"No ETag received for part {part.part_number}")
        return etag

    def complete(self, session: UploadSession, parts: List[CompletedPart]) -> None:
        self._request(
            "POST",
            f"{self.relay_url}/upload/complete",
            json={
                "filename": session.key,
                "uploadId": session.upload_id,
                "parts": [
                    {"partNumber": p.part_number, "etag": p.etag}
                    for p in sorted(parts, key=lambda p: p.part_number)
                ],
            },
        )

    def abort(self, session: UploadSession) -> None:
        self._request(
            "POST",
            f"{self.relay_url}/upload/abort",
            json={"filename": session.key, "uploadId": session.upload_id},
        )

    def list_objects(self) -> List[ObjectSummary]:
        response = self._request("GET", f"{self.relay_url}/objects")
        return [
            ObjectSummary(
                key=item["key"],
                size=int(item["size"]),
                uploaded_at=datetime.fromisoformat(item["uploadedAt"].replace("Z", "+00:00")),
            )
            for item in response.json()
        ]

    def open_download(self, key: str) -> StoredObject:
        response = self._request("GET", f"{self.relay_url}/objects/{quote(key)}", stream=True)

        def body() -> Iterator[bytes]:
            with response:
                yield from response.iter_content(chunk_size=STREAM_CHUNK_SIZE)

        return StoredObject(
            key=filename_from_disposition(response.headers.get("Content-Disposition"), key),
            size=int(response.headers.get("Content-Length", 0)),
            content_type=response.headers.get("Content-Type", "application/octet-stream"),
            body=body(),
        )


class DirectTransport(UploadTransport):
    """リレーを介さずストアに直接送る"""

    def __init__(self, store: ObjectStore, options: Optional[UploadOptions] = None):
        self.store = store
        self.options = options or UploadOptions()
        self._coordinators: Dict[int, UploadCoordinator] = {}

    def _coordinator(self, session: UploadSession) -> UploadCoordinator:
        try:
            return self._coordinators[id(session)]
        except KeyError:
            raise ValidationError(f"Unknown upload session for {session.key}") from None

    def initiate(self, filename: str, file_size: int) -> UploadSession:
        coordinator = UploadCoordinator(self.store, self.options)
        session = coordinator.initiate(filename, file_size)
        self._coordinators[id(session)] = coordinator
        return session

    def upload_simple(self, session: UploadSession, fileobj: BinaryIO, size: int,
                      on_read: ReadCallback) -> None:
        coordinator = self._coordinator(session)
        try:
            self.store.put_object(session.key, ProgressReader(fileobj, size, on_read))
            coordinator.complete_simple()
        except UploadError:
            coordinator.abort()
            raise
        finally:
            self._coordinators.pop(id(session), None)

    def upload_part(self, session: UploadSession, part: PartDescriptor, data: bytes) -> str:
        self._coordinator(session)
        return self.store.upload_part(session.key, session.upload_id, part.part_number, data)

    def complete(self, session: UploadSession, parts: List[CompletedPart]) -> None:
        coordinator = self._coordinator(session)
        for part in parts:
            coordinator.record_part(part.part_number, part.etag)
        coordinator.complete()
        self._coordinators.pop(id(session), None)

    def abort(self, session: UploadSession) -> None:
        coordinator = self._coordinators.pop(id(session), None)
        if coordinator is None:
            return
        if not coordinator.abort() and coordinator.last_error is not None:
            raise coordinator.last_error

    def list_objects(self) -> List[ObjectSummary]:
        return self.store.list_objects()

    def open_download(self, key: str) -> StoredObject:
        return self.store.get_object(key)
