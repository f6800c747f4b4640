"""アップロード実行クラス"""
import os
import time
from dataclasses import dataclass
from typing import List, Optional

from ..errors import NetworkError, UploadError
from ..models.config import UploadOptions
from ..models.upload import (
    CompletedPart,
    ObjectSummary,
    PartDescriptor,
    UploadMode,
    UploadProgress,
    UploadSession,
)
from ..utils.file_utils import FileInfo, copy_stream
from ..utils.logger import LoggerManager
from ..utils.progress import ConsoleProgress, ProgressCallback, ProgressTracker
from .transport import UploadTransport


@dataclass
class UploadResult:
    """アップロード結果"""
    file_path: str
    key: str
    success: bool
    message: str
    mode: Optional[UploadMode] = None
    upload_id: Optional[str] = None
    error: Optional[str] = None


class UploadClient:
    """ファイルを分割して送信し、完了または中止までを駆動する

    パートは順番に1つずつ送る（リレーの負荷とメモリ使用量を1パート分に抑える）。
    """

    def __init__(self, transport: UploadTransport, options: Optional[UploadOptions] = None,
                 on_progress: Optional[ProgressCallback] = None):
        self.transport = transport
        self.options = options or UploadOptions()
        self.on_progress = on_progress
        self.logger = LoggerManager.get_logger()
        # 実行中のアップロードの進捗（終了時にクリア）
        self.progress: Optional[UploadProgress] = None

    def _create_tracker(self, total_size: int, filename: str) -> ProgressTracker:
        callback = self.on_progress
        if callback is None and self.options.enable_progress:
            callback = ConsoleProgress(filename)

        def report(progress: UploadProgress):
            self.progress = progress
            if callback:
                callback(progress)

        return ProgressTracker(total_size, filename, report)

    def upload(self, file_path: str, key: Optional[str] = None) -> UploadResult:
        """単一ファイルをアップロード"""
        file_info = FileInfo.from_path(file_path)
        key = key or file_info.name
        tracker = self._create_tracker(file_info.size, file_info.name)
        session: Optional[UploadSession] = None

        self.logger.info(f"Initiating upload for {file_info.path} ({file_info.size} bytes) as {key}")
        try:
            self.progress = tracker.snapshot()
            session = self.transport.initiate(key, file_info.size)

            if session.mode == UploadMode.MULTIPART:
                self._upload_multipart(file_info, session, tracker)
            else:
                self._upload_simple(file_info, session, tracker)

            tracker.complete()
            self.logger.info(f"Successfully uploaded {file_info.path} to {key}")
            return UploadResult(
                file_path=file_info.path,
                key=key,
                success=True,
                message="Upload complete!",
                mode=session.mode,
                upload_id=session.upload_id,
            )

        except (UploadError, OSError) as e:
            if session is not None and session.mode == UploadMode.MULTIPART:
                self._abort(session)
            message = f"Upload failed: {e}"
            self.logger.error(f"{message} ({file_info.path})")
            return UploadResult(
                file_path=file_info.path,
                key=key,
                success=False,
                message=message,
                mode=session.mode if session else None,
                upload_id=session.upload_id if session else None,
                error=str(e),
            )
        finally:
            self.progress = None

    def _upload_simple(self, file_info: FileInfo, session: UploadSession, tracker: ProgressTracker):
        """1回の転送で送る（読み込みイベントで進捗を更新）"""
        with open(file_info.path, "rb") as f:
            self.transport.upload_simple(session, f, file_info.size, tracker)

    def _upload_multipart(self, file_info: FileInfo, session: UploadSession, tracker: ProgressTracker):
        completed_parts: List[CompletedPart] = []

        with open(file_info.path, "rb") as f:
            for part in session.parts:
                f.seek(part.start)
                data = f.read(part.size)
                if len(data) != part.size:
                    raise UploadError(
                        f"File changed during upload: part {part.part_number} "
                        f"expected {part.size} bytes, read {len(data)}"
                    )

                etag = self._upload_part_with_retry(session, part, data)
                completed_parts.append(CompletedPart(part_number=part.part_number, etag=etag))
                tracker.advance(len(data))
                self.logger.debug(f"Part {part.part_number}/{session.part_count} uploaded")

        self.transport.complete(session, completed_parts)

    def _upload_part_with_retry(self, session: UploadSession, part: PartDescriptor, data: bytes) -> str:
        """通信エラーのときだけ指数バックオフで再送する"""
        for attempt in range(self.options.max_retries + 1):
            try:
                return self.transport.upload_part(session, part, data)
            except NetworkError as e:
                if attempt < self.options.max_retries:
                    wait_time = 2 ** attempt
                    self.logger.warning(
                        f"Part {part.part_number} failed (attempt {attempt + 1}/{self.options.max_retries + 1}), "
                        f"retrying in {wait_time}s: {e}"
                    )
                    time.sleep(wait_time)
                else:
                    self.logger.error(
                        f"Part {part.part_number} failed after {self.options.max_retries + 1} attempts"
                    )
                    raise

    def _abort(self, session: UploadSession):
        """中止はベストエフォート（失敗してもログのみ）"""
        try:
            self.transport.abort(session)
            self.logger.info(f"Aborted multipart upload {session.upload_id}")
        except UploadError as e:
            self.logger.error(f"Failed to abort multipart upload {session.upload_id}: {e}")

    def download(self, key: str, dest_dir: str = ".") -> str:
        """オブジェクトをストリーミングで保存し、保存先のパスを返す"""
        stored = self.transport.open_download(key)
        filename = os.path.basename(stored.key) or os.path.basename(key) or "download"
        path = os.path.join(dest_dir, filename)
        tracker = self._create_tracker(stored.size, filename)

        self.logger.info(f"Downloading {key} to {path}")
        try:
            with open(path, "wb") as out:
                copy_stream(stored.body, out, tracker)
        except BaseException:
            if os.path.exists(path):
                os.remove(path)
            raise
        finally:
            self.progress = None

        self.logger.info(f"Downloaded {key} ({os.path.getsize(path)} bytes)")
        return path

    def list_objects(self) -> List[ObjectSummary]:
        return self.transport.list_objects()
