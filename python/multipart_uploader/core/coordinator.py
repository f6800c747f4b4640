"""1アップロード分のプロトコル状態機械

PLANNING -> AWAITING_PARTS -> COMPLETING -> DONE
                 |                  |
                 +---> ABORTED <----+ (complete失敗後にabortした場合)

complete() が失敗しても自動では中止しない。状態は AWAITING_PARTS に戻り、
呼び出し側が complete() を再試行するか abort() するかを決める。
"""
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from ..errors import UploadError, ValidationError
from ..models.config import UploadOptions
from ..models.upload import CompletedPart, UploadMode, UploadSession, UploadState
from ..utils.logger import LoggerManager
from .planner import PartPlanner
from .store import ObjectStore

# (upload_id, part_number) -> リレー経由のパート送信先URL
RelayUrlBuilder = Callable[[str, int], str]


class UploadCoordinator:
    """アップロードの開始・パート記録・完了・中止を管理"""

    def __init__(self, store: ObjectStore, options: Optional[UploadOptions] = None):
        self.store = store
        self.options = options or UploadOptions()
        self.planner = PartPlanner(self.options.min_part_size, self.options.max_parts)
        self.logger = LoggerManager.get_logger()
        self.session: Optional[UploadSession] = None
        self.last_error: Optional[UploadError] = None
        self._state = UploadState.PLANNING
        self._completed: Dict[int, CompletedPart] = {}
        # 計画が分からない（resumeした）場合は None
        self._part_count: Optional[int] = None
        self._lock = threading.Lock()

    @classmethod
    def resume(cls, store: ObjectStore, key: str, upload_id: str,
               part_count: Optional[int] = None,
               options: Optional[UploadOptions] = None) -> 'UploadCoordinator':
        """別のリクエストで開始済みのマルチパートアップロードを引き継ぐ"""
        coordinator = cls(store, options)
        coordinator.session = UploadSession(
            key=key,
            mode=UploadMode.MULTIPART,
            total_size=0,
            chunk_size=coordinator.options.chunk_size,
            upload_id=upload_id,
            state=UploadState.AWAITING_PARTS,
        )
        coordinator._part_count = part_count
        coordinator._state = UploadState.AWAITING_PARTS
        return coordinator

    @property
    def state(self) -> UploadState:
        return self._state

    def _set_state(self, state: UploadState):
        self._state = state
        if self.session:
            self.session.state = state

    def _require_state(self, *states: UploadState):
        if self._state not in states:
            raise ValidationError(
                f"Operation not allowed in state '{self._state.value}'"
            )

    def initiate(self, key: str, size: int,
                 part_url: Optional[RelayUrlBuilder] = None,
                 upload_url: Optional[str] = None) -> UploadSession:
        """計画を立て、必要ならマルチパートアップロードを作成する

        part_url はアップロードIDとパート番号からリレー経由の送信先URLを作る。
        upload_url は simple モードの直接PUT先。
        ConfigError はバックエンドを呼ぶ前に送出される。
        """
        self._require_state(UploadState.PLANNING)
        if not key:
            raise ValidationError("Object key is required")

        try:
            plan = self.planner.plan(size, self.options.chunk_size)
        except UploadError:
            self._set_state(UploadState.ABORTED)
            raise

        session = UploadSession(
            key=key,
            mode=plan.mode,
            total_size=size,
            chunk_size=plan.chunk_size,
        )
        self.session = session

        if plan.mode == UploadMode.SIMPLE:
            session.upload_url = upload_url
            self._part_count = 0
            self._set_state(UploadState.AWAITING_PARTS)
            self.logger.info(f"Simple upload planned for {key} ({size} bytes)")
            return session

        try:
            session.upload_id = self.store.create_multipart(key, {"upload-type": "multipart"})
        except UploadError:
            self._set_state(UploadState.ABORTED)
            raise

        if part_url:
            session.parts = [
                replace(part, url=part_url(session.upload_id, part.part_number))
                for part in plan.parts
            ]
        else:
            session.parts = list(plan.parts)
        self._part_count = plan.part_count
        self._set_state(UploadState.AWAITING_PARTS)

        self.logger.info(
            f"Multipart upload initiated for {key}: {plan.part_count} parts, upload_id={session.upload_id}"
        )
        return session

    def record_part(self, part_number: int, etag: str) -> CompletedPart:
        """アップロード済みパートを記録（順不同・並行呼び出し可）"""
        self._require_state(UploadState.AWAITING_PARTS)
        if self.session is None or self.session.mode != UploadMode.MULTIPART:
            raise ValidationError("Parts can only be recorded for multipart uploads")
        if part_number < 1 or (self._part_count is not None and part_number > self._part_count):
            raise ValidationError(
                f"Part number {part_number} is outside the planned range 1..{self._part_count}"
            )
        if part_number > self.options.max_parts:
            raise ValidationError(f"Part number {part_number} exceeds {self.options.max_parts}")
        if not etag:
            raise ValidationError(f"Missing ETag for part {part_number}")

        with self._lock:
            existing = self._completed.get(part_number)
            if existing is not None:
                if existing.etag == etag:
                    return existing
                raise ValidationError(f"Part {part_number} was already recorded with a different ETag")
            part = CompletedPart(part_number=part_number, etag=etag)
            self._completed[part_number] = part
        return part

    def completed_parts(self) -> List[CompletedPart]:
        """記録済みパート（パート番号順）"""
        with self._lock:
            return sorted(self._completed.values(), key=lambda p: p.part_number)

    def missing_parts(self) -> List[int]:
        with self._lock:
            recorded = set(self._completed)
        expected = self._part_count if self._part_count is not None else max(recorded, default=0)
        return [n for n in range(1, expected + 1) if n not in recorded]

    def is_ready(self) -> bool:
        return bool(self._completed) and not self.missing_parts()

    def complete_simple(self):
        """simpleモードの転送完了をクライアントから受け取る"""
        self._require_state(UploadState.AWAITING_PARTS)
        if self.session is None or self.session.mode != UploadMode.SIMPLE:
            raise ValidationError("complete_simple() is only valid for simple uploads")
        self._set_state(UploadState.DONE)
        self.logger.info(f"Simple upload finished for {self.session.key}")

    def complete(self):
        """全パートを揃えてマルチパートアップロードを完了する"""
        self._require_state(UploadState.AWAITING_PARTS)
        if self.session is None or self.session.mode != UploadMode.MULTIPART:
            raise ValidationError("complete() is only valid for multipart uploads")

        if not self._completed:
            raise ValidationError("No parts have been recorded")
        missing = self.missing_parts()
        if missing:
            raise ValidationError(f"Missing parts: {missing}")

        parts = self.completed_parts()
        self._set_state(UploadState.COMPLETING)
        try:
            self.store.complete_multipart(self.session.key, self.session.upload_id, parts)
        except Exception as e:
            # 自動では中止しない（再試行できるよう待機状態に戻す）
            self._set_state(UploadState.AWAITING_PARTS)
            self.logger.error(f"Completion failed for {self.session.key}: {e}")
            raise

        self._set_state(UploadState.DONE)
        self.logger.info(f"Upload of {self.session.key} committed ({len(parts)} parts)")

    def abort(self) -> bool:
        """アップロードを中止する（ベストエフォート）

        中止に失敗してもセッションは ABORTED として終了し、False を返す。
        終了済みのセッションに対しては何もしない。
        """
        if self._state.is_terminal:
            return True

        session = self.session
        self._set_state(UploadState.ABORTED)
        if session is None or session.mode != UploadMode.MULTIPART or not session.upload_id:
            return True

        try:
            self.store.abort_multipart(session.key, session.upload_id)
        except UploadError as e:
            self.last_error = e
            self.logger.error(f"Failed to abort upload {session.upload_id} for {session.key}: {e}")
            return False

        self.logger.info(f"Upload {session.upload_id} for {session.key} aborted")
        return True
