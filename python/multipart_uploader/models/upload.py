"""アップロードセッション関連のデータクラス"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional, Tuple


class UploadMode(str, Enum):
    """アップロード方式"""
    SIMPLE = "simple"
    MULTIPART = "multipart"


class UploadState(str, Enum):
    """コーディネーターの状態"""
    PLANNING = "planning"
    AWAITING_PARTS = "awaiting_parts"
    COMPLETING = "completing"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadState.DONE, UploadState.ABORTED)


@dataclass(frozen=True)
class PartDescriptor:
    """計画された1パート（バイト範囲は [start, end)）"""
    part_number: int
    start: int
    end: int
    url: str = ""

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class CompletedPart:
    """アップロード済みのパート"""
    part_number: int
    etag: str


@dataclass(frozen=True)
class Plan:
    """PartPlannerの計画結果"""
    mode: UploadMode
    file_size: int
    chunk_size: int
    parts: Tuple[PartDescriptor, ...] = ()

    @property
    def part_count(self) -> int:
        return len(self.parts)


@dataclass
class UploadSession:
    """進行中のアップロード"""
    key: str
    mode: UploadMode
    total_size: int
    chunk_size: int
    upload_id: Optional[str] = None
    upload_url: Optional[str] = None  # simpleモードの直接PUT先
    parts: List[PartDescriptor] = field(default_factory=list)
    state: UploadState = UploadState.PLANNING

    @property
    def part_count(self) -> int:
        return len(self.parts)


@dataclass
class UploadProgress:
    """クライアント側の進捗（永続化しない）"""
    loaded: int
    total: int

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.loaded / self.total * 100)


@dataclass
class StoredObject:
    """get_objectの結果。bodyはチャンク単位で遅延読み込みされる"""
    key: str
    size: int
    content_type: str
    body: Iterator[bytes]


@dataclass(frozen=True)
class ObjectSummary:
    """list_objectsの1エントリ"""
    key: str
    size: int
    uploaded_at: datetime
