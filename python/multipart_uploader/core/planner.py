"""マルチパートアップロードのパート計画"""
from typing import Callable, List, Optional

from ..errors import ConfigError
from ..models.config import MAX_PARTS, MIN_PART_SIZE
from ..models.upload import PartDescriptor, Plan, UploadMode

PartUrlBuilder = Callable[[int], str]


class PartPlanner:
    """ファイルサイズとチャンクサイズからパート構成を決める

    同じ入力には常に同じ計画を返す（副作用なし）。
    """

    def __init__(self, min_part_size: int = MIN_PART_SIZE, max_parts: int = MAX_PARTS):
        self.min_part_size = min_part_size
        self.max_parts = max_parts

    def plan(self, file_size: int, chunk_size: int,
             part_url: Optional[PartUrlBuilder] = None) -> Plan:
        if file_size < 0:
            raise ConfigError(f"File size must not be negative, got {file_size}")
        if chunk_size <= 0:
            raise ConfigError(f"Chunk size must be positive, got {chunk_size}")

        if file_size <= chunk_size:
            return Plan(mode=UploadMode.SIMPLE, file_size=file_size, chunk_size=chunk_size)

        part_count = -(-file_size // chunk_size)

        if chunk_size < self.min_part_size:
            raise ConfigError(
                f"Chunk size must be at least {self.min_part_size} bytes, got {chunk_size}"
            )
        if part_count > self.max_parts:
            raise ConfigError(
                f"File would require {part_count} parts, "
                f"but the backend only supports {self.max_parts} parts maximum"
            )

        parts: List[PartDescriptor] = []
        for part_number in range(1, part_count + 1):
            start = (part_number - 1) * chunk_size
            end = min(start + chunk_size, file_size)
            url = part_url(part_number) if part_url else ""
            parts.append(PartDescriptor(part_number=part_number, start=start, end=end, url=url))

        return Plan(
            mode=UploadMode.MULTIPART,
            file_size=file_size,
            chunk_size=chunk_size,
            parts=tuple(parts),
        )
