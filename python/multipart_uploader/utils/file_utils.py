"""ファイル操作関連のユーティリティ"""
import os
import re
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterable, Iterator, Optional
from urllib.parse import quote, unquote

# ストリーム転送時のバッファサイズ
STREAM_CHUNK_SIZE = 64 * 1024  # 64KB

_FILENAME_STAR = re.compile(r"filename\*=UTF-8''([^;]+)", re.IGNORECASE)


@dataclass
class FileInfo:
    """ファイル情報"""
    path: str
    size: int

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @classmethod
    def from_path(cls, file_path: str) -> 'FileInfo':
        """単一ファイルの情報を取得"""
        if not os.path.isfile(file_path):
            raise ValueError(f"Not a file: {file_path}")

        return cls(path=file_path, size=os.path.getsize(file_path))


def iter_file(fileobj: BinaryIO, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    """ファイルオブジェクトをチャンク単位で読み出す"""
    while True:
        chunk = fileobj.read(chunk_size)
        if not chunk:
            break
        yield chunk


def copy_stream(chunks: Iterable[bytes], writer: BinaryIO,
                on_chunk: Optional[Callable[[int], None]] = None) -> int:
    """チャンクのイテラブルを writer に流し込む

    メモリ使用量は1チャンク分に収まる。書き込んだ総バイト数を返す。
    """
    written = 0
    for chunk in chunks:
        if not chunk:
            continue
        writer.write(chunk)
        written += len(chunk)
        if on_chunk:
            on_chunk(len(chunk))
    return written


class ProgressReader:
    """読み込みのたびにバイト数を通知するファイルラッパー

    requests にストリームとして渡せるよう __iter__ と __len__ を持つ。
    """

    def __init__(self, fileobj: BinaryIO, size: int, on_read: Callable[[int], None],
                 chunk_size: int = STREAM_CHUNK_SIZE):
        self._fileobj = fileobj
        self._size = size
        self._on_read = on_read
        self._chunk_size = chunk_size

    def __len__(self) -> int:
        return self._size

    def read(self, size: int = -1) -> bytes:
        data = self._fileobj.read(size)
        if data:
            self._on_read(len(data))
        return data

    def __iter__(self) -> Iterator[bytes]:
        return iter_file(self, self._chunk_size)


def content_disposition(key: str) -> str:
    """元のファイル名をパーセントエンコードしたContent-Dispositionヘッダー"""
    return f"attachment; filename*=UTF-8''{quote(key, safe='')}"


def filename_from_disposition(header: Optional[str], fallback: str) -> str:
    """Content-Dispositionヘッダーからファイル名を取り出す"""
    if header:
        match = _FILENAME_STAR.search(header)
        if match:
            return unquote(match.group(1))
    return fallback
