"""アップロード進捗管理"""
import time
import threading
from typing import Callable, Optional

from ..models.upload import UploadProgress

ProgressCallback = Callable[[UploadProgress], None]


class ProgressTracker:
    """単一アップロードの進捗を追跡

    loaded は単調非減少。total を超える値は total に丸める。
    """

    def __init__(self, total_size: int, filename: str, callback: Optional[ProgressCallback] = None):
        self.total_size = total_size
        self.filename = filename
        self.callback = callback
        self.uploaded_size = 0
        self.lock = threading.Lock()

    def __call__(self, bytes_transferred: int):
        """転送イベントのコールバックとして使用（増分バイト数）"""
        self.advance(bytes_transferred)

    def advance(self, bytes_transferred: int):
        if bytes_transferred <= 0:
            return
        self.update(self.uploaded_size + bytes_transferred)

    def update(self, loaded: int):
        """累計バイト数で更新（減少方向の更新は無視）"""
        with self.lock:
            loaded = min(loaded, self.total_size)
            if loaded < self.uploaded_size:
                return
            self.uploaded_size = loaded
            snapshot = self.snapshot()
        if self.callback:
            self.callback(snapshot)

    def snapshot(self) -> UploadProgress:
        return UploadProgress(loaded=self.uploaded_size, total=self.total_size)

    def complete(self):
        """アップロード完了"""
        self.update(self.total_size)


class ConsoleProgress:
    """進捗をコンソールに1行で表示するコールバック"""

    def __init__(self, filename: str):
        self.filename = filename
        self.start_time = time.time()

    def __call__(self, progress: UploadProgress):
        elapsed_time = time.time() - self.start_time
        speed = progress.loaded / elapsed_time / 1024 / 1024 if elapsed_time > 0 else 0  # MB/s

        print(f"\r{self.filename}: {progress.percentage}% "
              f"({progress.loaded / 1024 / 1024:.0f}MB of {progress.total / 1024 / 1024:.0f}MB) "
              f"- {speed:.2f} MB/s", end="", flush=True)

        if progress.loaded >= progress.total:
            print(f"\r{self.filename}: Complete! - {speed:.2f} MB/s - {elapsed_time:.1f}s")
