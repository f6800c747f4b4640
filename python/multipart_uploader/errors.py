"""アップロード処理の例外クラス"""
from typing import Optional


class UploadError(Exception):
    """アップロード関連の例外の基底クラス"""


class ConfigError(UploadError):
    """チャンクサイズやパート数がバックエンドの制限に違反している"""


class ValidationError(UploadError):
    """リクエスト内容の不備（必須フィールドの欠落、不正なパート番号など）"""


class BackendError(UploadError):
    """オブジェクトストアが操作を拒否した

    元のエラーメッセージは details に保持する。
    """

    def __init__(self, message: str, details: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.details = details if details is not None else message
        self.code = code


class ObjectNotFoundError(BackendError):
    """指定したキーのオブジェクトが存在しない"""


class NetworkError(UploadError):
    """パート転送中の通信エラー"""
