"""クライアント側のモジュール"""
from .transport import UploadTransport, RelayTransport, DirectTransport
from .uploader import UploadClient, UploadResult

__all__ = [
    'UploadTransport',
    'RelayTransport',
    'DirectTransport',
    'UploadClient',
    'UploadResult',
]
