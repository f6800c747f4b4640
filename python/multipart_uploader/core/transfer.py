"""S3転送設定管理"""
from boto3.s3.transfer import TransferConfig as BotoTransferConfig
from ..models.config import UploadOptions


class TransferConfigManager:
    """単一PUT用の転送設定"""

    @staticmethod
    def create_config(options: UploadOptions) -> BotoTransferConfig:
        """UploadOptionsからTransferConfigを作成

        チャンクサイズ以下のオブジェクトは必ず単一PUTで送る。
        """
        return BotoTransferConfig(
            multipart_threshold=options.chunk_size + 1,
            multipart_chunksize=options.chunk_size,
            max_concurrency=options.max_concurrency,
            io_chunksize=options.io_chunksize,
            use_threads=True,
        )
