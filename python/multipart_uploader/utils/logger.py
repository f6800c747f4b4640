"""ロギング設定ユーティリティ"""
import logging
import os
from typing import Optional, List
from ..models.config import LoggingConfig

LOGGER_NAME = "multipart_uploader"


class LoggerManager:
    """ロガーの設定と管理"""

    _logger: Optional[logging.Logger] = None

    @classmethod
    def setup(cls, config: LoggingConfig, force: bool = False) -> logging.Logger:
        """ロガーをセットアップ

        force=True の場合は既存のハンドラーを置き換える（リレー起動時など）。
        """
        if cls._logger is not None and not force:
            return cls._logger

        log_level = getattr(logging, config.level.upper(), logging.INFO)

        formatter = logging.Formatter(
            config.format,
            datefmt="%Y-%m-%d %H:%M:%S"
        )

        handlers: List[logging.Handler] = []

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

        # ファイルハンドラー（設定されている場合）
        if config.file:
            log_dir = os.path.dirname(config.file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.FileHandler(config.file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(log_level)
        for handler in logger.handlers:
            handler.close()
        logger.handlers = handlers

        cls._logger = logger
        return logger

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """設定済みのロガーを取得（未設定ならデフォルト設定で初期化）"""
        if cls._logger is None:
            return cls.setup(LoggingConfig())
        return cls._logger

    @classmethod
    def reset(cls):
        """テスト用: セットアップ状態を破棄"""
        if cls._logger is not None:
            for handler in cls._logger.handlers:
                handler.close()
            cls._logger.handlers = []
        cls._logger = None
