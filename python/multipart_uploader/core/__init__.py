"""Multipart Uploader コアモジュール"""
from .planner import PartPlanner
from .store import ObjectStore, S3ObjectStore, FileSystemObjectStore, create_store
from .coordinator import UploadCoordinator

__all__ = [
    'PartPlanner',
    'ObjectStore',
    'S3ObjectStore',
    'FileSystemObjectStore',
    'create_store',
    'UploadCoordinator',
]
