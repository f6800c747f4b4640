"""リレーAPIのリクエスト/レスポンスモデル（JSONのキーはcamelCase）"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitiateUploadRequest(_CamelModel):
    filename: str = Field(min_length=1)
    file_size: int = Field(alias="fileSize", ge=0)


class PartTarget(_CamelModel):
    part_number: int = Field(alias="partNumber")
    url: str


class InitiateUploadResponse(_CamelModel):
    mode: str
    filename: str
    upload_url: Optional[str] = Field(default=None, alias="uploadUrl")
    upload_id: Optional[str] = Field(default=None, alias="uploadId")
    parts: Optional[List[PartTarget]] = None


class PartUploadResponse(BaseModel):
    success: bool = True
    etag: str


class CompletedPartIn(_CamelModel):
    part_number: int = Field(alias="partNumber", ge=1)
    etag: str = Field(min_length=1)


class CompleteUploadRequest(_CamelModel):
    filename: str = Field(min_length=1)
    upload_id: str = Field(alias="uploadId", min_length=1)
    parts: List[CompletedPartIn]


class AbortUploadRequest(_CamelModel):
    filename: str = Field(min_length=1)
    upload_id: str = Field(alias="uploadId", min_length=1)


class SuccessResponse(BaseModel):
    success: bool = True


class ObjectEntry(_CamelModel):
    key: str
    size: int
    uploaded_at: datetime = Field(alias="uploadedAt")
