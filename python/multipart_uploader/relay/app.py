"""リレーサーバー（FastAPI）

クライアントとオブジェクトストアの間でパートを中継する。認証情報は
リレーだけが持ち、クライアントにはリレー経由のURLだけを返す。
"""
import logging
from tempfile import SpooledTemporaryFile
from typing import List, Optional
from urllib.parse import quote, urlencode

from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.concurrency import run_in_threadpool

from ..core.coordinator import UploadCoordinator
from ..core.store import ObjectStore, create_store
from ..errors import BackendError, ConfigError, ObjectNotFoundError, ValidationError
from ..models.config import Config
from ..models.upload import UploadMode
from ..utils.file_utils import content_disposition
from ..utils.logger import LoggerManager
from .schemas import (
    AbortUploadRequest,
    CompleteUploadRequest,
    InitiateUploadRequest,
    InitiateUploadResponse,
    ObjectEntry,
    PartTarget,
    PartUploadResponse,
    SuccessResponse,
)

ALLOWED_METHODS = ["GET", "HEAD", "POST", "PUT", "OPTIONS"]
ALLOWED_HEADERS = ["Content-Type", "Range"]
EXPOSED_HEADERS = ["Content-Length", "Content-Range", "Content-Disposition"]


def _error_response(status_code: int, error: str, details) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "details": details})


async def _read_body(request: Request, limit: int) -> bytes:
    """リクエスト本体を読み込む（limit を超えたら途中で打ち切る）"""
    buffer = bytearray()
    async for chunk in request.stream():
        buffer.extend(chunk)
        if len(buffer) > limit:
            raise ValidationError(f"Request body exceeds the chunk size of {limit} bytes")
    return bytes(buffer)


def _base_url(request: Request, config: Config) -> str:
    if config.relay.public_url:
        return config.relay.public_url.rstrip("/")
    return str(request.base_url).rstrip("/")


def create_app(config: Optional[Config] = None, store: Optional[ObjectStore] = None) -> FastAPI:
    """リレーアプリを作成

    store を省略した場合は設定からバックエンドを作る。
    """
    config = config or Config.default()
    logger = LoggerManager.setup(config.logging)
    store = store or create_store(config)

    app = FastAPI(title="Multipart Upload Relay")
    app.state.config = config
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.relay.allow_origins,
        allow_methods=ALLOWED_METHODS,
        allow_headers=ALLOWED_HEADERS,
        expose_headers=EXPOSED_HEADERS,
    )

    def _log(request: Request, status_code: int, exc: Exception):
        logger.log(
            logging.WARNING if status_code < 500 else logging.ERROR,
            f"{request.method} {request.url.path} -> {status_code}: {exc}",
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        _log(request, 400, exc)
        return _error_response(400, "Invalid request", jsonable_encoder(exc.errors()))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        _log(request, 400, exc)
        return _error_response(400, "Invalid request", str(exc))

    @app.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError):
        _log(request, 400, exc)
        return _error_response(400, "Invalid upload configuration", str(exc))

    @app.exception_handler(ObjectNotFoundError)
    async def not_found_handler(request: Request, exc: ObjectNotFoundError):
        _log(request, 404, exc)
        return _error_response(404, "File not found", exc.details)

    @app.exception_handler(BackendError)
    async def backend_error_handler(request: Request, exc: BackendError):
        _log(request, 500, exc)
        return _error_response(500, str(exc), exc.details)

    @app.options("/{path:path}")
    async def preflight(path: str):
        return Response(status_code=204, headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": ", ".join(ALLOWED_METHODS),
            "Access-Control-Allow-Headers": ", ".join(ALLOWED_HEADERS),
            "Access-Control-Expose-Headers": ", ".join(EXPOSED_HEADERS),
        })

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.post(
        "/upload/initiate",
        response_model=InitiateUploadResponse,
        response_model_exclude_none=True,
    )
    def initiate_upload(body: InitiateUploadRequest, request: Request):
        """アップロードを開始（チャンクサイズを超える場合はマルチパート）"""
        base_url = _base_url(request, config)
        key = body.filename

        def part_url(upload_id: str, part_number: int) -> str:
            query = urlencode({"uploadId": upload_id, "partNumber": part_number})
            return f"{base_url}/upload/part/{quote(key)}?{query}"

        coordinator = UploadCoordinator(store, config.options)
        session = coordinator.initiate(
            key,
            body.file_size,
            part_url=part_url,
            upload_url=f"{base_url}/upload/simple/{quote(key)}",
        )

        if session.mode == UploadMode.SIMPLE:
            return InitiateUploadResponse(
                mode=session.mode.value, filename=key, upload_url=session.upload_url
            )

        return InitiateUploadResponse(
            mode=session.mode.value,
            filename=key,
            upload_id=session.upload_id,
            parts=[PartTarget(part_number=p.part_number, url=p.url) for p in session.parts],
        )

    @app.put("/upload/simple/{key:path}", response_model=SuccessResponse)
    async def upload_simple(key: str, request: Request):
        """simpleモードの一括アップロード（本体はメモリ上限付きで一時ファイルに退避）"""
        limit = config.options.chunk_size
        with SpooledTemporaryFile(max_size=limit) as spooled:
            received = 0
            async for chunk in request.stream():
                received += len(chunk)
                # チャンクサイズを超えるファイルはマルチパートで送られるはず
                if received > limit:
                    raise ValidationError(f"Request body exceeds the chunk size of {limit} bytes")
                spooled.write(chunk)
            spooled.seek(0)
            await run_in_threadpool(
                store.put_object, key, spooled, request.headers.get("content-type")
            )
        return SuccessResponse()

    @app.put("/upload/part/{key:path}", response_model=PartUploadResponse)
    async def upload_part(
        key: str,
        request: Request,
        upload_id: Optional[str] = Query(default=None, alias="uploadId"),
        part_number: Optional[str] = Query(default=None, alias="partNumber"),
    ):
        """1パートを中継する（パート全体を受け取ってからストアへ送る）"""
        if not upload_id or not part_number or not part_number.isdigit() or int(part_number) < 1:
            raise ValidationError("Missing uploadId or partNumber")

        data = await _read_body(request, config.options.chunk_size)
        if not data:
            raise ValidationError("Request body is required")

        etag = await run_in_threadpool(store.upload_part, key, upload_id, int(part_number), data)
        logger.info(f"Relayed part {part_number} of {key} ({len(data)} bytes)")
        return PartUploadResponse(etag=etag)

    @app.post("/upload/complete", response_model=SuccessResponse)
    def complete_upload(body: CompleteUploadRequest):
        """パートをパート番号順に並べてアップロードを完了する"""
        numbers = [p.part_number for p in body.parts]
        if not numbers:
            raise ValidationError("parts must not be empty")
        if len(numbers) != len(set(numbers)):
            raise ValidationError("Duplicate part numbers in completion request")

        coordinator = UploadCoordinator.resume(store, body.filename, body.upload_id, options=config.options)
        for part in body.parts:
            coordinator.record_part(part.part_number, part.etag)
        coordinator.complete()
        return SuccessResponse()

    @app.post("/upload/abort", response_model=SuccessResponse)
    def abort_upload(body: AbortUploadRequest):
        coordinator = UploadCoordinator.resume(store, body.filename, body.upload_id, options=config.options)
        if not coordinator.abort():
            error = coordinator.last_error
            details = getattr(error, "details", None) or str(error)
            return _error_response(500, "Failed to abort multipart upload", details)
        return SuccessResponse()

    @app.get("/objects", response_model=List[ObjectEntry])
    def list_objects():
        return [
            ObjectEntry(key=o.key, size=o.size, uploaded_at=o.uploaded_at)
            for o in store.list_objects()
        ]

    @app.get("/objects/{key:path}")
    def download_object(key: str):
        """オブジェクトをストリーミングで返す"""
        stored = store.get_object(key)
        return StreamingResponse(
            stored.body,
            media_type=stored.content_type,
            headers={
                "Content-Disposition": content_disposition(key),
                "Content-Length": str(stored.size),
            },
        )

    return app
