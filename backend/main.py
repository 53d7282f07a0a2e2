import asyncio
from contextlib import asynccontextmanager, suppress
import logging
import os
import sys
from pathlib import Path
from urllib.parse import quote

from fastapi import FastAPI, File, HTTPException, Query, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, StreamingResponse
from dotenv import load_dotenv

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

load_dotenv(Path(ROOT_DIR) / ".env")

from backend import config
from backend.schemas import (
    ChunkAcceptedResponse,
    ChunkRequest,
    CleanupResponse,
    DatabaseStatsResponse,
    DeleteResponse,
    ErrorResponse,
    RunStatusResponse,
    SegmentResponse,
    SourceFileResponse,
)
from backend.services.chunking_manager import ChunkingManager
from pipeline.errors import AppError
from pipeline.media_inspector import MediaInspector
from pipeline.models import ChunkingRequest, ProgressEvent, event_to_message
from pipeline.progress_channel import ProgressChannel
from pipeline.segmenter import Segmenter
from storage.metadata_store import MetadataStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "VALIDATION_ERROR": 400,
    "NOT_FOUND": 404,
    "CHUNKING_RUNNING": 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    os.makedirs(config.DATA_DIR, exist_ok=True)

    store = MetadataStore(db_path=config.DB_PATH)
    store.init_db()

    inspector = MediaInspector(
        ffprobe_binary=config.FFPROBE_BINARY,
        timeout_seconds=config.PROBE_TIMEOUT_SECONDS,
        default_bitrate=config.DEFAULT_BITRATE,
    )
    segmenter = Segmenter(
        inspector=inspector,
        ffmpeg_binary=config.FFMPEG_BINARY,
        invocation_timeout=config.SEGMENT_TIMEOUT_SECONDS,
    )
    channel = ProgressChannel()

    chunking_manager = ChunkingManager(
        store=store,
        inspector=inspector,
        segmenter=segmenter,
        channel=channel,
        upload_dir=config.UPLOAD_DIR,
        segments_dir=config.SEGMENTS_DIR,
        max_upload_bytes=config.MAX_UPLOAD_BYTES,
        allowed_extensions=config.ALLOWED_EXTENSIONS,
        allowed_mime_types=config.ALLOWED_MIME_TYPES,
        min_chunk_minutes=config.MIN_CHUNK_MINUTES,
        max_chunk_minutes=config.MAX_CHUNK_MINUTES,
    )

    if config.CLEANUP_ON_STARTUP:
        chunking_manager.cleanup_orphans()

    app.state.store = store
    app.state.channel = channel
    app.state.chunking_manager = chunking_manager

    try:
        yield
    finally:
        chunking_manager.shutdown(timeout=config.SHUTDOWN_JOIN_SECONDS)


app = FastAPI(title="Audio Segmenter API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1|[0-9]{1,3}(?:\.[0-9]{1,3}){3})(:[0-9]+)?$",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def _http_error(exc: AppError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_CODE.get(exc.code, 500),
        detail={"code": exc.code, "message": exc.message},
    )


@app.get("/api/health")
def health() -> dict[str, bool]:
    return {"ok": True}


# --------------------
# Files
# --------------------


@app.post("/api/upload", response_model=SourceFileResponse, responses=ERROR_RESPONSES)
def upload_file(file: UploadFile = File(...)) -> SourceFileResponse:
    try:
        record = app.state.chunking_manager.upload(file.file, file.filename or "", file.content_type)
    except AppError as exc:
        raise _http_error(exc) from exc
    return SourceFileResponse.model_validate(record)


@app.get("/api/files", response_model=list[SourceFileResponse])
def list_files() -> list[SourceFileResponse]:
    return [SourceFileResponse.model_validate(f) for f in app.state.chunking_manager.list_files()]


@app.delete("/api/files/{file_id}", response_model=DeleteResponse, responses=ERROR_RESPONSES)
def delete_file(file_id: int) -> DeleteResponse:
    try:
        deleted = app.state.chunking_manager.delete_file(file_id)
    except AppError as exc:
        raise _http_error(exc) from exc
    return DeleteResponse(deleted=deleted)


# --------------------
# Chunking
# --------------------


@app.post("/api/chunk/{file_id}", response_model=ChunkAcceptedResponse, responses=ERROR_RESPONSES)
def start_chunking(file_id: int, payload: ChunkRequest) -> ChunkAcceptedResponse:
    request = ChunkingRequest(
        file_id=file_id,
        chunk_duration=payload.chunk_duration,
        naming_format=payload.naming_format,
        custom_prefix=payload.custom_prefix,
    )
    try:
        handle = app.state.chunking_manager.start_chunking(request)
    except AppError as exc:
        raise _http_error(exc) from exc
    return ChunkAcceptedResponse(accepted=handle.accepted, file_id=handle.file_id, run_id=handle.run_id)


@app.get("/api/chunk/{file_id}/status", response_model=RunStatusResponse, responses=ERROR_RESPONSES)
def get_chunking_status(file_id: int) -> RunStatusResponse:
    status = app.state.chunking_manager.get_status(file_id)
    if status is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": f"No chunking run recorded for file {file_id}"},
        )
    return RunStatusResponse.model_validate(status)


# --------------------
# Segments
# --------------------


@app.get("/api/segments", response_model=list[SegmentResponse])
def list_all_segments() -> list[SegmentResponse]:
    return [SegmentResponse.model_validate(s) for s in app.state.chunking_manager.list_all_segments()]


@app.get("/api/segments/{file_id}", response_model=list[SegmentResponse])
def list_segments(file_id: int) -> list[SegmentResponse]:
    rows = app.state.chunking_manager.list_segments_by_file(file_id)
    return [SegmentResponse.model_validate(s) for s in rows]


@app.delete("/api/segments/{segment_id}", response_model=DeleteResponse, responses=ERROR_RESPONSES)
def delete_segment(segment_id: int) -> DeleteResponse:
    try:
        deleted = app.state.chunking_manager.delete_segment(segment_id)
    except AppError as exc:
        raise _http_error(exc) from exc
    return DeleteResponse(deleted=deleted)


# --------------------
# Downloads
# --------------------


@app.get("/api/download/segment/{segment_id}", responses=ERROR_RESPONSES)
def download_segment(segment_id: int) -> FileResponse:
    try:
        segment = app.state.chunking_manager.download_segment(segment_id)
    except AppError as exc:
        raise _http_error(exc) from exc
    return FileResponse(segment.path, media_type="audio/mpeg", filename=segment.filename)


@app.get("/api/download/file/{file_id}/zip", responses=ERROR_RESPONSES)
def download_file_zip(file_id: int) -> StreamingResponse:
    try:
        archive_name, stream = app.state.chunking_manager.download_all_as_archive(file_id)
    except AppError as exc:
        raise _http_error(exc) from exc
    return StreamingResponse(
        stream,
        media_type="application/zip",
        headers={"Content-Disposition": f"attachment; filename*=utf-8''{quote(archive_name)}"},
    )


# --------------------
# Database maintenance
# --------------------


@app.get("/api/database/stats", response_model=DatabaseStatsResponse)
def database_stats() -> DatabaseStatsResponse:
    return DatabaseStatsResponse(**app.state.chunking_manager.stats())


@app.post("/api/database/cleanup", response_model=CleanupResponse, responses=ERROR_RESPONSES)
def database_cleanup() -> CleanupResponse:
    try:
        report = app.state.chunking_manager.cleanup_orphans()
    except AppError as exc:
        raise _http_error(exc) from exc
    return CleanupResponse.model_validate(report)


# --------------------
# Progress stream
# --------------------


@app.websocket("/ws")
async def progress_socket(
    websocket: WebSocket,
    file_id: int | None = Query(default=None, alias="fileId"),
    run_id: str | None = Query(default=None, alias="runId"),
) -> None:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=config.WS_QUEUE_SIZE)

    def offer(event: ProgressEvent) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Dropping {event.type} event for slow WebSocket client")

    def deliver(event: ProgressEvent) -> None:
        try:
            loop.call_soon_threadsafe(offer, event)
        except RuntimeError:
            logger.debug("WebSocket event loop closed; event dropped")

    # Subscribe before accepting so nothing published after the handshake is missed.
    channel: ProgressChannel = app.state.channel
    subscription = channel.subscribe(deliver, file_id=file_id, run_id=run_id)
    sender = None
    try:
        await websocket.accept()
        logger.info(f"WebSocket client connected (fileId={file_id}, runId={run_id})")
        sender = asyncio.create_task(_pump_events(websocket, queue))

        while True:
            message = await websocket.receive_text()
            logger.info(f"Ignoring inbound WebSocket message: {message[:200]}")
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    finally:
        channel.unsubscribe(subscription)
        if sender is not None:
            sender.cancel()
            with suppress(asyncio.CancelledError):
                await sender


async def _pump_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        try:
            await websocket.send_json(event_to_message(event))
        except (WebSocketDisconnect, RuntimeError):
            logger.info("WebSocket send failed; stopping event stream")
            return
