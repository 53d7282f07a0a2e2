from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import os
import shutil
from threading import Event, Lock, Thread
from typing import BinaryIO, Iterator
import uuid

from backend.services.segment_archive import iter_zip
from pipeline.errors import (
    AppError,
    ChunkingConflictError,
    NotFoundError,
    ProbeError,
    StorageIOError,
    ValidationError,
)
from pipeline.media_inspector import MediaInspector
from pipeline.models import (
    NAMING_CUSTOM_PREFIX,
    NAMING_FORMATS,
    ChunkingRequest,
    ProgressEvent,
    ProgressUpdate,
    RunComplete,
    RunFailed,
    Segment,
    SourceFile,
)
from pipeline.naming import base_name
from pipeline.progress_channel import ProgressChannel
from pipeline.segmenter import Segmenter
from storage.metadata_store import MetadataStore

logger = logging.getLogger(__name__)

COPY_BLOCK_BYTES = 1024 * 1024
MAX_PREFIX_LENGTH = 100


@dataclass
class RunStatus:
    file_id: int
    run_id: str
    state: str = "running"
    percent_complete: int = 0
    current_index: int = 0
    total_count: int | None = None
    segment_count: int | None = None
    message: str | None = None
    started_at: str | None = None
    finished_at: str | None = None


@dataclass
class RunHandle:
    run_id: str
    file_id: int
    accepted: bool = True
    _done: Event = field(default_factory=Event, repr=False, compare=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def mark_done(self) -> None:
        self._done.set()


@dataclass
class CleanupReport:
    removed_files: int = 0
    removed_segments: int = 0
    removed_directories: int = 0
    removed_uploads: int = 0


class ChunkingManager:
    def __init__(
        self,
        store: MetadataStore,
        inspector: MediaInspector,
        segmenter: Segmenter,
        channel: ProgressChannel,
        upload_dir: str,
        segments_dir: str,
        max_upload_bytes: int = 500 * 1024 * 1024,
        allowed_extensions: tuple[str, ...] = (".mp3",),
        allowed_mime_types: tuple[str, ...] = ("audio/mpeg", "audio/mp3"),
        min_chunk_minutes: int = 1,
        max_chunk_minutes: int = 60,
    ):
        self.store = store
        self.inspector = inspector
        self.segmenter = segmenter
        self.channel = channel
        self.upload_dir = upload_dir
        self.segments_dir = segments_dir
        self.max_upload_bytes = max_upload_bytes
        self.allowed_extensions = allowed_extensions
        self.allowed_mime_types = allowed_mime_types
        self.min_chunk_minutes = min_chunk_minutes
        self.max_chunk_minutes = max_chunk_minutes

        self._lock = Lock()
        self._active: dict[int, RunHandle] = {}
        self._threads: dict[str, Thread] = {}
        self._status: dict[int, RunStatus] = {}
        self._staging: set[str] = set()

        os.makedirs(self.upload_dir, exist_ok=True)
        os.makedirs(self.segments_dir, exist_ok=True)

    # --------------------
    # Uploads
    # --------------------

    def upload(self, stream: BinaryIO, original_name: str, mime_type: str | None) -> SourceFile:
        safe_name = os.path.basename((original_name or "").replace("\\", "/")).strip()
        if not safe_name:
            raise ValidationError("Uploaded file must have a filename")

        extension = os.path.splitext(safe_name)[1].lower()
        if extension not in self.allowed_extensions:
            raise ValidationError("Only MP3 files are allowed")
        if (mime_type or "").lower() not in self.allowed_mime_types:
            raise ValidationError(f"Unsupported content type: {mime_type or 'unknown'}")

        stored_name = f"{uuid.uuid4().hex}-{safe_name}"
        stored_path = os.path.join(self.upload_dir, stored_name)

        with self._lock:
            self._staging.add(os.path.abspath(stored_path))

        try:
            size = self._write_upload(stream, stored_path)
            if size == 0:
                raise ValidationError("Uploaded file is empty")

            logger.info(f"Probing upload {safe_name} ({size} bytes)")
            info = self.inspector.probe(stored_path)

            record = self.store.create_file(
                filename=stored_name,
                original_name=safe_name,
                path=stored_path,
                size=size,
                mime_type=mime_type,
                duration=int(info.duration_seconds),
                bitrate=info.bitrate,
            )
        except (AppError, OSError):
            if os.path.exists(stored_path):
                os.remove(stored_path)
            raise
        finally:
            with self._lock:
                self._staging.discard(os.path.abspath(stored_path))

        logger.info(f"Stored file {record.id}: {safe_name} ({record.duration}s, {record.bitrate} bps)")
        return record

    def _write_upload(self, stream: BinaryIO, path: str) -> int:
        size = 0
        try:
            with open(path, "wb") as out:
                while True:
                    block = stream.read(COPY_BLOCK_BYTES)
                    if not block:
                        break
                    size += len(block)
                    if size > self.max_upload_bytes:
                        limit_mb = self.max_upload_bytes // (1024 * 1024)
                        raise ValidationError(f"File exceeds the {limit_mb} MB upload limit")
                    out.write(block)
        except OSError as exc:
            raise StorageIOError(f"Failed to store upload: {exc}") from exc
        return size

    # --------------------
    # Chunking runs
    # --------------------

    def start_chunking(self, request: ChunkingRequest) -> RunHandle:
        self._validate_request(request)

        source = self.store.get_file(request.file_id)
        if source is None:
            raise NotFoundError(f"File {request.file_id} not found")

        with self._lock:
            active = self._active.get(source.id)
            if active is not None and not active.done:
                raise ChunkingConflictError(
                    f"File {source.id} is already being chunked (run {active.run_id})"
                )

            handle = RunHandle(run_id=uuid.uuid4().hex[:12], file_id=source.id)
            self._active[source.id] = handle
            self._status[source.id] = RunStatus(
                file_id=source.id,
                run_id=handle.run_id,
                started_at=self._utc_now_iso(),
            )

            thread = Thread(
                target=self._run,
                args=(handle, request, source),
                name=f"chunk-{source.id}-{handle.run_id}",
                daemon=True,
            )
            self._threads[handle.run_id] = thread
            thread.start()

        logger.info(
            f"Accepted run {handle.run_id} for file {source.id}: "
            f"{request.chunk_duration} min, {request.naming_format}"
        )
        return handle

    def _validate_request(self, request: ChunkingRequest) -> None:
        minutes = request.chunk_duration
        if isinstance(minutes, bool) or not isinstance(minutes, int):
            raise ValidationError("chunkDuration must be a whole number of minutes")
        if not self.min_chunk_minutes <= minutes <= self.max_chunk_minutes:
            raise ValidationError(
                f"chunkDuration must be between {self.min_chunk_minutes} and {self.max_chunk_minutes} minutes"
            )

        if request.naming_format not in NAMING_FORMATS:
            raise ValidationError(f"Unknown naming format: {request.naming_format}")

        prefix = request.custom_prefix
        if request.naming_format == NAMING_CUSTOM_PREFIX:
            if not prefix or not prefix.strip():
                raise ValidationError("customPrefix is required for custom-prefix naming")
            if len(prefix) > MAX_PREFIX_LENGTH:
                raise ValidationError(f"customPrefix must be at most {MAX_PREFIX_LENGTH} characters")
            if "/" in prefix or "\\" in prefix or prefix.strip() in (".", ".."):
                raise ValidationError("customPrefix must not contain path separators")
        elif prefix:
            raise ValidationError("customPrefix is only allowed with custom-prefix naming")

    def _run(self, handle: RunHandle, request: ChunkingRequest, source: SourceFile) -> None:
        output_dir = self._run_dir(source.id, handle.run_id)
        failure_published = False

        def on_event(event: ProgressEvent) -> None:
            nonlocal failure_published
            if isinstance(event, ProgressUpdate):
                self._set_status(
                    source.id,
                    handle.run_id,
                    percent_complete=event.percent_complete,
                    current_index=event.current_index,
                    total_count=event.total_count,
                )
            elif isinstance(event, RunFailed):
                failure_published = True
            self.channel.publish(event)

        try:
            descriptors = self.segmenter.split(
                source.path,
                request,
                output_dir,
                base_name(source.original_name),
                handle.run_id,
                on_event=on_event,
                announce_complete=False,
            )
            created, replaced = self.store.replace_segments(source.id, descriptors)
        except Exception as exc:
            if isinstance(exc, AppError):
                message = exc.message
                logger.error(f"Run {handle.run_id} for file {source.id} failed: {message}")
            else:
                message = "Internal error while chunking"
                logger.exception(f"Run {handle.run_id} for file {source.id} crashed")

            shutil.rmtree(output_dir, ignore_errors=True)
            self._set_status(
                source.id,
                handle.run_id,
                state="failed",
                message=message,
                finished_at=self._utc_now_iso(),
            )
            if not failure_published:
                self.channel.publish(RunFailed(run_id=handle.run_id, file_id=source.id, message=message))
            self._finish(handle)
            return

        self._discard_replaced(replaced, keep={s.path for s in created})
        self._set_status(
            source.id,
            handle.run_id,
            state="complete",
            percent_complete=100,
            segment_count=len(created),
            finished_at=self._utc_now_iso(),
        )
        logger.info(f"Run {handle.run_id} for file {source.id} committed {len(created)} segment(s)")

        # Records are committed before observers hear about completion.
        self.channel.publish(RunComplete(run_id=handle.run_id, file_id=source.id, segments=created))
        self._finish(handle)

    def _finish(self, handle: RunHandle) -> None:
        with self._lock:
            if self._active.get(handle.file_id) is handle:
                del self._active[handle.file_id]
            self._threads.pop(handle.run_id, None)
        handle.mark_done()

    def _discard_replaced(self, replaced: list[Segment], keep: set[str]) -> None:
        for segment in replaced:
            if segment.path in keep:
                continue
            try:
                self._remove_path(segment.path)
            except StorageIOError as exc:
                logger.warning(f"Could not remove replaced segment {segment.id}: {exc.message}")
                continue
            parent = os.path.dirname(segment.path)
            try:
                if os.path.isdir(parent) and not os.listdir(parent):
                    os.rmdir(parent)
            except OSError as exc:
                logger.debug(f"Left run directory {parent} in place: {exc}")

    def get_status(self, file_id: int) -> RunStatus | None:
        with self._lock:
            status = self._status.get(int(file_id))
            return RunStatus(**status.__dict__) if status is not None else None

    def is_running(self, file_id: int) -> bool:
        with self._lock:
            handle = self._active.get(int(file_id))
            return handle is not None and not handle.done

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lock:
            threads = list(self._threads.values())

        for thread in threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"Run thread {thread.name} still running at shutdown")

    # --------------------
    # Deletion
    # --------------------

    def delete_file(self, file_id: int) -> bool:
        removed = self.store.delete_file(file_id)
        if removed is None:
            return False

        source, segments = removed
        for segment in segments:
            self._remove_path(segment.path)
        shutil.rmtree(self._file_dir(source.id), ignore_errors=True)
        self._remove_path(source.path)

        with self._lock:
            if source.id not in self._active:
                self._status.pop(source.id, None)

        logger.info(f"Deleted file {source.id} and {len(segments)} segment(s)")
        return True

    def delete_segment(self, segment_id: int) -> bool:
        segment = self.store.delete_segment(segment_id)
        if segment is None:
            return False

        self._remove_path(segment.path)
        logger.info(f"Deleted segment {segment.id} of file {segment.file_id}")
        return True

    @staticmethod
    def _remove_path(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageIOError(f"Failed to delete {os.path.basename(path)}: {exc}") from exc

    # --------------------
    # Reads and downloads
    # --------------------

    def list_files(self) -> list[SourceFile]:
        return self.store.list_files()

    def list_segments_by_file(self, file_id: int) -> list[Segment]:
        return self.store.list_segments_by_file(file_id)

    def list_all_segments(self) -> list[Segment]:
        return self.store.list_all_segments()

    def download_segment(self, segment_id: int) -> Segment:
        segment = self.store.get_segment(segment_id)
        if segment is None:
            raise NotFoundError(f"Segment {segment_id} not found")
        if not os.path.isfile(segment.path):
            raise NotFoundError(f"Segment {segment_id} is missing on disk")
        return segment

    def download_all_as_archive(self, file_id: int) -> tuple[str, Iterator[bytes]]:
        source = self.store.get_file(file_id)
        if source is None:
            raise NotFoundError(f"File {file_id} not found")

        entries = [
            (s.path, s.filename)
            for s in self.store.list_segments_by_file(source.id)
            if os.path.isfile(s.path)
        ]
        if not entries:
            raise NotFoundError(f"File {file_id} has no segments to download")

        archive_name = f"{base_name(source.original_name)}_segments.zip"
        return archive_name, iter_zip(entries)

    # --------------------
    # Maintenance
    # --------------------

    def stats(self) -> dict:
        return self.store.stats()

    def cleanup_orphans(self) -> CleanupReport:
        result = self.store.cleanup_orphans()
        report = CleanupReport(
            removed_files=result.removed_files,
            removed_segments=result.removed_segments,
        )

        # Runs leave _active and uploads leave _staging under self._lock, only
        # after their records are committed. The sweep holds it throughout.
        with self._lock:
            active = {h.file_id: h.run_id for h in self._active.values() if not h.done}
            staging = set(self._staging)
            referenced = self.store.referenced_paths()
            live_ids = {f.id for f in self.store.list_files()}

            report.removed_directories = self._sweep_segment_dirs(live_ids, referenced, active)
            report.removed_uploads = self._sweep_uploads(referenced | staging)

        logger.info(
            f"Cleanup: {report.removed_files} file record(s), {report.removed_segments} segment record(s), "
            f"{report.removed_directories} director(ies), {report.removed_uploads} upload(s) removed"
        )
        return report

    def _sweep_segment_dirs(self, live_ids: set[int], referenced: set[str], active: dict[int, str]) -> int:
        removed = 0
        if not os.path.isdir(self.segments_dir):
            return 0

        referenced_dirs = {os.path.dirname(p) for p in referenced}

        for entry in sorted(os.listdir(self.segments_dir)):
            file_dir = os.path.join(self.segments_dir, entry)
            file_id = self._parse_file_dir(entry)
            if file_id is None or not os.path.isdir(file_dir):
                continue

            if file_id not in live_ids and file_id not in active:
                shutil.rmtree(file_dir, ignore_errors=True)
                removed += 1
                continue

            for run_entry in sorted(os.listdir(file_dir)):
                run_dir = os.path.abspath(os.path.join(file_dir, run_entry))
                if not os.path.isdir(run_dir):
                    continue
                if run_entry == f"run-{active.get(file_id)}" or run_dir in referenced_dirs:
                    continue
                shutil.rmtree(run_dir, ignore_errors=True)
                removed += 1

        return removed

    def _sweep_uploads(self, keep: set[str]) -> int:
        removed = 0
        if not os.path.isdir(self.upload_dir):
            return 0

        for entry in sorted(os.listdir(self.upload_dir)):
            path = os.path.abspath(os.path.join(self.upload_dir, entry))
            if not os.path.isfile(path) or path in keep:
                continue
            try:
                os.remove(path)
            except OSError as exc:
                logger.warning(f"Could not remove stray upload {entry}: {exc}")
                continue
            removed += 1
        return removed

    # --------------------
    # Helpers
    # --------------------

    def _file_dir(self, file_id: int) -> str:
        return os.path.join(self.segments_dir, f"file-{int(file_id)}")

    def _run_dir(self, file_id: int, run_id: str) -> str:
        return os.path.join(self._file_dir(file_id), f"run-{run_id}")

    @staticmethod
    def _parse_file_dir(name: str) -> int | None:
        if not name.startswith("file-"):
            return None
        try:
            return int(name[len("file-"):])
        except ValueError:
            return None

    def _set_status(self, file_id: int, run_id: str, **updates: object) -> None:
        with self._lock:
            status = self._status.get(file_id)
            if status is None or status.run_id != run_id:
                return
            for key, value in updates.items():
                setattr(status, key, value)

    def _utc_now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()
