import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Iterable

from pipeline.errors import NotFoundError, StorageIOError
from pipeline.models import Segment, SegmentDescriptor, SourceFile

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    removed_files: int = 0
    removed_segments: int = 0


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def _record_from_dict(cls, raw: dict):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in names})


class MetadataStore:
    """
    Flat-file store for uploaded files and their segments.

    The whole state lives in memory behind one lock and every mutation
    rewrites the JSON snapshot before returning. Reads hand out copies.
    """

    def __init__(self, db_path: str = "metadata.json"):
        self.db_path = db_path

        self._lock = RLock()
        self._files: dict[int, SourceFile] = {}
        self._segments: dict[int, Segment] = {}
        self._next_file_id = 1
        self._next_segment_id = 1
        self._last_updated = _utc_now_iso()

    # ---------- LOAD / SAVE ----------
    def init_db(self) -> None:
        parent = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(parent, exist_ok=True)

        with self._lock:
            self._files = {}
            self._segments = {}
            self._next_file_id = 1
            self._next_segment_id = 1
            self._last_updated = _utc_now_iso()

            if not os.path.exists(self.db_path):
                logger.info(f"Initializing new metadata store at {self.db_path}")
                return

            try:
                with open(self.db_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("snapshot root is not an object")
                for key in ("files", "segments"):
                    if not isinstance(data.get(key) or [], list):
                        raise ValueError(f"snapshot field {key!r} is not a list")
            except (OSError, ValueError) as exc:
                logger.warning(f"Metadata snapshot {self.db_path} is unreadable ({exc}); starting empty")
                self._set_aside_corrupt_snapshot()
                return

            for raw in data.get("files") or []:
                try:
                    record = _record_from_dict(SourceFile, raw)
                    record.id = int(record.id)
                except (TypeError, AttributeError, ValueError):
                    logger.warning(f"Skipping malformed file record: {raw!r}")
                    continue
                self._files[record.id] = record

            for raw in data.get("segments") or []:
                try:
                    record = _record_from_dict(Segment, raw)
                    record.id = int(record.id)
                    record.file_id = int(record.file_id)
                except (TypeError, AttributeError, ValueError):
                    logger.warning(f"Skipping malformed segment record: {raw!r}")
                    continue
                self._segments[record.id] = record

            # Counters are persisted; the max() only guards against a
            # hand-edited snapshot, it never lowers them.
            self._next_file_id = max(
                self._safe_int(data.get("nextFileId"), 1),
                max(self._files, default=0) + 1,
            )
            self._next_segment_id = max(
                self._safe_int(data.get("nextSegmentId"), 1),
                max(self._segments, default=0) + 1,
            )
            self._last_updated = str(data.get("lastUpdated") or self._last_updated)

            logger.info(
                f"Loaded metadata store with {len(self._files)} files and {len(self._segments)} segments"
            )

    def _set_aside_corrupt_snapshot(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        target = f"{self.db_path}.corrupt-{stamp}"
        try:
            os.replace(self.db_path, target)
            logger.warning(f"Moved unreadable snapshot to {target}")
        except OSError as exc:
            logger.warning(f"Could not move unreadable snapshot aside: {exc}")

    @staticmethod
    def _safe_int(value, default: int) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def _commit(
        self,
        files: dict[int, SourceFile],
        segments: dict[int, Segment],
        next_file_id: int,
        next_segment_id: int,
    ) -> None:
        """Write the snapshot, then swap it in. On failure memory is untouched."""
        last_updated = _utc_now_iso()
        snapshot = {
            "files": [asdict(f) for f in sorted(files.values(), key=lambda f: f.id)],
            "segments": [asdict(s) for s in sorted(segments.values(), key=lambda s: s.id)],
            "nextFileId": next_file_id,
            "nextSegmentId": next_segment_id,
            "lastUpdated": last_updated,
        }

        tmp_path = f"{self.db_path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.db_path)
        except OSError as exc:
            logger.error(f"Failed to save metadata snapshot: {exc}")
            raise StorageIOError(f"Failed to save metadata: {exc}") from exc

        self._files = files
        self._segments = segments
        self._next_file_id = next_file_id
        self._next_segment_id = next_segment_id
        self._last_updated = last_updated

    # ---------- FILES ----------
    def create_file(
        self,
        filename: str,
        original_name: str,
        path: str,
        size: int,
        mime_type: str,
        duration: int | None = None,
        bitrate: int | None = None,
    ) -> SourceFile:
        with self._lock:
            record = SourceFile(
                id=self._next_file_id,
                filename=filename,
                original_name=original_name,
                path=path,
                size=int(size),
                mime_type=mime_type,
                created_at=_utc_now_iso(),
                duration=duration,
                bitrate=bitrate,
            )
            files = dict(self._files)
            files[record.id] = record
            self._commit(files, self._segments, self._next_file_id + 1, self._next_segment_id)
            return replace(record)

    def get_file(self, file_id: int) -> SourceFile | None:
        with self._lock:
            record = self._files.get(int(file_id))
            return replace(record) if record is not None else None

    def list_files(self) -> list[SourceFile]:
        with self._lock:
            return [replace(f) for f in sorted(self._files.values(), key=lambda f: f.id)]

    def delete_file(self, file_id: int) -> tuple[SourceFile, list[Segment]] | None:
        """
        Remove a file record and all its segments in one snapshot write.

        Returns the removed records, or None if the id was already gone.
        """
        file_id = int(file_id)
        with self._lock:
            record = self._files.get(file_id)
            if record is None:
                return None

            files = {k: v for k, v in self._files.items() if k != file_id}
            removed = [s for s in self._segments.values() if s.file_id == file_id]
            segments = {k: v for k, v in self._segments.items() if v.file_id != file_id}
            self._commit(files, segments, self._next_file_id, self._next_segment_id)

            removed.sort(key=lambda s: s.sequence_index)
            return record, removed

    # ---------- SEGMENTS ----------
    def create_segment(
        self,
        file_id: int,
        filename: str,
        path: str,
        size: int,
        duration: int,
        start_time: int,
        end_time: int,
        sequence_index: int,
    ) -> Segment:
        file_id = int(file_id)
        with self._lock:
            if file_id not in self._files:
                raise NotFoundError(f"File {file_id} not found")

            record = Segment(
                id=self._next_segment_id,
                file_id=file_id,
                filename=filename,
                path=path,
                size=int(size),
                duration=int(duration),
                start_time=int(start_time),
                end_time=int(end_time),
                sequence_index=int(sequence_index),
                created_at=_utc_now_iso(),
            )
            segments = dict(self._segments)
            segments[record.id] = record
            self._commit(self._files, segments, self._next_file_id, self._next_segment_id + 1)
            return replace(record)

    def replace_segments(
        self,
        file_id: int,
        descriptors: Iterable[SegmentDescriptor],
    ) -> tuple[list[Segment], list[Segment]]:
        """
        Swap a file's segment set for ``descriptors`` in one snapshot write.

        Returns ``(created, replaced)``.
        """
        file_id = int(file_id)
        with self._lock:
            if file_id not in self._files:
                raise NotFoundError(f"File {file_id} not found")

            now = _utc_now_iso()
            next_segment_id = self._next_segment_id
            replaced = [s for s in self._segments.values() if s.file_id == file_id]
            segments = {k: v for k, v in self._segments.items() if v.file_id != file_id}

            created = []
            for d in sorted(descriptors, key=lambda d: d.sequence_index):
                record = Segment(
                    id=next_segment_id,
                    file_id=file_id,
                    filename=d.filename,
                    path=d.path,
                    size=int(d.size),
                    duration=int(d.duration),
                    start_time=int(d.start_time),
                    end_time=int(d.end_time),
                    sequence_index=int(d.sequence_index),
                    created_at=now,
                )
                segments[record.id] = record
                created.append(record)
                next_segment_id += 1

            self._commit(self._files, segments, self._next_file_id, next_segment_id)
            replaced.sort(key=lambda s: s.sequence_index)
            return [replace(s) for s in created], replaced

    def get_segment(self, segment_id: int) -> Segment | None:
        with self._lock:
            record = self._segments.get(int(segment_id))
            return replace(record) if record is not None else None

    def list_segments_by_file(self, file_id: int) -> list[Segment]:
        file_id = int(file_id)
        with self._lock:
            rows = [s for s in self._segments.values() if s.file_id == file_id]
            rows.sort(key=lambda s: (s.sequence_index, s.id))
            return [replace(s) for s in rows]

    def list_all_segments(self) -> list[Segment]:
        with self._lock:
            rows = sorted(self._segments.values(), key=lambda s: (s.file_id, s.sequence_index, s.id))
            return [replace(s) for s in rows]

    def delete_segment(self, segment_id: int) -> Segment | None:
        segment_id = int(segment_id)
        with self._lock:
            record = self._segments.get(segment_id)
            if record is None:
                return None

            segments = {k: v for k, v in self._segments.items() if k != segment_id}
            self._commit(self._files, segments, self._next_file_id, self._next_segment_id)
            return record

    # ---------- MAINTENANCE ----------
    def cleanup_orphans(self, exists: Callable[[str], bool] = os.path.exists) -> CleanupResult:
        """
        Drop records whose backing file is gone from disk, plus segments whose
        parent file record is gone.
        """
        with self._lock:
            files = {k: v for k, v in self._files.items() if exists(v.path)}
            segments = {
                k: v
                for k, v in self._segments.items()
                if v.file_id in files and exists(v.path)
            }

            result = CleanupResult(
                removed_files=len(self._files) - len(files),
                removed_segments=len(self._segments) - len(segments),
            )
            if result.removed_files or result.removed_segments:
                self._commit(files, segments, self._next_file_id, self._next_segment_id)
                logger.info(
                    f"Cleanup removed {result.removed_files} file record(s) "
                    f"and {result.removed_segments} segment record(s)"
                )
            return result

    def stats(self) -> dict:
        with self._lock:
            try:
                size = os.path.getsize(self.db_path)
            except OSError:
                size = 0
            return {
                "total_files": len(self._files),
                "total_segments": len(self._segments),
                "last_updated": self._last_updated,
                "database_size": _format_bytes(size),
            }

    def referenced_paths(self) -> set[str]:
        with self._lock:
            paths = {os.path.abspath(f.path) for f in self._files.values()}
            paths.update(os.path.abspath(s.path) for s in self._segments.values())
            return paths
