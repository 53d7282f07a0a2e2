import logging
import math
import os
import subprocess
import time
from typing import Callable

from pipeline.errors import ProbeError, SegmentInvocationFailure
from pipeline.media_inspector import MediaInspector
from pipeline.models import (
    ChunkingRequest,
    ProgressEvent,
    ProgressUpdate,
    RunComplete,
    RunFailed,
    SegmentDescriptor,
)
from pipeline.naming import segment_filename

logger = logging.getLogger(__name__)

EventSink = Callable[[ProgressEvent], None]


def plan_segments(duration_seconds: float, segment_seconds: int) -> list[tuple[float, float]]:
    """
    Half-open ``(start, end)`` ranges covering ``[0, duration_seconds)``.

    Ranges are computed from the untruncated duration so the last segment
    ends exactly at the probed length.
    """
    if segment_seconds <= 0:
        raise ValueError("segment_seconds must be positive")
    if duration_seconds <= 0:
        return []

    total = math.ceil(duration_seconds / segment_seconds)
    ranges = []
    for i in range(total):
        start = float(i * segment_seconds)
        end = min(float((i + 1) * segment_seconds), float(duration_seconds))
        ranges.append((start, end))
    return ranges


class Segmenter:
    def __init__(
        self,
        inspector: MediaInspector,
        ffmpeg_binary: str = "ffmpeg",
        invocation_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inspector = inspector
        self.ffmpeg_binary = ffmpeg_binary
        self.invocation_timeout = invocation_timeout
        self.clock = clock

    def split(
        self,
        source_path: str,
        request: ChunkingRequest,
        output_dir: str,
        base_name: str,
        run_id: str,
        on_event: EventSink | None = None,
        announce_complete: bool = True,
    ) -> list[SegmentDescriptor]:
        """
        Split ``source_path`` into segments of ``request.chunk_duration``
        minutes, one ffmpeg invocation at a time.

        Emits a ``progress`` event after every finished segment. On any
        failure a ``failed`` event is emitted and the error re-raised; the
        caller owns whatever was already written to ``output_dir``.
        """
        emit = on_event or (lambda event: None)

        try:
            descriptors = self._split(source_path, request, output_dir, base_name, run_id, emit)
        except (ProbeError, SegmentInvocationFailure) as exc:
            logger.error(f"Run {run_id} for file {request.file_id} failed: {exc.message}")
            emit(RunFailed(run_id=run_id, file_id=request.file_id, message=exc.message))
            raise

        if announce_complete:
            emit(RunComplete(run_id=run_id, file_id=request.file_id, segments=list(descriptors)))
        return descriptors

    def _split(
        self,
        source_path: str,
        request: ChunkingRequest,
        output_dir: str,
        base_name: str,
        run_id: str,
        emit: EventSink,
    ) -> list[SegmentDescriptor]:
        info = self.inspector.probe(source_path)
        segment_seconds = int(request.chunk_duration) * 60
        ranges = plan_segments(info.duration_seconds, segment_seconds)
        if not ranges:
            raise SegmentInvocationFailure("Source has no audio duration to split")

        total = len(ranges)
        os.makedirs(output_dir, exist_ok=True)
        logger.info(
            f"Run {run_id}: splitting {source_path} ({info.duration_seconds:.1f}s) "
            f"into {total} segment(s) of {segment_seconds}s"
        )

        descriptors: list[SegmentDescriptor] = []
        started_at = self.clock()
        produced_seconds = 0.0

        for i, (start, end) in enumerate(ranges):
            index = i + 1
            length = end - start
            filename = segment_filename(
                index,
                base_name,
                start,
                end,
                request.naming_format,
                request.custom_prefix,
            )
            output_path = os.path.join(output_dir, filename)

            self._extract_segment(source_path, start, length, output_path, index)

            if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
                raise SegmentInvocationFailure(
                    f"Segment {index} output is missing or empty", sequence_index=index
                )
            size = os.path.getsize(output_path)

            start_whole = int(start)
            end_whole = int(end)
            descriptors.append(
                SegmentDescriptor(
                    filename=filename,
                    path=output_path,
                    size=size,
                    duration=end_whole - start_whole,
                    start_time=start_whole,
                    end_time=end_whole,
                    sequence_index=index,
                )
            )

            produced_seconds += length
            elapsed = max(self.clock() - started_at, 1e-6)
            remaining = total - index
            emit(
                ProgressUpdate(
                    run_id=run_id,
                    file_id=request.file_id,
                    percent_complete=round(100 * index / total),
                    current_index=index,
                    total_count=total,
                    estimated_seconds_remaining=int(elapsed / index * remaining),
                    speed_multiplier=round(produced_seconds / elapsed, 2),
                )
            )

        return descriptors

    def _extract_segment(
        self,
        source_path: str,
        start_seconds: float,
        duration_seconds: float,
        output_path: str,
        index: int,
    ) -> None:
        cmd = [
            self.ffmpeg_binary,
            "-loglevel",
            "error",
            "-ss",
            f"{start_seconds:.3f}",
            "-i",
            str(source_path),
            "-t",
            f"{duration_seconds:.3f}",
            "-acodec",
            "copy",
            "-y",
            output_path,
        ]

        logger.debug(f"Extracting segment {index}: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.invocation_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise SegmentInvocationFailure(
                f"ffmpeg timed out after {self.invocation_timeout:g}s on segment {index}",
                sequence_index=index,
            ) from exc
        except OSError as exc:
            raise SegmentInvocationFailure(
                f"Could not run {self.ffmpeg_binary}: {exc}", sequence_index=index
            ) from exc

        if result.returncode != 0:
            message = result.stderr.strip() or f"ffmpeg exited with code {result.returncode}"
            raise SegmentInvocationFailure(
                f"Failed to extract segment {index}: {message}", sequence_index=index
            )
