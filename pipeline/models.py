from dataclasses import asdict, dataclass, field
from typing import Any

NAMING_SEQUENTIAL = "sequential"
NAMING_TIMESTAMPED = "timestamped"
NAMING_CUSTOM_PREFIX = "custom-prefix"
NAMING_FORMATS = (NAMING_SEQUENTIAL, NAMING_TIMESTAMPED, NAMING_CUSTOM_PREFIX)


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def camel_dict(value: Any) -> dict[str, Any]:
    return {to_camel(k): v for k, v in asdict(value).items()}


@dataclass
class SourceFile:
    id: int
    filename: str
    original_name: str
    path: str
    size: int
    mime_type: str
    created_at: str
    duration: int | None = None
    bitrate: int | None = None


@dataclass
class Segment:
    id: int
    file_id: int
    filename: str
    path: str
    size: int
    duration: int
    start_time: int
    end_time: int
    sequence_index: int
    created_at: str


@dataclass
class SegmentDescriptor:
    """One materialized segment file, not yet committed to the store."""

    filename: str
    path: str
    size: int
    duration: int
    start_time: int
    end_time: int
    sequence_index: int


@dataclass
class MediaInfo:
    duration_seconds: float
    bitrate: int


@dataclass
class ChunkingRequest:
    file_id: int
    chunk_duration: int
    naming_format: str = NAMING_SEQUENTIAL
    custom_prefix: str | None = None


# --------------------
# Progress events
# --------------------


@dataclass
class ProgressUpdate:
    run_id: str
    file_id: int
    percent_complete: int
    current_index: int
    total_count: int
    estimated_seconds_remaining: int
    speed_multiplier: float

    type = "progress"


@dataclass
class RunComplete:
    run_id: str
    file_id: int
    segments: list[Segment | SegmentDescriptor] = field(default_factory=list)

    type = "complete"


@dataclass
class RunFailed:
    run_id: str
    file_id: int
    message: str

    type = "failed"


ProgressEvent = ProgressUpdate | RunComplete | RunFailed


def event_to_message(event: ProgressEvent) -> dict[str, Any]:
    """Wire shape pushed to WebSocket observers: ``{type, data}``."""
    data = camel_dict(event)
    if isinstance(event, RunComplete):
        # storage paths stay server-side
        data["segments"] = [
            {k: v for k, v in camel_dict(seg).items() if k != "path"} for seg in event.segments
        ]
    return {"type": event.type, "data": data}
