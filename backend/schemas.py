from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from pipeline.models import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ErrorResponse(BaseModel):
    code: str
    message: str


class SourceFileResponse(CamelModel):
    id: int
    filename: str
    original_name: str
    size: int
    duration: int | None
    bitrate: int | None
    mime_type: str
    created_at: str


class SegmentResponse(CamelModel):
    id: int
    file_id: int
    filename: str
    size: int
    duration: int
    start_time: int
    end_time: int
    sequence_index: int
    created_at: str


class ChunkRequest(CamelModel):
    chunk_duration: int = Field(ge=1, le=60)
    naming_format: Literal["sequential", "timestamped", "custom-prefix"] = "sequential"
    custom_prefix: str | None = Field(default=None, max_length=100)


class ChunkAcceptedResponse(CamelModel):
    accepted: bool
    file_id: int
    run_id: str


class RunStatusResponse(CamelModel):
    file_id: int
    run_id: str
    state: Literal["running", "complete", "failed"]
    percent_complete: int
    current_index: int
    total_count: int | None
    segment_count: int | None
    message: str | None
    started_at: str | None
    finished_at: str | None


class DeleteResponse(CamelModel):
    deleted: bool


class DatabaseStatsResponse(CamelModel):
    total_files: int
    total_segments: int
    last_updated: str
    database_size: str


class CleanupResponse(CamelModel):
    removed_files: int
    removed_segments: int
    removed_directories: int
    removed_uploads: int
