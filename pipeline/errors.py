"""Error taxonomy shared by the pipeline, the store and the API layer."""


class AppError(Exception):
    """Base error. ``code`` is a short machine-checkable category."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(AppError):
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    code = "NOT_FOUND"


class ChunkingConflictError(AppError):
    code = "CHUNKING_RUNNING"


class ProbeError(AppError):
    """ffprobe misbehaved while inspecting ``path``."""

    code = "PROBE_ERROR"

    def __init__(self, message: str, path: str):
        self.path = path
        super().__init__(f"{message} ({path})")


class ProbeTimeout(ProbeError):
    code = "PROBE_TIMEOUT"


class ProbeFailure(ProbeError):
    code = "PROBE_FAILED"


class ProbeParseError(ProbeError):
    code = "PROBE_PARSE_ERROR"


class SegmentInvocationFailure(AppError):
    code = "SEGMENT_FAILED"

    def __init__(self, message: str, sequence_index: int | None = None):
        self.sequence_index = sequence_index
        super().__init__(message)


class StorageIOError(AppError):
    code = "STORAGE_IO_ERROR"
