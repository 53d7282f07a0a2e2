from pathlib import Path

from pipeline.models import (
    NAMING_CUSTOM_PREFIX,
    NAMING_FORMATS,
    NAMING_SEQUENTIAL,
    NAMING_TIMESTAMPED,
)


def base_name(original_name: str) -> str:
    """Original filename without directories or extension."""
    return Path(original_name.replace("\\", "/")).stem


def segment_filename(
    index: int,
    base: str,
    start_seconds: float,
    end_seconds: float,
    naming_format: str = NAMING_SEQUENTIAL,
    prefix: str | None = None,
) -> str:
    """
    Output filename for the 1-based segment ``index``.

    >>> segment_filename(1, "episode", 0, 600, "timestamped")
    '001 - episode (00-10min).mp3'
    """
    if naming_format not in NAMING_FORMATS:
        raise ValueError(f"Unknown naming format: {naming_format}")

    number = f"{index:03d}"

    if naming_format == NAMING_TIMESTAMPED:
        start_min = int(start_seconds // 60)
        end_min = int(end_seconds // 60)
        return f"{number} - {base} ({start_min:02d}-{end_min:02d}min).mp3"

    if naming_format == NAMING_CUSTOM_PREFIX:
        if not prefix:
            raise ValueError("custom-prefix naming requires a prefix")
        return f"{number} - {base} - {prefix}.mp3"

    return f"{number} - {base}.mp3"
