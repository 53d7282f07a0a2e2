import os
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = Path(os.getenv("SEGMENTER_DATA_DIR", str(ROOT_DIR / "data")))

DB_PATH = os.getenv("SEGMENTER_DB_PATH", str(DATA_DIR / "metadata.json"))
UPLOAD_DIR = os.getenv("SEGMENTER_UPLOAD_DIR", str(DATA_DIR / "uploads"))
SEGMENTS_DIR = os.getenv("SEGMENTER_SEGMENTS_DIR", str(DATA_DIR / "segments"))

FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
FFPROBE_BINARY = os.getenv("FFPROBE_BINARY", "ffprobe")

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(500 * 1024 * 1024)))
ALLOWED_EXTENSIONS = (".mp3",)
ALLOWED_MIME_TYPES = ("audio/mpeg", "audio/mp3")

PROBE_TIMEOUT_SECONDS = float(os.getenv("PROBE_TIMEOUT_SECONDS", "15"))
SEGMENT_TIMEOUT_SECONDS = float(os.getenv("SEGMENT_TIMEOUT_SECONDS", "60"))
DEFAULT_BITRATE = int(os.getenv("DEFAULT_BITRATE", "128000"))

MIN_CHUNK_MINUTES = 1
MAX_CHUNK_MINUTES = 60

CLEANUP_ON_STARTUP = os.getenv("CLEANUP_ON_STARTUP", "true").strip().lower() in ("1", "true", "yes")
SHUTDOWN_JOIN_SECONDS = 5.0
WS_QUEUE_SIZE = int(os.getenv("WS_QUEUE_SIZE", "256"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
