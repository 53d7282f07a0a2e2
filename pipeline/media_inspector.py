import json
import logging
import subprocess

from pipeline.errors import ProbeFailure, ProbeParseError, ProbeTimeout
from pipeline.models import MediaInfo

logger = logging.getLogger(__name__)

DEFAULT_BITRATE = 128000


class MediaInspector:
    def __init__(
        self,
        ffprobe_binary: str = "ffprobe",
        timeout_seconds: float = 15.0,
        default_bitrate: int = DEFAULT_BITRATE,
    ):
        self.ffprobe_binary = ffprobe_binary
        self.timeout_seconds = timeout_seconds
        self.default_bitrate = default_bitrate

    def probe(self, path: str) -> MediaInfo:
        cmd = [
            self.ffprobe_binary,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]

        logger.debug(f"Probing media: {' '.join(cmd)}")

        # subprocess.run kills the child before raising TimeoutExpired
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            logger.warning(f"ffprobe timed out after {self.timeout_seconds}s on {path}")
            raise ProbeTimeout(
                f"Metadata extraction timed out after {self.timeout_seconds:g}s", path
            ) from exc
        except OSError as exc:
            raise ProbeFailure(f"Could not run {self.ffprobe_binary}: {exc}", path) from exc

        if result.returncode != 0:
            message = result.stderr.strip() or f"ffprobe exited with code {result.returncode}"
            logger.error(f"ffprobe failed on {path}: {message}")
            raise ProbeFailure(message, path)

        return self.parse_output(result.stdout, path)

    def parse_output(self, stdout: str, path: str) -> MediaInfo:
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ProbeParseError("ffprobe output is not valid JSON", path) from exc

        if not isinstance(data, dict):
            raise ProbeParseError("ffprobe output is not a JSON object", path)

        fmt = data.get("format") or {}
        if not isinstance(fmt, dict):
            raise ProbeParseError("ffprobe output has a malformed format section", path)
        raw_duration = fmt.get("duration")
        if raw_duration in (None, "", "N/A"):
            raise ProbeParseError("ffprobe output has no duration", path)

        try:
            duration = float(raw_duration)
        except (TypeError, ValueError) as exc:
            raise ProbeParseError(f"Unreadable duration {raw_duration!r}", path) from exc

        streams = data.get("streams")
        if not isinstance(streams, list):
            streams = []
        audio_stream = next(
            (s for s in streams if isinstance(s, dict) and s.get("codec_type") == "audio"),
            None,
        )

        bitrate = self._parse_bitrate((audio_stream or {}).get("bit_rate"))
        if bitrate is None:
            bitrate = self._parse_bitrate(fmt.get("bit_rate"))
        if bitrate is None:
            bitrate = self.default_bitrate

        return MediaInfo(duration_seconds=duration, bitrate=bitrate)

    @staticmethod
    def _parse_bitrate(value) -> int | None:
        try:
            bitrate = int(value)
        except (TypeError, ValueError):
            return None
        return bitrate if bitrate > 0 else None
