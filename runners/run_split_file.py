from pathlib import Path
import argparse
import sys
import uuid

from tqdm import tqdm

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend import config
from pipeline.errors import AppError
from pipeline.media_inspector import MediaInspector
from pipeline.models import NAMING_FORMATS, ChunkingRequest, ProgressEvent, ProgressUpdate
from pipeline.naming import base_name
from pipeline.segmenter import Segmenter


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Split a local audio file into fixed-length segments.")
    parser.add_argument("audio_path", help="Source MP3 file")
    parser.add_argument("--minutes", type=int, default=10, help="Segment length in minutes (1-60)")
    parser.add_argument("--naming", choices=NAMING_FORMATS, default="sequential")
    parser.add_argument("--prefix", default=None, help="Prefix for custom-prefix naming")
    parser.add_argument("--out", default=None, help="Output directory (default: <name>_segments)")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    source = Path(args.audio_path)
    if not source.is_file():
        print(f"File not found: {source}")
        return 1
    if not config.MIN_CHUNK_MINUTES <= args.minutes <= config.MAX_CHUNK_MINUTES:
        print(f"--minutes must be between {config.MIN_CHUNK_MINUTES} and {config.MAX_CHUNK_MINUTES}")
        return 1

    output_dir = Path(args.out) if args.out else source.with_name(f"{source.stem}_segments")

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
    request = ChunkingRequest(
        file_id=0,
        chunk_duration=args.minutes,
        naming_format=args.naming,
        custom_prefix=args.prefix,
    )

    bar = tqdm(total=100, unit="%", desc=source.name)

    def on_event(event: ProgressEvent) -> None:
        if isinstance(event, ProgressUpdate):
            bar.update(event.percent_complete - bar.n)
            bar.set_postfix(segment=f"{event.current_index}/{event.total_count}", speed=f"{event.speed_multiplier}x")

    try:
        descriptors = segmenter.split(
            str(source),
            request,
            str(output_dir),
            base_name(source.name),
            run_id=uuid.uuid4().hex[:12],
            on_event=on_event,
        )
    except (AppError, ValueError) as exc:
        bar.close()
        print(f"Split failed: {exc}")
        return 1
    bar.close()

    for d in descriptors:
        print(f"{d.filename}  [{d.start_time}s - {d.end_time}s)  {d.size} bytes")
    print(f"Wrote {len(descriptors)} segment(s) to {output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
