from pathlib import Path
import logging
import sys

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

load_dotenv(ROOT_DIR / ".env")

from backend import config
from backend.services.chunking_manager import ChunkingManager
from pipeline.media_inspector import MediaInspector
from pipeline.progress_channel import ProgressChannel
from pipeline.segmenter import Segmenter
from storage.metadata_store import MetadataStore


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL)

    store = MetadataStore(db_path=config.DB_PATH)
    store.init_db()

    inspector = MediaInspector(ffprobe_binary=config.FFPROBE_BINARY)
    manager = ChunkingManager(
        store=store,
        inspector=inspector,
        segmenter=Segmenter(inspector=inspector, ffmpeg_binary=config.FFMPEG_BINARY),
        channel=ProgressChannel(),
        upload_dir=config.UPLOAD_DIR,
        segments_dir=config.SEGMENTS_DIR,
    )

    report = manager.cleanup_orphans()
    stats = store.stats()

    print(
        f"Removed {report.removed_files} file record(s), {report.removed_segments} segment record(s), "
        f"{report.removed_directories} segment director(ies), {report.removed_uploads} stray upload(s)"
    )
    print(f"Store now holds {stats['total_files']} file(s) and {stats['total_segments']} segment(s)")


if __name__ == "__main__":
    main()
