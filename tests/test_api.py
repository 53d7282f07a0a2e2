import io
import tempfile
import time
import unittest
import zipfile
from pathlib import Path
import sys

from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend.main import app
from backend.services.chunking_manager import ChunkingManager
from pipeline.models import MediaInfo
from pipeline.progress_channel import ProgressChannel
from pipeline.segmenter import Segmenter
from storage.metadata_store import MetadataStore

MP3_BYTES = b"ID3" + b"\xff\xfb\x90\x00" * 256


class FakeInspector:
    def __init__(self, duration_seconds: float = 1500.0):
        self.duration_seconds = duration_seconds

    def probe(self, path: str) -> MediaInfo:
        return MediaInfo(duration_seconds=self.duration_seconds, bitrate=128000)


class FakeSegmenter(Segmenter):
    def _extract_segment(self, source_path, start_seconds, duration_seconds, output_path, index) -> None:
        with open(output_path, "wb") as f:
            f.write(b"\xff\xfb" * 32)


class TestApi(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        tmp = self._tmp.name

        store = MetadataStore(db_path=f"{tmp}/meta.json")
        store.init_db()
        inspector = FakeInspector()
        channel = ProgressChannel()
        self.manager = ChunkingManager(
            store=store,
            inspector=inspector,  # type: ignore[arg-type]
            segmenter=FakeSegmenter(inspector=inspector),  # type: ignore[arg-type]
            channel=channel,
            upload_dir=f"{tmp}/uploads",
            segments_dir=f"{tmp}/segments",
        )
        app.state.store = store
        app.state.channel = channel
        app.state.chunking_manager = self.manager

        # No context manager: the lifespan would replace the services above.
        self.client = TestClient(app)

    def tearDown(self) -> None:
        self.manager.shutdown(timeout=5)
        self._tmp.cleanup()

    def _upload(self, name: str = "episode.mp3", content_type: str = "audio/mpeg", data: bytes = MP3_BYTES):
        return self.client.post("/api/upload", files={"file": (name, data, content_type)})

    def _wait_for_run(self, file_id: int) -> dict:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            res = self.client.get(f"/api/chunk/{file_id}/status")
            self.assertEqual(res.status_code, 200)
            body = res.json()
            if body["state"] != "running":
                return body
            time.sleep(0.02)
        self.fail("chunking run did not finish")

    def test_upload_returns_camel_case_record(self) -> None:
        res = self._upload()

        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["id"], 1)
        self.assertEqual(body["originalName"], "episode.mp3")
        self.assertEqual(body["duration"], 1500)
        self.assertEqual(body["mimeType"], "audio/mpeg")
        self.assertNotIn("path", body)

        files = self.client.get("/api/files").json()
        self.assertEqual([f["id"] for f in files], [1])

    def test_upload_rejects_non_mp3(self) -> None:
        res = self._upload(name="notes.txt", content_type="text/plain", data=b"hello")

        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["detail"]["code"], "VALIDATION_ERROR")

    def test_chunk_errors(self) -> None:
        res = self.client.post("/api/chunk/42", json={"chunkDuration": 10})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["detail"]["code"], "NOT_FOUND")

        self._upload()
        res = self.client.post("/api/chunk/1", json={"chunkDuration": 0})
        self.assertEqual(res.status_code, 422)

        res = self.client.post("/api/chunk/1", json={"chunkDuration": 5, "namingFormat": "custom-prefix"})
        self.assertEqual(res.status_code, 400)

        res = self.client.get("/api/chunk/1/status")
        self.assertEqual(res.status_code, 404)

    def test_chunk_list_download_and_delete(self) -> None:
        self._upload()

        res = self.client.post("/api/chunk/1", json={"chunkDuration": 10, "namingFormat": "timestamped"})
        self.assertEqual(res.status_code, 200)
        accepted = res.json()
        self.assertTrue(accepted["accepted"])
        self.assertEqual(accepted["fileId"], 1)

        status = self._wait_for_run(1)
        self.assertEqual(status["state"], "complete")
        self.assertEqual(status["runId"], accepted["runId"])
        self.assertEqual(status["segmentCount"], 3)

        segments = self.client.get("/api/segments/1").json()
        self.assertEqual(
            [s["filename"] for s in segments],
            ["001 - episode (00-10min).mp3", "002 - episode (10-20min).mp3", "003 - episode (20-25min).mp3"],
        )
        self.assertEqual([s["startTime"] for s in segments], [0, 600, 1200])
        self.assertEqual(len(self.client.get("/api/segments").json()), 3)

        res = self.client.get(f"/api/download/segment/{segments[0]['id']}")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.headers["content-type"], "audio/mpeg")
        self.assertEqual(res.content, b"\xff\xfb" * 32)

        res = self.client.get("/api/download/file/1/zip")
        self.assertEqual(res.status_code, 200)
        self.assertIn("episode_segments.zip", res.headers["content-disposition"])
        with zipfile.ZipFile(io.BytesIO(res.content)) as archive:
            self.assertEqual(len(archive.namelist()), 3)

        res = self.client.delete(f"/api/segments/{segments[0]['id']}")
        self.assertEqual(res.json(), {"deleted": True})
        res = self.client.delete(f"/api/segments/{segments[0]['id']}")
        self.assertEqual(res.json(), {"deleted": False})
        self.assertEqual(self.client.get(f"/api/download/segment/{segments[0]['id']}").status_code, 404)

        self.assertEqual(self.client.delete("/api/files/1").json(), {"deleted": True})
        self.assertEqual(self.client.delete("/api/files/1").json(), {"deleted": False})
        self.assertEqual(self.client.get("/api/segments/1").json(), [])
        self.assertEqual(self.client.get("/api/download/file/1/zip").status_code, 404)

    def test_database_stats_and_cleanup(self) -> None:
        self._upload()

        stats = self.client.get("/api/database/stats").json()
        self.assertEqual(stats["totalFiles"], 1)
        self.assertEqual(stats["totalSegments"], 0)
        self.assertIn("databaseSize", stats)

        res = self.client.post("/api/database/cleanup")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(
            res.json(),
            {"removedFiles": 0, "removedSegments": 0, "removedDirectories": 0, "removedUploads": 0},
        )

    def test_websocket_streams_run_events(self) -> None:
        self._upload()

        with self.client.websocket_connect("/ws?fileId=1") as websocket:
            res = self.client.post("/api/chunk/1", json={"chunkDuration": 10})
            self.assertEqual(res.status_code, 200)

            messages = []
            while True:
                message = websocket.receive_json()
                messages.append(message)
                if message["type"] in ("complete", "failed"):
                    break

        self.assertEqual([m["type"] for m in messages], ["progress", "progress", "progress", "complete"])
        self.assertEqual([m["data"]["percentComplete"] for m in messages[:3]], [33, 67, 100])
        complete = messages[-1]["data"]
        self.assertEqual(complete["runId"], res.json()["runId"])
        self.assertEqual([s["sequenceIndex"] for s in complete["segments"]], [1, 2, 3])
        self.assertNotIn("path", complete["segments"][0])


if __name__ == "__main__":
    unittest.main()
