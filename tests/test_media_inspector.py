import json
import subprocess
import unittest
from pathlib import Path
from unittest.mock import patch
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pipeline.errors import ProbeFailure, ProbeParseError, ProbeTimeout
from pipeline.media_inspector import DEFAULT_BITRATE, MediaInspector


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["ffprobe"], returncode=returncode, stdout=stdout, stderr=stderr)


class TestMediaInspector(unittest.TestCase):
    def setUp(self) -> None:
        self.inspector = MediaInspector(ffprobe_binary="ffprobe", timeout_seconds=15.0)

    def test_reads_duration_and_audio_bitrate(self) -> None:
        payload = {
            "streams": [{"codec_type": "audio", "bit_rate": "192000"}],
            "format": {"duration": "1500.250000", "bit_rate": "193000"},
        }
        with patch("pipeline.media_inspector.subprocess.run", return_value=_completed(json.dumps(payload))) as run:
            info = self.inspector.probe("/data/episode.mp3")

        self.assertAlmostEqual(info.duration_seconds, 1500.25)
        self.assertEqual(info.bitrate, 192000)
        self.assertEqual(run.call_args.kwargs["timeout"], 15.0)
        self.assertEqual(run.call_args.args[0][-1], "/data/episode.mp3")

    def test_falls_back_to_format_bitrate_then_default(self) -> None:
        with_format = {"streams": [{"codec_type": "audio"}], "format": {"duration": "60", "bit_rate": "96000"}}
        without = {"streams": [], "format": {"duration": "60"}}

        with patch("pipeline.media_inspector.subprocess.run", return_value=_completed(json.dumps(with_format))):
            self.assertEqual(self.inspector.probe("a.mp3").bitrate, 96000)
        with patch("pipeline.media_inspector.subprocess.run", return_value=_completed(json.dumps(without))):
            self.assertEqual(self.inspector.probe("a.mp3").bitrate, DEFAULT_BITRATE)

    def test_timeout_raises_probe_timeout(self) -> None:
        error = subprocess.TimeoutExpired(cmd="ffprobe", timeout=15.0)
        with patch("pipeline.media_inspector.subprocess.run", side_effect=error):
            with self.assertRaises(ProbeTimeout) as ctx:
                self.inspector.probe("/data/slow.mp3")

        self.assertEqual(ctx.exception.path, "/data/slow.mp3")
        self.assertEqual(ctx.exception.code, "PROBE_TIMEOUT")

    def test_non_zero_exit_raises_probe_failure(self) -> None:
        result = _completed(returncode=1, stderr="Invalid data found when processing input")
        with patch("pipeline.media_inspector.subprocess.run", return_value=result):
            with self.assertRaises(ProbeFailure) as ctx:
                self.inspector.probe("/data/broken.mp3")

        self.assertIn("Invalid data", ctx.exception.message)
        self.assertIn("/data/broken.mp3", ctx.exception.message)

    def test_missing_binary_raises_probe_failure(self) -> None:
        with patch("pipeline.media_inspector.subprocess.run", side_effect=FileNotFoundError("ffprobe")):
            with self.assertRaises(ProbeFailure):
                self.inspector.probe("/data/episode.mp3")

    def test_missing_duration_raises_parse_error(self) -> None:
        payload = {"streams": [], "format": {"format_name": "mp3"}}
        with patch("pipeline.media_inspector.subprocess.run", return_value=_completed(json.dumps(payload))):
            with self.assertRaises(ProbeParseError):
                self.inspector.probe("/data/episode.mp3")

    def test_garbage_output_raises_parse_error(self) -> None:
        with patch("pipeline.media_inspector.subprocess.run", return_value=_completed("duration=12.0")):
            with self.assertRaises(ProbeParseError):
                self.inspector.probe("/data/episode.mp3")

        for stdout in ("[]", "null", '"text"', '{"format": []}', '{"format": {"duration": [1]}}'):
            with self.assertRaises(ProbeParseError):
                self.inspector.parse_output(stdout, "/data/episode.mp3")

    def test_tolerates_malformed_streams(self) -> None:
        payload = {"streams": [5, None, {"codec_type": "audio", "bit_rate": "64000"}], "format": {"duration": "30"}}
        self.assertEqual(self.inspector.parse_output(json.dumps(payload), "a.mp3").bitrate, 64000)

        payload = {"streams": {"codec_type": "audio"}, "format": {"duration": "30", "bit_rate": "96000"}}
        self.assertEqual(self.inspector.parse_output(json.dumps(payload), "a.mp3").bitrate, 96000)


if __name__ == "__main__":
    unittest.main()
