import asyncio
import json
import subprocess
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

import media
from conftest import make_frame
from errors import InputError, TranscodeError
from media import (
    build_crop_command,
    crop_video_ffmpeg,
    decode_frame,
    parse_dimensions,
    parse_duration,
    probe_dimensions,
    representative_timestamps,
    run_tool,
    sample_frames,
)
from schemas import Rectangle


def _completed(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _tool(fn):
    """Wrap a sync `cmd -> CompletedProcess` function as a fake `run_tool`."""

    async def fake(cmd):
        return fn(cmd)

    return fake


class TestMediaInfo:
    """Stream info parsing."""

    def test_dimensions(self):
        out = json.dumps({"streams": [{"width": 1080, "height": 1920}]}).encode()
        assert parse_dimensions(out) == (1080, 1920)

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"streams": []},
            {"streams": [{"width": "N/A", "height": 1920}]},
            {"streams": [{"width": 0, "height": 1920}]},
        ],
    )
    def test_bad_dimensions_are_input_errors(self, payload):
        with pytest.raises(InputError) as exc:
            parse_dimensions(json.dumps(payload).encode())
        assert exc.value.stage == "probe"

    def test_invalid_json(self):
        with pytest.raises(InputError):
            parse_dimensions(b"not json")

    @pytest.mark.parametrize(
        "stream",
        [
            {"width": 1920, "height": 1080, "side_data_list": [{"rotation": -90}]},
            {"width": 1920, "height": 1080, "tags": {"rotate": "90"}},
            {"width": 1920, "height": 1080, "side_data_list": [{"rotation": 270}]},
        ],
    )
    def test_rotated_stream_reports_display_size(self, stream):
        assert parse_dimensions(json.dumps({"streams": [stream]}).encode()) == (1080, 1920)

    def test_upside_down_stream_keeps_size(self):
        stream = {"width": 1920, "height": 1080, "side_data_list": [{"rotation": 180}]}
        assert parse_dimensions(json.dumps({"streams": [stream]}).encode()) == (1920, 1080)

    def test_duration(self):
        assert parse_duration(b'{"format": {"duration": "12.5"}}') == 12.5

    def test_duration_fallback(self):
        assert parse_duration(b'{"format": {}}', default=10.0) == 10.0
        assert parse_duration(b'{"format": {"duration": "-3"}}', default=10.0) == 10.0
        assert parse_duration(b"garbage", default=7.0) == 7.0

    def test_dimensions_from_tool_output(self, monkeypatch):
        calls = []

        def fake_run(cmd):
            calls.append(cmd)
            return _completed(stdout=b'{"streams": [{"width": 720, "height": 1280}]}')

        monkeypatch.setattr(media, "run_tool", _tool(fake_run))
        assert asyncio.run(probe_dimensions(Path("in.mp4"))) == (720, 1280)
        assert any(arg.startswith("stream=width,height") for arg in calls[0])

    def test_dimensions_tool_failure(self, monkeypatch):
        monkeypatch.setattr(media, "run_tool", _tool(lambda cmd: _completed(returncode=1, stderr=b"moov atom not found")))
        with pytest.raises(InputError, match="moov atom"):
            asyncio.run(probe_dimensions(Path("in.mp4")))


class TestTimestamps:
    """Representative timestamp selection."""

    def test_count_and_window(self):
        ts = representative_timestamps(100.0, 5)
        assert len(ts) == 5
        assert all(5.0 < t < 95.0 for t in ts)
        assert ts == sorted(ts)

    def test_single_frame_is_middle(self):
        assert representative_timestamps(20.0, 1) == [10.0]

    def test_at_least_one(self):
        assert len(representative_timestamps(8.0, 0)) == 1


class TestFrames:
    """Frame decoding and sampling."""

    def test_decode_frame_converts_bgr_to_rgba(self):
        bgr = np.zeros((6, 4, 3), dtype=np.uint8)
        bgr[:, :] = (255, 0, 0)  # blue in OpenCV order
        ok, buf = cv2.imencode(".png", bgr)
        assert ok

        frame = decode_frame(buf.tobytes(), 1.5)
        assert (frame.width, frame.height) == (4, 6)
        assert frame.timestamp == 1.5
        assert tuple(frame.pixels[0, 0]) == (0, 0, 255, 255)
        assert frame.encoded == buf.tobytes()

    def test_decode_frame_rejects_garbage(self):
        with pytest.raises(ValueError):
            decode_frame(b"definitely not a png", 0.0)

    def test_sample_frames_skips_failed_timestamps(self, monkeypatch):
        async def fake_extract(video_path, t):
            if t == 2.0:
                raise RuntimeError("ffmpeg exited with 1")
            return make_frame(8, 8, timestamp=t)

        monkeypatch.setattr(media, "extract_frame", fake_extract)
        frames = asyncio.run(sample_frames(Path("in.mp4"), [1.0, 2.0, 3.0]))
        assert [f.timestamp for f in frames] == [1.0, 3.0]

    def test_sample_frames_zero_frames_is_fatal(self, monkeypatch):
        async def fake_extract(video_path, t):
            raise RuntimeError("ffmpeg exited with 1")

        monkeypatch.setattr(media, "extract_frame", fake_extract)
        with pytest.raises(InputError) as exc:
            asyncio.run(sample_frames(Path("in.mp4"), [1.0, 2.0]))
        assert exc.value.stage == "sampler"

    def test_extract_frame_cleans_up_on_failure(self, monkeypatch, temp_dir):
        monkeypatch.setattr(media, "run_tool", _tool(lambda cmd: _completed(returncode=1, stderr=b"boom")))
        with pytest.raises(RuntimeError):
            asyncio.run(media.extract_frame(Path("in.mp4"), 1.0))
        assert list(temp_dir.iterdir()) == []

    def test_extract_frame_reads_png(self, monkeypatch, temp_dir):
        ok, buf = cv2.imencode(".png", np.full((10, 12, 3), 90, dtype=np.uint8))

        def fake_run(cmd):
            Path(cmd[-1]).write_bytes(buf.tobytes())
            return _completed()

        monkeypatch.setattr(media, "run_tool", _tool(fake_run))
        frame = asyncio.run(media.extract_frame(Path("in.mp4"), 2.0))
        assert (frame.width, frame.height) == (12, 10)
        assert list(temp_dir.iterdir()) == []


class TestRunTool:
    """Real subprocesses through the asyncio runner."""

    def test_captures_output_and_exit_code(self):
        cmd = [sys.executable, "-c", "import sys; print('out'); sys.stderr.write('err'); sys.exit(3)"]
        result = asyncio.run(run_tool(cmd))
        assert result.returncode == 3
        assert result.stdout.strip() == b"out"
        assert result.stderr == b"err"

    def test_cancel_kills_the_process(self, tmp_path):
        marker = tmp_path / "late.txt"
        script = "import sys, time; time.sleep(0.5); open(sys.argv[1], 'w').write('late')"

        async def scenario():
            task = asyncio.create_task(run_tool([sys.executable, "-c", script, str(marker)]))
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await asyncio.sleep(1.0)

        asyncio.run(scenario())
        assert not marker.exists()

    def test_cancelled_sampling_leaves_no_frames(self, monkeypatch, temp_dir):
        # the fake "ffmpeg" writes its frame only after a delay
        script = "import sys, time; time.sleep(0.5); open(sys.argv[1], 'wb').write(b'png')"
        monkeypatch.setattr(
            media,
            "build_frame_command",
            lambda video_path, timestamp, frame_path: [sys.executable, "-c", script, str(frame_path)],
        )

        async def scenario():
            task = asyncio.create_task(sample_frames(Path("in.mp4"), [1.0, 2.0]))
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await asyncio.sleep(1.0)

        asyncio.run(scenario())
        assert list(temp_dir.iterdir()) == []


class TestCrop:
    """ffmpeg crop invocation."""

    def test_crop_command(self):
        cmd = build_crop_command(Path("in.mp4"), Path("out.mp4"), Rectangle(0, 130, 1080, 1660), start=1.5, duration=4)
        assert "crop=1080:1660:0:130" in cmd
        assert cmd.index("-ss") < cmd.index("-i") < cmd.index("-t")
        assert cmd[-1] == "out.mp4"
        assert "+faststart" in cmd

    def test_crop_command_without_trim(self):
        cmd = build_crop_command(Path("in.mp4"), Path("out.mp4"), Rectangle(0, 0, 10, 10))
        assert "-ss" not in cmd
        assert "-t" not in cmd

    def test_crop_failure_carries_diagnostics(self, monkeypatch):
        monkeypatch.setattr(media, "run_tool", _tool(lambda cmd: _completed(returncode=1, stderr=b"Invalid too big crop")))
        with pytest.raises(TranscodeError) as exc:
            asyncio.run(crop_video_ffmpeg(Path("in.mp4"), Path("out.mp4"), Rectangle(0, 0, 10, 10)))
        assert "Invalid too big crop" in exc.value.detail

    def test_crop_success(self, monkeypatch):
        monkeypatch.setattr(media, "run_tool", _tool(lambda cmd: _completed()))
        dst = asyncio.run(crop_video_ffmpeg(Path("in.mp4"), Path("out.mp4"), Rectangle(0, 0, 10, 10)))
        assert dst == Path("out.mp4")
