"""Tests for the render orchestrator and the render_scroll_video CLI."""

from __future__ import annotations

import io
import json
import logging
import shutil
import subprocess
import sys
import tempfile
import wave
from pathlib import Path
from typing import List

import pytest
from PIL import Image

import render_scroll_video
from domain.scroll_video import (
    CanvasGeometry,
    ErrorKind,
    FontDescriptor,
    ScrollPipelineError,
    ScrollValidationError,
    ScrollVideoSettings,
    WrappedLine,
)
from render_scroll_video import (
    EncoderConfig,
    RenderJob,
    compose_scroll_image,
    generate_scroll_video,
    load_font,
    run_external_tool,
)

SCRIPT_TEXT = (
    "Hello world.\n\n"
    "This is the second paragraph with more text to test the scrolling functionality."
)
BACKGROUND_RGB = (255, 255, 255)
TEXT_RGB = (34, 34, 34)
FFMPEG_AVAILABLE = bool(shutil.which("ffmpeg") and shutil.which("ffprobe"))


def build_settings(initial_delay: float = 6.0) -> ScrollVideoSettings:
    geometry = CanvasGeometry(
        width=320,
        viewport_height=180,
        padding_x=20,
        padding_y=20,
        font_size=16,
        line_spacing=1.5,
    )
    return ScrollVideoSettings(
        geometry=geometry,
        font=FontDescriptor(path=None, size=16),
        text_rgb=TEXT_RGB,
        background_rgb=BACKGROUND_RGB,
        initial_delay_seconds=initial_delay,
        speed_factor=0.7,
    )


class FakeEncoder:
    """Stand-in for subprocess.run that mimics ffprobe and both ffmpeg phases."""

    def __init__(self, probe_output: str = "10.0", fail_on: str | None = None) -> None:
        self.probe_output = probe_output
        self.fail_on = fail_on
        self.commands: List[List[str]] = []
        self.phases: List[str] = []

    def __call__(self, command, **kwargs) -> subprocess.CompletedProcess:
        command = list(command)
        self.commands.append(command)
        if Path(command[0]).name == "ffprobe":
            self.phases.append("probe")
            assert Path(command[-1]).exists()
            if self.fail_on == "probe":
                return subprocess.CompletedProcess(
                    command, 1, stdout="", stderr="probe exploded"
                )
            return subprocess.CompletedProcess(command, 0, stdout=self.probe_output, stderr="")

        phase = "mux" if "-map" in command else "scroll"
        self.phases.append(phase)
        for index, argument in enumerate(command):
            if argument == "-i":
                assert Path(command[index + 1]).exists()
        if phase == self.fail_on:
            return subprocess.CompletedProcess(
                command, 1, stdout="", stderr=f"{phase} exploded"
            )
        Path(command[-1]).write_bytes(f"{phase}-output".encode("utf-8"))
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    def command_for(self, phase: str) -> List[str]:
        return self.commands[self.phases.index(phase)]


@pytest.fixture
def scratch_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point tempfile at an isolated directory so leftovers are visible."""
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    return scratch


def install_encoder(monkeypatch: pytest.MonkeyPatch, encoder: FakeEncoder) -> FakeEncoder:
    monkeypatch.setattr(render_scroll_video.subprocess, "run", encoder)
    return encoder


def test_generate_returns_muxed_bytes(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    encoder = install_encoder(monkeypatch, FakeEncoder())

    video_bytes = generate_scroll_video(
        SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig()
    )

    assert video_bytes == b"mux-output"
    assert encoder.phases == ["probe", "scroll", "mux"]
    assert list(scratch_dir.iterdir()) == []


def test_scroll_command_crops_along_timeline(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    encoder = install_encoder(monkeypatch, FakeEncoder())

    generate_scroll_video(SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig())

    command = encoder.command_for("scroll")
    assert command[command.index("-loop") + 1] == "1"
    assert command[command.index("-t") + 1] == "10.000000"
    crop_filter = command[command.index("-vf") + 1]
    assert crop_filter.startswith("crop=w=320:h=180:x=0:y=if(lt(t\\,")
    assert "-an" in command


def test_mux_command_copies_video_and_trims(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    encoder = install_encoder(monkeypatch, FakeEncoder())

    generate_scroll_video(SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig())

    command = encoder.command_for("mux")
    assert command[command.index("-c:v") + 1] == "copy"
    assert command[command.index("-c:a") + 1] == "aac"
    assert "-shortest" in command


def test_encode_failure_stops_before_mux(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    encoder = install_encoder(monkeypatch, FakeEncoder(fail_on="scroll"))

    with pytest.raises(ScrollPipelineError) as error:
        generate_scroll_video(
            SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig()
        )

    assert error.value.kind is ErrorKind.ENCODE_FAILED
    assert "scroll exploded" in str(error.value)
    assert encoder.phases == ["probe", "scroll"]
    assert list(scratch_dir.iterdir()) == []


def test_mux_failure_cleans_up(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    install_encoder(monkeypatch, FakeEncoder(fail_on="mux"))

    with pytest.raises(ScrollPipelineError) as error:
        generate_scroll_video(
            SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig()
        )

    assert error.value.kind is ErrorKind.MUX_FAILED
    assert error.value.code == "render_scroll_video.ffmpeg.mux_failed"
    assert list(scratch_dir.iterdir()) == []


def test_empty_script_fails_before_any_tool_runs(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    encoder = install_encoder(monkeypatch, FakeEncoder())

    with pytest.raises(ScrollValidationError) as error:
        generate_scroll_video("", b"fake-audio", build_settings(), EncoderConfig())

    assert error.value.kind is ErrorKind.EMPTY_INPUT
    assert encoder.commands == []


def test_short_audio_fails_before_encoding(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    encoder = install_encoder(monkeypatch, FakeEncoder(probe_output="5.0\n"))

    with pytest.raises(ScrollValidationError) as error:
        generate_scroll_video(
            SCRIPT_TEXT, b"fake-audio", build_settings(initial_delay=6.0), EncoderConfig()
        )

    assert error.value.kind is ErrorKind.AUDIO_TOO_SHORT
    assert encoder.phases == ["probe"]
    assert list(scratch_dir.iterdir()) == []


@pytest.mark.parametrize(
    ("encoder", "audio_bytes"),
    [
        (FakeEncoder(probe_output="N/A"), b"fake-audio"),
        (FakeEncoder(probe_output="0.0"), b"fake-audio"),
        (FakeEncoder(fail_on="probe"), b"fake-audio"),
        (FakeEncoder(), b""),
    ],
    ids=["unreadable", "zero", "ffprobe-error", "empty-buffer"],
)
def test_audio_probe_failures_share_one_error_class(
    scratch_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    encoder: FakeEncoder,
    audio_bytes: bytes,
) -> None:
    install_encoder(monkeypatch, encoder)

    with pytest.raises(ScrollPipelineError) as error:
        generate_scroll_video(SCRIPT_TEXT, audio_bytes, build_settings(), EncoderConfig())

    assert error.value.kind is ErrorKind.AUDIO_PROBE_FAILED
    assert "scroll" not in encoder.phases
    assert list(scratch_dir.iterdir()) == []


def test_empty_audio_is_rejected_without_probing(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    encoder = install_encoder(monkeypatch, FakeEncoder())

    with pytest.raises(ScrollPipelineError) as error:
        generate_scroll_video(SCRIPT_TEXT, b"", build_settings(), EncoderConfig())

    assert error.value.kind is ErrorKind.AUDIO_PROBE_FAILED
    assert encoder.commands == []


def test_state_transitions_are_logged(
    scratch_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    install_encoder(monkeypatch, FakeEncoder())
    caplog.set_level(logging.INFO, logger="render_scroll_video")

    generate_scroll_video(SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig())

    transitions = [
        record.getMessage().split(" ", 2)[2]
        for record in caplog.records
        if record.getMessage().startswith("render_scroll_video.render.state")
    ]
    assert transitions == [
        "idle -> image_composed",
        "image_composed -> scroll_video_encoded",
        "scroll_video_encoded -> muxed",
        "muxed -> done",
    ]


def test_failed_state_is_logged(
    scratch_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    install_encoder(monkeypatch, FakeEncoder(fail_on="scroll"))
    caplog.set_level(logging.INFO, logger="render_scroll_video")

    with pytest.raises(ScrollPipelineError):
        generate_scroll_video(
            SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig()
        )

    assert any(
        record.getMessage().endswith("image_composed -> failed")
        for record in caplog.records
    )


def test_cleanup_failure_does_not_mask_error(
    scratch_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    install_encoder(monkeypatch, FakeEncoder(fail_on="mux"))

    def broken_rmtree(path, *args, **kwargs) -> None:
        raise OSError("device busy")

    monkeypatch.setattr(render_scroll_video.shutil, "rmtree", broken_rmtree)

    with pytest.raises(ScrollPipelineError) as error:
        generate_scroll_video(
            SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig()
        )

    assert error.value.kind is ErrorKind.MUX_FAILED
    assert "render_scroll_video.cleanup.failed" in caplog.text


def test_cleanup_failure_keeps_successful_result(
    scratch_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    install_encoder(monkeypatch, FakeEncoder())

    def broken_rmtree(path, *args, **kwargs) -> None:
        raise OSError("device busy")

    monkeypatch.setattr(render_scroll_video.shutil, "rmtree", broken_rmtree)

    video_bytes = generate_scroll_video(
        SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig()
    )

    assert video_bytes == b"mux-output"
    assert "render_scroll_video.cleanup.failed" in caplog.text


def test_workspace_write_failure_is_encode_failed(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    encoder = install_encoder(monkeypatch, FakeEncoder())
    original_write_bytes = Path.write_bytes

    def full_disk_write_bytes(self: Path, data: bytes) -> int:
        if self.name == "scroll.png":
            raise OSError(28, "No space left on device")
        return original_write_bytes(self, data)

    monkeypatch.setattr(Path, "write_bytes", full_disk_write_bytes)

    with pytest.raises(ScrollPipelineError) as error:
        generate_scroll_video(
            SCRIPT_TEXT, b"fake-audio", build_settings(), EncoderConfig()
        )

    assert error.value.kind is ErrorKind.ENCODE_FAILED
    assert "No space left on device" in str(error.value)
    assert encoder.phases == ["probe"]
    assert list(scratch_dir.iterdir()) == []


def test_workspace_creation_failure_is_typed(
    scratch_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def unavailable_mkdtemp(*args, **kwargs) -> str:
        raise OSError(13, "Permission denied")

    monkeypatch.setattr(render_scroll_video.tempfile, "mkdtemp", unavailable_mkdtemp)

    with pytest.raises(ScrollPipelineError) as error:
        with RenderJob():
            pass

    assert error.value.kind is ErrorKind.ENCODE_FAILED
    assert "Permission denied" in str(error.value)


def test_cli_reports_workspace_failure_with_code(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    script_path = tmp_path / "script.txt"
    script_path.write_text(SCRIPT_TEXT, encoding="utf-8")
    audio_path = tmp_path / "narration.wav"
    audio_path.write_bytes(b"fake-audio")

    def unavailable_mkdtemp(*args, **kwargs) -> str:
        raise OSError(28, "No space left on device")

    install_encoder(monkeypatch, FakeEncoder())
    monkeypatch.setattr(render_scroll_video.tempfile, "mkdtemp", unavailable_mkdtemp)
    monkeypatch.setattr(
        render_scroll_video.EncoderConfig,
        "resolve",
        classmethod(lambda cls, ffmpeg_path=None, ffprobe_path=None, fps=30: cls(fps=fps)),
    )
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "render_scroll_video.py",
            "--script-file",
            str(script_path),
            "--audio-file",
            str(audio_path),
            "--output-video-file",
            str(tmp_path / "out.mp4"),
        ],
    )

    assert render_scroll_video.main() == 1
    assert "render_scroll_video.ffprobe.failed" in caplog.text
    assert "unhandled_error" not in caplog.text


def test_render_job_removes_workspace_on_error(scratch_dir: Path) -> None:
    with pytest.raises(RuntimeError):
        with RenderJob() as job:
            job.image_path.write_bytes(b"png")
            raise RuntimeError("boom")

    assert list(scratch_dir.iterdir()) == []


def test_render_jobs_use_distinct_workspaces(scratch_dir: Path) -> None:
    with RenderJob() as first, RenderJob() as second:
        assert first.root_dir != second.root_dir
        assert first.root_dir.parent == scratch_dir


def test_missing_encoder_binary_is_reported() -> None:
    with pytest.raises(ScrollPipelineError) as error:
        run_external_tool(
            ["/nonexistent/bin/ffmpeg", "-version"], ErrorKind.ENCODE_FAILED
        )

    assert error.value.kind is ErrorKind.ENCODE_FAILED


def test_resolve_reports_missing_ffmpeg() -> None:
    with pytest.raises(ScrollPipelineError) as error:
        EncoderConfig.resolve(ffmpeg_path="definitely-not-ffmpeg-binary")

    assert error.value.kind is ErrorKind.ENCODER_UNAVAILABLE


def test_encoder_config_rejects_bad_fps() -> None:
    with pytest.raises(ScrollValidationError):
        EncoderConfig(fps=0)


def test_compose_scroll_image_matches_geometry() -> None:
    settings = build_settings()
    geometry = settings.geometry
    lines = (
        WrappedLine(index=0, text="Hello world."),
        WrappedLine(index=1, text=""),
        WrappedLine(index=2, text="Second line"),
    )

    png_bytes = compose_scroll_image(
        lines, geometry, load_font(settings.font), TEXT_RGB, BACKGROUND_RGB
    )

    image = Image.open(io.BytesIO(png_bytes))
    assert image.format == "PNG"
    assert image.size == (320, 3 * 24 + 2 * 20 + 180)
    assert image.getpixel((0, 0)) == BACKGROUND_RGB
    first_line_box = image.crop((20, 20, 300, 44))
    assert first_line_box.getcolors(maxcolors=100000) != [(280 * 24, BACKGROUND_RGB)]
    bottom_box = image.crop((0, 3 * 24 + 40, 320, image.size[1]))
    assert bottom_box.getcolors() == [(320 * 180, BACKGROUND_RGB)]


def test_missing_font_file_is_metrics_unavailable(tmp_path: Path) -> None:
    with pytest.raises(ScrollValidationError) as error:
        load_font(FontDescriptor(path=str(tmp_path / "missing.ttf"), size=16))

    assert error.value.kind is ErrorKind.METRICS_UNAVAILABLE


def write_wav(target_path: Path, duration_seconds: float) -> None:
    """Write a silent PCM WAV file."""
    sample_rate = 48000
    frame_count = max(1, int(round(duration_seconds * sample_rate)))
    silence = b"\x00\x00" * frame_count
    with wave.open(str(target_path), "wb") as wav_file:
        wav_file.setnchannels(1)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(silence)


def run_render_scroll_video(args: List[str], repo_root: Path) -> subprocess.CompletedProcess[str]:
    """Run render_scroll_video.py with the provided arguments."""
    return subprocess.run(
        [sys.executable, str(repo_root / "render_scroll_video.py"), *args],
        cwd=repo_root,
        text=True,
        capture_output=True,
        check=False,
    )


def build_cli_args(
    script_path: Path, audio_path: Path, output_path: Path, initial_delay: str
) -> List[str]:
    return [
        "--script-file",
        str(script_path),
        "--audio-file",
        str(audio_path),
        "--output-video-file",
        str(output_path),
        "--width",
        "320",
        "--height",
        "180",
        "--padding-x",
        "20",
        "--padding-y",
        "20",
        "--font-size",
        "16",
        "--initial-delay",
        initial_delay,
        "--fps",
        "10",
    ]


def probe_streams(video_path: Path) -> dict:
    result = subprocess.run(
        [
            "ffprobe",
            "-v",
            "error",
            "-show_entries",
            "format=duration:stream=codec_type",
            "-of",
            "json",
            str(video_path),
        ],
        capture_output=True,
        text=True,
        check=True,
    )
    return json.loads(result.stdout)


@pytest.mark.skipif(not FFMPEG_AVAILABLE, reason="ffmpeg and ffprobe are required")
def test_cli_renders_narrated_video(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[1]
    script_path = tmp_path / "script.txt"
    script_path.write_text(SCRIPT_TEXT, encoding="utf-8")
    audio_path = tmp_path / "narration.wav"
    write_wav(audio_path, 4.0)
    output_path = tmp_path / "out.mp4"

    result = run_render_scroll_video(
        build_cli_args(script_path, audio_path, output_path, "1.0"), repo_root
    )

    assert result.returncode == 0, result.stderr
    assert output_path.stat().st_size > 0
    metadata = probe_streams(output_path)
    codec_types = sorted(stream["codec_type"] for stream in metadata["streams"])
    assert codec_types == ["audio", "video"]
    assert float(metadata["format"]["duration"]) == pytest.approx(4.0, abs=0.3)


@pytest.mark.skipif(not FFMPEG_AVAILABLE, reason="ffmpeg and ffprobe are required")
def test_cli_emits_timeline(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[1]
    script_path = tmp_path / "script.txt"
    script_path.write_text(SCRIPT_TEXT, encoding="utf-8")
    audio_path = tmp_path / "narration.wav"
    write_wav(audio_path, 4.0)

    result = run_render_scroll_video(
        build_cli_args(script_path, audio_path, tmp_path / "out.mp4", "1.0")
        + ["--emit-timeline"],
        repo_root,
    )

    assert result.returncode == 0, result.stderr
    payload = json.loads(result.stdout)
    windows = payload["windows"]
    assert len(windows) == 2
    assert windows[0]["window_start"] == pytest.approx(1.0)
    assert windows[-1]["window_end"] == pytest.approx(4.0, abs=0.05)
    assert payload["crop_expression"].startswith("if(lt(t,")
    assert not (tmp_path / "out.mp4").exists()


@pytest.mark.skipif(not FFMPEG_AVAILABLE, reason="ffmpeg and ffprobe are required")
def test_cli_rejects_empty_script(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[1]
    script_path = tmp_path / "script.txt"
    script_path.write_text("", encoding="utf-8")
    audio_path = tmp_path / "narration.wav"
    write_wav(audio_path, 4.0)

    result = run_render_scroll_video(
        build_cli_args(script_path, audio_path, tmp_path / "out.mp4", "1.0"),
        repo_root,
    )

    assert result.returncode == 1
    assert "render_scroll_video.input.empty" in result.stderr


@pytest.mark.skipif(not FFMPEG_AVAILABLE, reason="ffmpeg and ffprobe are required")
def test_cli_rejects_audio_shorter_than_delay(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[1]
    script_path = tmp_path / "script.txt"
    script_path.write_text(SCRIPT_TEXT, encoding="utf-8")
    audio_path = tmp_path / "narration.wav"
    write_wav(audio_path, 4.0)

    result = run_render_scroll_video(
        build_cli_args(script_path, audio_path, tmp_path / "out.mp4", "6.0"),
        repo_root,
    )

    assert result.returncode == 1
    assert "render_scroll_video.timing.audio_too_short" in result.stderr
    assert not (tmp_path / "out.mp4").exists()
