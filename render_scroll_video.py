#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1"
# ]
# ///
"""Render a script into a scrolling video synchronized to its narration."""

from __future__ import annotations

import argparse
import io
import json
import logging
import math
import shutil
import subprocess
import sys
import tempfile
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from domain.script_layout import TextMeasurer, layout
from domain.scroll_video import (
    CanvasGeometry,
    DEFAULT_BACKGROUND_COLOR,
    DEFAULT_FONT_SIZE,
    DEFAULT_INITIAL_DELAY_SECONDS,
    DEFAULT_LINE_SPACING,
    DEFAULT_PADDING_X,
    DEFAULT_PADDING_Y,
    DEFAULT_SPEED_FACTOR,
    DEFAULT_TEXT_COLOR,
    DEFAULT_VIEWPORT_HEIGHT,
    DEFAULT_WIDTH,
    ErrorKind,
    FontDescriptor,
    ScrollPipelineError,
    ScrollValidationError,
    ScrollVideoSettings,
    Section,
    WrappedLine,
    parse_hex_color,
)
from service.scroll_plan import (
    ScrollTimeline,
    allocate,
    build_crop_expression,
    escape_filter_expression,
    synthesize,
)

LOGGER = logging.getLogger("render_scroll_video")

RENDER_JOB_PREFIX = "render_scroll_video_"
DEFAULT_FPS = 30
H264_CODEC = "libx264"
H264_PRESET = "ultrafast"
H264_PIXEL_FORMAT = "yuv420p"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
OUTPUT_EXTENSION = ".mp4"


class RenderState(str, Enum):
    """Stages of a single render invocation."""

    IDLE = "idle"
    IMAGE_COMPOSED = "image_composed"
    SCROLL_VIDEO_ENCODED = "scroll_video_encoded"
    MUXED = "muxed"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class EncoderConfig:
    """Locations of the external tools and the encoding settings."""

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    fps: int = DEFAULT_FPS
    video_codec: str = H264_CODEC
    video_preset: str = H264_PRESET
    pixel_format: str = H264_PIXEL_FORMAT
    audio_codec: str = AUDIO_CODEC
    audio_bitrate: str = AUDIO_BITRATE

    def __post_init__(self) -> None:
        if self.fps <= 0:
            raise ScrollValidationError(ErrorKind.INVALID_CONFIG, "fps must be positive")
        for field_name in (
            "ffmpeg_path",
            "ffprobe_path",
            "video_codec",
            "video_preset",
            "pixel_format",
            "audio_codec",
            "audio_bitrate",
        ):
            if not getattr(self, field_name).strip():
                raise ScrollValidationError(
                    ErrorKind.INVALID_CONFIG, f"{field_name} must be non-empty"
                )

    @classmethod
    def resolve(
        cls,
        ffmpeg_path: str | None = None,
        ffprobe_path: str | None = None,
        fps: int = DEFAULT_FPS,
    ) -> "EncoderConfig":
        """Locate ffmpeg and ffprobe, preferring explicit paths over PATH."""
        resolved_ffmpeg = shutil.which(ffmpeg_path or "ffmpeg")
        if not resolved_ffmpeg:
            raise ScrollPipelineError(
                ErrorKind.ENCODER_UNAVAILABLE, f"ffmpeg not found: {ffmpeg_path or 'PATH'}"
            )
        resolved_ffprobe = shutil.which(ffprobe_path or "ffprobe")
        if not resolved_ffprobe:
            raise ScrollPipelineError(
                ErrorKind.ENCODER_UNAVAILABLE,
                f"ffprobe not found: {ffprobe_path or 'PATH'}",
            )
        return cls(ffmpeg_path=resolved_ffmpeg, ffprobe_path=resolved_ffprobe, fps=fps)


class RenderJob:
    """Scratch directory holding the artifacts of one render.

    The directory is removed when the context exits, whatever the outcome.
    A failed removal is logged and never replaces the primary result.
    """

    def __init__(
        self,
        prefix: str = RENDER_JOB_PREFIX,
        failure_kind: ErrorKind = ErrorKind.ENCODE_FAILED,
    ) -> None:
        self.job_id = uuid.uuid4().hex
        self.prefix = prefix
        self.failure_kind = failure_kind
        self.root_dir: Path | None = None

    def __enter__(self) -> "RenderJob":
        try:
            self.root_dir = Path(
                tempfile.mkdtemp(prefix=f"{self.prefix}{self.job_id}_")
            )
        except OSError as exc:
            raise ScrollPipelineError(
                self.failure_kind,
                f"could not create render workspace: {str(exc).strip()}",
            ) from exc
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.cleanup()

    def artifact_path(self, name: str) -> Path:
        if self.root_dir is None:
            raise ScrollPipelineError(
                self.failure_kind, "render job workspace is not open"
            )
        return self.root_dir / name

    def write_artifact(self, target_path: Path, payload: bytes) -> None:
        """Write an input artifact into the workspace."""
        try:
            target_path.write_bytes(payload)
        except OSError as exc:
            raise ScrollPipelineError(
                self.failure_kind,
                f"failed to write {target_path.name}: {str(exc).strip()}",
            ) from exc

    @property
    def image_path(self) -> Path:
        return self.artifact_path("scroll.png")

    @property
    def audio_path(self) -> Path:
        return self.artifact_path("narration.audio")

    @property
    def video_path(self) -> Path:
        return self.artifact_path("scroll.mp4")

    @property
    def final_path(self) -> Path:
        return self.artifact_path("final.mp4")

    def cleanup(self) -> bool:
        """Remove the workspace; return False when removal failed."""
        if self.root_dir is None:
            return True
        try:
            shutil.rmtree(self.root_dir)
        except OSError as exc:
            LOGGER.warning(
                "%s: could not remove %s (%s)",
                ErrorKind.RESOURCE_CLEANUP_FAILED.value,
                self.root_dir,
                str(exc).strip(),
            )
            return False
        self.root_dir = None
        return True


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def load_font(descriptor: FontDescriptor) -> ImageFont.FreeTypeFont:
    """Load the font used for both measuring and drawing."""
    try:
        if descriptor.path is None:
            return ImageFont.load_default(size=descriptor.size)
        return ImageFont.truetype(
            descriptor.path,
            size=descriptor.size,
            layout_engine=ImageFont.Layout.BASIC,
        )
    except Exception as exc:
        raise ScrollValidationError(
            ErrorKind.METRICS_UNAVAILABLE,
            f"failed to load font {descriptor.path or 'default'} "
            f"at size {descriptor.size}: {str(exc).strip()}",
        ) from exc


def measure_text_width(
    draw_context: ImageDraw.ImageDraw,
    text_value: str,
    font: ImageFont.FreeTypeFont,
) -> float:
    """Measure text width using font metrics."""
    if not text_value:
        return 0.0
    try:
        return float(draw_context.textlength(text_value, font=font))
    except Exception:
        bbox = draw_context.textbbox((0, 0), text_value, font=font)
        return float(bbox[2] - bbox[0])


def build_text_measurer(font: ImageFont.FreeTypeFont) -> TextMeasurer:
    """Bind a font to a width measuring function."""
    draw_context = ImageDraw.Draw(Image.new("RGB", (1, 1)))

    def measure(text_value: str) -> float:
        return measure_text_width(draw_context, text_value, font)

    return measure


def compose_scroll_image(
    lines: Sequence[WrappedLine],
    geometry: CanvasGeometry,
    font: ImageFont.FreeTypeFont,
    text_rgb: Tuple[int, int, int],
    background_rgb: Tuple[int, int, int],
) -> bytes:
    """Draw every line onto one tall image and return it as PNG bytes."""
    image_height = int(math.ceil(geometry.total_image_height(len(lines))))
    image = Image.new("RGB", (geometry.width, image_height), color=background_rgb)
    draw_context = ImageDraw.Draw(image)
    for line in lines:
        if line.is_blank:
            continue
        top = geometry.padding_y + line.index * geometry.line_height
        draw_context.text(
            (geometry.padding_x, top), line.text, font=font, fill=text_rgb, anchor="la"
        )
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def run_external_tool(command: Sequence[str], kind: ErrorKind) -> str:
    """Run ffmpeg or ffprobe, raising a pipeline error with its stderr on failure."""
    LOGGER.debug("render_scroll_video.exec: %s", " ".join(command))
    try:
        result = subprocess.run(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except OSError as exc:
        raise ScrollPipelineError(
            kind, f"{command[0]} could not be started: {str(exc).strip()}"
        ) from exc
    if result.returncode != 0:
        stderr_text = (result.stderr or "").strip()
        raise ScrollPipelineError(
            kind,
            f"{command[0]} failed with exit code {result.returncode}. {stderr_text}",
        )
    return result.stdout or ""


def build_probe_command(config: EncoderConfig, audio_path: Path) -> list[str]:
    return [
        config.ffprobe_path,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(audio_path),
    ]


def probe_audio_duration(audio_bytes: bytes, config: EncoderConfig) -> float:
    """Return the narration duration in seconds."""
    if not audio_bytes:
        raise ScrollPipelineError(ErrorKind.AUDIO_PROBE_FAILED, "audio buffer is empty")
    with RenderJob(
        prefix=f"{RENDER_JOB_PREFIX}probe_", failure_kind=ErrorKind.AUDIO_PROBE_FAILED
    ) as job:
        job.write_artifact(job.audio_path, audio_bytes)
        output = run_external_tool(
            build_probe_command(config, job.audio_path), ErrorKind.AUDIO_PROBE_FAILED
        )
    try:
        duration_seconds = float(output.strip())
    except ValueError as exc:
        raise ScrollPipelineError(
            ErrorKind.AUDIO_PROBE_FAILED,
            f"audio duration unavailable: {output.strip()!r}",
        ) from exc
    if not math.isfinite(duration_seconds) or duration_seconds <= 0:
        raise ScrollPipelineError(
            ErrorKind.AUDIO_PROBE_FAILED, f"audio duration invalid: {duration_seconds}"
        )
    LOGGER.info("render_scroll_video.audio.duration: %.3fs", duration_seconds)
    return duration_seconds


def build_scroll_command(
    config: EncoderConfig,
    geometry: CanvasGeometry,
    timeline: ScrollTimeline,
    image_path: Path,
    video_path: Path,
) -> list[str]:
    """Build the ffmpeg call that crops the looped tall image along the timeline."""
    y_expression = escape_filter_expression(build_crop_expression(timeline))
    crop_filter = (
        f"crop=w={geometry.width}:h={geometry.viewport_height}:x=0:y={y_expression}"
    )
    return [
        config.ffmpeg_path,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-loop",
        "1",
        "-framerate",
        str(config.fps),
        "-i",
        str(image_path),
        "-vf",
        crop_filter,
        "-t",
        f"{timeline.audio_duration:.6f}",
        "-r",
        str(config.fps),
        "-c:v",
        config.video_codec,
        "-preset",
        config.video_preset,
        "-pix_fmt",
        config.pixel_format,
        "-an",
        str(video_path),
    ]


def build_mux_command(
    config: EncoderConfig, video_path: Path, audio_path: Path, output_path: Path
) -> list[str]:
    """Build the ffmpeg call that copies video and re-encodes the narration."""
    return [
        config.ffmpeg_path,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        str(video_path),
        "-i",
        str(audio_path),
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
        "-c:v",
        "copy",
        "-c:a",
        config.audio_codec,
        "-b:a",
        config.audio_bitrate,
        "-shortest",
        "-movflags",
        "+faststart",
        str(output_path),
    ]


class ScrollVideoRenderer:
    """Drives ffmpeg through the scroll-encode and mux phases."""

    def __init__(
        self,
        config: EncoderConfig,
        font: ImageFont.FreeTypeFont,
        text_rgb: Tuple[int, int, int],
        background_rgb: Tuple[int, int, int],
    ) -> None:
        self.config = config
        self.font = font
        self.text_rgb = text_rgb
        self.background_rgb = background_rgb

    def render(
        self,
        lines: Sequence[WrappedLine],
        timeline: ScrollTimeline,
        audio_bytes: bytes,
        geometry: CanvasGeometry,
    ) -> bytes:
        """Render the muxed video and return its bytes."""
        with RenderJob() as job:
            state = RenderState.IDLE
            try:
                image_bytes = compose_scroll_image(
                    lines, geometry, self.font, self.text_rgb, self.background_rgb
                )
                job.write_artifact(job.image_path, image_bytes)
                job.write_artifact(job.audio_path, audio_bytes)
                state = self._advance(job, state, RenderState.IMAGE_COMPOSED)

                run_external_tool(
                    build_scroll_command(
                        self.config, geometry, timeline, job.image_path, job.video_path
                    ),
                    ErrorKind.ENCODE_FAILED,
                )
                state = self._advance(job, state, RenderState.SCROLL_VIDEO_ENCODED)

                run_external_tool(
                    build_mux_command(
                        self.config, job.video_path, job.audio_path, job.final_path
                    ),
                    ErrorKind.MUX_FAILED,
                )
                state = self._advance(job, state, RenderState.MUXED)

                try:
                    video_bytes = job.final_path.read_bytes()
                except OSError as exc:
                    raise ScrollPipelineError(
                        ErrorKind.MUX_FAILED, f"muxed output unreadable: {exc}"
                    ) from exc
                self._advance(job, state, RenderState.DONE)
                return video_bytes
            except Exception:
                self._advance(job, state, RenderState.FAILED)
                raise

    @staticmethod
    def _advance(job: RenderJob, current: RenderState, target: RenderState) -> RenderState:
        LOGGER.info(
            "render_scroll_video.render.state: %s %s -> %s",
            job.job_id,
            current.value,
            target.value,
        )
        return target


def build_timeline(
    lines: Sequence[WrappedLine],
    sections: Sequence[Section],
    audio_duration: float,
    settings: ScrollVideoSettings,
) -> ScrollTimeline:
    """Allocate section budgets and synthesize the scroll timeline."""
    budgets = allocate(
        sections,
        audio_duration,
        settings.initial_delay_seconds,
        settings.speed_factor,
    )
    for budget in budgets:
        LOGGER.info(
            "render_scroll_video.timing.section: lines %d-%d complexity %.2f -> %.3fs x%.2f",
            budget.section.start_line,
            budget.section.end_line,
            budget.section.complexity,
            budget.duration,
            budget.speed_factor,
        )
    return synthesize(
        lines,
        budgets,
        settings.geometry,
        settings.initial_delay_seconds,
        audio_duration,
    )


def plan_scroll_video(
    script: str,
    audio_bytes: bytes,
    settings: ScrollVideoSettings,
    config: EncoderConfig,
    font: ImageFont.FreeTypeFont,
) -> Tuple[Tuple[WrappedLine, ...], ScrollTimeline]:
    """Lay out the script and time it against the narration."""
    lines, sections = layout(script, settings.geometry, build_text_measurer(font))
    if not sections:
        raise ScrollValidationError(ErrorKind.EMPTY_INPUT, "script contains no text")
    audio_duration = probe_audio_duration(audio_bytes, config)
    return lines, build_timeline(lines, sections, audio_duration, settings)


def generate_scroll_video(
    script: str,
    audio_bytes: bytes,
    settings: ScrollVideoSettings,
    config: EncoderConfig,
) -> bytes:
    """Produce the final narrated scroll video for a script."""
    font = load_font(settings.font)
    lines, timeline = plan_scroll_video(script, audio_bytes, settings, config, font)
    renderer = ScrollVideoRenderer(
        config, font, settings.text_rgb, settings.background_rgb
    )
    return renderer.render(lines, timeline, audio_bytes, settings.geometry)


@dataclass(frozen=True)
class RenderRequest:
    """Parsed CLI request and runtime options."""

    script_text: str
    audio_bytes: bytes
    output_video_file: str
    settings: ScrollVideoSettings
    encoder: EncoderConfig
    emit_timeline: bool


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise ScrollValidationError(
            ErrorKind.INPUT_FILE, f"script file not found: {file_path}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise ScrollValidationError(
            ErrorKind.INPUT_FILE,
            f"script file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc


def read_audio_bytes(file_path: str) -> bytes:
    """Read the narration audio file."""
    try:
        with open(file_path, "rb") as file_handle:
            return file_handle.read()
    except FileNotFoundError as exc:
        raise ScrollValidationError(
            ErrorKind.INPUT_FILE, f"audio file not found: {file_path}"
        ) from exc


def parse_args(argv: Sequence[str]) -> RenderRequest:
    """Parse CLI arguments into a RenderRequest."""
    parser = argparse.ArgumentParser(prog="render_scroll_video.py", add_help=True)
    parser.add_argument("--script-file", required=True)
    parser.add_argument("--audio-file", required=True)
    parser.add_argument("--output-video-file", default="video.mp4")
    parser.add_argument("--width", type=int, default=DEFAULT_WIDTH)
    parser.add_argument("--height", type=int, default=DEFAULT_VIEWPORT_HEIGHT)
    parser.add_argument("--padding-x", type=int, default=DEFAULT_PADDING_X)
    parser.add_argument("--padding-y", type=int, default=DEFAULT_PADDING_Y)
    parser.add_argument("--font-file", default=None)
    parser.add_argument("--font-size", type=int, default=DEFAULT_FONT_SIZE)
    parser.add_argument("--line-spacing", type=float, default=DEFAULT_LINE_SPACING)
    parser.add_argument("--text-color", default=DEFAULT_TEXT_COLOR)
    parser.add_argument("--background-color", default=DEFAULT_BACKGROUND_COLOR)
    parser.add_argument(
        "--initial-delay", type=float, default=DEFAULT_INITIAL_DELAY_SECONDS
    )
    parser.add_argument("--speed-factor", type=float, default=DEFAULT_SPEED_FACTOR)
    parser.add_argument("--fps", type=int, default=DEFAULT_FPS)
    parser.add_argument("--ffmpeg", default=None)
    parser.add_argument("--ffprobe", default=None)
    parser.add_argument("--emit-timeline", action="store_true")

    parsed = parser.parse_args(argv)
    if not parsed.output_video_file.lower().endswith(OUTPUT_EXTENSION):
        raise ScrollValidationError(
            ErrorKind.INVALID_CONFIG,
            f"output_video_file must end with {OUTPUT_EXTENSION}",
        )

    geometry = CanvasGeometry(
        width=parsed.width,
        viewport_height=parsed.height,
        padding_x=parsed.padding_x,
        padding_y=parsed.padding_y,
        font_size=parsed.font_size,
        line_spacing=parsed.line_spacing,
    )
    settings = ScrollVideoSettings(
        geometry=geometry,
        font=FontDescriptor(path=parsed.font_file, size=parsed.font_size),
        text_rgb=parse_hex_color(parsed.text_color),
        background_rgb=parse_hex_color(parsed.background_color),
        initial_delay_seconds=parsed.initial_delay,
        speed_factor=parsed.speed_factor,
    )
    encoder = EncoderConfig.resolve(parsed.ffmpeg, parsed.ffprobe, fps=parsed.fps)

    return RenderRequest(
        script_text=read_utf8_text_strict(parsed.script_file),
        audio_bytes=read_audio_bytes(parsed.audio_file),
        output_video_file=parsed.output_video_file,
        settings=settings,
        encoder=encoder,
        emit_timeline=parsed.emit_timeline,
    )


def emit_timeline(timeline: ScrollTimeline) -> None:
    """Emit the computed timeline to stdout."""
    payload = timeline.to_payload()
    payload["crop_expression"] = build_crop_expression(timeline)
    sys.stdout.write(json.dumps(payload, ensure_ascii=True))


def write_output_video(output_path: str, video_bytes: bytes) -> None:
    try:
        with open(output_path, "wb") as file_handle:
            file_handle.write(video_bytes)
    except OSError as exc:
        raise ScrollPipelineError(
            ErrorKind.OUTPUT_FILE, f"failed to write {output_path}: {str(exc).strip()}"
        ) from exc


def main() -> int:
    """CLI entrypoint."""
    configure_logging()

    try:
        request = parse_args(sys.argv[1:])
        if request.emit_timeline:
            font = load_font(request.settings.font)
            _, timeline = plan_scroll_video(
                request.script_text,
                request.audio_bytes,
                request.settings,
                request.encoder,
                font,
            )
            emit_timeline(timeline)
            return 0
        video_bytes = generate_scroll_video(
            request.script_text,
            request.audio_bytes,
            request.settings,
            request.encoder,
        )
        write_output_video(request.output_video_file, video_bytes)
        LOGGER.info(
            "render_scroll_video.output.video_written: %s", request.output_video_file
        )
        return 0
    except ScrollValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except ScrollPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("render_scroll_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
