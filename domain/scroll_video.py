"""Domain types and error taxonomy for render_scroll_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Tuple

HEX_COLOR_PATTERN = re.compile(r"#([0-9a-fA-F]{6})")

DEFAULT_WIDTH = 1280
DEFAULT_VIEWPORT_HEIGHT = 720
DEFAULT_PADDING_X = 80
DEFAULT_PADDING_Y = 60
DEFAULT_FONT_SIZE = 28
DEFAULT_LINE_SPACING = 1.8
DEFAULT_TEXT_COLOR = "#222222"
DEFAULT_BACKGROUND_COLOR = "#ffffff"
DEFAULT_INITIAL_DELAY_SECONDS = 6.0
DEFAULT_SPEED_FACTOR = 0.7


class ErrorKind(str, Enum):
    """Failure kinds with their stable error codes."""

    EMPTY_INPUT = "render_scroll_video.input.empty"
    INVALID_CONFIG = "render_scroll_video.input.invalid_config"
    INPUT_FILE = "render_scroll_video.input.file_error"
    OUTPUT_FILE = "render_scroll_video.output.file_error"
    AUDIO_TOO_SHORT = "render_scroll_video.timing.audio_too_short"
    AUDIO_PROBE_FAILED = "render_scroll_video.ffprobe.failed"
    METRICS_UNAVAILABLE = "render_scroll_video.layout.metrics_unavailable"
    ENCODER_UNAVAILABLE = "render_scroll_video.ffmpeg.not_found"
    ENCODE_FAILED = "render_scroll_video.ffmpeg.encode_failed"
    MUX_FAILED = "render_scroll_video.ffmpeg.mux_failed"
    RESOURCE_CLEANUP_FAILED = "render_scroll_video.cleanup.failed"


class ScrollValidationError(ValueError):
    """Input or timing error with a stable error code."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = kind.value


class ScrollPipelineError(RuntimeError):
    """Encoder or runtime error with a stable error code."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = kind.value


def parse_hex_color(color_value: str) -> Tuple[int, int, int]:
    """Parse a #RRGGBB color into an RGB tuple."""
    match_value = HEX_COLOR_PATTERN.fullmatch(color_value.strip())
    if not match_value:
        raise ScrollValidationError(
            ErrorKind.INVALID_CONFIG, f"invalid color value: {color_value!r}"
        )
    rgb_hex = match_value.group(1)
    return (int(rgb_hex[0:2], 16), int(rgb_hex[2:4], 16), int(rgb_hex[4:6], 16))


@dataclass(frozen=True)
class WrappedLine:
    """A single laid-out line of the tall image."""

    index: int
    text: str

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "line index must be non-negative"
            )

    @property
    def is_blank(self) -> bool:
        return not self.text.strip()


@dataclass(frozen=True)
class Section:
    """Contiguous, complexity-scored range of wrapped lines (inclusive)."""

    start_line: int
    end_line: int
    complexity: float

    def __post_init__(self) -> None:
        if self.start_line < 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "section start_line must be non-negative"
            )
        if self.end_line < self.start_line:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "section end_line precedes start_line"
            )
        if self.complexity < 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "section complexity must be non-negative"
            )

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1


@dataclass(frozen=True)
class FontDescriptor:
    """Font file and pixel size; a missing path selects Pillow's default font."""

    path: str | None
    size: int

    def __post_init__(self) -> None:
        if self.path is not None and not self.path.strip():
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "font path must be non-empty"
            )
        if self.size <= 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "font size must be positive"
            )


@dataclass(frozen=True)
class CanvasGeometry:
    """Frame and text geometry shared by layout, timing and drawing."""

    width: int = DEFAULT_WIDTH
    viewport_height: int = DEFAULT_VIEWPORT_HEIGHT
    padding_x: int = DEFAULT_PADDING_X
    padding_y: int = DEFAULT_PADDING_Y
    font_size: int = DEFAULT_FONT_SIZE
    line_spacing: float = DEFAULT_LINE_SPACING

    def __post_init__(self) -> None:
        if self.width <= 0 or self.viewport_height <= 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "width and viewport_height must be positive"
            )
        if self.width % 2 or self.viewport_height % 2:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG,
                "width and viewport_height must be even for yuv420p output",
            )
        if self.padding_x < 0 or self.padding_y < 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "padding must be non-negative"
            )
        if self.drawable_width <= 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "horizontal padding leaves no drawable width"
            )
        if self.font_size <= 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "font_size must be positive"
            )
        if self.line_spacing <= 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "line_spacing must be positive"
            )

    @property
    def line_height(self) -> float:
        return self.font_size * self.line_spacing

    @property
    def drawable_width(self) -> int:
        return self.width - 2 * self.padding_x

    def total_image_height(self, lines_count: int) -> float:
        """Height of the tall image holding every line plus one spare viewport."""
        return lines_count * self.line_height + 2 * self.padding_y + self.viewport_height

    def max_scroll_offset(self, lines_count: int) -> float:
        """Crop offset of the final, fully scrolled frame."""
        return self.total_image_height(lines_count) - self.viewport_height


@dataclass(frozen=True)
class ScrollVideoSettings:
    """Validated rendering and timing options for one script video."""

    geometry: CanvasGeometry
    font: FontDescriptor
    text_rgb: Tuple[int, int, int]
    background_rgb: Tuple[int, int, int]
    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS
    speed_factor: float = DEFAULT_SPEED_FACTOR

    def __post_init__(self) -> None:
        if self.font.size != self.geometry.font_size:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "font size must match geometry font_size"
            )
        for rgb in (self.text_rgb, self.background_rgb):
            if len(rgb) != 3 or any(channel < 0 or channel > 255 for channel in rgb):
                raise ScrollValidationError(
                    ErrorKind.INVALID_CONFIG, "color channel out of range"
                )
        if self.initial_delay_seconds < 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "initial_delay_seconds must be non-negative"
            )
        if self.speed_factor <= 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "speed_factor must be positive"
            )


def build_default_settings(font_path: str | None = None) -> ScrollVideoSettings:
    """Return the stock 1280x720 settings."""
    geometry = CanvasGeometry()
    return ScrollVideoSettings(
        geometry=geometry,
        font=FontDescriptor(path=font_path, size=geometry.font_size),
        text_rgb=parse_hex_color(DEFAULT_TEXT_COLOR),
        background_rgb=parse_hex_color(DEFAULT_BACKGROUND_COLOR),
    )
