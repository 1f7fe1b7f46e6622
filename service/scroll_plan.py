"""Section timing and scroll timeline construction for render_scroll_video."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any, Sequence, Tuple

from domain.scroll_video import (
    CanvasGeometry,
    ErrorKind,
    ScrollValidationError,
    Section,
    WrappedLine,
)

EXPRESSION_DECIMALS = 6
CONTINUITY_TOLERANCE = 1e-6


@dataclass(frozen=True)
class SectionBudget:
    """Scroll time assigned to one section."""

    section: Section
    duration: float
    speed_factor: float = 1.0

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "section duration must be non-negative"
            )
        if self.speed_factor <= 0 or not math.isfinite(self.speed_factor):
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "speed factor must be positive"
            )


@dataclass(frozen=True)
class LinearOffset:
    """Crop offset that moves at a constant rate from an origin time."""

    origin_seconds: float
    base_offset: float
    pixels_per_second: float

    def evaluate(self, time_seconds: float) -> float:
        return self.base_offset + self.pixels_per_second * (
            time_seconds - self.origin_seconds
        )

    def to_expression(self) -> str:
        """Render as an ffmpeg expression in the variable ``t``."""
        base = format_number(self.base_offset)
        if self.pixels_per_second == 0:
            return base
        return (
            f"{base}+(t-{format_number(self.origin_seconds)})"
            f"*{format_number(self.pixels_per_second)}"
        )


@dataclass(frozen=True)
class ScrollPiece:
    """A half-open time range [start, end) with its offset function."""

    start_seconds: float
    end_seconds: float
    offset: LinearOffset


@dataclass(frozen=True)
class ScrollWindow:
    """Time and pixel range over which one section scrolls."""

    section: Section
    window_start: float
    window_end: float
    pixel_start: float
    pixel_end: float

    def __post_init__(self) -> None:
        if self.window_end < self.window_start:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "scroll window ends before it starts"
            )
        if self.pixel_end < self.pixel_start:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "scroll window pixels move backwards"
            )

    @property
    def duration(self) -> float:
        return self.window_end - self.window_start

    def to_piece(self) -> ScrollPiece:
        rate = (self.pixel_end - self.pixel_start) / self.duration
        return ScrollPiece(
            start_seconds=self.window_start,
            end_seconds=self.window_end,
            offset=LinearOffset(
                origin_seconds=self.window_start,
                base_offset=self.pixel_start,
                pixels_per_second=rate,
            ),
        )


@dataclass(frozen=True)
class ScrollTimeline:
    """Mapping from playback time to the vertical crop offset."""

    initial_delay: float
    audio_duration: float
    pinned_offset: float
    final_offset: float
    windows: Tuple[ScrollWindow, ...]

    def __post_init__(self) -> None:
        if not self.windows:
            raise ScrollValidationError(ErrorKind.EMPTY_INPUT, "timeline has no windows")
        if not math.isclose(
            self.windows[0].window_start,
            self.initial_delay,
            abs_tol=CONTINUITY_TOLERANCE,
        ):
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "first window must start at the initial delay"
            )
        if not math.isclose(
            self.windows[-1].window_end,
            self.audio_duration,
            abs_tol=CONTINUITY_TOLERANCE,
        ):
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "last window must end at the audio duration"
            )
        previous_end = self.initial_delay
        previous_pixel = self.pinned_offset
        for window in self.windows:
            if not math.isclose(
                window.window_start, previous_end, abs_tol=CONTINUITY_TOLERANCE
            ):
                raise ScrollValidationError(
                    ErrorKind.INVALID_CONFIG, "scroll windows are not contiguous"
                )
            if window.pixel_start < previous_pixel - CONTINUITY_TOLERANCE:
                raise ScrollValidationError(
                    ErrorKind.INVALID_CONFIG, "scroll offsets decrease"
                )
            previous_end = window.window_end
            previous_pixel = window.pixel_end
        if self.final_offset < previous_pixel - CONTINUITY_TOLERANCE:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG, "final offset precedes the last window"
            )

    def pieces(self) -> Tuple[ScrollPiece, ...]:
        """Return the timeline as contiguous pieces covering [0, inf).

        Zero-length windows are dropped since no frame can land in them.
        """
        pieces: list[ScrollPiece] = []
        if self.initial_delay > 0:
            pieces.append(
                ScrollPiece(
                    start_seconds=0.0,
                    end_seconds=self.initial_delay,
                    offset=LinearOffset(0.0, self.pinned_offset, 0.0),
                )
            )
        for window in self.windows:
            if window.duration > 0:
                pieces.append(window.to_piece())
        pieces.append(
            ScrollPiece(
                start_seconds=self.audio_duration,
                end_seconds=math.inf,
                offset=LinearOffset(self.audio_duration, self.final_offset, 0.0),
            )
        )
        return tuple(pieces)

    def position_at(self, time_seconds: float) -> float:
        """Evaluate the crop offset at a playback time."""
        if time_seconds < self.initial_delay:
            return self.pinned_offset
        if time_seconds >= self.audio_duration:
            return self.final_offset
        for window in self.windows:
            if time_seconds < window.window_end:
                if window.duration <= 0:
                    continue
                fraction = (time_seconds - window.window_start) / window.duration
                fraction = min(1.0, max(0.0, fraction))
                offset = window.pixel_start + (
                    window.pixel_end - window.pixel_start
                ) * fraction
                return min(offset, window.pixel_end)
        return self.final_offset

    def to_payload(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "initial_delay": self.initial_delay,
            "audio_duration": self.audio_duration,
            "pinned_offset": self.pinned_offset,
            "final_offset": self.final_offset,
            "windows": [
                {
                    "start_line": window.section.start_line,
                    "end_line": window.section.end_line,
                    "complexity": window.section.complexity,
                    "window_start": window.window_start,
                    "window_end": window.window_end,
                    "pixel_start": window.pixel_start,
                    "pixel_end": window.pixel_end,
                }
                for window in self.windows
            ],
        }


def format_number(value: float) -> str:
    """Format a float for an ffmpeg expression without exponent notation."""
    text_value = f"{value:.{EXPRESSION_DECIMALS}f}".rstrip("0").rstrip(".")
    if text_value in ("", "-0"):
        return "0"
    return text_value


def resolve_speed_factors(
    speed_factor: float | Sequence[float], section_count: int
) -> Tuple[float, ...]:
    """Expand a global or per-section speed factor to one value per section."""
    if isinstance(speed_factor, (int, float)):
        factors = tuple(float(speed_factor) for _ in range(section_count))
    else:
        factors = tuple(float(value) for value in speed_factor)
        if len(factors) != section_count:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG,
                f"expected {section_count} speed factors, got {len(factors)}",
            )
    if any(factor <= 0 or not math.isfinite(factor) for factor in factors):
        raise ScrollValidationError(
            ErrorKind.INVALID_CONFIG, "speed factors must be positive"
        )
    return factors


def compute_section_weights(sections: Sequence[Section]) -> Tuple[float, ...]:
    """Return allocation weights; zero-complexity sections get the minimum share."""
    total_complexity = math.fsum(section.complexity for section in sections)
    if total_complexity == 0:
        return tuple(1.0 for _ in sections)
    floor_weight = min(
        section.complexity for section in sections if section.complexity > 0
    )
    return tuple(
        section.complexity if section.complexity > 0 else floor_weight
        for section in sections
    )


def allocate(
    sections: Sequence[Section],
    audio_duration: float,
    initial_delay: float,
    speed_factor: float | Sequence[float],
) -> Tuple[SectionBudget, ...]:
    """Split the post-delay audio time across sections by complexity.

    Budgets always sum to ``audio_duration - initial_delay``. The speed
    factor does not change the durations; it is carried on each budget and
    scales how far the section scrolls within its window.
    """
    if not sections:
        raise ScrollValidationError(ErrorKind.EMPTY_INPUT, "script produced no sections")
    if initial_delay < 0:
        raise ScrollValidationError(
            ErrorKind.INVALID_CONFIG, "initial delay must be non-negative"
        )
    available_duration = audio_duration - initial_delay
    if available_duration <= 0:
        raise ScrollValidationError(
            ErrorKind.AUDIO_TOO_SHORT,
            f"audio duration {audio_duration:.3f}s does not exceed "
            f"initial delay {initial_delay:.3f}s",
        )

    factors = resolve_speed_factors(speed_factor, len(sections))
    weights = compute_section_weights(sections)
    total_weight = math.fsum(weights)

    durations = [available_duration * weight / total_weight for weight in weights]
    durations[-1] = max(0.0, available_duration - math.fsum(durations[:-1]))

    return tuple(
        SectionBudget(section=section, duration=duration, speed_factor=factor)
        for section, duration, factor in zip(sections, durations, factors)
    )


def ensure_sections_cover_lines(
    sections: Sequence[Section], lines_count: int
) -> None:
    """Raise unless sections partition [0, lines_count) contiguously."""
    expected_start = 0
    for section in sections:
        if section.start_line != expected_start:
            raise ScrollValidationError(
                ErrorKind.INVALID_CONFIG,
                f"section starts at line {section.start_line}, expected {expected_start}",
            )
        expected_start = section.end_line + 1
    if expected_start != lines_count:
        raise ScrollValidationError(
            ErrorKind.INVALID_CONFIG,
            f"sections cover {expected_start} of {lines_count} lines",
        )


def synthesize(
    lines: Sequence[WrappedLine],
    budgets: Sequence[SectionBudget],
    geometry: CanvasGeometry,
    initial_delay: float,
    audio_duration: float,
) -> ScrollTimeline:
    """Lay section windows end to end after the initial delay.

    Each section scrolls ``speed_factor`` times its own height, starting
    where the previous section stopped, so a factor below 1 lets the text
    lag behind the narration. The last section scrolls on to the final
    offset so the clamp at the end of the audio does not jump.
    """
    if not budgets:
        raise ScrollValidationError(ErrorKind.EMPTY_INPUT, "no section budgets")
    ensure_sections_cover_lines([budget.section for budget in budgets], len(lines))

    line_height = geometry.line_height
    final_offset = geometry.max_scroll_offset(len(lines))
    windows: list[ScrollWindow] = []
    cursor = initial_delay
    pixel_cursor = float(geometry.padding_y)
    last_index = len(budgets) - 1

    for index, budget in enumerate(budgets):
        section = budget.section
        if index == last_index:
            window_end = max(cursor, audio_duration)
            pixel_end = final_offset
        else:
            window_end = cursor + budget.duration
            travel = line_height * section.line_count * budget.speed_factor
            pixel_end = min(pixel_cursor + travel, final_offset)
        windows.append(
            ScrollWindow(
                section=section,
                window_start=cursor,
                window_end=window_end,
                pixel_start=pixel_cursor,
                pixel_end=pixel_end,
            )
        )
        cursor = window_end
        pixel_cursor = pixel_end

    return ScrollTimeline(
        initial_delay=initial_delay,
        audio_duration=audio_duration,
        pinned_offset=float(geometry.padding_y),
        final_offset=final_offset,
        windows=tuple(windows),
    )


def compile_piece_tree(pieces: Sequence[ScrollPiece]) -> str:
    """Compile contiguous pieces into a balanced if(lt(t,...)) decision tree."""
    if len(pieces) == 1:
        return pieces[0].offset.to_expression()
    middle = len(pieces) // 2
    pivot = format_number(pieces[middle].start_seconds)
    left = compile_piece_tree(pieces[:middle])
    right = compile_piece_tree(pieces[middle:])
    return f"if(lt(t,{pivot}),{left},{right})"


def build_crop_expression(timeline: ScrollTimeline) -> str:
    """Return the y-offset expression evaluated by ffmpeg for every frame."""
    return compile_piece_tree(timeline.pieces())


def escape_filter_expression(expression: str) -> str:
    """Escape commas so the expression survives filtergraph parsing."""
    return expression.replace(",", r"\,")
