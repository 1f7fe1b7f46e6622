"""Text wrapping, paragraph segmentation and complexity scoring."""

from __future__ import annotations

import re
from typing import Callable, Sequence, Tuple

from domain.scroll_video import (
    CanvasGeometry,
    ErrorKind,
    ScrollValidationError,
    Section,
    WrappedLine,
)

PARAGRAPH_SPLIT_PATTERN = re.compile(r"\n\s*\n")
BRACKET_PATTERN = re.compile(r"[(){}\[\]<>]")
KEYWORDS = (
    "function",
    "class",
    "const",
    "let",
    "var",
    "import",
    "export",
    "async",
    "await",
)
KEYWORD_PATTERN = re.compile(r"\b(" + "|".join(KEYWORDS) + r")\b")
BRACKET_WEIGHT = 1.5
KEYWORD_WEIGHT = 1.3

TextMeasurer = Callable[[str], float]


def normalize_script(script: str) -> str:
    """Drop byte-order marks and unify line endings."""
    return script.replace("\ufeff", "").replace("\r\n", "\n").replace("\r", "\n")


def measure_width(measure: TextMeasurer, text_value: str) -> float:
    """Measure text, mapping provider failures to METRICS_UNAVAILABLE."""
    try:
        return float(measure(text_value))
    except ScrollValidationError:
        raise
    except Exception as exc:
        raise ScrollValidationError(
            ErrorKind.METRICS_UNAVAILABLE,
            f"glyph measurement failed for {text_value[:40]!r}: {str(exc).strip()}",
        ) from exc


def score_line_complexity(source_line: str) -> float:
    """Score one source line by word length, brackets and code keywords."""
    words = source_line.split()
    if not words:
        return 0.0
    average_word_length = sum(len(word) for word in words) / len(words)
    bracket_weight = BRACKET_WEIGHT if BRACKET_PATTERN.search(source_line) else 1.0
    keyword_weight = KEYWORD_WEIGHT if KEYWORD_PATTERN.search(source_line) else 1.0
    return average_word_length * bracket_weight * keyword_weight


def wrap_words(
    words: Sequence[str], drawable_width: float, measure: TextMeasurer
) -> list[str]:
    """Greedily pack words into lines no wider than the drawable width.

    A word that alone exceeds the width is kept whole on its own line.
    """
    wrapped: list[str] = []
    current = ""
    for word in words:
        candidate = f"{current} {word}" if current else word
        if measure_width(measure, candidate) <= drawable_width or not current:
            current = candidate
        else:
            wrapped.append(current)
            current = word
    if current:
        wrapped.append(current)
    return wrapped


def layout(
    script: str, geometry: CanvasGeometry, measure: TextMeasurer
) -> Tuple[Tuple[WrappedLine, ...], Tuple[Section, ...]]:
    """Wrap a script into lines and group them into one section per paragraph.

    Paragraphs are separated by two blank lines: the trailing one belongs to
    the earlier paragraph's section, the leading one to the later one.
    """
    text_value = normalize_script(script)
    if not text_value:
        return (), ()

    paragraphs = PARAGRAPH_SPLIT_PATTERN.split(text_value)
    line_texts: list[str] = []
    sections: list[Section] = []
    last_index = len(paragraphs) - 1

    for paragraph_index, paragraph in enumerate(paragraphs):
        start_line = len(line_texts)
        if paragraph_index > 0:
            line_texts.append("")

        complexity = 0.0
        for source_line in paragraph.split("\n"):
            words = source_line.split()
            if not words:
                line_texts.append("")
                continue
            complexity += score_line_complexity(source_line)
            line_texts.extend(wrap_words(words, geometry.drawable_width, measure))

        if paragraph_index < last_index:
            line_texts.append("")

        sections.append(
            Section(
                start_line=start_line,
                end_line=len(line_texts) - 1,
                complexity=complexity,
            )
        )

    lines = tuple(
        WrappedLine(index=index, text=text) for index, text in enumerate(line_texts)
    )
    return lines, tuple(sections)
