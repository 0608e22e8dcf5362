"""Unit tests for greedy line layout."""

from __future__ import annotations

import pytest

from domain.markup import StyledRun, tokenize_markup
from domain.slide_script import SlideValidationError
from service.layout import layout_runs

CHAR_WIDTH = 10.0


def measure(run: StyledRun) -> float:
    """Measure runs at a fixed width per character."""
    return len(run.text) * CHAR_WIDTH


def line_texts(lines) -> list[str]:
    """Join each line's run texts."""
    return ["".join(run.text for run in line.runs) for line in lines]


def test_wraps_without_exceeding_max_width() -> None:
    """Move the overflowing run to the next line and trim trailing spaces."""
    lines = layout_runs(
        tokenize_markup("one two three"),
        max_width=80,
        line_height=20,
        measure=measure,
        center_x=100,
        start_y=50,
    )

    assert line_texts(lines) == ["one two", "three"]
    assert [line.total_width for line in lines] == [70.0, 50.0]
    assert all(line.total_width <= 80 for line in lines)


def test_overwide_word_stays_whole() -> None:
    """Place a word wider than the line alone instead of splitting it."""
    lines = layout_runs(
        tokenize_markup("supercalifragilistic short"),
        max_width=50,
        line_height=20,
        measure=measure,
        center_x=100,
        start_y=0,
    )

    assert line_texts(lines) == ["supercalifragilistic", "short"]
    assert len(lines[0].runs) == 1
    assert lines[0].total_width == 200.0


def test_lines_are_centered_and_stacked() -> None:
    """Center each line on its own width and advance by the line height."""
    lines = layout_runs(
        tokenize_markup("ab<br>abcd"),
        max_width=500,
        line_height=30,
        measure=measure,
        center_x=100,
        start_y=40,
    )

    assert [line.x_offset for line in lines] == [90.0, 80.0]
    assert [line.y_offset for line in lines] == [40, 70]


def test_consecutive_breaks_leave_blank_lines() -> None:
    """Close the current line on every break, even when it is empty."""
    lines = layout_runs(
        tokenize_markup("a<br><br>b"),
        max_width=500,
        line_height=10,
        measure=measure,
        center_x=0,
        start_y=0,
    )

    assert line_texts(lines) == ["a", "", "b"]
    assert lines[1].total_width == 0.0
    assert [line.y_offset for line in lines] == [0, 10, 20]


def test_wrapped_lines_do_not_start_with_space() -> None:
    """Drop the space that triggered a wrap."""
    lines = layout_runs(
        tokenize_markup("abcd efgh"),
        max_width=40,
        line_height=10,
        measure=measure,
        center_x=0,
        start_y=0,
    )

    assert line_texts(lines) == ["abcd", "efgh"]
    for line in lines:
        assert not line.runs[0].is_space
        assert not line.runs[-1].is_space


def test_styles_survive_layout() -> None:
    """Keep each run's style flags through wrapping."""
    lines = layout_runs(
        tokenize_markup("plain <b>bold</b>"),
        max_width=45,
        line_height=10,
        measure=measure,
        center_x=0,
        start_y=0,
    )

    assert line_texts(lines) == ["plain", "bold"]
    assert lines[1].runs[0].bold is True


def test_rejects_non_positive_bounds() -> None:
    """Fail fast on a non-positive width or line height."""
    with pytest.raises(SlideValidationError):
        layout_runs((), max_width=0, line_height=10, measure=measure, center_x=0, start_y=0)
    with pytest.raises(SlideValidationError):
        layout_runs((), max_width=10, line_height=0, measure=measure, center_x=0, start_y=0)
