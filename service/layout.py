"""Greedy line layout for styled runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence, Tuple

from domain.markup import StyledRun
from domain.slide_script import INVALID_CONFIG_CODE, SlideValidationError

MeasureRun = Callable[[StyledRun], float]


@dataclass(frozen=True)
class LayoutLine:
    """A wrapped line of runs, horizontally centered on its own."""

    runs: Tuple[StyledRun, ...]
    total_width: float
    x_offset: float
    y_offset: float


def trim_trailing_spaces(
    runs: Sequence[StyledRun], widths: Sequence[float]
) -> Tuple[Tuple[StyledRun, ...], Tuple[float, ...]]:
    """Drop space runs from the end of a line."""
    end = len(runs)
    while end > 0 and runs[end - 1].is_space:
        end -= 1
    return tuple(runs[:end]), tuple(widths[:end])


def layout_runs(
    runs: Sequence[StyledRun],
    max_width: float,
    line_height: float,
    measure: MeasureRun,
    center_x: float,
    start_y: float,
) -> Tuple[LayoutLine, ...]:
    """Wrap runs into centered lines no wider than ``max_width``.

    Runs are never split. A run that overflows the current line starts the
    next one; a run wider than ``max_width`` on an empty line is placed alone.
    Line-break runs always close the current line, even an empty one, so
    consecutive breaks leave blank lines. Each closed line advances the
    vertical offset by ``line_height`` starting from ``start_y``.
    """
    if max_width <= 0:
        raise SlideValidationError(INVALID_CONFIG_CODE, "max_width must be positive")
    if line_height <= 0:
        raise SlideValidationError(INVALID_CONFIG_CODE, "line_height must be positive")

    lines: list[LayoutLine] = []
    current_runs: list[StyledRun] = []
    current_widths: list[float] = []
    current_width = 0.0
    cursor_y = start_y

    def close_line() -> None:
        nonlocal current_runs, current_widths, current_width, cursor_y
        line_runs, line_widths = trim_trailing_spaces(current_runs, current_widths)
        total_width = float(sum(line_widths))
        lines.append(
            LayoutLine(
                runs=line_runs,
                total_width=total_width,
                x_offset=center_x - total_width / 2.0,
                y_offset=cursor_y,
            )
        )
        cursor_y += line_height
        current_runs = []
        current_widths = []
        current_width = 0.0

    for run in runs:
        if run.is_line_break:
            close_line()
            continue
        if run.is_space and not current_runs:
            continue
        run_width = float(measure(run))
        if current_runs and current_width + run_width > max_width:
            close_line()
            if run.is_space:
                continue
        current_runs.append(run)
        current_widths.append(run_width)
        current_width += run_width

    if current_runs:
        close_line()
    return tuple(lines)
