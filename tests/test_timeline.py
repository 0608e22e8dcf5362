"""Unit tests for frame sequencing."""

from __future__ import annotations

import pytest

from domain.slide_script import EmptyScriptError, SlideValidationError, parse_script
from service.frame_render import DEFAULT_FONT_CLASS, FontFaces, FontLibrary, SlideRenderer
from service.timeline import build_timeline, format_timestamp, render_timeline

SCRIPT_TEXT = (
    "Hello <b>World</b> -- duration 2 -- color #ff0000 -- textlg\n"
    "Second slide -- duration 1"
)


def build_renderer() -> SlideRenderer:
    """Build a small renderer that uses Pillow's built-in font."""
    fonts = FontLibrary(FontFaces(family="Roboto", font_class=DEFAULT_FONT_CLASS, paths=()))
    return SlideRenderer(160, 120, fonts)


def test_render_timeline_repeats_frames_per_duration() -> None:
    """Repeat each slide's frame for its duration at the frame rate."""
    slides = parse_script(SCRIPT_TEXT)
    renderer = build_renderer()

    timeline = render_timeline(slides, renderer, fps=30)

    assert timeline.total_frames == 90
    assert timeline.markers == (2.0, 3.0)
    assert timeline.total_duration_seconds == 3.0
    assert timeline.slide_start_indices == (0, 60)
    assert all(frame is timeline.frame_handles[0] for frame in timeline.frame_handles[:60])
    assert all(frame is timeline.frame_handles[60] for frame in timeline.frame_handles[60:])
    assert timeline.frame_handles[0] is not timeline.frame_handles[60]


def test_first_slide_styles() -> None:
    """Draw the first slide's second word bold and red."""
    slides = parse_script(SCRIPT_TEXT)
    renderer = build_renderer()

    runs = [run for line in renderer.layout_slide(slides[0]) for run in line.runs]

    assert [run.text for run in runs] == ["Hello", " ", "World"]
    assert runs[2].bold is True
    assert slides[0].color_rgb == (255, 0, 0)
    assert slides[1].color_rgb == (255, 255, 255)


def test_repeated_slides_share_cached_frames() -> None:
    """Reuse the cached frame for identical slides."""
    slides = parse_script("same -- duration 1\nsame -- duration 1")
    renderer = build_renderer()

    timeline = render_timeline(slides, renderer, fps=2)

    assert timeline.frame_handles[0] is timeline.frame_handles[2]
    assert renderer.cache.hits == 1


def test_seek_helpers() -> None:
    """Map frames to slides and slides to their first frame."""
    timeline = build_timeline([object(), object(), object()], [1, 2, 1], fps=10)  # type: ignore[list-item]

    assert timeline.start_index_of(1) == 10
    assert timeline.slide_index_at(0) == 0
    assert timeline.slide_index_at(29) == 1
    assert timeline.slide_index_at(39) == 2
    with pytest.raises(SlideValidationError):
        timeline.slide_index_at(40)
    with pytest.raises(SlideValidationError):
        timeline.start_index_of(3)


def test_payload_summary() -> None:
    """Summarize the timeline for JSON output."""
    timeline = build_timeline([object(), object()], [60, 15], fps=1)  # type: ignore[list-item]

    payload = timeline.to_payload()

    assert payload["total_frames"] == 75
    assert payload["markers"] == [60.0, 75.0]
    assert payload["total_duration"] == "1:15"


def test_build_timeline_rejects_bad_input() -> None:
    """Reject empty, mismatched and non-positive inputs."""
    with pytest.raises(EmptyScriptError):
        build_timeline([], [])
    with pytest.raises(SlideValidationError):
        build_timeline([object()], [1, 2])  # type: ignore[list-item]
    with pytest.raises(SlideValidationError):
        build_timeline([object()], [0])  # type: ignore[list-item]
    with pytest.raises(SlideValidationError):
        build_timeline([object()], [1], fps=0)  # type: ignore[list-item]


def test_format_timestamp() -> None:
    """Format seconds as minutes and zero-padded seconds."""
    assert format_timestamp(0) == "0:00"
    assert format_timestamp(9.9) == "0:09"
    assert format_timestamp(125) == "2:05"
