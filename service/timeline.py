"""Timeline construction for render_slide_video."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
import logging
from typing import Sequence, Tuple

from domain.slide_script import (
    DEFAULT_FPS,
    EmptyScriptError,
    INVALID_CONFIG_CODE,
    Slide,
    SlideValidationError,
)
from service.frame_render import Frame, SlideRenderer

LOGGER = logging.getLogger("render_slide_video")


@dataclass(frozen=True)
class Timeline:
    """Flat frame sequence with per-slide markers."""

    frame_handles: Tuple[Frame, ...]
    markers: Tuple[float, ...]
    slide_start_indices: Tuple[int, ...]
    total_duration_seconds: float
    fps: int

    def __post_init__(self) -> None:
        if self.fps <= 0:
            raise SlideValidationError(INVALID_CONFIG_CODE, "fps must be positive")
        if not self.frame_handles:
            raise EmptyScriptError("timeline contains no frames")
        if len(self.markers) != len(self.slide_start_indices):
            raise SlideValidationError(
                INVALID_CONFIG_CODE, "markers and slide starts differ in length"
            )
        previous = 0.0
        for marker in self.markers:
            if marker <= previous:
                raise SlideValidationError(
                    INVALID_CONFIG_CODE, "markers must be strictly increasing"
                )
            previous = marker
        if self.markers[-1] != self.total_duration_seconds:
            raise SlideValidationError(
                INVALID_CONFIG_CODE, "last marker must equal the total duration"
            )

    @property
    def total_frames(self) -> int:
        return len(self.frame_handles)

    def start_index_of(self, slide_index: int) -> int:
        """Return the first frame index of a slide, for seeking."""
        if slide_index < 0 or slide_index >= len(self.slide_start_indices):
            raise SlideValidationError(
                INVALID_CONFIG_CODE, f"slide index out of range: {slide_index}"
            )
        return self.slide_start_indices[slide_index]

    def slide_index_at(self, frame_index: int) -> int:
        """Return the slide shown at ``frame_index``."""
        if frame_index < 0 or frame_index >= self.total_frames:
            raise SlideValidationError(
                INVALID_CONFIG_CODE, f"frame index out of range: {frame_index}"
            )
        return bisect_right(self.slide_start_indices, frame_index) - 1

    def to_payload(self) -> dict[str, object]:
        """Summarize the timeline as JSON-friendly data."""
        return {
            "fps": self.fps,
            "total_frames": self.total_frames,
            "total_duration_seconds": self.total_duration_seconds,
            "total_duration": format_timestamp(self.total_duration_seconds),
            "markers": list(self.markers),
            "slide_start_indices": list(self.slide_start_indices),
        }


def format_timestamp(seconds: float) -> str:
    """Format seconds as m:ss."""
    whole_seconds = int(seconds)
    return f"{whole_seconds // 60}:{whole_seconds % 60:02d}"


def build_timeline(
    frames: Sequence[Frame], durations: Sequence[int], fps: int = DEFAULT_FPS
) -> Timeline:
    """Repeat each slide's frame ``duration * fps`` times."""
    if not frames:
        raise EmptyScriptError()
    if len(frames) != len(durations):
        raise SlideValidationError(
            INVALID_CONFIG_CODE, "frames and durations differ in length"
        )
    if fps <= 0:
        raise SlideValidationError(INVALID_CONFIG_CODE, "fps must be positive")

    frame_handles: list[Frame] = []
    markers: list[float] = []
    slide_start_indices: list[int] = []
    total_duration = 0

    for frame, duration_seconds in zip(frames, durations):
        if duration_seconds <= 0:
            raise SlideValidationError(
                INVALID_CONFIG_CODE, "slide duration must be positive"
            )
        slide_start_indices.append(len(frame_handles))
        frame_handles.extend([frame] * (duration_seconds * fps))
        total_duration += duration_seconds
        markers.append(float(total_duration))

    return Timeline(
        frame_handles=tuple(frame_handles),
        markers=tuple(markers),
        slide_start_indices=tuple(slide_start_indices),
        total_duration_seconds=float(total_duration),
        fps=fps,
    )


def render_timeline(
    slides: Sequence[Slide], renderer: SlideRenderer, fps: int = DEFAULT_FPS
) -> Timeline:
    """Render every slide (cache first) and sequence the frames."""
    if not slides:
        raise EmptyScriptError()
    frames = [renderer.render(slide) for slide in slides]
    timeline = build_timeline(
        frames, [slide.duration_seconds for slide in slides], fps=fps
    )
    LOGGER.info(
        "render_slide_video.timeline.built: %d slides, %d frames, %s",
        len(slides),
        timeline.total_frames,
        format_timestamp(timeline.total_duration_seconds),
    )
    return timeline
