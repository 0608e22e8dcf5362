#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1"
# ]
# ///
"""Render a slide script into an H.264 MP4 slideshow."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
import os
import sys
from typing import Callable, Mapping, Sequence, Tuple

from domain.slide_script import (
    DEFAULT_FONT,
    DEFAULT_FPS,
    INVALID_CONFIG_CODE,
    POPULAR_FONTS,
    RESOLUTIONS,
    RenderConfig,
    Slide,
    SlideValidationError,
    parse_resolution,
    parse_script,
    read_utf8_text_strict,
)
from service.frame_render import FontLibrary, SlideRenderer
from service.timeline import Timeline, format_timestamp, render_timeline
from service.video_export import SlidePipelineError, export_video

LOGGER = logging.getLogger("render_slide_video")

LOG_LEVEL_ENV = "RENDER_SLIDE_VIDEO_LOG_LEVEL"
FFMPEG_PATH_ENV = "RENDER_SLIDE_VIDEO_FFMPEG_PATH"
OUTPUT_FILE_CODE = "render_slide_video.output.write_error"
UNHANDLED_ERROR_CODE = "render_slide_video.unhandled_error"
DEFAULT_RESOLUTION = "1080x1920"
DEFAULT_FONTS_DIR = "fonts"


@dataclass(frozen=True)
class RenderRequest:
    """Parsed CLI request and runtime options."""

    config: RenderConfig
    slides: Tuple[Slide, ...]
    emit_timeline: bool
    preview_slide: int | None
    preview_output: str | None


def configure_logging(env: Mapping[str, str]) -> None:
    """Configure logging for CLI output."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(message)s")


def parse_args(argv: Sequence[str], env: Mapping[str, str]) -> RenderRequest:
    """Parse CLI arguments into a RenderRequest."""
    parser = argparse.ArgumentParser(prog="render_slide_video.py", add_help=True)
    parser.add_argument("--script-file", required=True)
    parser.add_argument("--output-video-file", default="slides.mp4")
    parser.add_argument(
        "--resolution",
        default=DEFAULT_RESOLUTION,
        help=f"one of {', '.join(RESOLUTIONS)}",
    )
    parser.add_argument("--font", default=DEFAULT_FONT, help=", ".join(POPULAR_FONTS))
    parser.add_argument("--fonts-dir", default=DEFAULT_FONTS_DIR)
    parser.add_argument("--fps", type=int, default=DEFAULT_FPS)
    parser.add_argument(
        "--no-realtime",
        action="store_true",
        help="capture frames as fast as possible instead of pacing by wall clock",
    )
    parser.add_argument("--preview-slide", type=int, default=None)
    parser.add_argument("--preview-output", default=None)
    parser.add_argument("--emit-timeline", action="store_true")

    parsed = parser.parse_args(list(argv))
    width, height = parse_resolution(parsed.resolution)

    if (parsed.preview_slide is None) != (parsed.preview_output is None):
        raise SlideValidationError(
            INVALID_CONFIG_CODE, "preview-slide and preview-output must be used together"
        )
    if parsed.preview_output is not None and not parsed.preview_output.lower().endswith(".png"):
        raise SlideValidationError(
            INVALID_CONFIG_CODE, "preview-output must end with .png"
        )
    if parsed.preview_slide is not None and parsed.emit_timeline:
        raise SlideValidationError(
            INVALID_CONFIG_CODE, "preview-slide cannot be combined with emit-timeline"
        )

    ffmpeg_path = env.get(FFMPEG_PATH_ENV, "").strip() or None
    config = RenderConfig(
        script_file=parsed.script_file,
        output_video_file=parsed.output_video_file,
        width=width,
        height=height,
        fps=parsed.fps,
        font_family=parsed.font,
        fonts_dir=parsed.fonts_dir,
        realtime=not parsed.no_realtime,
        ffmpeg_path=ffmpeg_path,
    )
    slides = parse_script(read_utf8_text_strict(config.script_file))

    if parsed.preview_slide is not None and not 0 <= parsed.preview_slide < len(slides):
        raise SlideValidationError(
            INVALID_CONFIG_CODE,
            f"preview-slide must be between 0 and {len(slides) - 1}",
        )

    return RenderRequest(
        config=config,
        slides=slides,
        emit_timeline=parsed.emit_timeline,
        preview_slide=parsed.preview_slide,
        preview_output=parsed.preview_output,
    )


def build_renderer(config: RenderConfig) -> SlideRenderer:
    """Create a slide renderer for the configured font and resolution."""
    fonts = FontLibrary.from_directory(config.fonts_dir, config.font_family)
    return SlideRenderer(config.width, config.height, fonts)


def write_bytes(output_path: str, payload: bytes) -> None:
    """Write bytes to disk, creating the parent directory."""
    parent_dir = os.path.dirname(os.path.abspath(output_path))
    try:
        os.makedirs(parent_dir, exist_ok=True)
        with open(output_path, "wb") as file_handle:
            file_handle.write(payload)
    except OSError as exc:
        raise SlidePipelineError(
            OUTPUT_FILE_CODE, f"failed to write {output_path}"
        ) from exc


def write_preview(
    renderer: SlideRenderer, slides: Sequence[Slide], slide_index: int, output_path: str
) -> None:
    """Render one slide and write its still image."""
    frame = renderer.render(slides[slide_index])
    write_bytes(output_path, frame.encoded_image)
    LOGGER.info("render_slide_video.preview.written: slide %d -> %s", slide_index, output_path)


def emit_timeline(timeline: Timeline, slides: Sequence[Slide]) -> None:
    """Emit the timeline summary to stdout."""
    payload = timeline.to_payload()
    payload["slides"] = [
        {
            "text": slide.display_text,
            "duration_seconds": slide.duration_seconds,
            "color": slide.color,
            "size_class": slide.size_class.value,
            "uppercase": slide.uppercase,
        }
        for slide in slides
    ]
    sys.stdout.write(json.dumps(payload, ensure_ascii=True))


def build_progress_logger() -> Callable[[str, float], None]:
    """Return a progress callback that logs each whole percent once."""
    last_logged: dict[str, int] = {}

    def log_progress(stage: str, percent: float) -> None:
        whole_percent = int(percent)
        if last_logged.get(stage) == whole_percent:
            return
        last_logged[stage] = whole_percent
        LOGGER.info("render_slide_video.export.progress: %s %d%%", stage, whole_percent)

    return log_progress


def render_video(config: RenderConfig, timeline: Timeline) -> None:
    """Export the timeline and write the MP4 to the configured path."""
    LOGGER.info(
        "render_slide_video.export.started: %s at %dx%d, %s",
        config.output_video_file,
        config.width,
        config.height,
        format_timestamp(timeline.total_duration_seconds),
    )
    video_bytes = export_video(
        timeline.frame_handles,
        timeline.fps,
        on_progress=build_progress_logger(),
        ffmpeg_path=config.ffmpeg_path,
        realtime=config.realtime,
    )
    write_bytes(config.output_video_file, video_bytes)
    LOGGER.info(
        "render_slide_video.export.finished: %s (%d bytes)",
        config.output_video_file,
        len(video_bytes),
    )


def main(argv: Sequence[str] | None = None, env: Mapping[str, str] | None = None) -> int:
    """CLI entrypoint."""
    environment = os.environ if env is None else env
    configure_logging(environment)

    try:
        request = parse_args(sys.argv[1:] if argv is None else argv, environment)
        renderer = build_renderer(request.config)
        if request.preview_slide is not None and request.preview_output is not None:
            write_preview(renderer, request.slides, request.preview_slide, request.preview_output)
            return 0
        timeline = render_timeline(request.slides, renderer, request.config.fps)
        if request.emit_timeline:
            emit_timeline(timeline, request.slides)
            return 0
        render_video(request.config, timeline)
        return 0
    except SlideValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except SlidePipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("%s: %s", UNHANDLED_ERROR_CODE, str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
