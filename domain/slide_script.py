"""Domain types and script parsing for render_slide_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Tuple

from PIL import ImageColor

INVALID_CONFIG_CODE = "render_slide_video.input.invalid_config"
EMPTY_SCRIPT_CODE = "render_slide_video.input.empty_script"
INPUT_FILE_CODE = "render_slide_video.input.file_error"
INVALID_SLIDE_CODE = "render_slide_video.input.invalid_slide"

OPTION_SEPARATOR = "--"
DEFAULT_DURATION_SECONDS = 3
DEFAULT_COLOR = "#ffffff"
DEFAULT_FPS = 30

DURATION_PATTERN = re.compile(r"^duration\s+(\d+)$", re.IGNORECASE)
COLOR_PATTERN = re.compile(r"^color\s+(#[0-9a-fA-F]{6}|[A-Za-z]+)$", re.IGNORECASE)
SIZE_PATTERN = re.compile(r"^(?:text|font)\s*(xs|sm|base|lg|xl)$", re.IGNORECASE)
UPPERCASE_PATTERN = re.compile(r"^uppercase$", re.IGNORECASE)

RESOLUTIONS = ("1024x1024", "1080x1920", "1920x1080")
POPULAR_FONTS = ("Roboto", "Inter", "Montserrat", "Open Sans", "Poppins")
DEFAULT_FONT = "Roboto"


class SlideValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class EmptyScriptError(SlideValidationError):
    """Raised when a script yields no slides to render."""

    def __init__(self, message: str = "script contains no slides") -> None:
        super().__init__(EMPTY_SCRIPT_CODE, message)


class SizeClass(str, Enum):
    """Text size modifiers available to a slide."""

    XS = "xs"
    SM = "sm"
    BASE = "base"
    LG = "lg"
    XL = "xl"

    @property
    def multiplier(self) -> float:
        return SIZE_MULTIPLIERS[self]


SIZE_MULTIPLIERS = {
    SizeClass.XS: 0.5,
    SizeClass.SM: 0.75,
    SizeClass.BASE: 1.0,
    SizeClass.LG: 1.5,
    SizeClass.XL: 2.0,
}


@dataclass(frozen=True)
class Slide:
    """One script line with its resolved display options."""

    raw_text: str
    duration_seconds: int = DEFAULT_DURATION_SECONDS
    color: str = DEFAULT_COLOR
    size_class: SizeClass = SizeClass.BASE
    uppercase: bool = False

    def __post_init__(self) -> None:
        if self.duration_seconds <= 0:
            raise SlideValidationError(
                INVALID_SLIDE_CODE, "duration_seconds must be positive"
            )
        if not isinstance(self.size_class, SizeClass):
            raise SlideValidationError(INVALID_SLIDE_CODE, "size_class is invalid")

    @property
    def display_text(self) -> str:
        """Return the text as it will be measured and drawn."""
        if self.uppercase:
            return self.raw_text.upper()
        return self.raw_text

    @property
    def color_rgb(self) -> Tuple[int, int, int]:
        return parse_color_to_rgb(self.color)


@dataclass(frozen=True)
class RenderConfig:
    """Validated configuration for render_slide_video."""

    script_file: str
    output_video_file: str
    width: int
    height: int
    fps: int
    font_family: str
    fonts_dir: str
    realtime: bool
    ffmpeg_path: str | None

    def __post_init__(self) -> None:
        if not self.script_file.strip():
            raise SlideValidationError(
                INVALID_CONFIG_CODE, "script_file must be non-empty"
            )
        if self.width <= 0 or self.height <= 0:
            raise SlideValidationError(
                INVALID_CONFIG_CODE, "width and height must be positive"
            )
        if self.width % 2 or self.height % 2:
            raise SlideValidationError(
                INVALID_CONFIG_CODE, "width and height must be even for H.264 output"
            )
        if self.fps <= 0:
            raise SlideValidationError(INVALID_CONFIG_CODE, "fps must be positive")
        if not self.output_video_file.lower().endswith(".mp4"):
            raise SlideValidationError(
                INVALID_CONFIG_CODE, "output_video_file must end with .mp4"
            )
        if self.font_family not in POPULAR_FONTS:
            raise SlideValidationError(
                INVALID_CONFIG_CODE, f"unsupported font: {self.font_family!r}"
            )
        if self.ffmpeg_path is not None and not self.ffmpeg_path.strip():
            raise SlideValidationError(
                INVALID_CONFIG_CODE, "ffmpeg_path must be non-empty"
            )


def parse_resolution(value: str) -> Tuple[int, int]:
    """Parse a WIDTHxHEIGHT resolution from the supported set."""
    normalized = value.strip().lower()
    if normalized not in RESOLUTIONS:
        raise SlideValidationError(
            INVALID_CONFIG_CODE,
            f"unsupported resolution {value!r}; expected one of {', '.join(RESOLUTIONS)}",
        )
    width_text, height_text = normalized.split("x")
    return int(width_text), int(height_text)


def parse_color_to_rgb(color_value: str) -> Tuple[int, int, int]:
    """Resolve a color token to RGB, falling back to the default color."""
    try:
        rgb = ImageColor.getrgb(color_value)
    except ValueError:
        rgb = ImageColor.getrgb(DEFAULT_COLOR)
    return rgb[0], rgb[1], rgb[2]


def normalize_color(color_value: str) -> str:
    """Return a lower-cased color token, or the default when unknown."""
    normalized = color_value.strip().lower()
    try:
        ImageColor.getrgb(normalized)
    except ValueError:
        return DEFAULT_COLOR
    return normalized


def split_options(line: str) -> Tuple[str, Tuple[str, ...]]:
    """Split a script line into its markup text and option tokens."""
    text, *option_parts = line.split(OPTION_SEPARATOR)
    options = tuple(part.strip() for part in option_parts if part.strip())
    return text.strip(), options


def parse_script_line(line: str) -> Slide:
    """Parse one script line into a Slide; malformed options use defaults."""
    text, options = split_options(line)
    duration_seconds = DEFAULT_DURATION_SECONDS
    color = DEFAULT_COLOR
    size_class = SizeClass.BASE
    uppercase = False

    for option in options:
        duration_match = DURATION_PATTERN.fullmatch(option)
        if duration_match:
            value = int(duration_match.group(1))
            if value > 0:
                duration_seconds = value
            continue
        color_match = COLOR_PATTERN.fullmatch(option)
        if color_match:
            color = normalize_color(color_match.group(1))
            continue
        size_match = SIZE_PATTERN.fullmatch(option)
        if size_match:
            size_class = SizeClass(size_match.group(1).lower())
            continue
        if UPPERCASE_PATTERN.fullmatch(option):
            uppercase = True

    return Slide(
        raw_text=text,
        duration_seconds=duration_seconds,
        color=color,
        size_class=size_class,
        uppercase=uppercase,
    )


def parse_script(script_text: str) -> Tuple[Slide, ...]:
    """Parse script text into slides, one per non-blank line."""
    normalized = script_text.replace("\ufeff", "")
    slides = tuple(
        parse_script_line(line) for line in normalized.splitlines() if line.strip()
    )
    if not slides:
        raise EmptyScriptError()
    return slides


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise SlideValidationError(
            INPUT_FILE_CODE, f"script file not found: {file_path}"
        ) from exc
    except OSError as exc:
        raise SlideValidationError(
            INPUT_FILE_CODE, f"script file error: {file_path}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise SlideValidationError(
            INPUT_FILE_CODE,
            f"script file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc
