"""Slide rasterization and the still-frame cache."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import io
import logging
import math
import os
import re
import threading
from typing import Callable, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from domain.markup import StyledRun, tokenize_markup
from domain.slide_script import (
    INVALID_CONFIG_CODE,
    SizeClass,
    Slide,
    SlideValidationError,
)
from service.layout import LayoutLine, layout_runs

LOGGER = logging.getLogger("render_slide_video")

FONT_LOAD_CODE = "render_slide_video.fonts.unloadable"
FONT_MISSING_CODE = "render_slide_video.fonts.missing"
FONT_EXTENSIONS = (".ttf", ".otf")
DEFAULT_FONT_CLASS = "default"
BACKGROUND_RGB = (0, 0, 0)
BASE_FONT_RATIO = 0.05
LINE_HEIGHT_RATIO = 1.2
HORIZONTAL_MARGIN = 10
FAUX_BOLD_RATIO = 0.03
FAUX_ITALIC_SHEAR = 0.2
UNDERLINE_RATIO = 0.06
ENCODED_FORMAT = "PNG"


class FaceStyle(str, Enum):
    """Font faces a family may provide."""

    REGULAR = "regular"
    BOLD = "bold"
    ITALIC = "italic"
    BOLD_ITALIC = "bold_italic"


FACE_SUFFIXES = {
    "": FaceStyle.REGULAR,
    "regular": FaceStyle.REGULAR,
    "bold": FaceStyle.BOLD,
    "italic": FaceStyle.ITALIC,
    "oblique": FaceStyle.ITALIC,
    "bolditalic": FaceStyle.BOLD_ITALIC,
    "boldoblique": FaceStyle.BOLD_ITALIC,
}


@dataclass(frozen=True)
class FontFaces:
    """Font files resolved for one family."""

    family: str
    font_class: str
    paths: Tuple[Tuple[FaceStyle, str], ...]

    def path_for(self, face: FaceStyle) -> str | None:
        for face_style, path in self.paths:
            if face_style == face:
                return path
        return None


@dataclass(frozen=True)
class RunStyle:
    """Everything needed to measure and draw a run, applied per call."""

    font: ImageFont.FreeTypeFont | ImageFont.ImageFont
    fill_rgb: Tuple[int, int, int]
    underline: bool
    stroke_width: int
    shear: float
    underline_thickness: int


@dataclass(frozen=True)
class FrameKey:
    """All parameters that determine a frame's pixels."""

    text: str
    duration_seconds: int
    color: str
    size_class: SizeClass
    uppercase: bool
    width: int
    height: int
    font_family: str
    font_class: str


@dataclass(frozen=True)
class Frame:
    """An encoded still image for one slide."""

    encoded_image: bytes
    cache_key: FrameKey


def normalize_font_name(value: str) -> str:
    """Lower-case a font name and strip non-alphanumerics."""
    return re.sub(r"[^a-z0-9]", "", value.lower())


def font_class_for(family: str) -> str:
    """Return the hyphenated class name for a font family."""
    return re.sub(r"\s+", "-", family.strip().lower())


def resolve_font_faces(fonts_dir: str, family: str) -> FontFaces:
    """Find regular/bold/italic faces for ``family`` in ``fonts_dir``."""
    family_key = normalize_font_name(family)
    found: dict[FaceStyle, str] = {}
    if os.path.isdir(fonts_dir):
        for entry_name in sorted(os.listdir(fonts_dir)):
            stem, extension = os.path.splitext(entry_name)
            if extension.lower() not in FONT_EXTENSIONS:
                continue
            normalized = normalize_font_name(stem)
            if not normalized.startswith(family_key):
                continue
            face = FACE_SUFFIXES.get(normalized[len(family_key) :])
            if face is None or face in found:
                continue
            found[face] = os.path.join(fonts_dir, entry_name)
    else:
        LOGGER.warning("%s: fonts directory does not exist: %s", FONT_MISSING_CODE, fonts_dir)

    if FaceStyle.REGULAR not in found:
        LOGGER.warning(
            "%s: no regular face for %s in %s; using the built-in font",
            FONT_MISSING_CODE,
            family,
            fonts_dir,
        )
        return FontFaces(family=family, font_class=DEFAULT_FONT_CLASS, paths=())

    return FontFaces(
        family=family,
        font_class=font_class_for(family),
        paths=tuple(sorted(found.items(), key=lambda item: item[0].value)),
    )


class FontLibrary:
    """Loads and caches sized fonts for a resolved family."""

    def __init__(self, faces: FontFaces) -> None:
        self.faces = faces
        self._cache: dict[Tuple[str, int], ImageFont.FreeTypeFont | ImageFont.ImageFont] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_directory(cls, fonts_dir: str, family: str) -> "FontLibrary":
        return cls(resolve_font_faces(fonts_dir, family))

    @property
    def family(self) -> str:
        return self.faces.family

    @property
    def font_class(self) -> str:
        return self.faces.font_class

    def load(self, font_path: str | None, font_size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
        """Load a font by path and size, caching the result."""
        cache_key = (font_path or "", font_size)
        with self._lock:
            cached_font = self._cache.get(cache_key)
        if cached_font is not None:
            return cached_font
        if font_path is None:
            font = ImageFont.load_default(size=font_size)
        else:
            try:
                font = ImageFont.truetype(
                    font_path, size=font_size, layout_engine=ImageFont.Layout.BASIC
                )
            except OSError as exc:
                raise SlideValidationError(
                    FONT_LOAD_CODE, f"failed to load font {font_path} at size {font_size}"
                ) from exc
        with self._lock:
            self._cache[cache_key] = font
        return font

    def style_for(
        self,
        bold: bool,
        italic: bool,
        font_size: int,
        fill_rgb: Tuple[int, int, int],
        underline: bool,
    ) -> RunStyle:
        """Pick the closest face and synthesize whatever it lacks."""
        candidates: list[Tuple[FaceStyle, bool, bool]] = []
        if bold and italic:
            candidates.append((FaceStyle.BOLD_ITALIC, False, False))
        if bold:
            candidates.append((FaceStyle.BOLD, False, italic))
        if italic:
            candidates.append((FaceStyle.ITALIC, bold, False))
        candidates.append((FaceStyle.REGULAR, bold, italic))

        font_path = None
        faux_bold = bold
        faux_italic = italic
        for face, needs_bold, needs_italic in candidates:
            path = self.faces.path_for(face)
            if path is not None:
                font_path = path
                faux_bold = needs_bold
                faux_italic = needs_italic
                break

        return RunStyle(
            font=self.load(font_path, font_size),
            fill_rgb=fill_rgb,
            underline=underline,
            stroke_width=max(1, round(font_size * FAUX_BOLD_RATIO)) if faux_bold else 0,
            shear=FAUX_ITALIC_SHEAR if faux_italic else 0.0,
            underline_thickness=max(1, round(font_size * UNDERLINE_RATIO)),
        )


def measure_text_width(
    draw_context: ImageDraw.ImageDraw,
    text_value: str,
    font: ImageFont.FreeTypeFont | ImageFont.ImageFont,
) -> float:
    """Measure text width using font metrics."""
    if not text_value:
        return 0.0
    try:
        return float(draw_context.textlength(text_value, font=font))
    except (AttributeError, ValueError):
        bbox = draw_context.textbbox((0, 0), text_value, font=font)
        return float(bbox[2] - bbox[0])


def measure_run_width(
    draw_context: ImageDraw.ImageDraw, text_value: str, style: RunStyle
) -> float:
    """Measure a run's advance including any synthetic stroke."""
    return measure_text_width(draw_context, text_value, style.font) + 2 * style.stroke_width


def compute_baseline_offset(font: ImageFont.FreeTypeFont | ImageFont.ImageFont) -> float:
    """Distance from the middle anchor down to the baseline."""
    try:
        ascent, descent = font.getmetrics()
    except AttributeError:
        return 0.0
    return (ascent - descent) / 2.0


def render_text_sprite(
    text_value: str,
    style: RunStyle,
    draw_context: ImageDraw.ImageDraw,
) -> Tuple[Image.Image, Tuple[int, int]]:
    """Render a text sprite and return the image plus its anchor offset."""
    left, top, right, bottom = draw_context.textbbox(
        (0, 0),
        text_value,
        font=style.font,
        stroke_width=style.stroke_width,
        anchor="lm",
    )
    sprite_width = max(1, right - left)
    sprite_height = max(1, bottom - top)
    sprite = Image.new("RGBA", (sprite_width, sprite_height), (0, 0, 0, 0))
    sprite_draw = ImageDraw.Draw(sprite)
    sprite_draw.text(
        (-left, -top),
        text_value,
        font=style.font,
        fill=style.fill_rgb + (255,),
        stroke_width=style.stroke_width,
        stroke_fill=style.fill_rgb + (255,),
        anchor="lm",
    )
    return sprite, (int(left), int(top))


def shear_sprite(
    sprite: Image.Image, anchor_row: int, shear: float
) -> Tuple[Image.Image, int]:
    """Slant a sprite around its anchor row; return it with its left padding."""
    width, height = sprite.size
    pad_left = int(math.ceil(shear * max(0, height - anchor_row)))
    pad_right = int(math.ceil(shear * max(0, anchor_row)))
    sheared = sprite.transform(
        (width + pad_left + pad_right, height),
        Image.Transform.AFFINE,
        (1, shear, -(pad_left + shear * anchor_row), 0, 1, 0),
        resample=Image.Resampling.BICUBIC,
    )
    return sheared, pad_left


def draw_run(
    image: Image.Image,
    text_value: str,
    origin: Tuple[float, float],
    run_width: float,
    style: RunStyle,
) -> None:
    """Draw one run with its full style; ``origin`` is its left-middle point."""
    draw_context = ImageDraw.Draw(image)
    x_value, y_value = origin
    if text_value.strip():
        text_x = x_value + style.stroke_width
        if style.shear:
            sprite, (left, top) = render_text_sprite(text_value, style, draw_context)
            sheared, pad_left = shear_sprite(sprite, -top, style.shear)
            paste_at = (
                int(round(text_x + left - pad_left)),
                int(round(y_value + top)),
            )
            image.paste(sheared, paste_at, sheared)
        else:
            draw_context.text(
                (text_x, y_value),
                text_value,
                font=style.font,
                fill=style.fill_rgb,
                stroke_width=style.stroke_width,
                stroke_fill=style.fill_rgb,
                anchor="lm",
            )

    if style.underline and run_width > 0:
        underline_y = (
            y_value
            + compute_baseline_offset(style.font)
            + style.underline_thickness
        )
        draw_context.line(
            [(x_value, underline_y), (x_value + run_width, underline_y)],
            fill=style.fill_rgb,
            width=style.underline_thickness,
        )


def encode_image(image: Image.Image) -> bytes:
    """Encode an image as PNG bytes."""
    buffer = io.BytesIO()
    image.save(buffer, format=ENCODED_FORMAT)
    return buffer.getvalue()


@dataclass
class FrameCache:
    """Thread-safe key-to-frame store with single-flight rendering.

    There is no eviction; ``clear`` is the only way entries are invalidated.
    """

    frames: dict[FrameKey, Frame] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)
    pending: dict[FrameKey, threading.Lock] = field(default_factory=dict)
    hits: int = 0
    misses: int = 0

    def get_or_render(self, key: FrameKey, render: Callable[[], bytes]) -> Frame:
        """Return the cached frame for ``key``, rendering it at most once."""
        with self.lock:
            cached = self.frames.get(key)
            if cached is not None:
                self.hits += 1
                return cached
            key_lock = self.pending.setdefault(key, threading.Lock())

        with key_lock:
            with self.lock:
                cached = self.frames.get(key)
                if cached is not None:
                    self.hits += 1
                    return cached
            try:
                frame = Frame(encoded_image=render(), cache_key=key)
                with self.lock:
                    self.frames[key] = frame
                    self.misses += 1
            finally:
                with self.lock:
                    self.pending.pop(key, None)
        return frame

    def clear(self) -> None:
        """Drop every cached frame."""
        with self.lock:
            self.frames.clear()
        LOGGER.debug("render_slide_video.cache.cleared")

    def __len__(self) -> int:
        with self.lock:
            return len(self.frames)

    def __contains__(self, key: object) -> bool:
        with self.lock:
            return key in self.frames


class SlideRenderer:
    """Lays out and rasterizes slides at a fixed resolution."""

    def __init__(
        self,
        width: int,
        height: int,
        fonts: FontLibrary,
        cache: FrameCache | None = None,
        background_rgb: Tuple[int, int, int] = BACKGROUND_RGB,
    ) -> None:
        if width <= 0 or height <= 0:
            raise SlideValidationError(
                INVALID_CONFIG_CODE, "width and height must be positive"
            )
        self.width = width
        self.height = height
        self.fonts = fonts
        self.cache = cache if cache is not None else FrameCache()
        self.background_rgb = background_rgb
        self._measure_context = ImageDraw.Draw(Image.new("RGB", (1, 1)))

    def frame_key(self, slide: Slide) -> FrameKey:
        return FrameKey(
            text=slide.display_text,
            duration_seconds=slide.duration_seconds,
            color=slide.color,
            size_class=slide.size_class,
            uppercase=slide.uppercase,
            width=self.width,
            height=self.height,
            font_family=self.fonts.family,
            font_class=self.fonts.font_class,
        )

    def font_size_for(self, slide: Slide) -> int:
        base_size = min(self.width, self.height) * BASE_FONT_RATIO
        return max(1, int(round(base_size * slide.size_class.multiplier)))

    def style_for(self, run: StyledRun, slide: Slide) -> RunStyle:
        return self.fonts.style_for(
            bold=run.bold,
            italic=run.italic,
            font_size=self.font_size_for(slide),
            fill_rgb=slide.color_rgb,
            underline=run.underline,
        )

    def measure(self, run: StyledRun, slide: Slide) -> float:
        return measure_run_width(self._measure_context, run.text, self.style_for(run, slide))

    def layout_slide(self, slide: Slide) -> Tuple[LayoutLine, ...]:
        """Tokenize and wrap a slide's markup."""
        runs = tokenize_markup(slide.raw_text, uppercase=slide.uppercase)
        font_size = self.font_size_for(slide)
        return layout_runs(
            runs,
            max_width=self.width - 2 * HORIZONTAL_MARGIN,
            line_height=font_size * LINE_HEIGHT_RATIO,
            measure=lambda run: self.measure(run, slide),
            center_x=self.width / 2.0,
            start_y=self.height / 2.0,
        )

    def render_preview(self, slide: Slide) -> Image.Image:
        """Draw a slide onto a fresh background image."""
        image = Image.new("RGB", (self.width, self.height), self.background_rgb)
        draw_lines(image, self.layout_slide(slide), lambda run: self.style_for(run, slide))
        return image

    def render(self, slide: Slide) -> Frame:
        """Return the encoded frame for a slide, from cache when possible."""
        key = self.frame_key(slide)
        return self.cache.get_or_render(key, lambda: encode_image(self.render_preview(slide)))

    def invalidate(self) -> None:
        """Clear every cached frame, e.g. after fonts change on disk."""
        self.cache.clear()


def draw_lines(
    image: Image.Image,
    lines: Sequence[LayoutLine],
    style_for: Callable[[StyledRun], RunStyle],
) -> None:
    """Draw laid-out lines run by run, left to right."""
    measure_context = ImageDraw.Draw(image)
    for line in lines:
        cursor_x = line.x_offset
        for run in line.runs:
            style = style_for(run)
            run_width = measure_run_width(measure_context, run.text, style)
            draw_run(image, run.text, (cursor_x, line.y_offset), run_width, style)
            cursor_x += run_width
