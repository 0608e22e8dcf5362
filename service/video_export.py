"""Real-time capture of a frame timeline and transcode to MP4.

Export runs in two strictly sequential stages. Capture paces frames against
the wall clock onto a drawing surface and streams each drawn surface into an
intermediate Matroska stream held in memory. Transcode feeds that buffer to
ffmpeg for a constant-quality H.264 encode with a fast-start layout and
reads the result back. Progress for both stages goes through one
``(stage, percent)`` callback.
"""

from __future__ import annotations

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import io
import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
import time
from typing import IO, Callable, Iterator, Protocol, Sequence, Tuple

from PIL import Image

from domain.slide_script import (
    DEFAULT_FPS,
    EmptyScriptError,
    INVALID_CONFIG_CODE,
    SlideValidationError,
)
from service.frame_render import BACKGROUND_RGB, Frame

LOGGER = logging.getLogger("render_slide_video")

SURFACE_UNAVAILABLE_CODE = "render_slide_video.capture.surface_unavailable"
IMAGE_DECODE_CODE = "render_slide_video.capture.image_decode"
CAPTURE_CODE = "render_slide_video.capture.failed"
TRANSCODE_CODE = "render_slide_video.transcode.failed"
FFMPEG_NOT_FOUND_CODE = "render_slide_video.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "render_slide_video.ffmpeg.exec_error"
FFMPEG_UNSUPPORTED_CODE = "render_slide_video.ffmpeg.unsupported"
EXPORT_CANCELLED_CODE = "render_slide_video.export.cancelled"
EXPORT_BUSY_CODE = "render_slide_video.export.busy"

STAGE_INITIALIZING = "Initializing"
STAGE_RECORDING = "Recording frames"
STAGE_CONVERTING = "Converting to MP4"

INTERMEDIATE_CODEC = "mjpeg"
INTERMEDIATE_QSCALE = "3"
INTERMEDIATE_FORMAT = "matroska"
INTERMEDIATE_FILE_NAME = "input.mkv"
OUTPUT_FILE_NAME = "output.mp4"
H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
H264_CRF = "23"
H264_PRESET = "medium"
LOG_TAIL_LINES = 20
READ_CHUNK_BYTES = 64 * 1024

CLOCK_PATTERN = r"(\d+):(\d{2}):(\d{2}(?:\.\d+)?)"
TIME_PATTERN = re.compile(r"time=\s*" + CLOCK_PATTERN)
DURATION_PATTERN = re.compile(r"Duration:\s*" + CLOCK_PATTERN)
LINE_SPLIT_PATTERN = re.compile(rb"[\r\n]")

ProgressCallback = Callable[[str, float], None]


class SlidePipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class SurfaceUnavailableError(SlidePipelineError):
    def __init__(self, message: str) -> None:
        super().__init__(SURFACE_UNAVAILABLE_CODE, message)


class ImageDecodeError(SlidePipelineError):
    def __init__(self, message: str) -> None:
        super().__init__(IMAGE_DECODE_CODE, message)


class CaptureError(SlidePipelineError):
    def __init__(self, message: str, code: str = CAPTURE_CODE) -> None:
        super().__init__(code, message)


class TranscodeError(SlidePipelineError):
    def __init__(self, message: str, code: str = TRANSCODE_CODE) -> None:
        super().__init__(code, message)


class ExportCancelledError(SlidePipelineError):
    def __init__(self, message: str = "export was cancelled") -> None:
        super().__init__(EXPORT_CANCELLED_CODE, message)


class ExportBusyError(SlidePipelineError):
    def __init__(self, message: str = "another export is already running") -> None:
        super().__init__(EXPORT_BUSY_CODE, message)


class CancellationToken:
    """Cooperative cancellation flag with cancel callbacks."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback; it runs at once if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancel."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExportCancelledError()


class ProgressReporter:
    """Forward clamped, strictly increasing progress per stage."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last: dict[str, float] = {}

    def report(self, stage: str, percent: float) -> bool:
        clamped = min(100.0, max(0.0, float(percent)))
        last = self._last.get(stage)
        if last is not None and clamped <= last:
            return False
        self._last[stage] = clamped
        LOGGER.debug("render_slide_video.export.progress: %s %.1f%%", stage, clamped)
        if self._callback is not None:
            self._callback(stage, clamped)
        return True


def parse_clock_seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class TranscodeProgressParser:
    """Map ffmpeg ``time=`` log markers onto a percentage of the duration.

    The known duration wins; when none is supplied the ``Duration:`` line of
    the input is used instead.
    """

    def __init__(self, total_seconds: float | None) -> None:
        self.total_seconds = total_seconds if total_seconds and total_seconds > 0 else None

    def feed(self, line: str) -> int | None:
        duration_match = DURATION_PATTERN.search(line)
        if duration_match and self.total_seconds is None:
            parsed = parse_clock_seconds(*duration_match.groups())
            if parsed > 0:
                self.total_seconds = parsed
        time_match = TIME_PATTERN.search(line)
        if not time_match or self.total_seconds is None:
            return None
        current_seconds = parse_clock_seconds(*time_match.groups())
        return min(100, max(0, int(round(current_seconds / self.total_seconds * 100))))


def iter_log_lines(stream: IO[bytes]) -> Iterator[str]:
    """Yield log lines split on carriage returns and newlines."""
    pending = b""
    while True:
        chunk = stream.read1(READ_CHUNK_BYTES) if hasattr(stream, "read1") else stream.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        pending += chunk
        parts = LINE_SPLIT_PATTERN.split(pending)
        pending = parts.pop()
        for part in parts:
            if part.strip():
                yield part.decode("utf-8", errors="replace")
    if pending.strip():
        yield pending.decode("utf-8", errors="replace")


class DrawingSurface:
    """An owned RGB canvas that frames are drawn onto before capture."""

    def __init__(self, image: Image.Image, background_rgb: Tuple[int, int, int]) -> None:
        self.image = image
        self.background_rgb = background_rgb

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    def draw_frame(self, frame_image: Image.Image) -> None:
        """Clear the surface and draw ``frame_image`` at the origin."""
        self.image.paste(self.background_rgb, (0, 0, self.width, self.height))
        self.image.paste(frame_image, (0, 0))

    def snapshot(self) -> bytes:
        return self.image.tobytes()


def acquire_surface(
    width: int, height: int, background_rgb: Tuple[int, int, int] = BACKGROUND_RGB
) -> DrawingSurface:
    """Allocate a drawing surface of the given size."""
    if width <= 0 or height <= 0:
        raise SurfaceUnavailableError(f"invalid surface size {width}x{height}")
    try:
        image = Image.new("RGB", (width, height), background_rgb)
    except (ValueError, MemoryError) as exc:
        raise SurfaceUnavailableError(
            f"could not allocate a {width}x{height} surface"
        ) from exc
    return DrawingSurface(image, background_rgb)


def decode_frame(frame: Frame, frame_index: int = 0) -> Image.Image:
    """Decode a frame's still image into an RGB image."""
    try:
        with Image.open(io.BytesIO(frame.encoded_image)) as image:
            image.load()
            return image.convert("RGB")
    except (OSError, SyntaxError, ValueError) as exc:
        raise ImageDecodeError(f"failed to decode frame {frame_index}") from exc


def find_ffmpeg(requested_path: str | None) -> str | None:
    """Resolve the ffmpeg executable from an explicit path or PATH."""
    return shutil.which(requested_path or "ffmpeg")


def stop_process(process: subprocess.Popen[bytes]) -> None:
    """Kill a process if it is still running and reap it."""
    try:
        if process.poll() is None:
            process.kill()
        process.wait()
    except OSError:
        pass


class CaptureSession(Protocol):
    """Receives drawn surfaces and produces an intermediate container."""

    def write_frame(self, frame_bytes: bytes) -> None: ...

    def stop(self) -> bytes: ...

    def abort(self) -> None: ...


CaptureSessionFactory = Callable[[int, int, int], CaptureSession]


class FfmpegCaptureSession:
    """Streams raw RGB surfaces to ffmpeg and collects its stdout chunks."""

    def __init__(self, process: subprocess.Popen[bytes]) -> None:
        self._process = process
        self._chunks: list[bytes] = []
        self._stderr_chunks: list[bytes] = []
        self._readers = [
            threading.Thread(
                target=self._drain, args=(process.stdout, self._chunks), daemon=True
            ),
            threading.Thread(
                target=self._drain, args=(process.stderr, self._stderr_chunks), daemon=True
            ),
        ]
        for reader in self._readers:
            reader.start()

    @classmethod
    def open(
        cls, width: int, height: int, fps: int, ffmpeg_path: str | None = None
    ) -> "FfmpegCaptureSession":
        """Start an ffmpeg process that encodes raw frames to Matroska."""
        resolved_path = find_ffmpeg(ffmpeg_path)
        if not resolved_path:
            raise CaptureError("ffmpeg not on PATH", FFMPEG_NOT_FOUND_CODE)
        command = [
            resolved_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgb24",
            "-s",
            f"{width}x{height}",
            "-r",
            str(fps),
            "-i",
            "-",
            "-an",
            "-c:v",
            INTERMEDIATE_CODEC,
            "-q:v",
            INTERMEDIATE_QSCALE,
            "-f",
            INTERMEDIATE_FORMAT,
            "pipe:1",
        ]
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise CaptureError("failed to start capture process", FFMPEG_EXEC_CODE) from exc
        return cls(process)

    @staticmethod
    def _drain(stream: IO[bytes] | None, sink: list[bytes]) -> None:
        if stream is None:
            return
        for chunk in iter(lambda: stream.read(READ_CHUNK_BYTES), b""):
            sink.append(chunk)

    def _join_readers(self) -> None:
        for reader in self._readers:
            reader.join()

    def _stderr_text(self) -> str:
        return b"".join(self._stderr_chunks).decode("utf-8", errors="replace").strip()

    def write_frame(self, frame_bytes: bytes) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.closed:
            raise CaptureError("capture session is closed")
        try:
            stdin.write(frame_bytes)
        except (OSError, ValueError) as exc:
            self.abort()
            raise CaptureError(f"capture stream failed: {self._stderr_text()}") from exc

    def stop(self) -> bytes:
        """Finish the stream and return the whole intermediate buffer."""
        stdin = self._process.stdin
        try:
            if stdin is not None and not stdin.closed:
                stdin.close()
        except OSError as exc:
            self.abort()
            raise CaptureError("capture stream failed while closing") from exc
        return_code = self._process.wait()
        self._join_readers()
        if return_code != 0:
            self._chunks.clear()
            raise CaptureError(
                f"capture process failed with exit code {return_code}. {self._stderr_text()}"
            )
        buffer = b"".join(self._chunks)
        self._chunks.clear()
        return buffer

    def abort(self) -> None:
        """Stop without producing output and drop buffered bytes.

        The process is killed before stdin is closed so that a writer blocked
        on a full pipe is released first.
        """
        stop_process(self._process)
        stdin = self._process.stdin
        try:
            if stdin is not None and not stdin.closed:
                stdin.close()
        except (OSError, ValueError):
            pass
        self._join_readers()
        self._chunks.clear()


def validate_ffmpeg_capabilities(ffmpeg_path: str) -> None:
    """Validate that ffmpeg runs and has the encoders export needs."""
    try:
        version_result = subprocess.run(
            [ffmpeg_path, "-version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=True,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise TranscodeError(
            "ffmpeg exists but could not be executed", FFMPEG_EXEC_CODE
        ) from exc

    if "ffmpeg version" not in version_result.stdout.lower():
        raise TranscodeError("ffmpeg version output is unexpected", FFMPEG_EXEC_CODE)

    encoders_result = subprocess.run(
        [ffmpeg_path, "-hide_banner", "-encoders"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    for encoder_name in (H264_CODEC, INTERMEDIATE_CODEC):
        if encoder_name not in encoders_result.stdout:
            raise TranscodeError(
                f"ffmpeg does not support {encoder_name} encoder",
                FFMPEG_UNSUPPORTED_CODE,
            )


class Transcoder:
    """Owned, lazily initialized ffmpeg handle for the transcode stage.

    Nothing is resolved until first use. ``reset`` tears down the work
    directory and forgets the resolved binary so the next use starts over.
    """

    def __init__(self, ffmpeg_path: str | None = None) -> None:
        self.requested_path = ffmpeg_path
        self._ffmpeg_path: str | None = None
        self._work_dir: str | None = None
        self._lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._ffmpeg_path is not None

    def ensure_ready(self) -> str:
        with self._lock:
            if self._ffmpeg_path is None:
                resolved_path = find_ffmpeg(self.requested_path)
                if not resolved_path:
                    raise TranscodeError("ffmpeg not on PATH", FFMPEG_NOT_FOUND_CODE)
                validate_ffmpeg_capabilities(resolved_path)
                self._ffmpeg_path = resolved_path
            if self._work_dir is None:
                self._work_dir = tempfile.mkdtemp(prefix="render_slide_video-")
            return self._ffmpeg_path

    def reset(self) -> None:
        with self._lock:
            if self._work_dir is not None:
                shutil.rmtree(self._work_dir, ignore_errors=True)
            self._work_dir = None
            self._ffmpeg_path = None

    def __enter__(self) -> "Transcoder":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.reset()

    def build_command(self, ffmpeg_path: str, input_path: str, output_path: str) -> list[str]:
        return [
            ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-i",
            input_path,
            "-an",
            "-c:v",
            H264_CODEC,
            "-preset",
            H264_PRESET,
            "-crf",
            H264_CRF,
            "-pix_fmt",
            H264_PIXEL_FORMAT,
            "-movflags",
            "+faststart",
            output_path,
        ]

    def transcode(
        self,
        intermediate: bytes,
        total_duration_seconds: float | None,
        reporter: ProgressReporter,
        cancel: CancellationToken,
    ) -> bytes:
        """Encode the intermediate buffer to MP4 bytes.

        Intermediate files are removed on every exit path.
        """
        ffmpeg_path = self.ensure_ready()
        cancel.raise_if_cancelled()
        job_dir = tempfile.mkdtemp(dir=self._work_dir)
        input_path = os.path.join(job_dir, INTERMEDIATE_FILE_NAME)
        output_path = os.path.join(job_dir, OUTPUT_FILE_NAME)
        parser = TranscodeProgressParser(total_duration_seconds)
        process: subprocess.Popen[bytes] | None = None

        try:
            with open(input_path, "wb") as file_handle:
                file_handle.write(intermediate)

            try:
                process = subprocess.Popen(
                    self.build_command(ffmpeg_path, input_path, output_path),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                )
            except OSError as exc:
                raise TranscodeError("failed to start ffmpeg", FFMPEG_EXEC_CODE) from exc

            running = process

            def kill_running() -> None:
                stop_process(running)

            cancel.add_callback(kill_running)
            log_tail: deque[str] = deque(maxlen=LOG_TAIL_LINES)
            try:
                if process.stderr is not None:
                    for line in iter_log_lines(process.stderr):
                        log_tail.append(line)
                        percent = parser.feed(line)
                        if percent is not None:
                            reporter.report(STAGE_CONVERTING, percent)
                return_code = process.wait()
            finally:
                cancel.remove_callback(kill_running)

            cancel.raise_if_cancelled()
            if return_code != 0:
                raise TranscodeError(
                    f"ffmpeg failed with exit code {return_code}. {' '.join(log_tail)}"
                )
            with open(output_path, "rb") as file_handle:
                output_bytes = file_handle.read()
            reporter.report(STAGE_CONVERTING, 100)
            return output_bytes
        finally:
            if process is not None:
                stop_process(process)
            shutil.rmtree(job_dir, ignore_errors=True)


class VideoExporter:
    """Runs capture then transcode for a frame sequence, one export at a time."""

    def __init__(
        self,
        transcoder: Transcoder,
        session_factory: CaptureSessionFactory | None = None,
        realtime: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.transcoder = transcoder
        self.realtime = realtime
        self._session_factory = session_factory or self._open_ffmpeg_session
        self._clock = clock
        self._sleep = sleep
        self._busy = threading.Lock()

    def _open_ffmpeg_session(self, width: int, height: int, fps: int) -> CaptureSession:
        return FfmpegCaptureSession.open(
            width, height, fps, ffmpeg_path=self.transcoder.requested_path
        )

    def _wait(self, delay: float, cancel: CancellationToken) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        else:
            cancel.wait(delay)

    def export(
        self,
        frames: Sequence[Frame],
        frame_rate: int = DEFAULT_FPS,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Capture ``frames`` in real time and return the final MP4 bytes."""
        if not frames:
            raise EmptyScriptError("no frames to export")
        if frame_rate <= 0:
            raise SlideValidationError(INVALID_CONFIG_CODE, "frame_rate must be positive")
        if not self._busy.acquire(blocking=False):
            raise ExportBusyError()
        token = cancel if cancel is not None else CancellationToken()
        try:
            return self._run(frames, frame_rate, ProgressReporter(on_progress), token)
        except ExportCancelledError:
            LOGGER.warning("%s: export cancelled", EXPORT_CANCELLED_CODE)
            raise
        finally:
            self._busy.release()

    def _run(
        self,
        frames: Sequence[Frame],
        frame_rate: int,
        reporter: ProgressReporter,
        cancel: CancellationToken,
    ) -> bytes:
        reporter.report(STAGE_INITIALIZING, 0)
        self.transcoder.ensure_ready()
        first_image = decode_frame(frames[0], 0)
        surface = acquire_surface(first_image.width, first_image.height)
        cancel.raise_if_cancelled()

        intermediate = self.capture(
            frames, frame_rate, surface, reporter, cancel, first_image=first_image
        )
        LOGGER.info(
            "render_slide_video.capture.finished: %d frames, %d bytes",
            len(frames),
            len(intermediate),
        )
        output_bytes = self.transcoder.transcode(
            intermediate, len(frames) / float(frame_rate), reporter, cancel
        )
        reporter.report(STAGE_CONVERTING, 100)
        LOGGER.info("render_slide_video.transcode.finished: %d bytes", len(output_bytes))
        return output_bytes

    def capture(
        self,
        frames: Sequence[Frame],
        frame_rate: int,
        surface: DrawingSurface,
        reporter: ProgressReporter,
        cancel: CancellationToken,
        first_image: Image.Image | None = None,
    ) -> bytes:
        """Draw frames onto ``surface`` paced by wall-clock time and capture them.

        At each opportunity the elapsed time since start gives a target frame
        index; a frame is drawn only while the current index is not ahead of
        that target, so slow draws are absorbed instead of drifting.
        ``first_image`` is the already decoded first frame, if any. Cancelling
        aborts the session at once, even while a write or stop is blocked.
        """
        session = self._session_factory(surface.width, surface.height, frame_rate)
        LOGGER.info(
            "render_slide_video.capture.started: %d frames at %d fps",
            len(frames),
            frame_rate,
        )
        total_frames = len(frames)
        frame_interval = 1.0 / frame_rate
        frame_index = 0
        current_frame: Frame | None = None
        surface_bytes = b""
        start_time = self._clock()

        cancel.add_callback(session.abort)
        try:
            while frame_index < total_frames:
                cancel.raise_if_cancelled()
                reporter.report(STAGE_RECORDING, frame_index / total_frames * 100.0)
                if self.realtime:
                    elapsed = self._clock() - start_time
                    target_index = int(elapsed / frame_interval)
                    if frame_index > target_index:
                        self._wait(frame_index * frame_interval - elapsed, cancel)
                        continue

                frame = frames[frame_index]
                if frame is not current_frame:
                    if first_image is not None and frame is frames[0]:
                        frame_image = first_image
                    else:
                        frame_image = decode_frame(frame, frame_index)
                    surface.draw_frame(frame_image)
                    surface_bytes = surface.snapshot()
                    current_frame = frame
                session.write_frame(surface_bytes)
                frame_index += 1

            cancel.raise_if_cancelled()
            intermediate = session.stop()
        except ExportCancelledError:
            session.abort()
            raise
        except BaseException as exc:
            session.abort()
            if cancel.cancelled:
                raise ExportCancelledError() from exc
            raise
        finally:
            cancel.remove_callback(session.abort)

        reporter.report(STAGE_RECORDING, 100.0)
        return intermediate


@dataclass
class ExportJob:
    """Handle for an export running on a worker thread."""

    future: "Future[bytes]"
    token: CancellationToken

    def cancel(self) -> None:
        """Abort the export; ``result`` then raises ExportCancelledError."""
        self.token.cancel()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> bytes:
        return self.future.result(timeout)


def start_export(
    exporter: VideoExporter,
    frames: Sequence[Frame],
    frame_rate: int = DEFAULT_FPS,
    on_progress: ProgressCallback | None = None,
) -> ExportJob:
    """Run ``exporter.export`` in the background and return a cancellable job."""
    token = CancellationToken()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="render_slide_video")
    try:
        future = executor.submit(exporter.export, frames, frame_rate, on_progress, token)
    finally:
        executor.shutdown(wait=False)
    return ExportJob(future=future, token=token)


def export_video(
    frames: Sequence[Frame],
    frame_rate: int = DEFAULT_FPS,
    on_progress: ProgressCallback | None = None,
    ffmpeg_path: str | None = None,
    realtime: bool = True,
    cancel: CancellationToken | None = None,
) -> bytes:
    """Export frames to MP4 bytes with a transcoder scoped to this call."""
    if not frames:
        raise EmptyScriptError("no frames to export")
    with Transcoder(ffmpeg_path) as transcoder:
        exporter = VideoExporter(transcoder, realtime=realtime)
        return exporter.export(frames, frame_rate, on_progress, cancel)
