"""Integration tests for the render_slide_video CLI."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List

import pytest
from PIL import Image

SCRIPT_TEXT = (
    "Hello <b>World</b> -- duration 2 -- color #ff0000 -- textlg\n"
    "Second slide -- duration 1\n"
)


def run_render_slide_video(
    args: List[str],
    repo_root: Path,
    env_overrides: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run render_slide_video.py with the provided arguments."""
    env = os.environ.copy()
    if env_overrides:
        env.update(env_overrides)
    return subprocess.run(
        [sys.executable, str(repo_root / "render_slide_video.py"), *args],
        cwd=repo_root,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )


def write_script(tmp_path: Path, content: str) -> Path:
    """Write a slide script to disk."""
    script_path = tmp_path / "slides.txt"
    script_path.write_text(content, encoding="utf-8")
    return script_path


def build_common_args(script_path: Path, output_path: Path, fonts_dir: Path) -> List[str]:
    """Build common CLI arguments."""
    return [
        "--script-file",
        str(script_path),
        "--output-video-file",
        str(output_path),
        "--resolution",
        "1024x1024",
        "--fonts-dir",
        str(fonts_dir),
    ]


def test_emit_timeline(tmp_path: Path) -> None:
    """Print the timeline as JSON without touching ffmpeg."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = write_script(tmp_path, SCRIPT_TEXT)
    args = build_common_args(script_path, tmp_path / "out.mp4", tmp_path)
    args.append("--emit-timeline")

    result = run_render_slide_video(args, repo_root)

    assert result.returncode == 0, result.stderr
    payload = json.loads(result.stdout)
    assert payload["fps"] == 30
    assert payload["total_frames"] == 90
    assert payload["markers"] == [2.0, 3.0]
    assert payload["total_duration"] == "0:03"
    assert payload["slide_start_indices"] == [0, 60]
    assert payload["slides"][0]["color"] == "#ff0000"
    assert payload["slides"][0]["size_class"] == "lg"
    assert not (tmp_path / "out.mp4").exists()


def test_preview_slide(tmp_path: Path) -> None:
    """Write one slide as a still image."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = write_script(tmp_path, SCRIPT_TEXT)
    preview_path = tmp_path / "preview.png"
    args = build_common_args(script_path, tmp_path / "out.mp4", tmp_path)
    args.extend(["--preview-slide", "1", "--preview-output", str(preview_path)])

    result = run_render_slide_video(args, repo_root)

    assert result.returncode == 0, result.stderr
    with Image.open(preview_path) as image:
        assert image.size == (1024, 1024)


def test_empty_script_fails(tmp_path: Path) -> None:
    """Fail with the empty-script code for a blank script."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = write_script(tmp_path, "\n  \n")
    args = build_common_args(script_path, tmp_path / "out.mp4", tmp_path)

    result = run_render_slide_video(args, repo_root)

    assert result.returncode == 1
    assert "render_slide_video.input.empty_script" in result.stderr


def test_invalid_resolution_fails(tmp_path: Path) -> None:
    """Reject resolutions outside the supported set."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = write_script(tmp_path, SCRIPT_TEXT)
    args = build_common_args(script_path, tmp_path / "out.mp4", tmp_path)
    args[args.index("1024x1024")] = "640x480"

    result = run_render_slide_video(args, repo_root)

    assert result.returncode == 1
    assert "render_slide_video.input.invalid_config" in result.stderr


def test_preview_requires_output(tmp_path: Path) -> None:
    """Require preview-output together with preview-slide."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = write_script(tmp_path, SCRIPT_TEXT)
    args = build_common_args(script_path, tmp_path / "out.mp4", tmp_path)
    args.extend(["--preview-slide", "0"])

    result = run_render_slide_video(args, repo_root)

    assert result.returncode == 1
    assert "render_slide_video.input.invalid_config" in result.stderr


def test_missing_ffmpeg_fails(tmp_path: Path) -> None:
    """Report a missing ffmpeg binary before capturing anything."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = write_script(tmp_path, "Only slide -- duration 1\n")
    output_path = tmp_path / "out.mp4"
    args = build_common_args(script_path, output_path, tmp_path)

    result = run_render_slide_video(
        args,
        repo_root,
        env_overrides={"RENDER_SLIDE_VIDEO_FFMPEG_PATH": str(tmp_path / "no-ffmpeg")},
    )

    assert result.returncode == 1
    assert "render_slide_video.ffmpeg.not_found" in result.stderr
    assert not output_path.exists()


def test_render_mp4(tmp_path: Path) -> None:
    """Render a short script to a fast-start MP4."""
    if shutil.which("ffmpeg") is None:
        pytest.skip("ffmpeg is not available")
    repo_root = Path(__file__).resolve().parents[1]
    script_path = write_script(tmp_path, "One -- duration 1\n<i>Two</i> -- duration 1 -- uppercase\n")
    output_path = tmp_path / "nested" / "out.mp4"
    args = build_common_args(script_path, output_path, tmp_path)
    args.extend(["--fps", "10", "--no-realtime"])

    result = run_render_slide_video(args, repo_root)

    assert result.returncode == 0, result.stderr
    assert "render_slide_video.export.progress: Converting to MP4 100%" in result.stderr
    video_bytes = output_path.read_bytes()
    assert video_bytes[4:8] == b"ftyp"
    assert video_bytes.index(b"moov") < video_bytes.index(b"mdat")

    decode_result = subprocess.run(
        ["ffmpeg", "-v", "error", "-i", str(output_path), "-f", "null", "-"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert decode_result.returncode == 0, decode_result.stderr
