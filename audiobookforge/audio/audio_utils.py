"""Audio utility functions - ffmpeg paths, subprocess wrapper, probing and concatenation."""

import json
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from static_ffmpeg import run as static_ffmpeg_run

logger = logging.getLogger(__name__)


class FFmpegError(RuntimeError):
    """An ffmpeg or ffprobe invocation exited non-zero or timed out."""

    def __init__(self, message: str, stderr: str = "", timed_out: bool = False):
        super().__init__(message)
        self.stderr = stderr
        self.timed_out = timed_out


def get_ffmpeg_paths() -> tuple[str, str]:
    """Return (ffmpeg_path, ffprobe_path) using the bundled static-ffmpeg binaries.

    Downloads binaries on first use if not already present.
    """
    ffmpeg_path, ffprobe_path = static_ffmpeg_run.get_or_fetch_platform_executables_else_raise()
    return ffmpeg_path, ffprobe_path


def get_ffmpeg() -> str:
    """Return the path to the ffmpeg executable."""
    ffmpeg, _ = get_ffmpeg_paths()
    return ffmpeg


def get_ffprobe() -> str:
    """Return the path to the ffprobe executable."""
    _, ffprobe = get_ffmpeg_paths()
    return ffprobe


def check_ffmpeg() -> None:
    """Verify that ffmpeg and ffprobe are available (downloads if needed)."""
    try:
        get_ffmpeg_paths()
    except Exception as e:
        raise RuntimeError(
            f"Could not obtain ffmpeg: {e}\n"
            f"Try reinstalling: pip install --force-reinstall static-ffmpeg"
        ) from e


def _run(cmd: list[str], timeout: Optional[float]) -> subprocess.CompletedProcess:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        # subprocess.run kills the child before raising
        stderr = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
        raise FFmpegError(f"{Path(cmd[0]).name} timed out after {timeout}s", stderr, timed_out=True) from e

    if result.returncode != 0:
        tail = "\n".join(result.stderr.strip().splitlines()[-5:])
        raise FFmpegError(f"{Path(cmd[0]).name} exited with code {result.returncode}: {tail}", result.stderr)
    return result


def run_ffmpeg(args: list[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    """Run ffmpeg with ``args``; raise FFmpegError on failure or timeout."""
    cmd = [get_ffmpeg(), "-hide_banner", "-nostdin", *args]
    logger.debug("ffmpeg %s", " ".join(args))
    return _run(cmd, timeout)


def run_ffprobe(args: list[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    return _run([get_ffprobe(), *args], timeout)


def probe_audio_info(audio_path: Path, timeout: Optional[float] = 30) -> dict:
    """Duration (seconds), bitrate (bit/s) and sample rate of an audio file."""
    result = run_ffprobe(
        [
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(audio_path),
        ],
        timeout=timeout,
    )
    data = json.loads(result.stdout or "{}")
    fmt = data.get("format", {})
    audio_stream = next(
        (s for s in data.get("streams", []) if s.get("codec_type") == "audio"), {}
    )
    return {
        "duration": float(fmt["duration"]) if fmt.get("duration") else None,
        "bitrate": int(fmt["bit_rate"]) if fmt.get("bit_rate") else None,
        "sample_rate": int(audio_stream["sample_rate"]) if audio_stream.get("sample_rate") else None,
        "codec": audio_stream.get("codec_name"),
    }


def concat_audio_files(files: list[Path], output_path: Path, timeout: Optional[float] = None) -> None:
    """Concatenate audio files of the same format with ffmpeg's concat demuxer."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".txt", delete=False) as f:
        for path in files:
            safe_path = str(Path(path).resolve()).replace("'", "'\\''")
            f.write(f"file '{safe_path}'\n")
        concat_list = f.name

    try:
        run_ffmpeg(
            [
                "-y",
                "-f", "concat", "-safe", "0",
                "-i", concat_list,
                "-c", "copy",
                str(output_path),
            ],
            timeout=timeout,
        )
    finally:
        Path(concat_list).unlink(missing_ok=True)
