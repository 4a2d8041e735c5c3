"""ID3 tagging of mastered chapter MP3s, with optional embedded cover art."""

import base64
import binascii
import logging
import re
import time
from pathlib import Path
from typing import Optional

from audiobookforge.audio.audio_utils import run_ffmpeg
from audiobookforge.models import ID3Metadata

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:image/[\w.+-]+;base64,(?P<data>.+)$", re.DOTALL)


def image_extension(data: bytes) -> str:
    """Detect the cover format from magic bytes."""
    if data[:3] == b"\xff\xd8\xff":
        return ".jpg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return ".png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return ".gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ".webp"
    return ".jpg"  # assume JPEG


def decode_cover_data(data: bytes | str) -> bytes:
    """Accept raw bytes, a base64 string or a ``data:image/...;base64,`` URL."""
    if isinstance(data, bytes):
        return data
    match = _DATA_URL_RE.match(data.strip())
    payload = match.group("data") if match else data.strip()
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid inline cover image data: {e}") from e


def _save_cover(metadata: ID3Metadata, temp_dir: Path, stem: str) -> tuple[Optional[Path], bool]:
    """Return (cover_path, is_temporary). Inline data is written to ``temp_dir``."""
    if metadata.cover_image_path:
        path = Path(metadata.cover_image_path)
        if path.is_file():
            return path, False
        logger.warning("Cover image not found: %s", path)

    if metadata.cover_image_data:
        try:
            data = decode_cover_data(metadata.cover_image_data)
        except ValueError as e:
            logger.warning("Skipping cover art: %s", e)
            return None, False
        cover_path = temp_dir / f"{stem}_cover{image_extension(data)}"
        cover_path.write_bytes(data)
        logger.debug("Cover saved: %s (%d bytes)", cover_path, len(data))
        return cover_path, True

    return None, False


def _metadata_args(metadata: ID3Metadata) -> list[str]:
    fields = {
        "title": metadata.title,
        "artist": metadata.artist,
        "album": metadata.album,
        "album_artist": metadata.album_artist,
        "date": metadata.year,
        "track": metadata.track,
        "genre": metadata.genre,
    }
    args = []
    for key, value in fields.items():
        if value:
            args += ["-metadata", f"{key}={value}"]
    return args


def tag_mp3(
    input_path: Path,
    output_path: Path,
    metadata: ID3Metadata,
    temp_dir: Optional[Path] = None,
    timeout: Optional[float] = None,
) -> Path:
    """Write ID3v2.3 tags (and cover art when available) into a copy of ``input_path``.

    Audio is stream-copied, never re-encoded. Raises FFmpegError on failure.
    """
    temp_dir = Path(temp_dir or output_path.parent)
    temp_dir.mkdir(parents=True, exist_ok=True)
    stem = f"{output_path.stem}_{int(time.time() * 1000)}"
    cover_path, temporary = _save_cover(metadata, temp_dir, stem)

    try:
        if cover_path:
            args = [
                "-y",
                "-i", str(input_path),
                "-i", str(cover_path),
                "-map", "0:a",
                "-map", "1:v",
                "-c:a", "copy",
                "-c:v", "copy" if cover_path.suffix in (".jpg", ".png") else "mjpeg",
                "-disposition:v:0", "attached_pic",
                "-metadata:s:v", "title=Album cover",
                "-metadata:s:v", "comment=Cover (front)",
            ]
        else:
            args = ["-y", "-i", str(input_path), "-map", "0:a", "-c:a", "copy"]

        args += _metadata_args(metadata)
        args += ["-id3v2_version", "3", "-write_id3v1", "1", str(output_path)]
        run_ffmpeg(args, timeout=timeout)
    finally:
        if temporary and cover_path:
            try:
                cover_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove temp cover %s: %s", cover_path, e)

    logger.info("Tagged %s (track %s)", output_path.name, metadata.track or "-")
    return output_path
