"""Video link and file helpers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import timedelta
from urllib.parse import urlparse

SUPPORTED_VIDEO_FORMATS = ("mp4", "mov", "avi", "mkv", "webm", "m4v")
MAX_VIDEO_SIZE_BYTES = 50 * 1024 * 1024
MAX_VIDEO_DURATION_SECONDS = 600


def file_extension(path: str) -> str | None:
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return None
    return name.rsplit(".", 1)[-1].lower()


def is_supported_video_format(extension: str) -> bool:
    return extension.lower().lstrip(".") in SUPPORTED_VIDEO_FORMATS


def is_video_file(path: str) -> bool:
    extension = file_extension(path)
    return extension is not None and is_supported_video_format(extension)


def is_valid_video_size(size_bytes: int, max_bytes: int = MAX_VIDEO_SIZE_BYTES) -> bool:
    return size_bytes <= max_bytes


def is_valid_video_url(url: str) -> bool:
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def format_file_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    if size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def format_duration(duration: timedelta | float) -> str:
    total = int(duration.total_seconds() if isinstance(duration, timedelta) else duration)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


def video_quality(size_bytes: int) -> str:
    if size_bytes < 5 * 1024 * 1024:
        return "Low"
    if size_bytes < 25 * 1024 * 1024:
        return "Medium"
    if size_bytes < 50 * 1024 * 1024:
        return "High"
    return "Very High"


def video_file_name(item_id: int, original_name: str, *, now_ms: int | None = None) -> str:
    extension = file_extension(original_name) or "mp4"
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{item_id}_video_{timestamp}.{extension}"


@dataclass(slots=True)
class VideoValidation:
    is_valid: bool = False
    errors: list[str] = field(default_factory=list)
    size_bytes: int | None = None
    size_text: str | None = None
    quality: str | None = None


def validate_video_upload(file_name: str, size_bytes: int, max_bytes: int = MAX_VIDEO_SIZE_BYTES) -> VideoValidation:
    result = VideoValidation()
    extension = file_extension(file_name)
    if extension is None or not is_supported_video_format(extension):
        result.errors.append(
            f"Unsupported video format. Supported formats: {', '.join(SUPPORTED_VIDEO_FORMATS)}"
        )
        return result
    if not is_valid_video_size(size_bytes, max_bytes):
        result.errors.append(f"Video file is too large. Maximum size: {format_file_size(max_bytes)}")
        return result
    result.is_valid = True
    result.size_bytes = size_bytes
    result.size_text = format_file_size(size_bytes)
    result.quality = video_quality(size_bytes)
    return result
