"""Local key-value settings and the preference groups stored in it.

``LocalSettingsStore`` is a small JSON document on disk. The data-usage and
accessibility preference groups read their values from it on ``load()`` and
write them back after every change.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import orjson

from ..models.models import utcnow

log = logging.getLogger("settings")


class LocalSettingsStore:
    """JSON-file key-value store.

    The file is read once and rewritten atomically (temp file + rename) on
    every change. The in-memory copy only changes after a successful write.
    An unreadable file is treated as empty.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._data: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        raw = self.path.read_bytes()
        if not raw.strip():
            return {}
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            log.warning("Settings file %s is not valid JSON, starting empty: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            log.warning("Settings file %s does not contain an object, starting empty", self.path)
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS))
        os.replace(tmp, self.path)

    async def _loaded(self) -> dict[str, Any]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read)
        return self._data

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            return (await self._loaded()).get(key, default)

    async def get_many(self, *keys: str) -> dict[str, Any]:
        async with self._lock:
            data = await self._loaded()
            return {k: data.get(k) for k in keys}

    async def set(self, key: str, value: Any) -> None:
        await self.set_many({key: value})

    async def set_many(self, values: dict[str, Any]) -> None:
        async with self._lock:
            data = {**await self._loaded(), **values}
            await asyncio.to_thread(self._write, data)
            self._data = data

    async def delete(self, *keys: str) -> None:
        async with self._lock:
            data = {k: v for k, v in (await self._loaded()).items() if k not in keys}
            await asyncio.to_thread(self._write, data)
            self._data = data

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, {})
            self._data = {}

    async def is_first_launch(self) -> bool:
        value = await self.get("is_first_launch", True)
        return bool(value)

    async def set_first_launch_complete(self) -> None:
        await self.set("is_first_launch", False)

    async def last_sync_time(self) -> datetime | None:
        value = await self.get("last_sync_time")
        if not isinstance(value, int):
            return None
        return datetime.fromtimestamp(value / 1000, tz=UTC)

    async def set_last_sync_time(self, when: datetime) -> None:
        await self.set("last_sync_time", int(when.timestamp() * 1000))


def _parse_enum[E: StrEnum](enum_cls: type[E], value: Any, default: E) -> E:
    # Older settings files stored values as "DataUsageMode.strict".
    if isinstance(value, str):
        value = value.rsplit(".", 1)[-1]
        try:
            return enum_cls(value)
        except ValueError:
            return default
    return default


class DataUsageQuality(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    AUTO = "auto"


class DataUsageMode(StrEnum):
    UNLIMITED = "unlimited"
    MODERATE = "moderate"
    STRICT = "strict"
    WIFI_ONLY = "wifiOnly"


class ConnectionType(StrEnum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    UNKNOWN = "unknown"


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f}MB"
    return f"{size / (1024 * 1024 * 1024):.1f}GB"


@dataclass(slots=True, frozen=True)
class DataUsageStats:
    total_bytes: int = 0
    videos_bytes: int = 0
    images_bytes: int = 0
    forum_bytes: int = 0
    last_reset: datetime = field(default_factory=utcnow)
    session_count: int = 0

    @property
    def formatted_total(self) -> str:
        return format_bytes(self.total_bytes)

    @property
    def formatted_videos(self) -> str:
        return format_bytes(self.videos_bytes)

    @property
    def formatted_images(self) -> str:
        return format_bytes(self.images_bytes)

    @property
    def formatted_forum(self) -> str:
        return format_bytes(self.forum_bytes)


# KB per second of video, and KB per image, by quality.
_VIDEO_KBPS = {
    DataUsageQuality.LOW: 50,
    DataUsageQuality.MEDIUM: 200,
    DataUsageQuality.HIGH: 500,
    DataUsageQuality.AUTO: 200,
}
_IMAGE_KB = _VIDEO_KBPS


class DataUsagePreferences:
    """Data-usage settings and monthly statistics.

    Attributes:
        mode: overall data saving mode.
        video_quality / image_quality: requested quality per content type.
        monthly_limit_mb: warning threshold base; 0 disables the warning.
        connection_type / offline: runtime state, not persisted.
    """

    _MODE = "data_usage_mode"
    _VIDEO_QUALITY = "data_usage_video_quality"
    _IMAGE_QUALITY = "data_usage_image_quality"
    _PRELOAD_FAVORITES = "data_usage_preload_favorites"
    _BACKGROUND_SYNC = "data_usage_background_sync"
    _SHOW_WARNINGS = "data_usage_show_warnings"
    _MONTHLY_LIMIT = "data_usage_monthly_limit"
    _TOTAL_BYTES = "data_usage_total_bytes"
    _VIDEOS_BYTES = "data_usage_videos_bytes"
    _IMAGES_BYTES = "data_usage_images_bytes"
    _FORUM_BYTES = "data_usage_forum_bytes"
    _LAST_RESET = "data_usage_last_reset"
    _SESSION_COUNT = "data_usage_session_count"

    def __init__(self, store: LocalSettingsStore):
        self.store = store
        self.mode = DataUsageMode.UNLIMITED
        self.video_quality = DataUsageQuality.AUTO
        self.image_quality = DataUsageQuality.MEDIUM
        self.preload_favorites = True
        self.background_sync = True
        self.show_data_warnings = True
        self.monthly_limit_mb = 1000
        self.stats = DataUsageStats()
        self.connection_type = ConnectionType.UNKNOWN
        self.offline = False

    async def load(self) -> DataUsagePreferences:
        values = await self.store.get_many(
            self._MODE,
            self._VIDEO_QUALITY,
            self._IMAGE_QUALITY,
            self._PRELOAD_FAVORITES,
            self._BACKGROUND_SYNC,
            self._SHOW_WARNINGS,
            self._MONTHLY_LIMIT,
            self._TOTAL_BYTES,
            self._VIDEOS_BYTES,
            self._IMAGES_BYTES,
            self._FORUM_BYTES,
            self._LAST_RESET,
            self._SESSION_COUNT,
        )
        self.mode = _parse_enum(DataUsageMode, values[self._MODE], DataUsageMode.UNLIMITED)
        self.video_quality = _parse_enum(DataUsageQuality, values[self._VIDEO_QUALITY], DataUsageQuality.AUTO)
        self.image_quality = _parse_enum(DataUsageQuality, values[self._IMAGE_QUALITY], DataUsageQuality.MEDIUM)
        self.preload_favorites = _bool(values[self._PRELOAD_FAVORITES], True)
        self.background_sync = _bool(values[self._BACKGROUND_SYNC], True)
        self.show_data_warnings = _bool(values[self._SHOW_WARNINGS], True)
        self.monthly_limit_mb = _int(values[self._MONTHLY_LIMIT], 1000)

        last_reset_ms = values[self._LAST_RESET]
        self.stats = DataUsageStats(
            total_bytes=_int(values[self._TOTAL_BYTES], 0),
            videos_bytes=_int(values[self._VIDEOS_BYTES], 0),
            images_bytes=_int(values[self._IMAGES_BYTES], 0),
            forum_bytes=_int(values[self._FORUM_BYTES], 0),
            last_reset=(
                datetime.fromtimestamp(last_reset_ms / 1000, tz=UTC) if isinstance(last_reset_ms, int) else utcnow()
            ),
            session_count=_int(values[self._SESSION_COUNT], 0),
        )

        if (utcnow() - self.stats.last_reset).days >= 30:
            await self.reset_monthly_stats()
        return self

    async def save(self) -> None:
        await self.store.set_many(
            {
                self._MODE: self.mode.value,
                self._VIDEO_QUALITY: self.video_quality.value,
                self._IMAGE_QUALITY: self.image_quality.value,
                self._PRELOAD_FAVORITES: self.preload_favorites,
                self._BACKGROUND_SYNC: self.background_sync,
                self._SHOW_WARNINGS: self.show_data_warnings,
                self._MONTHLY_LIMIT: self.monthly_limit_mb,
                self._TOTAL_BYTES: self.stats.total_bytes,
                self._VIDEOS_BYTES: self.stats.videos_bytes,
                self._IMAGES_BYTES: self.stats.images_bytes,
                self._FORUM_BYTES: self.stats.forum_bytes,
                self._LAST_RESET: int(self.stats.last_reset.timestamp() * 1000),
                self._SESSION_COUNT: self.stats.session_count,
            }
        )

    @property
    def should_allow_data_usage(self) -> bool:
        if self.offline:
            return False
        if self.mode is DataUsageMode.WIFI_ONLY and self.connection_type is not ConnectionType.WIFI:
            return False
        return True

    @property
    def should_show_data_warning(self) -> bool:
        """True on cellular once usage passes 80% of the monthly limit."""
        if not self.show_data_warnings:
            return False
        if self.connection_type is not ConnectionType.CELLULAR:
            return False
        if self.monthly_limit_mb <= 0:
            return False
        used_mb = self.stats.total_bytes / (1024 * 1024)
        return used_mb > self.monthly_limit_mb * 0.8

    def recommended_quality(self, requested: DataUsageQuality) -> DataUsageQuality:
        if self.mode is DataUsageMode.STRICT:
            return DataUsageQuality.LOW
        if self.mode is DataUsageMode.MODERATE and self.connection_type is ConnectionType.CELLULAR:
            return DataUsageQuality.MEDIUM if requested is DataUsageQuality.HIGH else requested
        return requested

    def estimated_usage(self, operation: str, *, duration: int | None = None, size: int | None = None) -> int:
        """Rough KB estimate for an operation."""
        if operation == "video_stream":
            return (duration if duration is not None else 60) * _VIDEO_KBPS[self.video_quality]
        if operation == "image_load":
            return _IMAGE_KB[self.image_quality]
        if operation == "forum_sync":
            return 100
        return size or 0

    async def record_usage(self, size: int, kind: str = "general") -> None:
        if size <= 0:
            return
        stats = self.stats
        changes: dict[str, int] = {"total_bytes": stats.total_bytes + size}
        if kind == "video":
            changes["videos_bytes"] = stats.videos_bytes + size
        elif kind == "image":
            changes["images_bytes"] = stats.images_bytes + size
        elif kind == "forum":
            changes["forum_bytes"] = stats.forum_bytes + size
        self.stats = replace(stats, **changes)
        await self.save()

    async def reset_monthly_stats(self) -> None:
        self.stats = DataUsageStats(last_reset=utcnow(), session_count=self.stats.session_count + 1)
        await self.save()

    async def set_mode(self, mode: DataUsageMode) -> None:
        self.mode = mode
        await self.save()

    async def set_video_quality(self, quality: DataUsageQuality) -> None:
        self.video_quality = quality
        await self.save()

    async def set_image_quality(self, quality: DataUsageQuality) -> None:
        self.image_quality = quality
        await self.save()

    async def set_preload_favorites(self, enabled: bool) -> None:
        self.preload_favorites = enabled
        await self.save()

    async def set_background_sync(self, enabled: bool) -> None:
        self.background_sync = enabled
        await self.save()

    async def set_show_data_warnings(self, enabled: bool) -> None:
        self.show_data_warnings = enabled
        await self.save()

    async def set_monthly_limit(self, limit_mb: int) -> None:
        self.monthly_limit_mb = limit_mb
        await self.save()

    def set_offline(self, offline: bool) -> None:
        self.offline = offline

    def set_connection_type(self, connection_type: ConnectionType) -> None:
        self.connection_type = connection_type


def _bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _int(value: Any, default: int) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else default


def _float(value: Any, default: float) -> float:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return float(value)
    return default


class FontSize(StrEnum):
    SMALL = "small"
    NORMAL = "normal"
    LARGE = "large"
    EXTRA_LARGE = "extraLarge"

    @property
    def scale(self) -> float:
        return _FONT_SCALES[self]

    @property
    def description(self) -> str:
        return _FONT_DESCRIPTIONS[self]

    def next(self) -> FontSize:
        members = list(FontSize)
        return members[(members.index(self) + 1) % len(members)]


_FONT_SCALES = {FontSize.SMALL: 0.85, FontSize.NORMAL: 1.0, FontSize.LARGE: 1.2, FontSize.EXTRA_LARGE: 1.5}
_FONT_DESCRIPTIONS = {
    FontSize.SMALL: "Klein",
    FontSize.NORMAL: "Normaal",
    FontSize.LARGE: "Groot",
    FontSize.EXTRA_LARGE: "Extra Groot",
}


class AccessibilityPreferences:
    _FONT_SIZE = "accessibility_font_size"
    _DYSLEXIA_FRIENDLY = "accessibility_dyslexia_friendly"
    _TEXT_TO_SPEECH = "accessibility_text_to_speech"
    _SPEECH_RATE = "accessibility_speech_rate"
    _SPEECH_PITCH = "accessibility_speech_pitch"
    _USE_HEADPHONES = "accessibility_use_headphones"

    def __init__(self, store: LocalSettingsStore):
        self.store = store
        self.font_size = FontSize.NORMAL
        self.dyslexia_friendly = False
        self.text_to_speech = False
        self.speech_rate = 0.5
        self.speech_pitch = 1.0
        self.use_headphones = True

    @property
    def font_scale(self) -> float:
        return self.font_size.scale

    async def load(self) -> AccessibilityPreferences:
        values = await self.store.get_many(
            self._FONT_SIZE,
            self._DYSLEXIA_FRIENDLY,
            self._TEXT_TO_SPEECH,
            self._SPEECH_RATE,
            self._SPEECH_PITCH,
            self._USE_HEADPHONES,
        )
        self.font_size = _parse_enum(FontSize, values[self._FONT_SIZE], FontSize.NORMAL)
        self.dyslexia_friendly = _bool(values[self._DYSLEXIA_FRIENDLY], False)
        self.text_to_speech = _bool(values[self._TEXT_TO_SPEECH], False)
        self.speech_rate = _float(values[self._SPEECH_RATE], 0.5)
        self.speech_pitch = _float(values[self._SPEECH_PITCH], 1.0)
        self.use_headphones = _bool(values[self._USE_HEADPHONES], True)
        return self

    async def save(self) -> None:
        await self.store.set_many(
            {
                self._FONT_SIZE: self.font_size.value,
                self._DYSLEXIA_FRIENDLY: self.dyslexia_friendly,
                self._TEXT_TO_SPEECH: self.text_to_speech,
                self._SPEECH_RATE: self.speech_rate,
                self._SPEECH_PITCH: self.speech_pitch,
                self._USE_HEADPHONES: self.use_headphones,
            }
        )

    async def set_font_size(self, font_size: FontSize) -> None:
        self.font_size = font_size
        await self.save()

    async def toggle_font_size(self) -> FontSize:
        """Cycle small, normal, large, extra large, then back to small."""
        await self.set_font_size(self.font_size.next())
        return self.font_size

    async def set_dyslexia_friendly(self, enabled: bool) -> None:
        self.dyslexia_friendly = enabled
        await self.save()

    async def toggle_dyslexia_friendly(self) -> bool:
        await self.set_dyslexia_friendly(not self.dyslexia_friendly)
        return self.dyslexia_friendly

    async def set_text_to_speech(self, enabled: bool) -> None:
        self.text_to_speech = enabled
        await self.save()

    async def toggle_text_to_speech(self) -> bool:
        await self.set_text_to_speech(not self.text_to_speech)
        return self.text_to_speech

    async def set_speech_rate(self, rate: float) -> None:
        self.speech_rate = rate
        await self.save()

    async def set_speech_pitch(self, pitch: float) -> None:
        self.speech_pitch = pitch
        await self.save()

    async def set_use_headphones(self, enabled: bool) -> None:
        self.use_headphones = enabled
        await self.save()

    async def toggle_use_headphones(self) -> bool:
        await self.set_use_headphones(not self.use_headphones)
        return self.use_headphones
