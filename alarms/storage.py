from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from .trigger import RepeatType, format_time_of_day, parse_time_of_day

logger = logging.getLogger(__name__)

ALARMS_KEY = "alarms"
SETTINGS_KEY = "alarmSettings"


@dataclass
class Alarm:
    id: str
    title: str
    time: str
    is_active: bool
    repeat_type: RepeatType
    created_at: datetime
    sound: str = "default"
    vibrate: bool = True
    repeat_days: Optional[List[int]] = None
    next_trigger: Optional[datetime] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "time": self.time,
            "isActive": self.is_active,
            "repeatType": self.repeat_type.value,
            "sound": self.sound,
            "vibrate": self.vibrate,
            "createdAt": self.created_at.isoformat(),
        }
        if self.repeat_days is not None:
            data["repeatDays"] = list(self.repeat_days)
        if self.next_trigger is not None:
            data["nextTrigger"] = self.next_trigger.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Alarm":
        alarm_id = data.get("id")
        time_raw = data.get("time")
        created_raw = data.get("createdAt")
        if not alarm_id or not time_raw or not created_raw:
            raise ValueError("Alarm payload missing id/time/createdAt fields")
        next_raw = data.get("nextTrigger")
        repeat_days = data.get("repeatDays")
        if repeat_days is not None:
            repeat_days = [int(d) for d in repeat_days]
            if any(d < 0 or d > 6 for d in repeat_days):
                raise ValueError(f"Alarm repeatDays out of range: {repeat_days}")
        return cls(
            id=str(alarm_id),
            title=str(data.get("title") or ""),
            time=format_time_of_day(*parse_time_of_day(str(time_raw))),
            is_active=bool(data.get("isActive", False)),
            repeat_type=RepeatType.coerce(data.get("repeatType", RepeatType.ONCE)),
            created_at=datetime.fromisoformat(created_raw),
            sound=str(data.get("sound") or "default"),
            vibrate=bool(data.get("vibrate", True)),
            repeat_days=repeat_days,
            next_trigger=datetime.fromisoformat(next_raw) if next_raw else None,
        )


@dataclass
class AlarmSettings:
    default_sound: str = "default"
    default_vibrate: bool = True
    snooze_minutes: int = 9
    volume_level: float = 0.8
    use_24_hour_format: bool = False

    def to_dict(self) -> dict:
        return {
            "defaultSound": self.default_sound,
            "defaultVibrate": self.default_vibrate,
            "snoozeMinutes": self.snooze_minutes,
            "volumeLevel": self.volume_level,
            "use24HourFormat": self.use_24_hour_format,
        }

    def merged(self, data: dict) -> "AlarmSettings":
        """Shallow-merge a persisted settings object over these values.

        A stored value that fails validation keeps the current value for
        that key only.
        """
        result = copy.copy(self)
        for name, key in SETTINGS_KEYS.items():
            if key not in data:
                continue
            try:
                setattr(result, name, coerce_setting(name, data[key]))
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring stored setting %s: %s", key, exc)
        return result


# dataclass field -> persisted key
SETTINGS_KEYS = {
    "default_sound": "defaultSound",
    "default_vibrate": "defaultVibrate",
    "snooze_minutes": "snoozeMinutes",
    "volume_level": "volumeLevel",
    "use_24_hour_format": "use24HourFormat",
}


def coerce_setting(name: str, value: Any) -> Any:
    """Convert one settings value to its field type, raising ValueError if invalid."""
    if name == "snooze_minutes":
        if isinstance(value, bool):
            raise ValueError("snooze_minutes must be a positive integer")
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError("snooze_minutes must be a positive integer")
            value = int(value)
        minutes = int(value)
        if minutes < 1:
            raise ValueError("snooze_minutes must be a positive integer")
        return minutes
    if name == "volume_level":
        if isinstance(value, bool):
            raise ValueError("volume_level must be between 0.0 and 1.0")
        level = float(value)
        if not 0.0 <= level <= 1.0:
            raise ValueError("volume_level must be between 0.0 and 1.0")
        return level
    if name in ("default_vibrate", "use_24_hour_format"):
        return bool(value)
    if name == "default_sound":
        return str(value)
    raise ValueError(f"Unknown setting: {name}")


def decode_alarms(raw: Optional[str]) -> List[Alarm]:
    if not raw:
        return []
    payload = json.loads(raw)
    if not isinstance(payload, list):
        raise ValueError("Stored alarms must be a JSON array")
    alarms: List[Alarm] = []
    for item in payload:
        try:
            alarms.append(Alarm.from_dict(item))
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Skipping alarm item due to parse error: %s", exc)
    return alarms


def encode_alarms(alarms: List[Alarm]) -> str:
    return json.dumps([a.to_dict() for a in alarms], ensure_ascii=False)


def decode_settings(raw: Optional[str], defaults: AlarmSettings) -> AlarmSettings:
    if not raw:
        return defaults
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Stored settings must be a JSON object")
    return defaults.merged(payload)


def encode_settings(settings: AlarmSettings) -> str:
    return json.dumps(settings.to_dict(), ensure_ascii=False)


class JsonFileStore:
    """Key-value store keeping one ``<key>.json`` file per key."""

    def __init__(self, storage_dir: Path):
        self.storage_dir = Path(storage_dir)

    def _path(self, key: str) -> Path:
        return self.storage_dir / f"{key}.json"

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, key, value)

    def _read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write(self, key: str, value: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_path, str(path))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
