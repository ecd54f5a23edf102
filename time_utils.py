from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

LOCALTIME_PATH = Path("/etc/localtime")


def resolve_timezone(name: Optional[str]):
    if name:
        try:
            return ZoneInfo(name)
        except Exception as exc:  # pragma: no cover - environment-dependent
            logger.warning("Failed to load timezone %s via zoneinfo (%s)", name, exc)
    local_tz = system_timezone()
    if local_tz:
        if name:
            logger.warning("Using system local timezone instead: %s", getattr(local_tz, "key", local_tz))
        return local_tz
    logger.warning("System timezone unavailable, fallback to UTC")
    return timezone.utc


def system_timezone() -> Optional[ZoneInfo]:
    """Named zone of this machine, so wall-clock times follow DST."""
    tz_env = os.getenv("TZ", "").lstrip(":")
    if tz_env:
        try:
            return ZoneInfo(tz_env)
        except Exception as exc:
            logger.warning("TZ=%s is not a known zone (%s)", tz_env, exc)
    if LOCALTIME_PATH.exists():
        target = str(LOCALTIME_PATH.resolve())
        if "zoneinfo/" in target:
            try:
                return ZoneInfo(target.split("zoneinfo/", 1)[1])
            except Exception as exc:  # pragma: no cover - environment-dependent
                logger.warning("Failed to load zone for %s (%s)", target, exc)
        try:
            with LOCALTIME_PATH.open("rb") as f:
                return ZoneInfo.from_file(f, key="localtime")
        except Exception as exc:  # pragma: no cover - environment-dependent
            logger.warning("Failed to read %s (%s)", LOCALTIME_PATH, exc)
    return None


def now_in_tz(tzinfo) -> datetime:
    if tzinfo:
        return datetime.now(tzinfo)
    return datetime.now().astimezone()


def format_tz_offset(tzinfo) -> str:
    sample = now_in_tz(tzinfo)
    offset = tzinfo.utcoffset(sample) if hasattr(tzinfo, "utcoffset") else None
    if offset is None:
        return ""
    total_minutes = int(offset // timedelta(minutes=1))
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"
