from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import fields as dataclass_fields
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from time_utils import now_in_tz, resolve_timezone

from .notifications import (
    ALARM_CHANNEL,
    ALARM_SOUND,
    NO_SOUND,
    KeyValueStore,
    NotificationChannel,
    PermissionPrompt,
    PermissionStatus,
    TriggerPayload,
    TriggerService,
)
from .storage import (
    ALARMS_KEY,
    SETTINGS_KEY,
    Alarm,
    AlarmSettings,
    coerce_setting,
    decode_alarms,
    decode_settings,
    encode_alarms,
    encode_settings,
)
from .trigger import RepeatType, compute_next_occurrence, format_time_of_day, parse_time_of_day

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({"title", "time", "is_active", "repeat_type", "repeat_days", "sound", "vibrate"})
SETTINGS_FIELDS = frozenset(f.name for f in dataclass_fields(AlarmSettings))


class AlarmManager:
    """Owns alarm records and settings and keeps one trigger per active alarm.

    Construct once per process, ``await start()`` and hand the same instance
    to every caller. Mutations must be awaited one at a time.
    """

    def __init__(
        self,
        store: KeyValueStore,
        trigger_service: TriggerService,
        permission: Optional[PermissionPrompt] = None,
        timezone=None,
        clock: Optional[Callable[[], datetime]] = None,
        channel: NotificationChannel = ALARM_CHANNEL,
    ):
        self.store = store
        self.trigger_service = trigger_service
        self.permission = permission
        self.tzinfo = timezone or resolve_timezone(None)
        self.channel = channel
        self._clock = clock or (lambda: now_in_tz(self.tzinfo))

        self._alarms: List[Alarm] = []
        self._settings = AlarmSettings()
        # alarm id -> trigger handle; process-local, never persisted
        self._handles: Dict[str, str] = {}

    async def start(self) -> None:
        await self._initialize_notifications()
        await self._load_settings()
        await self._load_alarms()
        active = [a for a in self._alarms if a.is_active]
        logger.info("Loaded %s alarms (%s active)", len(self._alarms), len(active))
        for alarm in active:
            try:
                await self._schedule_alarm(alarm)
            except ValueError as exc:
                logger.error("Alarm %s could not be restored: %s", alarm.id, exc)

    async def shutdown(self) -> None:
        for alarm_id in list(self._handles):
            await self._cancel_alarm(alarm_id)

    # ---- mutations -------------------------------------------------------

    async def create_alarm(
        self,
        title: str,
        time: str,
        is_active: bool = True,
        repeat_type: RepeatType | str = RepeatType.ONCE,
        repeat_days: Optional[Iterable[int]] = None,
        sound: Optional[str] = None,
        vibrate: Optional[bool] = None,
    ) -> Alarm:
        repeat_type = RepeatType.coerce(repeat_type)
        alarm = Alarm(
            id=self._new_alarm_id(),
            title=str(title),
            time=_normalize_time(time),
            is_active=bool(is_active),
            repeat_type=repeat_type,
            created_at=self._clock(),
            sound=sound if sound is not None else self._settings.default_sound,
            vibrate=bool(vibrate) if vibrate is not None else self._settings.default_vibrate,
            repeat_days=_normalize_days(repeat_days, repeat_type),
        )
        self._alarms.append(alarm)
        await self._save_alarms()
        logger.info("Alarm %s created for %s (%s)", alarm.id, alarm.time, alarm.repeat_type.value)

        if alarm.is_active:
            await self._schedule_alarm(alarm)
        return copy.deepcopy(alarm)

    async def update_alarm(self, alarm_id: str, **changes) -> Optional[Alarm]:
        alarm = self._find(alarm_id)
        if alarm is None:
            return None
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update alarm fields: {', '.join(sorted(unknown))}")

        if "time" in changes:
            changes["time"] = _normalize_time(changes["time"])
        repeat_type = RepeatType.coerce(changes.get("repeat_type", alarm.repeat_type))
        if "repeat_type" in changes:
            changes["repeat_type"] = repeat_type
        if "repeat_days" in changes or "repeat_type" in changes:
            changes["repeat_days"] = _normalize_days(changes.get("repeat_days", alarm.repeat_days), repeat_type)
        if "is_active" in changes:
            changes["is_active"] = bool(changes["is_active"])

        for name, value in changes.items():
            setattr(alarm, name, value)
        await self._save_alarms()
        logger.info("Alarm %s updated (%s)", alarm.id, ", ".join(sorted(changes)) or "no changes")

        await self._sync_schedule(alarm)
        return copy.deepcopy(alarm)

    async def delete_alarm(self, alarm_id: str) -> bool:
        alarm = self._find(alarm_id)
        if alarm is None:
            logger.warning("Attempted to delete non-existent alarm %s", alarm_id)
            return False
        await self._cancel_alarm(alarm_id)
        self._alarms = [a for a in self._alarms if a.id != alarm_id]
        await self._save_alarms()
        logger.info("Removed alarm %s", alarm_id)
        return True

    async def toggle_alarm(self, alarm_id: str) -> Optional[bool]:
        alarm = self._find(alarm_id)
        if alarm is None:
            return None
        alarm.is_active = not alarm.is_active
        await self._save_alarms()
        logger.info("Alarm %s switched %s", alarm.id, "on" if alarm.is_active else "off")

        await self._sync_schedule(alarm)
        return alarm.is_active

    async def trigger_alarm(self, alarm_id: str) -> None:
        """React to the trigger service reporting that an alarm fired."""
        alarm = self._find(alarm_id)
        if alarm is None:
            logger.warning("Fired trigger for unknown alarm %s", alarm_id)
            return
        if not alarm.is_active:
            logger.warning("Fired trigger for inactive alarm %s ignored", alarm_id)
            return
        logger.info("Alarm %s fired (label=%s)", alarm.id, alarm.title)
        if alarm.repeat_type is not RepeatType.ONCE:
            await self._schedule_alarm(alarm)
        else:
            await self.toggle_alarm(alarm.id)

    async def handle_trigger_fired(self, payload: TriggerPayload) -> None:
        if not payload.alarm_id:
            logger.warning("Fired trigger carries no alarm id: %s", payload.title)
            return
        await self.trigger_alarm(payload.alarm_id)

    # ---- queries ---------------------------------------------------------

    def get_all_alarms(self) -> List[Alarm]:
        return copy.deepcopy(self._alarms)

    def get_alarm(self, alarm_id: str) -> Optional[Alarm]:
        alarm = self._find(alarm_id)
        return copy.deepcopy(alarm) if alarm else None

    def get_next_alarm(self) -> Optional[Alarm]:
        earliest: Optional[Alarm] = None
        for alarm in self._alarms:
            if not alarm.is_active or alarm.next_trigger is None:
                continue
            if earliest is None or alarm.next_trigger < earliest.next_trigger:
                earliest = alarm
        return copy.deepcopy(earliest) if earliest else None

    @property
    def scheduled_count(self) -> int:
        return len(self._handles)

    # ---- settings & permission ---------------------------------------------

    def get_settings(self) -> AlarmSettings:
        return copy.copy(self._settings)

    async def update_settings(self, **changes) -> None:
        unknown = set(changes) - SETTINGS_FIELDS
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        try:
            coerced = {name: coerce_setting(name, value) for name, value in changes.items()}
        except TypeError as exc:
            raise ValueError(str(exc)) from exc

        for name, value in coerced.items():
            setattr(self._settings, name, value)
        await self._save_settings()

    async def request_notification_permission(self) -> bool:
        if self.permission is None:
            logger.warning("No permission prompt configured, treating as denied")
            return False
        try:
            status = await self.permission.request_permission()
        except Exception as exc:
            logger.error("Failed to request notification permission: %s", exc)
            return False
        return status is PermissionStatus.AUTHORIZED

    def export_data(self) -> dict:
        """Backup snapshot of every alarm plus the settings record."""
        return {
            "alarms": [a.to_dict() for a in self._alarms],
            "settings": self._settings.to_dict(),
            "exportDate": self._clock().isoformat(),
        }

    # ---- scheduling --------------------------------------------------------

    async def _sync_schedule(self, alarm: Alarm) -> None:
        if alarm.is_active:
            await self._schedule_alarm(alarm)
            return
        await self._cancel_alarm(alarm.id)
        await self._clear_next_trigger(alarm)

    async def _clear_next_trigger(self, alarm: Alarm) -> None:
        if alarm.next_trigger is not None:
            alarm.next_trigger = None
            await self._save_alarms()

    async def _schedule_alarm(self, alarm: Alarm) -> None:
        await self._cancel_alarm(alarm.id)

        next_trigger = compute_next_occurrence(alarm.time, alarm.repeat_type, alarm.repeat_days, self._clock())
        if next_trigger is None:
            logger.info("Alarm %s has no future occurrence, leaving it unscheduled", alarm.id)
            await self._clear_next_trigger(alarm)
            return

        # the clock may have moved past the occurrence while we were computing
        if next_trigger <= self._clock():
            logger.warning("Alarm %s occurrence %s already passed, not scheduling", alarm.id, next_trigger.isoformat())
            await self._clear_next_trigger(alarm)
            return

        payload = TriggerPayload(
            title=alarm.title,
            sound=ALARM_SOUND if alarm.sound != NO_SOUND else None,
            vibrate=alarm.vibrate,
            data={"alarmId": alarm.id},
        )
        try:
            handle = await self.trigger_service.create_trigger(
                payload, self.channel, int(next_trigger.timestamp() * 1000)
            )
            self._handles[alarm.id] = handle
        except Exception as exc:
            logger.error("Failed to schedule notification for alarm %s: %s", alarm.id, exc)

        alarm.next_trigger = next_trigger
        await self._save_alarms()
        logger.info("Alarm %s scheduled for %s", alarm.id, next_trigger.isoformat())

    async def _cancel_alarm(self, alarm_id: str) -> None:
        handle = self._handles.pop(alarm_id, None)
        if handle is None:
            return
        try:
            await self.trigger_service.cancel_trigger(handle)
            logger.debug("Cancelled trigger %s for alarm %s", handle, alarm_id)
        except Exception as exc:
            logger.error("Failed to cancel notification for alarm %s: %s", alarm_id, exc)

    async def _initialize_notifications(self) -> None:
        try:
            await self.trigger_service.create_channel(self.channel)
        except Exception as exc:
            logger.error("Failed to create notification channel %s: %s", self.channel.id, exc)

    # ---- persistence -------------------------------------------------------

    async def _load_alarms(self) -> None:
        try:
            self._alarms = decode_alarms(await self.store.get(ALARMS_KEY))
        except Exception as exc:
            logger.error("Failed to load alarms: %s", exc)
            self._alarms = []

    async def _save_alarms(self) -> None:
        try:
            await self.store.set(ALARMS_KEY, encode_alarms(self._alarms))
        except Exception as exc:
            logger.error("Failed to save alarms: %s", exc)

    async def _load_settings(self) -> None:
        try:
            self._settings = decode_settings(await self.store.get(SETTINGS_KEY), AlarmSettings())
        except Exception as exc:
            logger.error("Failed to load settings: %s", exc)
            self._settings = AlarmSettings()

    async def _save_settings(self) -> None:
        try:
            await self.store.set(SETTINGS_KEY, encode_settings(self._settings))
        except Exception as exc:
            logger.error("Failed to save settings: %s", exc)

    def _find(self, alarm_id: str) -> Optional[Alarm]:
        for alarm in self._alarms:
            if alarm.id == alarm_id:
                return alarm
        return None

    def _new_alarm_id(self) -> str:
        existing = {a.id for a in self._alarms}
        while True:
            alarm_id = f"al_{uuid.uuid4().hex[:8]}"
            if alarm_id not in existing:
                return alarm_id


def _normalize_time(value: str) -> str:
    return format_time_of_day(*parse_time_of_day(value))


def _normalize_days(days: Optional[Iterable[int]], repeat_type: RepeatType) -> Optional[List[int]]:
    if repeat_type is not RepeatType.CUSTOM:
        return None
    normalized = sorted({int(d) for d in days or ()})
    if any(d < 0 or d > 6 for d in normalized):
        raise ValueError("Repeat days must be between 0 (Sunday) and 6 (Saturday)")
    return normalized
