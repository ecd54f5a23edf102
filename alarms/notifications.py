"""Boundary between the alarm registry and the platform notification service."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple, runtime_checkable

logger = logging.getLogger(__name__)

ALARM_CHANNEL_ID = "alarm"
ALARM_SOUND = "alarm_sound"
ALARM_BODY = "Alarm is ringing!"
NO_SOUND = "none"


class PermissionStatus(Enum):
    NOT_DETERMINED = -1
    DENIED = 0
    AUTHORIZED = 1
    PROVISIONAL = 2


@dataclass(frozen=True)
class NotificationChannel:
    id: str = ALARM_CHANNEL_ID
    name: str = "Alarm Notifications"
    importance: str = "high"
    sound: Optional[str] = ALARM_SOUND
    vibration_pattern: Tuple[int, ...] = (300, 500, 300, 500)
    lights: bool = True
    light_color: str = "#FF6B6B"


ALARM_CHANNEL = NotificationChannel()


@dataclass
class TriggerPayload:
    title: str
    body: str = ALARM_BODY
    sound: Optional[str] = None
    vibrate: bool = True
    full_screen: bool = True
    data: Dict[str, str] = field(default_factory=dict)

    @property
    def alarm_id(self) -> Optional[str]:
        return self.data.get("alarmId")


@runtime_checkable
class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str) -> None: ...


@runtime_checkable
class TriggerService(Protocol):
    async def create_channel(self, channel: NotificationChannel) -> None: ...

    async def create_trigger(
        self, payload: TriggerPayload, channel: NotificationChannel, fires_at_ms: int
    ) -> str: ...

    async def cancel_trigger(self, handle: str) -> None: ...


@runtime_checkable
class PermissionPrompt(Protocol):
    async def request_permission(self) -> PermissionStatus: ...


FireCallback = Callable[[TriggerPayload], Awaitable[None]]


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class LocalTriggerService:
    """In-process trigger service backed by asyncio timers.

    Stands in for a platform notification scheduler: each trigger sleeps until
    its fire time, logs the alert and hands the payload to ``on_fire``.
    """

    def __init__(self, on_fire: Optional[FireCallback] = None):
        self.on_fire = on_fire
        self._channels: Dict[str, NotificationChannel] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    async def create_channel(self, channel: NotificationChannel) -> None:
        self._channels[channel.id] = channel
        logger.debug("Notification channel %s ready (%s)", channel.id, channel.name)

    async def create_trigger(
        self, payload: TriggerPayload, channel: NotificationChannel, fires_at_ms: int
    ) -> str:
        if channel.id not in self._channels:
            raise RuntimeError(f"Notification channel {channel.id!r} was not created")
        handle = uuid.uuid4().hex
        self._tasks[handle] = asyncio.create_task(
            self._wait_and_fire(handle, payload, fires_at_ms), name=f"alarm-trigger-{handle[:8]}"
        )
        logger.debug(
            "Trigger %s registered for %s",
            handle,
            datetime.fromtimestamp(fires_at_ms / 1000, tz=timezone.utc).isoformat(),
        )
        return handle

    async def cancel_trigger(self, handle: str) -> None:
        task = self._tasks.pop(handle, None)
        if task is None:
            logger.debug("Trigger %s already gone", handle)
            return
        task.cancel()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _wait_and_fire(self, handle: str, payload: TriggerPayload, fires_at_ms: int) -> None:
        # sleep can return early or the wall clock can be stepped back
        remaining_ms = fires_at_ms - _now_ms()
        while remaining_ms > 0:
            await asyncio.sleep(remaining_ms / 1000)
            remaining_ms = fires_at_ms - _now_ms()
        self._tasks.pop(handle, None)
        logger.info("ALARM: %s - %s", payload.title, payload.body)
        if self.on_fire:
            try:
                await self.on_fire(payload)
            except Exception:
                logger.error("on_fire callback failed", exc_info=True)


class StaticPermission:
    """Permission prompt that answers with a fixed, configured status."""

    def __init__(self, granted: bool = True):
        self.granted = granted

    async def request_permission(self) -> PermissionStatus:
        return PermissionStatus.AUTHORIZED if self.granted else PermissionStatus.DENIED
