from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from alarms.manager import AlarmManager
from alarms.notifications import NotificationChannel, PermissionStatus, TriggerPayload


class FakeStore:
    def __init__(self, data: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(data or {})
        self.fail_reads = False
        self.fail_writes = False
        self.writes = 0

    async def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise OSError("storage unavailable")
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        self.writes += 1
        self.data[key] = value


class FakeTriggerService:
    def __init__(self):
        self.live: Dict[str, Tuple[TriggerPayload, int]] = {}
        self.cancelled: List[str] = []
        self.channels: List[NotificationChannel] = []
        self.fail_create = False
        self.fail_cancel = False
        self._counter = 0

    async def create_channel(self, channel: NotificationChannel) -> None:
        self.channels.append(channel)

    async def create_trigger(self, payload: TriggerPayload, channel: NotificationChannel, fires_at_ms: int) -> str:
        if self.fail_create:
            raise RuntimeError("trigger service unavailable")
        self._counter += 1
        handle = f"trg-{self._counter}"
        self.live[handle] = (payload, fires_at_ms)
        return handle

    async def cancel_trigger(self, handle: str) -> None:
        if self.fail_cancel:
            raise RuntimeError("cancel failed")
        self.cancelled.append(handle)
        self.live.pop(handle, None)

    def handle_for(self, alarm_id: str) -> Optional[str]:
        for handle, (payload, _) in self.live.items():
            if payload.alarm_id == alarm_id:
                return handle
        return None

    async def fire(self, handle: str, manager: AlarmManager) -> None:
        payload, _ = self.live.pop(handle)
        await manager.handle_trigger_fired(payload)


class FakePermission:
    def __init__(self, status=PermissionStatus.AUTHORIZED, error: Optional[Exception] = None):
        self.status = status
        self.error = error

    async def request_permission(self) -> PermissionStatus:
        if self.error:
            raise self.error
        return self.status


class Clock:
    """Settable clock; ``queue`` values are handed out first, then ``now``."""

    def __init__(self, now: datetime):
        self.now = now
        self.queue: List[datetime] = []

    def __call__(self) -> datetime:
        if self.queue:
            return self.queue.pop(0)
        return self.now


def utc(year, month, day, hour=0, minute=0, second=0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


# 2025-01-06 is a Monday
MONDAY_0800 = utc(2025, 1, 6, 8, 0)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def triggers():
    return FakeTriggerService()


@pytest.fixture
def clock():
    return Clock(MONDAY_0800)


@pytest.fixture
def manager(store, triggers, clock):
    return AlarmManager(store, triggers, permission=FakePermission(), timezone=timezone.utc, clock=clock)
