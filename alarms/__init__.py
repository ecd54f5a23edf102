"""Recurring alarm registry and next-occurrence calculator."""

from .manager import AlarmManager
from .notifications import LocalTriggerService, NotificationChannel, PermissionStatus, StaticPermission, TriggerPayload
from .storage import Alarm, AlarmSettings, JsonFileStore
from .trigger import RepeatType, compute_next_occurrence
