import asyncio
import logging
import signal
from typing import Optional

from alarms.manager import AlarmManager
from alarms.notifications import LocalTriggerService, StaticPermission
from alarms.storage import JsonFileStore
from config import Config, load_config, setup_logging
from time_utils import format_tz_offset, resolve_timezone

logger = logging.getLogger("alarm_service")


def build_alarm_manager(config: Config, trigger_service: Optional[LocalTriggerService] = None) -> AlarmManager:
    """Wire the single process-wide registry to its local collaborators."""
    trigger_service = trigger_service or LocalTriggerService()
    manager = AlarmManager(
        store=JsonFileStore(config.storage_dir),
        trigger_service=trigger_service,
        permission=StaticPermission(config.notifications_granted),
        timezone=resolve_timezone(config.timezone_name),
    )
    trigger_service.on_fire = manager.handle_trigger_fired
    return manager


async def run(config: Config) -> None:
    manager = build_alarm_manager(config)
    logger.info(
        "Starting alarm service (storage=%s, tz offset %s)",
        config.storage_dir,
        format_tz_offset(manager.tzinfo),
    )
    await manager.start()
    if not await manager.request_notification_permission():
        logger.warning("Notification permission denied; alarms stay scheduled but may not alert")

    next_alarm = manager.get_next_alarm()
    if next_alarm:
        logger.info("Next alarm: %s at %s", next_alarm.title, next_alarm.next_trigger.isoformat())

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:  # pragma: no cover - Windows
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop.set))
    try:
        await stop.wait()
        logger.info("Shutting down")
    finally:
        await manager.shutdown()


def main() -> None:
    config = load_config()
    setup_logging(config.log_level, config.log_dir)
    asyncio.run(run(config))


if __name__ == "__main__":
    main()
