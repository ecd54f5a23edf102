import logging
import logging.handlers
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _get_env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip() in {"1", "true", "True", "yes", "YES", "y"}


@dataclass
class Config:
    storage_dir: Path
    timezone_name: Optional[str]
    notifications_granted: bool
    debug: bool
    log_level: str
    log_dir: Path


def load_config(env_path: Optional[Path] = None) -> Config:
    if env_path is None:
        env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    debug = _get_env_bool("DEBUG", False)
    log_level = os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO").upper()

    return Config(
        storage_dir=Path(os.getenv("ALARM_STORAGE_DIR", "data")),
        timezone_name=os.getenv("ALARM_TIMEZONE") or None,
        notifications_granted=_get_env_bool("NOTIFICATIONS_GRANTED", True),
        debug=debug,
        log_level=log_level,
        log_dir=Path(os.getenv("LOG_DIR", "logs")),
    )


def setup_logging(log_level: str = "INFO", logs_dir: Path = Path("logs")) -> None:
    logs_dir.mkdir(parents=True, exist_ok=True)

    log_path = logs_dir / "alarms.log"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        handlers=[file_handler, console_handler],
    )
