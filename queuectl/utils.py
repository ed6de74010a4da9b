import logging
import os
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

DATA_DIR_ENV = "QUEUECTL_DATA_DIR"
DATA_DIRNAME = ".queuectl"
DB_FILENAME = "jobs.db"


def generate_worker_id() -> str:
    """Generate a unique ID for a worker process"""
    return f"worker-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def utc_now() -> datetime:
    """Get current UTC timestamp"""
    return datetime.now(timezone.utc)


def to_db_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO text, so that string order in SQLite is time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format datetime for display"""
    if dt is None:
        return "N/A"
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")


def resolve_data_dir(data_dir: Optional[Path] = None) -> Path:
    if data_dir is None:
        env = os.environ.get(DATA_DIR_ENV)
        data_dir = Path(env) if env else Path.cwd() / DATA_DIRNAME
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def db_path(data_dir: Path) -> Path:
    return data_dir / DB_FILENAME


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
