"""Runtime configuration for the task tree CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from task_tree.core.models import TaskStatus
from task_tree.core.validation import MAX_PRIORITY, MIN_PRIORITY


@dataclass(slots=True)
class StorageSettings:
    """SQLite store settings."""

    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class TaskDefaults:
    """Values applied to tasks created without them."""

    status: str = TaskStatus.PENDING.value
    priority: int = 0


@dataclass(slots=True)
class DisplaySettings:
    """Listing and logging preferences."""

    show_completed: bool = True
    log_level: str = "WARNING"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".task_tree.db")
    storage: StorageSettings = field(default_factory=StorageSettings)
    defaults: TaskDefaults = field(default_factory=TaskDefaults)
    display: DisplaySettings = field(default_factory=DisplaySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_TREE_DB_PATH", ".task_tree.db")),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("TASK_TREE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            defaults=TaskDefaults(
                status=os.getenv("TASK_TREE_DEFAULT_STATUS", TaskStatus.PENDING.value).strip(),
                priority=int(os.getenv("TASK_TREE_DEFAULT_PRIORITY", "0")),
            ),
            display=DisplaySettings(
                show_completed=_env_bool("TASK_TREE_SHOW_COMPLETED", default=True),
                log_level=os.getenv("TASK_TREE_LOG_LEVEL", "WARNING").strip().upper(),
            ),
        )

    @property
    def default_status(self) -> TaskStatus:
        return TaskStatus(self.defaults.status)

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.storage.busy_timeout_ms <= 0:
            raise ValueError("TASK_TREE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        allowed = {status.value for status in TaskStatus}
        if self.defaults.status not in allowed:
            raise ValueError(
                f"TASK_TREE_DEFAULT_STATUS must be one of {', '.join(sorted(allowed))}: "
                f"{self.defaults.status!r}",
            )
        if not MIN_PRIORITY <= self.defaults.priority <= MAX_PRIORITY:
            raise ValueError(
                f"TASK_TREE_DEFAULT_PRIORITY must be between {MIN_PRIORITY} and {MAX_PRIORITY}.",
            )
        if not isinstance(logging.getLevelName(self.display.log_level), int):
            raise ValueError(f"Invalid TASK_TREE_LOG_LEVEL: {self.display.log_level!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
