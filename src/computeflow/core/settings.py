"""
Engine Settings - Configuration for scheduling, storage and backends.

Settings are stored as JSON in the user's config directory and can be
overridden per call site by constructing EngineSettings directly.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


CONFIG_PATH = Path.home() / ".config" / "computeflow" / "settings.json"
DEFAULT_STORE_DIR = Path.home() / ".local" / "share" / "computeflow" / "graphs"


@dataclass
class EngineSettings:
    """
    Engine-wide settings.

    Attributes:
        max_in_flight: Maximum concurrent worker calls per run (None = unbounded)
        cancel_grace_seconds: How long a running worker may take to acknowledge
            cancellation before its node is marked failed
        node_timeout_seconds: Per-node execution limit (None = no limit)
        history_limit: Number of undo snapshots kept per graph
        store_directory: Where FileGraphStore keeps graph documents
        backend_url: Base URL of the generation / storage backend
        api_key: Bearer token for the backend
        poll_interval: Seconds between job status polls
    """
    max_in_flight: int | None = 4
    cancel_grace_seconds: float = 10.0
    node_timeout_seconds: float | None = None
    history_limit: int = 10
    store_directory: Path = field(default_factory=lambda: DEFAULT_STORE_DIR)
    backend_url: str | None = None
    api_key: str = ""
    poll_interval: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary for serialization."""
        return {
            "max_in_flight": self.max_in_flight,
            "cancel_grace_seconds": self.cancel_grace_seconds,
            "node_timeout_seconds": self.node_timeout_seconds,
            "history_limit": self.history_limit,
            "store_directory": str(self.store_directory),
            "backend_url": self.backend_url,
            "api_key": self.api_key,
            "poll_interval": self.poll_interval,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineSettings:
        """Create settings from dictionary."""
        return cls(
            max_in_flight=data.get("max_in_flight", 4),
            cancel_grace_seconds=float(data.get("cancel_grace_seconds", 10.0)),
            node_timeout_seconds=data.get("node_timeout_seconds"),
            history_limit=int(data.get("history_limit", 10)),
            store_directory=(
                Path(data["store_directory"]).expanduser()
                if data.get("store_directory") else DEFAULT_STORE_DIR
            ),
            backend_url=data.get("backend_url"),
            api_key=data.get("api_key", ""),
            poll_interval=float(data.get("poll_interval", 1.0)),
        )


def load_settings(path: Path | None = None) -> EngineSettings:
    """
    Load settings from file.

    A missing file gives the defaults; an unreadable one is logged and
    also gives the defaults.
    """
    path = path or CONFIG_PATH
    if not path.exists():
        return EngineSettings()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return EngineSettings.from_dict(data)
    except (OSError, ValueError, TypeError) as e:
        logger.warning("Failed to load settings from %s: %s", path, e)
        return EngineSettings()


def save_settings(settings: EngineSettings, path: Path | None = None) -> Path:
    """Save settings to file, returning the path written."""
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(), f, indent=2)

    return path
