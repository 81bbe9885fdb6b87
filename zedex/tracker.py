"""Per-extension ledger of the last version written to the cache."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from .models import Extension, write_json

TRACKER_FILE = "version_tracker.json"


class VersionTracker:
    """Map extension id -> last downloaded version string.

    Workers each get their own copy via :meth:`copy`; the orchestrator folds
    the returned copies back together with :meth:`merge` once they finish.
    """

    def __init__(self, versions: dict[str, str] | None = None) -> None:
        self.versions: dict[str, str] = dict(versions or {})

    def __len__(self) -> int:
        return len(self.versions)

    def __contains__(self, extension_id: object) -> bool:
        return extension_id in self.versions

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionTracker):
            return NotImplemented
        return self.versions == other.versions

    def __repr__(self) -> str:
        return f"VersionTracker({self.versions!r})"

    def get(self, extension_id: str) -> str | None:
        return self.versions.get(extension_id)

    def update_extension(self, extension: Extension) -> None:
        self.versions[extension.id] = extension.version

    def has_newer_version(self, extension: Extension) -> bool:
        """True unless the tracked version string equals ``extension.version`` exactly."""
        return self.versions.get(extension.id) != extension.version

    def merge(self, other: VersionTracker) -> None:
        """Fold ``other`` into self; its entries win on conflict."""
        self.versions.update(other.versions)

    def copy(self) -> VersionTracker:
        return VersionTracker(self.versions)

    def to_dict(self) -> dict[str, str]:
        return dict(sorted(self.versions.items()))


def load_tracker(root: Path) -> VersionTracker:
    """Load the persisted tracker, or an empty one if none is usable."""
    path = root / TRACKER_FILE
    if not path.exists():
        return VersionTracker()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        logging.warning("Ignoring unreadable version tracker %s: %s", path, exc)
        return VersionTracker()
    if not isinstance(data, dict):
        logging.warning("Ignoring version tracker %s: not a JSON object", path)
        return VersionTracker()
    return VersionTracker({str(k): str(v) for k, v in data.items()})


def save_tracker(root: Path, tracker: VersionTracker) -> Path:
    path = root / TRACKER_FILE
    write_json(path, tracker.to_dict())
    logging.info("Saved version tracker (%s entries) to %s", len(tracker), path)
    return path
