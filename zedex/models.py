"""Extension and release records shared by the mirror and the server."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable


@dataclass(frozen=True, slots=True)
class Extension:
    """One extension version as listed by the marketplace."""

    id: str
    name: str
    version: str
    schema_version: int
    description: str = ""
    authors: tuple[str, ...] = ()
    repository: str | None = None
    wasm_api_version: str | None = None
    published_at: str | None = None
    download_count: int = 0
    provides: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> Extension:
        """Build an Extension from decoded JSON, ignoring unknown keys."""
        if not isinstance(data, dict):
            raise ValueError(f"extension record must be an object, got {type(data).__name__}")
        try:
            return cls(
                id=str(data["id"]),
                name=str(data["name"]),
                version=str(data["version"]),
                schema_version=int(data["schema_version"]),
                description=str(data.get("description") or ""),
                authors=tuple(str(a) for a in data.get("authors") or ()),
                repository=data.get("repository"),
                wasm_api_version=data.get("wasm_api_version"),
                published_at=data.get("published_at"),
                download_count=int(data.get("download_count") or 0),
                provides=tuple(str(p) for p in data.get("provides") or ()),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"malformed extension record: {exc!r}") from exc

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["authors"] = list(self.authors)
        out["provides"] = list(self.provides)
        for key in ("repository", "wasm_api_version", "published_at"):
            if out[key] is None:
                del out[key]
        return out

    def provides_capability(self, capability: str) -> bool:
        return capability in self.provides


@dataclass(slots=True)
class Version:
    """Release manifest returned by the release API."""

    version: str
    url: str
    api_url: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Version:
        if not isinstance(data, dict):
            raise ValueError("release manifest must be an object")
        try:
            api_url = data.get("api_url")
            return cls(version=str(data["version"]), url=str(data["url"]), api_url=api_url)
        except KeyError as exc:
            raise ValueError(f"release manifest missing {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"version": self.version, "url": self.url}
        if self.api_url is not None:
            out["api_url"] = self.api_url
        return out

    def parse_semver(self) -> tuple[int, int, int] | None:
        """Return (major, minor, patch) or None if the string is not numeric semver."""
        parts = self.version.split(".")
        if len(parts) < 3:
            return None
        try:
            return int(parts[0]), int(parts[1]), int(parts[2])
        except ValueError:
            return None

    def compare(self, other: Version) -> int:
        """Three-way compare: numeric triples when both parse, else plain strings."""
        mine, theirs = self.parse_semver(), other.parse_semver()
        if mine is not None and theirs is not None:
            left, right = mine, theirs
        else:
            left, right = self.version, other.version
        return (left > right) - (left < right)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.version == other.version

    def __lt__(self, other: Version) -> bool:
        return self.compare(other) < 0

    def __le__(self, other: Version) -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: Version) -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: Version) -> bool:
        return self.compare(other) >= 0

    def __hash__(self) -> int:
        return hash(self.version)

    def __str__(self) -> str:
        return self.version


@dataclass(slots=True)
class CatalogQuery:
    """Filter bounds accepted by the listing and update-check endpoints."""

    filter: str | None = None
    min_schema_version: int | None = None
    max_schema_version: int | None = None
    min_wasm_api_version: str | None = None
    max_wasm_api_version: str | None = None
    provides: str | None = None
    ids: set[str] | None = field(default=None)

    def matches(self, ext: Extension) -> bool:
        if self.max_schema_version is not None and ext.schema_version > self.max_schema_version:
            return False
        if self.min_schema_version is not None and ext.schema_version < self.min_schema_version:
            return False
        if self.filter:
            needle = self.filter.lower()
            if not any(needle in hay.lower() for hay in (ext.id, ext.name, ext.description)):
                return False
        if self.provides and not ext.provides_capability(self.provides):
            return False
        if self.ids is not None and ext.id not in self.ids:
            return False
        # Plain string ordering; extensions without a wasm api version always pass.
        if ext.wasm_api_version is not None:
            if self.min_wasm_api_version is not None and ext.wasm_api_version < self.min_wasm_api_version:
                return False
            if self.max_wasm_api_version is not None and ext.wasm_api_version > self.max_wasm_api_version:
                return False
        return True


def filter_extensions(extensions: Iterable[Extension], query: CatalogQuery) -> list[Extension]:
    """Return the extensions matching every bound of ``query``, order preserved."""
    extensions = list(extensions)
    filtered = [ext for ext in extensions if query.matches(ext)]
    logging.debug("Filtered extensions from %s to %s (%s)", len(extensions), len(filtered), query)
    return filtered


def parse_wrapped(obj: Any) -> list[Extension]:
    """Decode a ``{"data": [...]}`` document into extensions."""
    data = obj.get("data") if isinstance(obj, dict) else None
    if not isinstance(data, list):
        raise ValueError('expected an object with a "data" list')
    return [Extension.from_dict(item) for item in data]


def wrap(extensions: Iterable[Extension]) -> dict[str, Any]:
    return {"data": [ext.to_dict() for ext in extensions]}


def load_extensions(path: Path) -> list[Extension]:
    """Read a wrapped extension list from disk.

    Raises OSError when the file cannot be read and ValueError when it is
    not a valid wrapped list.
    """
    text = path.read_text(encoding="utf-8")
    return parse_wrapped(json.loads(text))


def write_json(path: Path, obj: Any) -> None:
    """Rewrite ``path`` wholesale with pretty-printed JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".part")
    tmp.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


def save_extensions(path: Path, extensions: Iterable[Extension]) -> None:
    write_json(path, wrap(extensions))


def write_bytes_atomic(path: Path, body: bytes) -> None:
    """Write ``body`` next to ``path`` and rename it into place."""
    tmp = path.with_name(path.name + ".part")
    tmp.write_bytes(body)
    tmp.replace(path)
