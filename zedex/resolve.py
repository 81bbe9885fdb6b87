"""Locate a servable extension archive across the cache layouts.

Three layouts can coexist in one extensions directory: the per-extension
directory with a latest ``<id>.tgz``, the versioned ``<id>-<version>.tgz``
files listed in ``versions.json``, and the older flat ``<id>.tar.gz``. Each
layout is one strategy; a :class:`Resolver` tries them in order and the
first hit wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

import semver

from .mirror import VERSIONS_FILE, latest_archive, versioned_archive
from .models import load_extensions


@dataclass(frozen=True, slots=True)
class Resolution:
    path: Path
    strategy: str
    version: str | None = None


class Strategy(Protocol):
    name: str

    def resolve(self, root: Path, extension_id: str, version: str | None) -> Resolution | None: ...


class LatestArchive:
    name = "latest"

    def resolve(self, root: Path, extension_id: str, version: str | None) -> Resolution | None:
        path = latest_archive(root, extension_id)
        logging.debug("Checking for latest version: %s", path)
        return Resolution(path, self.name) if path.is_file() else None


class BestAvailableVersion:
    """Highest semver listed in versions.json whose archive is on disk.

    Entries that are not strict semver (such as ``2.0``) are skipped.
    """

    name = "best-available"

    def resolve(self, root: Path, extension_id: str, version: str | None) -> Resolution | None:
        versions_file = root / extension_id / VERSIONS_FILE
        if not versions_file.is_file():
            return None
        try:
            listed = load_extensions(versions_file)
        except (OSError, ValueError) as exc:
            logging.error("Failed to read %s: %s", versions_file, exc)
            return None

        best: tuple[semver.Version, str, Path] | None = None
        for entry in listed:
            path = versioned_archive(root, extension_id, entry.version)
            if not path.is_file():
                continue
            try:
                parsed = semver.Version.parse(entry.version)
            except ValueError as exc:
                logging.warning("Invalid version %r for %s: %s", entry.version, extension_id, exc)
                continue
            if best is None or parsed > best[0]:
                best = (parsed, entry.version, path)

        if best is None:
            logging.debug("No downloaded versions found for %s", extension_id)
            return None
        return Resolution(best[2], self.name, best[1])


class LegacyFlatArchive:
    name = "legacy"

    def resolve(self, root: Path, extension_id: str, version: str | None) -> Resolution | None:
        path = root / f"{extension_id}.tar.gz"
        logging.debug("Checking old structure: %s", path)
        return Resolution(path, self.name) if path.is_file() else None


class ExactVersion:
    name = "exact"

    def resolve(self, root: Path, extension_id: str, version: str | None) -> Resolution | None:
        if version is None:
            return None
        path = versioned_archive(root, extension_id, version)
        logging.debug("Looking for versioned extension at %s", path)
        return Resolution(path, self.name, version) if path.is_file() else None


LATEST_CHAIN: tuple[Strategy, ...] = (LatestArchive(), BestAvailableVersion(), LegacyFlatArchive())
EXACT_CHAIN: tuple[Strategy, ...] = (ExactVersion(),)


class Resolver:
    """Run the strategy chain for a request."""

    def __init__(
        self,
        root: Path,
        latest_chain: Sequence[Strategy] = LATEST_CHAIN,
        exact_chain: Sequence[Strategy] = EXACT_CHAIN,
    ) -> None:
        self.root = root
        self.latest_chain = tuple(latest_chain)
        self.exact_chain = tuple(exact_chain)

    def chain_for(self, version: str | None) -> tuple[Strategy, ...]:
        return self.latest_chain if version is None else self.exact_chain

    def resolve(self, extension_id: str, version: str | None = None) -> Resolution | None:
        for strategy in self.chain_for(version):
            found = strategy.resolve(self.root, extension_id, version)
            if found is not None:
                logging.info(
                    "Resolved %s%s via %s: %s",
                    extension_id,
                    f" {version}" if version else "",
                    strategy.name,
                    found.path,
                )
                return found
        return None
