"""Build the deduplicated extension catalog from one or more upstream fetches."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Sequence

from .models import Extension, load_extensions, save_extensions
from .upstream import UpstreamClient

CATALOG_FILE = "extensions.json"


def merge_catalog(merged: dict[str, Extension], fetched: Iterable[Extension]) -> dict[str, Extension]:
    """Fold a fetch result into an id-keyed map; later entries win."""
    for ext in fetched:
        merged[ext.id] = ext
    return merged


def sort_catalog(extensions: Iterable[Extension]) -> list[Extension]:
    """Most downloaded first; ties keep their merge order."""
    return sorted(extensions, key=lambda ext: ext.download_count, reverse=True)


async def fetch_catalog(client: UpstreamClient, provides: Sequence[str] = ()) -> list[Extension]:
    """Fetch and merge the catalog without touching disk.

    With no ``provides`` filters the unfiltered listing is fetched first and
    every capability tag it mentions is then fetched on its own, since the
    unfiltered listing does not always include every extension. Any upstream
    error propagates.
    """
    merged: dict[str, Extension] = {}
    if provides:
        for capability in provides:
            merge_catalog(merged, await client.list_catalog(capability))
    else:
        initial = await client.list_catalog()
        merge_catalog(merged, initial)
        capabilities = sorted({cap for ext in initial for cap in ext.provides})
        logging.info("Discovered %s capability tags: %s", len(capabilities), ", ".join(capabilities))
        for capability in capabilities:
            merge_catalog(merged, await client.list_catalog(capability))
    return sort_catalog(merged.values())


async def build_catalog(client: UpstreamClient, root: Path, provides: Sequence[str] = ()) -> list[Extension]:
    """Refresh the catalog from upstream and persist it as extensions.json."""
    extensions = await fetch_catalog(client, provides)
    logging.info("Found %s extensions", len(extensions))
    path = root / CATALOG_FILE
    save_extensions(path, extensions)
    logging.info("Saved extension index to %s", path)
    return extensions


def load_catalog(root: Path) -> list[Extension]:
    return load_extensions(root / CATALOG_FILE)


async def ensure_catalog(client: UpstreamClient, root: Path, provides: Sequence[str] = ()) -> list[Extension]:
    """Use the persisted catalog when present, otherwise build one."""
    path = root / CATALOG_FILE
    if path.exists():
        logging.info("Loading extension index from %s", path)
        return load_catalog(root)
    logging.info("Extension index not found. Fetching from upstream...")
    return await build_catalog(client, root, provides)
