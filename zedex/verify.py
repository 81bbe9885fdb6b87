"""Check the local cache against its catalog and version tracker."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable

from .catalog import CATALOG_FILE, load_catalog
from .config import Config
from .resolve import Resolver
from .tracker import load_tracker


def iter_manifests(releases_dir: Path) -> Iterable[Path]:
    if not releases_dir.is_dir():
        return []
    return sorted(releases_dir.glob("*.json"))


def upstream_url(path: Path, target: str) -> str | None:
    """Return the manifest URL if it still points at ``target``."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    url = data.get("url") if isinstance(data, dict) else None
    if isinstance(url, str) and url.startswith(target):
        return url
    return None


def verify(config: Config) -> int:
    root = config.extensions_dir
    ng_count = 0
    ok_count = 0

    try:
        catalog = load_catalog(root)
    except (OSError, ValueError) as e:
        print(f"[NG] failed to load {root / CATALOG_FILE}: {e}")
        print("OK: 0")
        print("NG: 1")
        return 1

    resolver = Resolver(root)
    catalog_ids = {ext.id for ext in catalog}
    for ext in catalog:
        if resolver.resolve(ext.id) is not None:
            ok_count += 1
        else:
            ng_count += 1
            print(f"[NG] missing archive: {ext.id} {ext.version}")

    tracker = load_tracker(root)
    for ext_id in sorted(set(tracker.versions) - catalog_ids):
        ng_count += 1
        print(f"[NG] tracked extension not in catalog: {ext_id}")

    if config.domain:
        remain = [
            (path.name, url)
            for path in iter_manifests(config.releases_dir)
            if (url := upstream_url(path, config.release_base)) is not None
        ]
        if remain:
            print(f"[INFO] {len(remain)} release manifest(s) still point at {config.release_base} (rewritten when served):")
            for name, url in remain:
                print(f"- {name}: {url}")

    print(f"OK: {ok_count}")
    print(f"NG: {ng_count}")
    return 1 if ng_count > 0 else 0
