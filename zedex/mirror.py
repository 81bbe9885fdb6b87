"""Download extension archives and release binaries into the local cache.

The cache layout is shared with the server:

    <root>/extensions.json
    <root>/version_tracker.json
    <root>/<id>/<id>.tgz                latest archive
    <root>/<id>/<id>-<version>.tgz      one per historical version
    <root>/<id>/versions.json
    <root>/releases/<asset>-<os>-<arch>.json
    <root>/releases/<version>/<filename>

Every write is skip-if-exists or an atomic replace, so an interrupted run can
simply be started again.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable, Iterator, Sequence
from urllib.parse import unquote, urlparse

from rich.progress import Progress

from .models import Extension, Version, save_extensions, write_bytes_atomic, write_json
from .tracker import VersionTracker
from .upstream import ProgressCallback, UpstreamClient, UpstreamError

VERSIONS_FILE = "versions.json"

DEFAULT_PLATFORMS: tuple[tuple[str, str, str], ...] = (
    ("zed", "linux", "x86_64"),
    ("zed-remote-server", "linux", "x86_64"),
    ("zed", "linux", "aarch64"),
    ("zed-remote-server", "linux", "aarch64"),
    ("zed", "macos", "x86_64"),
    ("zed-remote-server", "macos", "x86_64"),
    ("zed", "macos", "aarch64"),
)

Downloader = Callable[[ProgressCallback | None], Awaitable[bytes]]


@dataclass(slots=True)
class DownloadOptions:
    async_mode: bool = False
    all_versions: bool = False
    rate_limit: float = 0.0
    concurrency: int = 1


def latest_archive(root: Path, extension_id: str) -> Path:
    return root / extension_id / f"{extension_id}.tgz"


def versioned_archive(root: Path, extension_id: str, version: str) -> Path:
    return root / extension_id / f"{extension_id}-{version}.tgz"


@contextmanager
def track(progress: Progress | None, label: str) -> Iterator[ProgressCallback | None]:
    """Yield an on_progress callback bound to a transient progress bar row."""
    if progress is None:
        yield None
        return
    task_id = progress.add_task(label, total=None)

    def update(done: int, total: int | None) -> None:
        progress.update(task_id, completed=done, total=total)

    try:
        yield update
    finally:
        progress.remove_task(task_id)


async def fetch_to_file(path: Path, label: str, download: Downloader, progress: Progress | None = None) -> bool:
    """Run ``download`` and write the bytes to ``path``. Failures are logged, not raised."""
    logging.info("Downloading %s", label)
    with track(progress, label) as on_progress:
        try:
            body = await download(on_progress)
        except UpstreamError as exc:
            logging.error("Failed to download %s: %s", label, exc)
            return False
    try:
        write_bytes_atomic(path, body)
    except OSError as exc:
        logging.error("Failed to write %s: %s", path, exc)
        return False
    logging.info("Downloaded %s to %s (%s bytes)", label, path, len(body))
    return True


async def download_extension(
    extension: Extension,
    client: UpstreamClient,
    root: Path,
    options: DownloadOptions,
    tracker: VersionTracker,
    progress: Progress | None = None,
) -> VersionTracker:
    """Bring one extension up to date in the cache.

    ``tracker`` is the caller's private copy; it is mutated and returned.
    """
    ext_id = extension.id
    ext_dir = root / ext_id
    try:
        ext_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logging.error("Failed to create directory %s: %s", ext_dir, exc)
        return tracker

    if not options.all_versions:
        path = latest_archive(root, ext_id)
        if path.exists() and not tracker.has_newer_version(extension):
            logging.debug("Extension %s %s already downloaded, skipping", ext_id, extension.version)
            return tracker
        download = partial(client.download_archive, ext_id, extension.version)
        if await fetch_to_file(path, f"{ext_id} {extension.version}", download, progress):
            tracker.update_extension(extension)
        return tracker

    try:
        versions = await client.list_versions(ext_id)
        save_extensions(ext_dir / VERSIONS_FILE, versions)
    except (UpstreamError, OSError) as exc:
        logging.error("Failed to fetch versions of %s: %s", ext_id, exc)
        return tracker

    for version in versions:
        path = versioned_archive(root, ext_id, version.version)
        if path.exists():
            logging.debug("Extension %s version %s already downloaded, skipping", ext_id, version.version)
            tracker.update_extension(version)
            continue
        download = partial(client.download_archive, ext_id, version.version)
        if await fetch_to_file(path, f"{ext_id} {version.version}", download, progress):
            tracker.update_extension(version)
        if options.rate_limit > 0:
            await asyncio.sleep(options.rate_limit)
    return tracker


async def download_extensions(
    extensions: Sequence[Extension],
    client: UpstreamClient,
    root: Path,
    tracker: VersionTracker,
    options: DownloadOptions,
    progress: Progress | None = None,
) -> VersionTracker:
    """Download every catalog entry and return the merged tracker.

    Each worker gets its own tracker copy; the copies are merged only after
    all workers have finished.
    """
    logging.info(
        "Downloading %s extensions (%s)...",
        len(extensions),
        "all versions" if options.all_versions else "latest version only",
    )

    if options.async_mode:
        logging.info("Using fully asynchronous mode - be careful of rate limiting!")
        jobs = [download_extension(ext, client, root, options, tracker.copy(), progress) for ext in extensions]
    else:
        limit = max(1, options.concurrency)
        logging.info("Using throttled download mode (%s concurrent extension%s)", limit, "" if limit == 1 else "s")
        sem = asyncio.Semaphore(limit)

        async def throttled(ext: Extension) -> VersionTracker:
            async with sem:
                return await download_extension(ext, client, root, options, tracker.copy(), progress)

        jobs = [throttled(ext) for ext in extensions]

    results = await asyncio.gather(*jobs, return_exceptions=True)

    merged = tracker.copy()
    for ext, outcome in zip(extensions, results):
        if isinstance(outcome, VersionTracker):
            merged.merge(outcome)
        elif isinstance(outcome, Exception):
            logging.error("Unexpected failure while downloading %s", ext.id, exc_info=outcome)
        else:
            raise outcome
    return merged


async def download_extension_ids(
    ids: Sequence[str],
    catalog: Sequence[Extension],
    client: UpstreamClient,
    root: Path,
    tracker: VersionTracker,
    progress: Progress | None = None,
) -> VersionTracker:
    """Download the latest archive of specific ids, replacing any cached copy."""
    by_id = {ext.id: ext for ext in catalog}

    async def fetch_one(extension_id: str) -> VersionTracker:
        own = tracker.copy()
        extension = by_id.get(extension_id)
        if extension is None:
            logging.error("Extension %s not found in index", extension_id)
            return own
        path = latest_archive(root, extension_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logging.error("Failed to create directory %s: %s", path.parent, exc)
            return own
        download = partial(client.download_archive, extension_id, extension.version)
        if await fetch_to_file(path, f"{extension_id} {extension.version}", download, progress):
            own.update_extension(extension)
        return own

    merged = tracker.copy()
    for own in await asyncio.gather(*(fetch_one(i) for i in ids)):
        merged.merge(own)
    return merged


def release_filename(release: Version, asset: str, os_name: str, arch: str) -> str:
    """File name the release is stored under: the last segment of its download URL."""
    name = unquote(PurePosixPath(urlparse(release.url).path).name)
    if not name or name in {".", ".."}:
        return f"{asset}-{os_name}-{arch}.tar.gz"
    return name


def manifest_path(releases_dir: Path, asset: str, os_name: str, arch: str) -> Path:
    return releases_dir / f"{asset}-{os_name}-{arch}.json"


async def download_releases(
    client: UpstreamClient,
    releases_dir: Path,
    platforms: Sequence[tuple[str, str, str]] = DEFAULT_PLATFORMS,
    progress: Progress | None = None,
) -> list[Path]:
    """Mirror the latest release of each platform; return the manifests written.

    The manifest is written only once its archive is on disk.
    """
    written: list[Path] = []
    for asset, os_name, arch in platforms:
        label = f"{asset}-{os_name}-{arch}"
        try:
            release = await client.get_latest_release_version(asset, os_name, arch)
        except UpstreamError as exc:
            logging.error("Failed to fetch latest release for %s: %s", label, exc)
            continue
        logging.info("Latest %s version: %s", label, release.version)

        target = releases_dir / release.version / release_filename(release, asset, os_name, arch)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logging.error("Failed to create directory %s: %s", target.parent, exc)
            continue
        if target.exists():
            logging.info("Release %s %s already downloaded, skipping", label, release.version)
        else:
            download = partial(client.download_release_asset, release)
            if not await fetch_to_file(target, f"{label} {release.version}", download, progress):
                continue

        manifest = manifest_path(releases_dir, asset, os_name, arch)
        try:
            write_json(manifest, release.to_dict())
        except OSError as exc:
            logging.error("Failed to write release manifest %s: %s", manifest, exc)
            continue
        logging.info("Release manifest saved to %s", manifest)
        written.append(manifest)
    return written
