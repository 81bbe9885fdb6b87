"""Command line entry point: ``zedex get|release|serve|verify``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn

from . import __version__
from .catalog import build_catalog, ensure_catalog
from .config import Config, load_config
from .mirror import DownloadOptions, download_extension_ids, download_extensions, download_releases
from .server import run_server
from .tracker import load_tracker, save_tracker
from .upstream import UpstreamClient, UpstreamError, create_session
from .verify import verify

LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str, timestamp: bool) -> None:
    fmt = "%(asctime)s %(levelname)s %(message)s" if timestamp else "%(levelname)s %(message)s"
    logging.basicConfig(level=LOG_LEVELS.get(level, logging.INFO), format=fmt, force=True)


def download_progress() -> Progress:
    return Progress(
        TextColumn("[cyan]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        transient=True,
    )


async def get_extension_index(config: Config, provides: list[str]) -> int:
    root = config.extensions_dir
    async with create_session(config) as session:
        client = UpstreamClient(session, config)
        try:
            await build_catalog(client, root, provides)
        except (UpstreamError, OSError) as exc:
            logging.error("Failed to refresh extension index: %s", exc)
            return 1
    return 0


async def get_extensions(config: Config, ids: list[str], output_dir: Path) -> int:
    output_dir.mkdir(parents=True, exist_ok=True)
    async with create_session(config) as session:
        client = UpstreamClient(session, config)
        try:
            catalog = await ensure_catalog(client, output_dir)
        except (UpstreamError, OSError, ValueError) as exc:
            logging.error("Failed to load extension index: %s", exc)
            return 1
        tracker = load_tracker(output_dir)
        with download_progress() as progress:
            tracker = await download_extension_ids(ids, catalog, client, output_dir, tracker, progress)
    save_tracker(output_dir, tracker)
    return 0


async def get_all_extensions(config: Config, options: DownloadOptions, output_dir: Path) -> int:
    output_dir.mkdir(parents=True, exist_ok=True)
    async with create_session(config) as session:
        client = UpstreamClient(session, config)
        try:
            catalog = await ensure_catalog(client, output_dir)
        except (UpstreamError, OSError, ValueError) as exc:
            logging.error("Failed to load extension index: %s", exc)
            return 1
        tracker = load_tracker(output_dir)
        with download_progress() as progress:
            tracker = await download_extensions(catalog, client, output_dir, tracker, options, progress)
    save_tracker(output_dir, tracker)
    logging.info("All extensions downloaded to %s", output_dir)
    return 0


async def release_latest(config: Config, asset: str, os_name: str, arch: str) -> int:
    async with create_session(config) as session:
        client = UpstreamClient(session, config)
        try:
            release = await client.get_latest_release_version(asset, os_name, arch)
        except UpstreamError as exc:
            logging.error("Failed to fetch latest release for %s-%s-%s: %s", asset, os_name, arch, exc)
            return 1
    print(json.dumps(release.to_dict(), indent=2))
    return 0


async def release_download(config: Config, releases_dir: Path) -> int:
    logging.info("Downloading latest Zed releases to %s", releases_dir)
    async with create_session(config) as session:
        client = UpstreamClient(session, config)
        with download_progress() as progress:
            written = await download_releases(client, releases_dir, progress=progress)
    logging.info("Release download complete: %s manifest(s) written", len(written))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="zedex", description="Zed extension mirror")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to config YAML file")
    parser.add_argument("--root-dir", help="Root directory for all cache files")
    parser.add_argument("--log-level", default="info", choices=sorted(LOG_LEVELS), help="Log level")
    parser.add_argument("--log-timestamp", action="store_true", help="Enable timestamp in logs")
    commands = parser.add_subparsers(dest="command", required=True)

    get = commands.add_parser("get", help="Fetch extensions").add_subparsers(dest="target", required=True)
    index = get.add_parser("extension-index", help="Fetch the extension index")
    index.add_argument("--provides", action="append", default=[], help="Capability tag filter (repeatable)")
    one = get.add_parser("extension", help="Fetch specific extensions by id")
    one.add_argument("ids", nargs="+")
    one.add_argument("--output-dir", help="Output directory for downloaded extensions")
    every = get.add_parser("all-extensions", help="Fetch all extensions listed in extensions.json")
    every.add_argument("--output-dir", help="Output directory for downloaded extensions")
    every.add_argument("--async-mode", action="store_true", help="Download without throttling (may hit rate limits)")
    every.add_argument("--all-versions", action="store_true", help="Download every version of each extension")
    every.add_argument("--rate-limit", type=float, help="Seconds between version downloads")
    every.add_argument("--concurrency", type=int, help="Concurrent extensions in throttled mode")

    release = commands.add_parser("release", help="Fetch Zed releases").add_subparsers(dest="target", required=True)
    latest = release.add_parser("latest", help="Print the latest release manifest")
    latest.add_argument("--asset", default="zed")
    latest.add_argument("--os", default="linux")
    latest.add_argument("--arch", default="x86_64")
    download = release.add_parser("download", help="Download the latest release for every platform")
    download.add_argument("--output-dir", help="Root directory; releases go under <dir>/releases")

    serve = commands.add_parser("serve", help="Serve the extension API from the local cache")
    serve.add_argument("--port", type=int)
    serve.add_argument("--host")
    serve.add_argument("--extensions-dir", help="Directory containing extension archives and metadata")
    serve.add_argument("--proxy-mode", action="store_true", default=None, help="Proxy misses to upstream")
    serve.add_argument("--domain", help="Mirror origin substituted into release URLs (e.g. http://localhost:2654)")

    commands.add_parser("verify", help="Check the cache against the catalog and tracker")
    return parser


def resolve_config(args: argparse.Namespace) -> Config:
    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            raise SystemExit(f"config file not found: {config_path}")
        config = load_config(config_path)
    else:
        config = Config()
    config.override(root_dir=args.root_dir)
    return config


def run(args: argparse.Namespace, config: Config) -> int:
    if args.command == "get":
        output_dir = Path(getattr(args, "output_dir", None) or config.root_dir)
        if args.target == "extension-index":
            return asyncio.run(get_extension_index(config, args.provides))
        if args.target == "extension":
            return asyncio.run(get_extensions(config, args.ids, output_dir))
        config.override(rate_limit=args.rate_limit, concurrency=args.concurrency)
        options = DownloadOptions(
            async_mode=args.async_mode,
            all_versions=args.all_versions,
            rate_limit=config.rate_limit,
            concurrency=config.concurrency,
        )
        return asyncio.run(get_all_extensions(config, options, output_dir))

    if args.command == "release":
        if args.target == "latest":
            return asyncio.run(release_latest(config, args.asset, args.os, args.arch))
        root = Path(args.output_dir) if args.output_dir else config.extensions_dir
        return asyncio.run(release_download(config, root / "releases"))

    if args.command == "serve":
        config.override(
            port=args.port,
            host=args.host,
            root_dir=args.extensions_dir,
            proxy_mode=args.proxy_mode,
            domain=args.domain.rstrip("/") if args.domain else None,
        )
        run_server(config)
        return 0

    return verify(config)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_timestamp)
    logging.info("Starting Zed Extension Mirror")
    config = resolve_config(args)
    logging.debug("Using config: %s", config)
    raise SystemExit(run(args, config))


if __name__ == "__main__":
    main()
