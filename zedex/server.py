"""aiohttp application serving the local cache with optional upstream fallback."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Mapping

from aiohttp import web

from . import __version__
from .catalog import load_catalog
from .config import Config
from .mirror import VERSIONS_FILE, manifest_path
from .models import CatalogQuery, Version, filter_extensions, load_extensions, wrap
from .resolve import Resolver
from .upstream import DOWNLOAD_BOUNDS, UpstreamClient, UpstreamTransportError, create_session

GZIP = "application/gzip"

RELEASE_CONTENT_TYPES = {
    ".dmg": "application/x-apple-diskimage",
    ".zip": "application/zip",
    ".exe": "application/vnd.microsoft.portable-executable",
    ".AppImage": "application/x-executable",
    ".json": "application/json",
    ".gz": "application/gzip",
    ".tar": "application/x-tar",
}


@dataclass(slots=True)
class ServerState:
    """Per-application state reachable from every request."""

    config: Config
    resolver: Resolver
    started_at: float = field(default_factory=time.time)
    upstream: UpstreamClient | None = None


STATE = web.AppKey("state", ServerState)


def _state(request: web.Request) -> ServerState:
    return request.app[STATE]


def _segment(request: web.Request, name: str, value: str | None = None) -> str:
    """Return a path/query value that is safe to use as a single file name part."""
    value = request.match_info[name] if value is None else value
    if not value or "/" in value or "\\" in value or value.startswith(".") or "\x00" in value:
        raise web.HTTPBadRequest(text=f"Invalid {name}: {value!r}")
    return value


def _int_param(query: Mapping[str, str], name: str) -> int | None:
    raw = query.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logging.debug("Ignoring non-integer %s=%r", name, raw)
        return None


def _not_found(text: str) -> web.Response:
    return web.Response(status=404, text=text)


async def _proxy(request: web.Request, base: str, params: Mapping[str, str] | None = None) -> web.Response:
    """Forward the request path verbatim to ``base`` and relay the answer."""
    state = _state(request)
    if state.upstream is None:
        return web.Response(status=503, text="Upstream client is not available")
    url = base.rstrip("/") + request.rel_url.raw_path
    query = request.query if params is None else params
    try:
        proxied = await state.upstream.forward(url, query)
    except UpstreamTransportError as exc:
        logging.error("Error proxying request: %s", exc)
        return web.Response(status=502, text=f"Error proxying request: {exc}")
    return web.Response(status=proxied.status, body=proxied.body, headers=proxied.headers)


def _file_response(path: Path, content_type: str) -> web.StreamResponse:
    """Stream ``path`` from disk; an unreadable file is a 500."""
    try:
        path.stat()
    except OSError as exc:
        logging.error("Failed to read file %s: %s", path, exc)
        return web.Response(status=500, text=f"Error reading file: {exc}")
    return web.FileResponse(path, headers={"Content-Type": content_type})


def _archive_response(path: Path) -> web.StreamResponse:
    return _file_response(path, GZIP)


def serve_release_file(path: Path) -> web.StreamResponse:
    content_type = RELEASE_CONTENT_TYPES.get(path.suffix, "application/octet-stream")
    logging.info("Serving release file %s as %s", path, content_type)
    return _file_response(path, content_type)


def local_release_file(releases_dir: Path, relpath: str) -> Path | None:
    """Return the file under ``releases_dir`` named by ``relpath``, refusing escapes."""
    root = releases_dir.resolve()
    candidate = (root / relpath).resolve()
    if candidate.is_relative_to(root) and candidate.is_file():
        return candidate
    return None


# extensions


async def list_extensions(request: web.Request) -> web.Response:
    state = _state(request)
    try:
        extensions = load_catalog(state.config.extensions_dir)
    except OSError as exc:
        logging.error("Error reading extensions.json: %s", exc)
        if state.config.proxy_mode:
            return await _proxy(request, state.config.api_base)
        return _not_found(f"Extensions file not found: {exc}")
    except ValueError as exc:
        logging.error("Error parsing extensions.json: %s", exc)
        return web.Response(status=500, text=f"Error parsing extensions file: {exc}")

    query = CatalogQuery(
        filter=request.query.get("filter"),
        max_schema_version=_int_param(request.query, "max_schema_version"),
        provides=request.query.get("provides"),
    )
    filtered = filter_extensions(extensions, query)
    logging.info("Serving %s filtered extensions from index", len(filtered))
    return web.json_response(wrap(filtered))


async def check_updates(request: web.Request) -> web.Response:
    state = _state(request)
    ids = {i for i in request.query.get("ids", "").split(",") if i}
    if not ids:
        logging.info("No extensions to check for updates (empty ids parameter)")
        return web.json_response(wrap([]))

    query = CatalogQuery(
        min_schema_version=_int_param(request.query, "min_schema_version"),
        max_schema_version=_int_param(request.query, "max_schema_version"),
        min_wasm_api_version=request.query.get("min_wasm_api_version"),
        max_wasm_api_version=request.query.get("max_wasm_api_version"),
        ids=ids,
    )
    try:
        extensions = load_catalog(state.config.extensions_dir)
    except OSError as exc:
        logging.error("Error reading extensions.json: %s", exc)
        if state.config.proxy_mode:
            return await _proxy(request, state.config.api_base)
        return _not_found(f"Extensions file not found: {exc}")
    except ValueError as exc:
        logging.error("Error parsing extensions.json: %s", exc)
        return web.Response(status=500, text=f"Error parsing extensions file: {exc}")

    filtered = filter_extensions(extensions, query)
    logging.info("Serving %s updated extensions from index", len(filtered))
    return web.json_response(wrap(filtered))


async def extension_versions(request: web.Request) -> web.Response:
    state = _state(request)
    ext_id = _segment(request, "id")
    versions_file = state.config.extensions_dir / ext_id / VERSIONS_FILE
    if not versions_file.is_file():
        if state.config.proxy_mode:
            logging.info("Versions file not found for %s, proxying", ext_id)
            return await _proxy(request, state.config.api_base)
        return _not_found(f"Extension versions not found for: {ext_id}")
    try:
        versions = load_extensions(versions_file)
    except (OSError, ValueError) as exc:
        logging.error("Error reading versions.json for %s: %s", ext_id, exc)
        return web.Response(status=500, text=f"Error reading versions file: {exc}")
    logging.info("Serving %s versions for extension %s", len(versions), ext_id)
    return web.json_response(wrap(versions))


async def download_latest(request: web.Request) -> web.StreamResponse:
    state = _state(request)
    ext_id = _segment(request, "id")
    found = state.resolver.resolve(ext_id)
    if found is not None:
        return _archive_response(found.path)
    if state.config.proxy_mode:
        logging.warning("Extension %s not found locally, proxying", ext_id)
        return await _proxy(request, state.config.api_base, request.query or DOWNLOAD_BOUNDS)
    logging.error("Extension %s not found locally and proxy mode is off", ext_id)
    return _not_found(f"Extension archive not found for id: {ext_id}")


async def download_version(request: web.Request) -> web.StreamResponse:
    state = _state(request)
    ext_id = _segment(request, "id")
    version = _segment(request, "version")
    found = state.resolver.resolve(ext_id, version)
    if found is not None:
        return _archive_response(found.path)
    if state.config.proxy_mode:
        logging.warning("Extension %s version %s not found locally, proxying", ext_id, version)
        return await _proxy(request, state.config.api_base)
    logging.error("Extension %s version %s not found", ext_id, version)
    return _not_found(f"Extension version archive not found: {ext_id} {version}")


# releases


def read_manifest(path: Path, config: Config) -> Version:
    """Load a cached release manifest, pointing its URL at the mirror when a domain is set."""
    release = Version.from_dict(json.loads(path.read_text(encoding="utf-8")))
    if config.domain:
        release.url = release.url.replace(config.release_base.rstrip("/"), config.domain.rstrip("/"))
    return release


async def latest_release(request: web.Request) -> web.Response:
    state = _state(request)
    asset = _segment(request, "asset", request.query.get("asset", "zed"))
    os_name = _segment(request, "os", request.query.get("os", "macos"))
    arch = _segment(request, "arch", request.query.get("arch", "x86_64"))
    channel = request.match_info.get("channel")
    logging.info("Latest version request for channel=%s asset=%s os=%s arch=%s", channel, asset, os_name, arch)

    manifest = manifest_path(state.config.releases_dir, asset, os_name, arch)
    if manifest.is_file():
        try:
            release = read_manifest(manifest, state.config)
        except (OSError, ValueError) as exc:
            logging.error("Failed to load release manifest %s: %s", manifest, exc)
            return web.Response(status=500, text=f"Error parsing version file: {exc}")
        return web.json_response(release.to_dict())

    if state.config.proxy_mode:
        return await _proxy(request, state.config.release_base)
    return _not_found(f"Version file not found for asset {asset} on platform {os_name}-{arch}")


async def release_asset(request: web.Request) -> web.StreamResponse:
    """Literal release bytes; a miss is a 404, never proxied."""
    state = _state(request)
    channel = request.match_info["channel"]
    version = _segment(request, "version")
    filename = _segment(request, "filename")
    path = state.config.releases_dir / version / filename
    if path.is_file():
        return serve_release_file(path)
    logging.warning("Release file not found: %s", path)
    return _not_found(f"Release file not found for {channel} {version} {filename}")


async def proxy_api(request: web.Request) -> web.StreamResponse:
    """Catch-all for /api/*: local release files first, then upstream."""
    state = _state(request)
    path = request.match_info["path"]
    if not state.config.proxy_mode:
        logging.warning("Rejecting proxy request in local mode: %s", path)
        return _not_found(f"API path not found locally: {path}")

    if path.startswith("releases/") and path != "releases/latest":
        found = local_release_file(state.config.releases_dir, path[len("releases/") :])
        if found is not None:
            return serve_release_file(found)
        logging.debug("Release file not found locally: %s", path)

    return await _proxy(request, state.config.release_base)


async def releases_tree(request: web.Request) -> web.StreamResponse:
    """Any file under releases/ by relative path."""
    path = request.match_info["path"]
    found = local_release_file(_state(request).config.releases_dir, path)
    if found is None:
        return _not_found(f"Release file not found: {path}")
    return serve_release_file(found)


async def health(request: web.Request) -> web.Response:
    state = _state(request)
    now = time.time()
    try:
        loaded = sum(1 for _ in state.config.extensions_dir.iterdir())
    except OSError:
        loaded = 0
    ok = loaded > 0
    body = {
        "status": "OK" if ok else "ERROR",
        "reason": "Service is running" if ok else "No extensions found",
        "version": __version__,
        "timestamp": int(now),
        "uptime": int(now - state.started_at),
        "extensions_loaded": loaded,
    }
    return web.json_response(body, status=200 if ok else 500)


def create_app(config: Config, upstream: UpstreamClient | None = None) -> web.Application:
    """Build the application; an upstream session is opened for its lifetime unless one is given."""
    state = ServerState(config=config, resolver=Resolver(config.extensions_dir), upstream=upstream)
    app = web.Application()
    app[STATE] = state

    if upstream is None:

        async def upstream_session(app: web.Application) -> AsyncIterator[None]:
            async with create_session(config) as session:
                state.upstream = UpstreamClient(session, config)
                yield
                state.upstream = None

        app.cleanup_ctx.append(upstream_session)

    router = app.router
    router.add_get("/health", health)
    router.add_get("/extensions", list_extensions)
    router.add_get("/extensions/updates", check_updates)
    router.add_get("/extensions/{id}/download", download_latest)
    router.add_get("/extensions/{id}/{version}/download", download_version)
    router.add_get("/extensions/{id}", extension_versions)
    router.add_get("/api/releases/latest", latest_release)
    router.add_get("/api/releases/{channel}/latest", latest_release)
    router.add_get("/api/releases/{channel}/{version}/{filename}", release_asset)
    router.add_get("/releases/{path:.*}", releases_tree)
    router.add_get("/api/{path:.*}", proxy_api)
    if config.extensions_dir.is_dir():
        router.add_static("/extensions-archive", config.extensions_dir, show_index=True)
    return app


def log_banner(config: Config) -> None:
    logging.info("Starting local Zed extension server on %s:%s", config.host, config.port)
    logging.info("Serving extensions from %s", config.extensions_dir)
    logging.info("Health check available at http://%s:%s/health", config.host, config.port)
    releases_dir = config.releases_dir
    if releases_dir.is_dir():
        manifests = sorted(p.name for p in releases_dir.glob("*.json"))
        logging.info("Serving releases from %s (%s manifests)", releases_dir, len(manifests))
        for name in manifests:
            logging.info("  - %s", name)
    else:
        logging.warning("Releases directory %s does not exist yet", releases_dir)
    if config.proxy_mode:
        logging.info("Running in PROXY mode - missing content is fetched from upstream")
    else:
        logging.info("Running in LOCAL mode - all content served locally, no proxying")


def run_server(config: Config) -> None:
    log_banner(config)
    if not config.extensions_dir.is_dir():
        logging.warning("Extensions directory %s does not exist; /extensions-archive is disabled", config.extensions_dir)
    web.run_app(create_app(config), host=config.host, port=config.port, print=None)
