"""HTTP client for the upstream extension marketplace and release service."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping
from urllib.parse import quote

import aiohttp

from .config import Config
from .models import Extension, Version, parse_wrapped

ProgressCallback = Callable[[int, int | None], None]

CHUNK_SIZE = 64 * 1024

# Widest bounds, used when asking upstream for "whatever the latest is".
DOWNLOAD_BOUNDS = {
    "min_schema_version": "0",
    "max_schema_version": "100",
    "min_wasm_api_version": "0.0.0",
    "max_wasm_api_version": "100.0.0",
}

PASSTHROUGH_HEADERS = ("Content-Type", "Content-Disposition", "ETag", "Last-Modified", "Cache-Control")


class UpstreamError(Exception):
    """Base class for failures talking to upstream."""


class UpstreamTransportError(UpstreamError):
    """Connection, DNS or timeout failure that outlasted the retries."""


class UpstreamStatusError(UpstreamError):
    """Upstream answered with a non-2xx status."""

    def __init__(self, status: int, url: str) -> None:
        self.status = status
        self.url = url
        super().__init__(f"HTTP {status} for {url}")


class UpstreamPayloadError(UpstreamError, ValueError):
    """Upstream answered 2xx with a body we could not decode."""


@dataclass(slots=True)
class ProxiedResponse:
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)


class RequestScheduler:
    """Ensure a minimum delay between request starts."""

    def __init__(self, delay_sec: float) -> None:
        self.delay_sec = max(0.0, delay_sec)
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    async def wait_turn(self) -> None:
        """Sleep as needed so requests are spaced by configured delay."""
        if self.delay_sec <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait_for = self._next_allowed - now
            if wait_for > 0:
                await asyncio.sleep(wait_for)
                now = time.monotonic()
            self._next_allowed = now + self.delay_sec


def create_session(config: Config) -> aiohttp.ClientSession:
    """Open the shared client session used for every upstream call."""
    connector = aiohttp.TCPConnector(limit=max(8, config.concurrency * 2))
    return aiohttp.ClientSession(
        connector=connector,
        headers={"User-Agent": config.user_agent},
        timeout=aiohttp.ClientTimeout(total=config.timeout_sec),
    )


async def _read_body(resp: aiohttp.ClientResponse, on_progress: ProgressCallback | None) -> bytes:
    if on_progress is None:
        return await resp.read()
    total = resp.content_length
    done = 0
    chunks: list[bytes] = []
    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
        chunks.append(chunk)
        done += len(chunk)
        on_progress(done, total)
    return b"".join(chunks)


class UpstreamClient:
    """Typed access to the marketplace and release APIs over one session."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: Config,
        scheduler: RequestScheduler | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.scheduler = scheduler or RequestScheduler(config.delay_sec)

    @property
    def api_base(self) -> str:
        return self.config.api_base.rstrip("/")

    @property
    def release_base(self) -> str:
        return self.config.release_base.rstrip("/")

    def extension_url(self, extension_id: str, *parts: str) -> str:
        segments = [quote(extension_id, safe=""), *(quote(p, safe="") for p in parts)]
        return f"{self.api_base}/extensions/" + "/".join(segments)

    async def fetch_bytes(
        self,
        url: str,
        params: Mapping[str, str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> bytes:
        """Fetch URL with retry/backoff on transport errors and 5xx."""
        max_retries = self.config.max_retries
        for attempt in range(max_retries + 1):
            try:
                await self.scheduler.wait_turn()
                async with self.session.get(url, params=params) as resp:
                    status = resp.status
                    if 200 <= status < 300:
                        return await _read_body(resp, on_progress)
                    if status < 500 or attempt == max_retries:
                        raise UpstreamStatusError(status, url)
                    logging.warning("HTTP %s for %s (attempt %s/%s)", status, url, attempt + 1, max_retries + 1)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt == max_retries:
                    raise UpstreamTransportError(f"request failed after retries: {url} ({exc})") from exc
                logging.warning("Request error for %s (attempt %s/%s): %s", url, attempt + 1, max_retries + 1, exc)
            await asyncio.sleep((2**attempt) * max(0.05, self.config.delay_sec))
        raise UpstreamTransportError(f"request failed after retries: {url}")

    async def fetch_json(self, url: str, params: Mapping[str, str] | None = None) -> Any:
        data = await self.fetch_bytes(url, params)
        try:
            return json.loads(data.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise UpstreamPayloadError(f"invalid JSON at {url}: {exc}") from exc

    async def _fetch_extensions(self, url: str, params: Mapping[str, str] | None = None) -> list[Extension]:
        obj = await self.fetch_json(url, params)
        try:
            return parse_wrapped(obj)
        except ValueError as exc:
            raise UpstreamPayloadError(f"unexpected extension list at {url}: {exc}") from exc

    async def list_catalog(self, capability: str | None = None) -> list[Extension]:
        """List the marketplace catalog, optionally restricted to one capability."""
        params = {"max_schema_version": str(self.config.max_schema_version)}
        if capability:
            params["provides"] = capability
        extensions = await self._fetch_extensions(f"{self.api_base}/extensions", params)
        logging.debug("Catalog fetch provides=%s returned %s extensions", capability, len(extensions))
        return extensions

    async def list_versions(self, extension_id: str) -> list[Extension]:
        return await self._fetch_extensions(self.extension_url(extension_id))

    async def download_archive(
        self,
        extension_id: str,
        version: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> bytes:
        """Download one extension archive; the latest one when no version is given."""
        if version is None:
            url = self.extension_url(extension_id, "download")
            return await self.fetch_bytes(url, DOWNLOAD_BOUNDS, on_progress)
        url = self.extension_url(extension_id, version, "download")
        return await self.fetch_bytes(url, None, on_progress)

    async def get_latest_release_version(self, asset: str, os: str, arch: str) -> Version:
        url = f"{self.release_base}/api/releases/latest"
        obj = await self.fetch_json(url, {"asset": asset, "os": os, "arch": arch})
        try:
            return Version.from_dict(obj)
        except ValueError as exc:
            raise UpstreamPayloadError(f"unexpected release manifest at {url}: {exc}") from exc

    async def download_release_asset(self, version: Version, on_progress: ProgressCallback | None = None) -> bytes:
        return await self.fetch_bytes(version.url, None, on_progress)

    async def forward(self, url: str, params: Mapping[str, str] | None = None) -> ProxiedResponse:
        """Single GET whose status, safelisted headers and body are returned as-is."""
        logging.debug("Proxying request to %s params=%s", url, dict(params or {}))
        try:
            async with self.session.get(url, params=params) as resp:
                body = await resp.read()
                headers = {name: resp.headers[name] for name in PASSTHROUGH_HEADERS if name in resp.headers}
                headers.setdefault("Content-Type", "application/json")
                logging.debug("Proxy response %s for %s (%s bytes)", resp.status, url, len(body))
                return ProxiedResponse(status=resp.status, body=body, headers=headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamTransportError(f"error proxying {url}: {exc}") from exc
