from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest
from aiohttp import web

from zedex.config import Config
from zedex.models import Extension
from zedex.upstream import UpstreamClient, create_session


def ext_dict(ext_id: str, version: str = "1.0.0", **extra: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": ext_id,
        "name": extra.pop("name", ext_id.title()),
        "version": version,
        "description": extra.pop("description", f"The {ext_id} extension"),
        "authors": ["someone"],
        "schema_version": extra.pop("schema_version", 1),
        "download_count": extra.pop("download_count", 0),
        "provides": extra.pop("provides", []),
    }
    data.update(extra)
    return data


def make_ext(ext_id: str, version: str = "1.0.0", **extra: Any) -> Extension:
    return Extension.from_dict(ext_dict(ext_id, version, **extra))


def write_catalog(root: Path, *extensions: dict[str, Any]) -> None:
    root.mkdir(parents=True, exist_ok=True)
    (root / "extensions.json").write_text(json.dumps({"data": list(extensions)}), encoding="utf-8")


def base_url(server: Any) -> str:
    return str(server.make_url("/")).rstrip("/")


class StubUpstream:
    """In-process stand-in for the marketplace and release APIs."""

    def __init__(self) -> None:
        self.catalog: dict[str | None, list[dict[str, Any]]] = {}
        self.versions: dict[str, list[dict[str, Any]]] = {}
        self.failing: set[str] = set()
        self.download_status: dict[str, int] = {}
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0

        self.app = web.Application()
        self.app.router.add_get("/extensions", self.list_catalog)
        self.app.router.add_get("/extensions/updates", self.updates)
        self.app.router.add_get("/extensions/{id}/download", self.download)
        self.app.router.add_get("/extensions/{id}/{version}/download", self.download)
        self.app.router.add_get("/extensions/{id}", self.list_versions)
        self.app.router.add_get("/api/releases/latest", self.latest_release)
        self.app.router.add_get("/api/releases/{channel}/latest", self.latest_release)
        self.app.router.add_get("/api/releases/{channel}/{version}/{filename}", self.release_asset)

    def record(self, request: web.Request) -> None:
        self.requests.append((request.path, dict(request.query)))

    async def list_catalog(self, request: web.Request) -> web.Response:
        self.record(request)
        provides = request.query.get("provides")
        if provides in self.failing:
            return web.Response(status=500, text="boom")
        return web.json_response({"data": self.catalog.get(provides, [])})

    async def updates(self, request: web.Request) -> web.Response:
        self.record(request)
        return web.json_response({"data": [], "from": "upstream"})

    async def list_versions(self, request: web.Request) -> web.Response:
        self.record(request)
        ext_id = request.match_info["id"]
        if ext_id not in self.versions:
            return web.Response(status=404, text=f"unknown extension {ext_id}")
        return web.json_response({"data": self.versions[ext_id]})

    async def download(self, request: web.Request) -> web.Response:
        self.record(request)
        ext_id = request.match_info["id"]
        version = request.match_info.get("version", "latest")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.02)
        finally:
            self.in_flight -= 1
        if ext_id in self.failing:
            return web.Response(status=500, text="boom")
        status = self.download_status.get(ext_id, 200)
        if status != 200:
            return web.Response(status=status, text=f"upstream says {status} for {ext_id}")
        return web.Response(body=f"{ext_id}:{version}".encode(), content_type="application/gzip")

    async def latest_release(self, request: web.Request) -> web.Response:
        self.record(request)
        asset = request.query.get("asset", "zed")
        os_name = request.query.get("os", "macos")
        arch = request.query.get("arch", "x86_64")
        if asset in self.failing:
            return web.Response(status=503, text="unavailable")
        origin = str(request.url.origin())
        return web.json_response(
            {
                "version": "0.187.8",
                "url": f"{origin}/api/releases/stable/0.187.8/{asset}-{os_name}-{arch}.tar.gz?update=1",
            }
        )

    async def release_asset(self, request: web.Request) -> web.Response:
        self.record(request)
        return web.Response(body=f"release:{request.match_info['filename']}".encode())


@pytest.fixture
def stub() -> StubUpstream:
    return StubUpstream()


@pytest.fixture
async def upstream_server(aiohttp_server, stub):
    return await aiohttp_server(stub.app)


@pytest.fixture
def upstream_config(upstream_server, tmp_path) -> Config:
    url = base_url(upstream_server)
    return Config(root_dir=str(tmp_path / "cache"), api_base=url, release_base=url, max_retries=0, rate_limit=0)


@pytest.fixture
async def upstream_client(upstream_config):
    async with create_session(upstream_config) as session:
        yield UpstreamClient(session, upstream_config)
