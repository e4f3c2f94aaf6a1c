"""Shared fixtures: a fake Flux node API served through httpx.MockTransport."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from fluxwatch.flux_client import FluxApiClient
from fluxwatch.models import Node
from fluxwatch.session_log import SessionLog


class FakeFluxNode:
    """Answers /apps/listrunningapps and /apps/appremove like a Flux node would."""

    def __init__(self, app_names: list[str] | None = None) -> None:
        self.app_names = list(app_names or [])
        self.list_status = 200
        self.list_body: object | None = None
        self.remove_responses: dict[str, httpx.Response] = {}
        self.default_remove = httpx.Response(200, text='{"status":"success","data":"Removal step"}')
        self.list_calls: list[httpx.Request] = []
        self.remove_calls: list[str] = []
        self.on_remove = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/apps/listrunningapps":
            self.list_calls.append(request)
            body = self.list_body
            if body is None:
                body = {"status": "success", "data": [{"Names": [name]} for name in self.app_names]}
            return httpx.Response(self.list_status, text=json.dumps(body))
        if request.url.path == "/apps/appremove":
            app_name = request.url.params["appname"]
            self.remove_calls.append(app_name)
            if self.on_remove is not None:
                self.on_remove(app_name)
            return self.remove_responses.get(app_name, self.default_remove)
        return httpx.Response(404, text="not found")


@pytest.fixture
def session_log(tmp_path):
    log = SessionLog(tmp_path / "session.log", capacity=500, max_file_bytes=10 * 1024 * 1024, debug=True)
    yield log
    log.close()


@pytest.fixture
def fake_node():
    return FakeFluxNode(["/zel_OtherThing_StuckContainerXYZ", "/fluxweb_KeepMe"])


@pytest.fixture
def node():
    return Node(id="IP1-node01", name="IP1-Node01", ui_url="http://10.0.0.5:16126", api_url="http://10.0.0.5:16127")


@pytest.fixture
def make_client(session_log):
    def _make(handler) -> FluxApiClient:
        return FluxApiClient(session_log, timeout=1, transport=httpx.MockTransport(handler))

    return _make


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait
