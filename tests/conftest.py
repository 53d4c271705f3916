"""Shared fixtures: an in-process fake of the remote stage service."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from vintner.config import Settings
from vintner.remote.client import StageClient


class FakeBackend:
    """
    Routes requests by (method, path) to canned handlers and records them.

    A response may be a handler, an ``httpx.Response`` or a JSON-able body
    (served with 200). Several responses are served one per call, the last
    one repeating.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Any] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *responses: Any) -> "FakeBackend":
        self.routes[(method.upper(), path)] = list(responses)
        return self

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def json_bodies(self, path: str) -> list[Any]:
        return [json.loads(r.content) for r in self.calls(path)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"detail": "Not Found"})
        route = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(route):
            return route(request)
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def settings() -> Settings:
    return Settings(api_url="http://vintner.test", user_id="u-1", publish_chunk_size=10)


@pytest.fixture
def make_client(backend: FakeBackend, settings: Settings) -> Callable[..., StageClient]:
    def _make(**overrides: Any) -> StageClient:
        effective = settings.model_copy(update=overrides) if overrides else settings
        return StageClient(effective, transport=httpx.MockTransport(backend))

    return _make
