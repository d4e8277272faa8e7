"""Shared test fixtures for graphkeep."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest

from graphkeep.config import AuthConfig, SaveConfig
from graphkeep.models import PermissionState
from graphkeep.provider import ProviderClient


class FakeEngine:
    """In-memory remote sync engine that records what it was given."""

    def __init__(self, healthy: bool = True):
        self.healthy = healthy
        self.states: list[Any] = []
        self.commits = 0
        self.fail_commit = False

    def update_state(self, state: Any) -> None:
        self.states.append(state)

    def is_healthy(self) -> bool:
        return self.healthy

    async def commit(self) -> bool:
        if self.fail_commit:
            raise RuntimeError("push rejected")
        self.commits += 1
        return True


class FakeCapability:
    """Scriptable file capability."""

    kind = "file"

    def __init__(
        self,
        name: str = "workspace.json",
        permission: PermissionState = PermissionState.GRANTED,
        grant_on_request: bool = True,
    ):
        self.name = name
        self.permission = permission
        self.grant_on_request = grant_on_request
        self.requests = 0
        self.writes: list[bytes] = []
        self.read_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None

    async def query_permission(self, mode: str = "readwrite") -> PermissionState:
        return self.permission

    async def request_permission(self, mode: str = "readwrite") -> PermissionState:
        self.requests += 1
        if self.permission is PermissionState.PROMPT and self.grant_on_request:
            self.permission = PermissionState.GRANTED
        return self.permission

    async def read_bytes(self) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        return self.writes[-1] if self.writes else b""

    async def write_bytes(self, data: bytes, append: bool = False) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.writes.append(data)

    def last_document(self) -> dict[str, Any]:
        return json.loads(self.writes[-1].decode("utf-8"))


def make_state(x: float = 0.0, nodes: int = 1, zoom: float = 1.0) -> dict[str, Any]:
    """Build a small workspace state."""
    return {
        "graphs": {
            "g1": {
                "name": "Main",
                "instances": {f"n{i}": {"prototype": "p1"} for i in range(nodes)},
                "pan_offset": {"x": x, "y": 0.0},
                "zoom_level": zoom,
            }
        },
        "node_prototypes": {"p1": {"name": "Thing", "color": "#8B0000"}},
        "edges": {},
    }


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary graphkeep home directory."""
    home = tmp_path / ".graphkeep"
    home.mkdir()
    return home


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def capability() -> FakeCapability:
    return FakeCapability()


@pytest.fixture
def fast_save_config() -> SaveConfig:
    """Debounce short enough to keep tests quick."""
    return SaveConfig(debounce_ms=20)


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        api_base_url="https://api.test",
        oauth_base_url="https://auth.test/api/github",
        health_check_interval_seconds=3600.0,
    )


class RecordingTransport:
    """httpx MockTransport wrapper counting calls per path."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.calls: list[str] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        return self.handler(request)

    def count(self, suffix: str) -> int:
        return sum(1 for path in self.calls if path.endswith(suffix))


@pytest.fixture
def make_provider(auth_config: AuthConfig):
    """Factory: build a ProviderClient answering through ``handler``."""

    def _make(handler: Callable[[httpx.Request], httpx.Response]):
        recorder = RecordingTransport(handler)
        client = httpx.AsyncClient(transport=recorder.transport)
        return ProviderClient(auth_config, client=client), recorder

    return _make
