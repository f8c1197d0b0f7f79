"""Shared fixtures: temp settings, a fake backend CLI and a patched supervisor."""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from gatewrap.commands import CommandResult
from gatewrap.config import Config
from gatewrap.main import create_app
from gatewrap.process import GatewaySupervisor

PASSWORD = "hunter2"
TOKEN = "test-gateway-token"


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENCLAW_CONFIG_PATH", raising=False)
    return Config(
        state_dir=tmp_path / "state",
        workspace_dir=tmp_path / "workspace",
        backend_executable="node",
        backend_entry="entry.js",
        internal_port=18789,
        ready_timeout=1,
        restart_settle_delay=0,
        command_timeout=5,
        gateway_token="",
        setup_password=PASSWORD,
        debug=False,
        ai_provider="",
        ai_api_key="",
        telegram_bot_token="",
        telegram_username="",
        telegram_user_id="",
        fingerprint_extra_vars=[],
    )


@pytest.fixture
def write_config(settings):
    """Write a backend config file, creating the state dir."""

    def write(data=None):
        settings.config_path.parent.mkdir(parents=True, exist_ok=True)
        settings.config_path.write_text(json.dumps(data if data is not None else {"gateway": {}}))
        return settings.config_path

    return write


def _assign(data: dict, dotted: str, value):
    parts = dotted.split(".")
    for part in parts[:-1]:
        data = data.setdefault(part, {})
    data[parts[-1]] = value


class FakeBackend:
    """
    Stands in for the backend CLI.

    `config set` edits the JSON config like the real command, `onboard`
    optionally writes a config, and everything else returns canned output.
    """

    def __init__(self, settings: Config):
        self.settings = settings
        self.calls: list[list[str]] = []
        self.devices: list[dict] = []
        self.ignored_keys: set[str] = set()
        self.onboard_code = 0
        self.onboard_creates_config = True
        self.onboard_gate: asyncio.Event | None = None
        self.responses: dict[tuple[str, ...], CommandResult] = {}

    def commands(self, *prefix: str) -> list[list[str]]:
        return [args for args in self.calls if tuple(args[: len(prefix)]) == prefix]

    async def __call__(self, argv, extra_env=None, timeout=None) -> CommandResult:
        args = list(argv[2:])
        self.calls.append(args)

        for prefix, result in self.responses.items():
            if tuple(args[: len(prefix)]) == prefix:
                return result

        if args[:2] == ["config", "set"]:
            return self._config_set(args[2:])
        if args[:1] == ["onboard"]:
            if self.onboard_gate is not None:
                await self.onboard_gate.wait()
            if self.onboard_creates_config:
                self.settings.config_path.parent.mkdir(parents=True, exist_ok=True)
                self.settings.config_path.write_text(json.dumps({"agents": {"defaults": {"model": "m"}}}))
            return CommandResult(self.onboard_code, "onboard " + " ".join(args) + "\n")
        if args[:3] == ["channels", "add", "--help"]:
            return CommandResult(0, "Usage: channels add --channel telegram|discord|slack\n")
        if args[:3] == ["devices", "list", "--json"]:
            return CommandResult(0, json.dumps(self.devices))
        if args == ["--version"]:
            return CommandResult(0, "2026.1.0\n")
        return CommandResult(0, "")

    def _config_set(self, rest: list[str]) -> CommandResult:
        as_json = rest[0] == "--json"
        if as_json:
            rest = rest[1:]
        key, raw = rest
        if key in self.ignored_keys:
            return CommandResult(0, "")
        path = self.settings.config_path
        data = json.loads(path.read_text()) if path.exists() else {}
        _assign(data, key, json.loads(raw) if as_json else raw)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))
        return CommandResult(0, "")


class FakeProcess:
    """Minimal asyncio.subprocess.Process double."""

    next_pid = 40000

    def __init__(self):
        FakeProcess.next_pid += 1
        self.pid = FakeProcess.next_pid
        self.returncode = None
        self.stdout = None
        self.stderr = None
        self._exited = asyncio.Event()

    def exit(self, code: int = 0):
        self.returncode = code
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode


@pytest.fixture
def backend(settings):
    return FakeBackend(settings)


@pytest.fixture
def spawned():
    return []


@pytest.fixture
def readiness():
    """Mutable readiness answer used by the patched wait_for_ready."""
    return {"ready": True, "calls": 0}


@pytest.fixture
def supervisor(settings, backend, spawned, readiness, monkeypatch):
    sup = GatewaySupervisor(settings, run=backend)

    async def fake_spawn(argv, env):
        await asyncio.sleep(0)
        process = FakeProcess()
        spawned.append(process)
        return process

    async def fake_wait_for_ready(timeout=None):
        readiness["calls"] += 1
        await asyncio.sleep(0)
        return readiness["ready"]

    monkeypatch.setattr(sup, "_spawn", fake_spawn)
    monkeypatch.setattr(sup, "wait_for_ready", fake_wait_for_ready)
    monkeypatch.setattr(sup, "_signal", lambda process, sig: process.exit(-sig))
    monkeypatch.setattr(sup, "_terminate_strays", lambda: 0)
    return sup


async def settle():
    """Let background tasks (process watchers) run."""
    await asyncio.sleep(0.05)


@pytest.fixture
def make_app(settings, backend):
    """Build the app around the fake backend; `handler` answers upstream HTTP calls."""

    def make(handler=None, ensure_result=(True, "running")):
        app = create_app(
            settings,
            transport=httpx.MockTransport(handler or (lambda request: streamed(200, b"ok"))),
            run=backend,
        )

        async def fake_ensure_running(token):
            return ensure_result

        app.state.supervisor.ensure_running = fake_ensure_running
        return app

    return make


@pytest.fixture
def client(make_app):
    """Authenticated client. The lifespan is not entered."""
    return operator_client(make_app())


def operator_client(app, password: str = PASSWORD) -> TestClient:
    """TestClient sending Basic credentials on every request."""
    client = TestClient(app)
    client.auth = ("admin", password)
    return client


class ChunkedBody(httpx.AsyncByteStream):
    """Response body that has not been read yet, like a real upstream socket."""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


def streamed(status: int, body: bytes, headers: dict | None = None) -> httpx.Response:
    """Upstream response with an unread body, split into two chunks."""
    middle = len(body) // 2
    return httpx.Response(status, headers=headers, stream=ChunkedBody(body[:middle], body[middle:]))
