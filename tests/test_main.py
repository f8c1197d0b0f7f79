"""Tests for app wiring and the boot sequence."""

import json

import pytest
from fastapi.testclient import TestClient

from gatewrap.main import _boot_gateway

from .conftest import TOKEN


def test_components_wired(make_app, settings):
    app = make_app()
    state = app.state
    assert state.settings is settings
    assert state.token == settings.token_path.read_text()
    assert state.onboarder.supervisor is state.supervisor
    assert state.supervisor._on_ready == state.approver.start


def test_lifespan_with_unconfigured_backend(make_app, settings, backend):
    with TestClient(make_app()) as client:
        assert client.get("/setup/healthz").status_code == 200
    assert settings.workspace_dir.is_dir()
    assert backend.commands("onboard") == []


@pytest.mark.asyncio
async def test_boot_repairs_config_and_restarts(make_app, settings, write_config):
    write_config({"gateway": {"auth": {"token": TOKEN}}})
    app = make_app()
    restarts = []

    async def fake_restart(token):
        restarts.append(token)
        return True, "started"

    app.state.supervisor.restart = fake_restart
    await _boot_gateway(app)

    data = json.loads(settings.config_path.read_text())
    assert data["gateway"]["controlUi"]["dangerouslyDisableDeviceAuth"] is True
    assert data["agents"]["defaults"]["workspace"] == str(settings.workspace_dir)
    assert restarts == [app.state.token]


@pytest.mark.asyncio
async def test_boot_auto_onboards_when_eligible(make_app, settings, backend):
    settings.ai_provider = "openrouter"
    settings.ai_api_key = "or-key"
    app = make_app()

    async def fake_restart(token):
        return True, "started"

    app.state.supervisor.restart = fake_restart
    await _boot_gateway(app)

    [onboard] = backend.commands("onboard")
    assert onboard[onboard.index("--openrouter-api-key") + 1] == "or-key"
    assert settings.config_path.exists()
    assert settings.fingerprint_path.exists()
