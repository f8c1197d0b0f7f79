"""Tests for the /setup API."""

import io
import json
import tarfile

from gatewrap.commands import CommandResult

from .conftest import TOKEN, operator_client


def test_gateway_token_not_cached(client):
    response = client.get("/setup/api/gateway-token")
    assert response.status_code == 200
    assert response.json() == {"token": client.app.state.token}
    assert response.headers["cache-control"] == "no-store"


def test_status(client, write_config):
    write_config()
    body = client.get("/setup/api/status").json()
    assert body["configured"] is True
    assert body["gatewayTarget"] == "http://127.0.0.1:18789"
    assert body["openclawVersion"] == "2026.1.0"
    assert body["providers"]["anthropic"] == "apiKey"
    assert body["onboarding"]["state"] == "not_needed"
    assert body["gateway"]["state"] == "absent"


class TestRun:
    def test_runs_manual_onboarding(self, make_app, backend, settings):
        app = make_app()

        async def fake_restart(token):
            return True, "started"

        app.state.supervisor.restart = fake_restart
        client = operator_client(app)

        response = client.post("/setup/api/run", json={"authChoice": "apiKey", "authSecret": "sk-abc"})

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert "sk-abc" not in response.json()["output"]
        assert settings.config_path.exists()
        assert len(backend.commands("onboard")) == 1

    def test_failure_is_500(self, client, backend):
        backend.onboard_code = 2
        response = client.post("/setup/api/run", json={"authChoice": "apiKey", "authSecret": "k"})
        assert response.status_code == 500
        assert response.json()["ok"] is False

    def test_already_configured(self, client, backend, write_config):
        write_config()
        response = client.post("/setup/api/run", json={})
        assert response.status_code == 200
        assert "Already configured" in response.json()["output"]
        assert backend.commands("onboard") == []

    def test_rejected_while_in_progress(self, client, backend):
        client.app.state.onboarder._in_progress = True
        response = client.post("/setup/api/run", json={})
        assert response.status_code == 409
        assert response.json()["ok"] is False
        assert backend.commands("onboard") == []


class TestReset:
    def test_deletes_config(self, client, settings, write_config):
        write_config()
        response = client.post("/setup/api/reset")
        assert response.status_code == 200
        assert not settings.config_path.exists()

    def test_refused_while_onboarding(self, client, settings, write_config):
        write_config()
        client.app.state.onboarder._in_progress = True
        assert client.post("/setup/api/reset").status_code == 409
        assert settings.config_path.exists()


def test_pairing_approve(client, backend):
    response = client.post("/setup/api/pairing/approve", json={"channel": "telegram", "code": "ABC123"})
    assert response.status_code == 200
    assert backend.commands("pairing", "approve") == [["pairing", "approve", "telegram", "ABC123"]]


def test_pairing_approve_failure(client, backend):
    backend.responses[("pairing", "approve")] = CommandResult(1, "unknown code")
    response = client.post("/setup/api/pairing/approve", json={"channel": "telegram", "code": "X"})
    assert response.status_code == 500
    assert response.json() == {"ok": False, "output": "unknown code"}


def test_pairing_approve_validates_body(client):
    assert client.post("/setup/api/pairing/approve", json={"channel": ""}).status_code == 422


class TestDebug:
    def test_hidden_unless_enabled(self, client):
        assert client.get("/setup/api/debug").status_code == 404

    def test_enabled(self, client, settings):
        settings.debug = True
        body = client.get("/setup/api/debug").json()
        assert body["openclaw"]["channelsAddHelpIncludesTelegram"] is True
        assert body["wrapper"]["gatewayTokenPersisted"] is True


def test_export_excludes_secrets(client, settings, write_config):
    write_config({"gateway": {"auth": {"token": TOKEN}}})
    (settings.state_dir / "agents").mkdir()
    (settings.state_dir / "agents" / "notes.txt").write_text("hello")
    settings.workspace_dir.mkdir(parents=True)
    (settings.workspace_dir / "USER.md").write_text("# User")

    response = client.get("/setup/export")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/gzip"
    assert "attachment" in response.headers["content-disposition"]
    with tarfile.open(fileobj=io.BytesIO(response.content), mode="r:gz") as tar:
        names = tar.getnames()
    assert "state/agents/notes.txt" in names
    assert "workspace/USER.md" in names
    assert not any(name.endswith((".token", "openclaw.json")) for name in names)
    assert TOKEN not in json.dumps(names)
