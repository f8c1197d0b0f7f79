"""Tests for Config derived paths and helpers."""

import pytest

from gatewrap.config import Config, strip_bearer


class TestDerivedPaths:
    def test_paths_under_state_dir(self, settings):
        assert settings.config_path == settings.state_dir / "openclaw.json"
        assert settings.token_path == settings.state_dir / "gateway.token"
        assert settings.wrapper_log == settings.state_dir / "logs" / "wrapper.log"

    def test_config_path_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENCLAW_CONFIG_PATH", str(tmp_path / "custom.json"))
        cfg = Config(state_dir=tmp_path / "state")
        assert cfg.config_path == tmp_path / "custom.json"

    def test_construction_does_not_touch_disk(self, settings):
        assert not settings.state_dir.exists()


class TestHelpers:
    def test_gateway_targets(self, settings):
        assert settings.gateway_target == "http://127.0.0.1:18789"
        assert settings.gateway_ws_target == "ws://127.0.0.1:18789"

    def test_claw_args(self, settings):
        assert settings.claw_args(["config", "set", "a", "b"]) == ["node", "entry.js", "config", "set", "a", "b"]

    def test_child_env(self, settings):
        env = settings.child_env()
        assert env["OPENCLAW_STATE_DIR"] == str(settings.state_dir)
        assert env["OPENCLAW_WORKSPACE_DIR"] == str(settings.workspace_dir)

    def test_is_configured(self, settings, write_config):
        assert not settings.is_configured()
        write_config()
        assert settings.is_configured()

    def test_auth_choice(self, settings):
        settings.ai_provider = "openai"
        assert settings.auth_choice() == "openai-api-key"
        settings.ai_provider = "nope"
        assert settings.auth_choice() is None

    def test_ensure_writable_dirs(self, settings):
        settings.ensure_writable_dirs()
        assert settings.state_dir.is_dir()
        assert settings.workspace_dir.is_dir()
        assert settings.logs_dir.is_dir()
        assert not (settings.state_dir / ".write-test").exists()

    def test_ensure_writable_dirs_fails_loudly(self, settings, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        settings.state_dir = blocker / "state"
        with pytest.raises(RuntimeError, match="OPENCLAW_STATE_DIR"):
            settings.ensure_writable_dirs()


@pytest.mark.parametrize(
    "raw,expected",
    [("Bearer abc", "abc"), ("bearer  abc ", "abc"), ("abc", "abc"), ("", "")],
)
def test_strip_bearer(raw, expected):
    assert strip_bearer(raw) == expected
