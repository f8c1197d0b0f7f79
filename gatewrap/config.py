"""
Configuration for the gateway wrapper.

Loads settings from environment variables with sensible defaults.
Backend state (config file, shared token, onboarding fingerprint, logs)
lives under OPENCLAW_STATE_DIR.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or "").strip() or default


def strip_bearer(value: str) -> str:
    """Strip an optional "Bearer " prefix from a credential."""
    value = (value or "").strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


# AI_PROVIDER (env) -> backend `onboard --auth-choice` value
PROVIDER_TO_AUTH_CHOICE = {
    "anthropic": "apiKey",
    "openai": "openai-api-key",
    "openrouter": "openrouter-api-key",
    "gemini": "gemini-api-key",
    "google": "gemini-api-key",
    "ai-gateway": "ai-gateway-api-key",
    "moonshot": "moonshot-api-key",
    "kimi-code": "kimi-code-api-key",
    "zai": "zai-api-key",
    "minimax": "minimax-api",
    "synthetic": "synthetic-api-key",
    "opencode-zen": "opencode-zen",
}

# auth-choice -> CLI flag carrying the provider secret
AUTH_CHOICE_SECRET_FLAGS = {
    "openai-api-key": "--openai-api-key",
    "apiKey": "--anthropic-api-key",
    "openrouter-api-key": "--openrouter-api-key",
    "ai-gateway-api-key": "--ai-gateway-api-key",
    "moonshot-api-key": "--moonshot-api-key",
    "kimi-code-api-key": "--kimi-code-api-key",
    "gemini-api-key": "--gemini-api-key",
    "zai-api-key": "--zai-api-key",
    "minimax-api": "--minimax-api-key",
    "minimax-api-lightning": "--minimax-api-key",
    "synthetic-api-key": "--synthetic-api-key",
    "opencode-zen": "--opencode-zen-api-key",
}


@dataclass
class Config:
    """Wrapper configuration."""

    # Paths
    state_dir: Path = Path(_env("OPENCLAW_STATE_DIR", "/data/.openclaw"))
    workspace_dir: Path = Path(_env("OPENCLAW_WORKSPACE_DIR", "/data/workspace"))
    config_path: Path = None
    token_path: Path = None
    fingerprint_path: Path = None
    logs_dir: Path = None
    wrapper_log: Path = None

    # Logging
    log_level: str = _env("LOG_LEVEL", "INFO").upper()
    log_max_bytes: int = int(_env("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(_env("LOG_BACKUP_COUNT", "5"))
    debug: bool = _env("OPENCLAW_TEMPLATE_DEBUG").lower() == "true"

    # Public server
    host: str = _env("WRAPPER_HOST", "0.0.0.0")
    port: int = int(_env("PORT", "8080"))

    # Backend process
    backend_entry: str = _env("OPENCLAW_ENTRY", "/openclaw/dist/entry.js")
    backend_executable: str = _env("OPENCLAW_NODE", "node")
    backend_process_name: str = "openclaw-gateway"
    internal_host: str = _env("INTERNAL_GATEWAY_HOST", "127.0.0.1")
    internal_port: int = int(_env("INTERNAL_GATEWAY_PORT", "18789"))
    ready_timeout: float = int(_env("GATEWAY_READY_TIMEOUT_MS", "20000")) / 1000
    restart_settle_delay: float = 1.5
    command_timeout: int = int(_env("COMMAND_TIMEOUT", "300"))

    # Credentials
    gateway_token: str = _env("OPENCLAW_GATEWAY_TOKEN")
    setup_password: str = _env("SETUP_PASSWORD")

    # Onboarding inputs
    ai_provider: str = _env("AI_PROVIDER").lower()
    ai_api_key: str = strip_bearer(_env("AI_API_KEY"))
    telegram_bot_token: str = _env("TELEGRAM_BOT_TOKEN")
    telegram_username: str = _env("TELEGRAM_USERNAME")
    telegram_user_id: str = _env("TELEGRAM_USER_ID")
    fingerprint_extra_vars: list[str] = field(
        default_factory=lambda: [
            v.strip() for v in _env("ONBOARD_FINGERPRINT_EXTRA_VARS", "SENPI_AUTH_TOKEN").split(",") if v.strip()
        ]
    )

    def __post_init__(self):
        """Initialize derived paths."""
        self.state_dir = Path(self.state_dir)
        self.workspace_dir = Path(self.workspace_dir)
        if self.config_path is None:
            override = _env("OPENCLAW_CONFIG_PATH")
            self.config_path = Path(override) if override else self.state_dir / "openclaw.json"
        if self.token_path is None:
            self.token_path = self.state_dir / "gateway.token"
        if self.fingerprint_path is None:
            self.fingerprint_path = self.state_dir / ".auto-onboard-env.fingerprint"
        if self.logs_dir is None:
            self.logs_dir = self.state_dir / "logs"
        if self.wrapper_log is None:
            self.wrapper_log = self.logs_dir / "wrapper.log"

    @property
    def gateway_target(self) -> str:
        """Base URL of the backend on its loopback bind."""
        return f"http://{self.internal_host}:{self.internal_port}"

    @property
    def gateway_ws_target(self) -> str:
        return f"ws://{self.internal_host}:{self.internal_port}"

    def claw_args(self, args: list[str]) -> list[str]:
        """Full argv for a backend CLI invocation."""
        return [self.backend_executable, self.backend_entry, *args]

    def child_env(self) -> dict[str, str]:
        """Environment overrides for every backend child process."""
        return {
            "OPENCLAW_STATE_DIR": str(self.state_dir),
            "OPENCLAW_WORKSPACE_DIR": str(self.workspace_dir),
        }

    def is_configured(self) -> bool:
        """The backend counts as configured once its config file exists."""
        return self.config_path.exists()

    def auth_choice(self) -> str | None:
        return PROVIDER_TO_AUTH_CHOICE.get(self.ai_provider)

    def ensure_writable_dirs(self):
        """Create state and workspace dirs and check they are writable."""
        for directory, label in (
            (self.state_dir, "OPENCLAW_STATE_DIR"),
            (self.workspace_dir, "OPENCLAW_WORKSPACE_DIR"),
        ):
            marker = directory / ".write-test"
            try:
                directory.mkdir(parents=True, exist_ok=True)
                marker.write_text("")
                marker.unlink()
            except OSError as e:
                raise RuntimeError(
                    f"{label} ({directory}) is not writable: {e}. "
                    "Fix permissions or set a writable path."
                ) from e
        self.logs_dir.mkdir(parents=True, exist_ok=True)


config = Config()
