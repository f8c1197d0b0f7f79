"""
One-shot onboarding of the backend.

Drives the backend's non-interactive `onboard` command from environment
variables (auto-onboard) or from a setup-page payload (manual), finalises
the configuration the wrapper depends on and restarts the gateway. A hash
of the onboarding-relevant environment is stored after a successful
auto-onboard so a redeploy with changed variables re-runs it.
"""

import hashlib
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from .backend_config import headless_settings
from .commands import CommandRunner, redact, run_cmd
from .config import AUTH_CHOICE_SECRET_FLAGS, Config
from .process import GatewaySupervisor, TokenMismatchError
from .telegram import resolve_user

logger = logging.getLogger(__name__)


class OnboardingState(Enum):
    NOT_NEEDED = "not_needed"
    NEEDS_MANUAL_SETUP = "needs_manual_setup"
    ELIGIBLE = "eligible"
    CONFIGURED_BUT_DRIFTED = "configured_but_drifted"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class OnboardingInProgressError(RuntimeError):
    """Another onboarding run is already active."""


class OnboardingError(RuntimeError):
    """An onboarding step failed."""


@dataclass
class OnboardResult:
    ok: bool
    output: str


def build_onboard_args(settings: Config, payload: dict, token: str) -> list[str]:
    """CLI args for `onboard --non-interactive` (without the entry point)."""
    args = [
        "onboard",
        "--non-interactive",
        "--accept-risk",
        "--json",
        "--no-install-daemon",
        "--skip-health",
        "--workspace", str(settings.workspace_dir),
        "--gateway-bind", "loopback",
        "--gateway-port", str(settings.internal_port),
        "--gateway-auth", "token",
        "--gateway-token", token,
        "--flow", payload.get("flow") or "quickstart",
    ]

    auth_choice = payload.get("authChoice")
    if auth_choice:
        args += ["--auth-choice", auth_choice]
        secret = (payload.get("authSecret") or "").strip()
        flag = AUTH_CHOICE_SECRET_FLAGS.get(auth_choice)
        if flag and secret:
            args += [flag, secret]
        if auth_choice == "token" and secret:
            args += ["--token-provider", "anthropic", "--token", secret]
    return args


class Onboarder:
    """Runs onboarding at most once at a time."""

    def __init__(
        self,
        settings: Config,
        supervisor: GatewaySupervisor,
        run: CommandRunner = run_cmd,
        resolve_telegram: Callable[[Config], Awaitable] = resolve_user,
    ):
        self.settings = settings
        self.supervisor = supervisor
        self.backend_config = supervisor.backend_config
        self._run = run
        self._resolve_telegram = resolve_telegram
        self._in_progress = False
        self.last_state: OnboardingState | None = None

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def fingerprint(self) -> str:
        """Hash of the environment inputs that shape onboarding."""
        payload = {
            "AI_PROVIDER": self.settings.ai_provider,
            "AI_API_KEY": self.settings.ai_api_key,
            "TELEGRAM_BOT_TOKEN": self.settings.telegram_bot_token,
            "TELEGRAM_USERNAME": self.settings.telegram_username,
        }
        for name in self.settings.fingerprint_extra_vars:
            payload[name] = (os.environ.get(name) or "").strip()
        return hashlib.sha256(json.dumps(payload).encode("utf-8")).hexdigest()

    def stored_fingerprint(self) -> str:
        try:
            return self.settings.fingerprint_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""

    def has_inputs(self) -> bool:
        """Provider, key and a known provider mapping are all present."""
        return bool(self.settings.ai_provider and self.settings.ai_api_key and self.settings.auth_choice())

    def has_drifted(self) -> bool:
        """Auto-onboarded before, and the environment no longer matches."""
        stored = self.stored_fingerprint()
        return bool(stored) and self.has_inputs() and stored != self.fingerprint()

    def assess(self) -> OnboardingState:
        if self._in_progress:
            return OnboardingState.IN_PROGRESS
        if self.settings.is_configured():
            if self.has_drifted():
                return OnboardingState.CONFIGURED_BUT_DRIFTED
            return OnboardingState.NOT_NEEDED
        if self.has_inputs():
            return OnboardingState.ELIGIBLE
        return OnboardingState.NEEDS_MANUAL_SETUP

    def _store_fingerprint(self):
        try:
            self.settings.fingerprint_path.write_text(self.fingerprint(), encoding="utf-8")
            logger.info("Stored environment fingerprint for redeploy detection")
        except OSError as e:
            logger.warning(f"Could not write fingerprint file: {e}")

    def reset(self):
        """Delete the backend config and the stored fingerprint."""
        if self.backend_config.delete():
            logger.info(f"Deleted {self.settings.config_path}")
        try:
            self.settings.fingerprint_path.unlink()
        except FileNotFoundError:
            pass

    @contextmanager
    def _exclusive(self):
        if self._in_progress:
            raise OnboardingInProgressError("Onboarding is already in progress")
        self._in_progress = True
        try:
            yield
        finally:
            self._in_progress = False

    async def auto_onboard(self, token: str) -> OnboardingState:
        """Onboard from environment variables if needed. Never raises."""
        state = self.assess()
        if state is OnboardingState.IN_PROGRESS:
            logger.info("Onboarding already in progress, skipping")
            return state
        if state is OnboardingState.CONFIGURED_BUT_DRIFTED:
            logger.info("Environment changed since last auto-onboard, re-onboarding")
            self.reset()
            state = self.assess()
        if state is not OnboardingState.ELIGIBLE:
            if state is OnboardingState.NEEDS_MANUAL_SETUP and (self.settings.ai_provider or self.settings.ai_api_key):
                logger.warning("Cannot auto-onboard: AI_PROVIDER/AI_API_KEY missing or provider unknown")
            self.last_state = state
            return state

        payload = {
            "flow": "quickstart",
            "authChoice": self.settings.auth_choice(),
            "authSecret": self.settings.ai_api_key,
        }
        logger.info(f"Auto-onboarding (provider: {self.settings.ai_provider}, "
                    f"telegram: {'configured' if self.settings.telegram_bot_token else 'not set'})")
        try:
            with self._exclusive():
                result = await self._onboard(payload, token, auto=True)
        except OnboardingInProgressError:
            return OnboardingState.IN_PROGRESS

        self.last_state = OnboardingState.DONE if result.ok else OnboardingState.FAILED
        return self.last_state

    async def run_manual(self, payload: dict, token: str) -> OnboardResult:
        """Onboard from a setup-page payload. Raises OnboardingInProgressError."""
        with self._exclusive():
            result = await self._onboard(payload, token, auto=False)
        self.last_state = OnboardingState.DONE if result.ok else OnboardingState.FAILED
        return result

    async def _cli(self, args: list[str]):
        return await self._run(
            self.settings.claw_args(args),
            extra_env=self.settings.child_env(),
            timeout=self.settings.command_timeout,
        )

    async def _onboard(self, payload: dict, token: str, auto: bool) -> OnboardResult:
        secrets = [token, (payload.get("authSecret") or "").strip()]
        secrets += [(payload.get(k) or "").strip() for k in ("telegramToken", "discordToken", "slackBotToken", "slackAppToken")]
        if auto:
            secrets.append(self.settings.telegram_bot_token)
        output = []

        try:
            self.settings.state_dir.mkdir(parents=True, exist_ok=True)
            self.settings.workspace_dir.mkdir(parents=True, exist_ok=True)

            args = build_onboard_args(self.settings, payload, token)
            logger.info(f"Running: {redact(' '.join(self.settings.claw_args(args)), *secrets)}")
            onboard = await self._cli(args)
            output.append(onboard.output)

            # Success needs both a zero exit and a config file on disk
            if not (onboard.ok and self.settings.is_configured()):
                raise OnboardingError(
                    f"Onboarding failed (exit code {onboard.code}, "
                    f"config {'present' if self.settings.is_configured() else 'missing'})"
                )
            logger.info("Onboarding command succeeded, finalising configuration")

            await self._finalize(payload, token, auto, output)

            ok, message = await self.supervisor.restart(token)
            if not ok:
                raise OnboardingError(f"Gateway did not start after onboarding: {message}")
            output.append("\n[gateway] started and ready\n")

            if auto:
                self._store_fingerprint()
            logger.info("Onboarding complete")
            return OnboardResult(True, redact("".join(output), *secrets))

        except (OnboardingError, TokenMismatchError) as e:
            logger.error(str(e))
            return self._failed(e, output, secrets)
        except Exception as e:
            logger.exception("Unexpected error during onboarding")
            return self._failed(e, output, secrets)

    def _failed(self, error: Exception, output: list[str], secrets: list[str]) -> OnboardResult:
        """Leave the backend unconfigured so the manual setup path stays open."""
        logger.error(f"Onboarding output: {redact(''.join(output).strip(), *secrets)}")
        logger.error("Onboarding failed. Visit /setup to configure manually.")
        if self.backend_config.delete():
            logger.info("Removed partially applied config")
        output.append(f"\n[error] {error}\n")
        return OnboardResult(False, redact("".join(output), *secrets))

    async def _finalize(self, payload: dict, token: str, auto: bool, output: list[str]):
        """Bring the freshly written config in line with what the wrapper needs."""
        supervisor = self.supervisor
        await supervisor.config_set("gateway.mode", "local")
        await supervisor.config_set("gateway.auth.mode", "token")
        await supervisor.sync_token(token)
        output.append("\n[onboard] gateway token synced\n")

        await supervisor.config_set("gateway.bind", "loopback")
        await supervisor.config_set("gateway.port", str(self.settings.internal_port))
        await supervisor.apply_required_flags()

        help_text = (await self._cli(["channels", "add", "--help"])).output
        for name, cfg in self._channel_configs(payload, auto):
            if name not in help_text:
                output.append(f"\n[{name}] skipped (not listed in `channels add --help`)\n")
                continue
            result = await supervisor.config_set(f"channels.{name}", json.dumps(cfg), as_json=True)
            if name == "telegram":
                await supervisor.config_set("plugins.entries.telegram", json.dumps({"enabled": True}), as_json=True)
            output.append(f"\n[{name} config] exit={result.code}\n")
            logger.info(f"Configured {name} channel: exit={result.code}")

        self.backend_config.merge_owned(headless_settings(self.settings.workspace_dir))

        doctor = await self._cli(["doctor", "--fix"])
        output.append(f"\n[doctor] exit={doctor.code}\n")
        logger.info(f"doctor --fix exited {doctor.code}")

        if self.settings.telegram_bot_token and self.settings.telegram_username:
            # Best effort
            try:
                await self._resolve_telegram(self.settings)
            except Exception:
                logger.exception("Telegram user resolution failed, continuing without USER.md")
                output.append("\n[telegram] user resolution failed, see logs\n")

    def _channel_configs(self, payload: dict, auto: bool) -> list[tuple[str, dict]]:
        channels = []
        if auto:
            if self.settings.telegram_bot_token:
                user_id = self.settings.telegram_user_id
                channels.append(("telegram", {
                    "enabled": True,
                    "dmPolicy": "allowlist",
                    "allowFrom": [user_id] if user_id.isdigit() else ["*"],
                    "botToken": self.settings.telegram_bot_token,
                    "groupPolicy": "allowlist",
                    "streamMode": "partial",
                    "blockStreaming": True,
                }))
            return channels

        telegram = (payload.get("telegramToken") or "").strip()
        if telegram:
            channels.append(("telegram", {
                "enabled": True,
                "dmPolicy": "pairing",
                "botToken": telegram,
                "groupPolicy": "allowlist",
                "streamMode": "partial",
            }))
        discord = (payload.get("discordToken") or "").strip()
        if discord:
            channels.append(("discord", {
                "enabled": True,
                "token": discord,
                "groupPolicy": "allowlist",
                "dm": {"policy": "pairing"},
            }))
        slack_bot = (payload.get("slackBotToken") or "").strip()
        slack_app = (payload.get("slackAppToken") or "").strip()
        if slack_bot or slack_app:
            slack = {"enabled": True}
            if slack_bot:
                slack["botToken"] = slack_bot
            if slack_app:
                slack["appToken"] = slack_app
            channels.append(("slack", slack))
        return channels
