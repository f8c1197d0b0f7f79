"""
Process supervisor for the backend gateway.

Owns the single gateway child process: syncs the shared token into the
backend config, spawns the gateway on loopback, captures stdout/stderr to
log files, waits for readiness and restarts on demand. Concurrent
ensure_running() calls share one in-flight start attempt.
"""

import asyncio
import json
import logging
import os
import signal
from datetime import datetime
from enum import Enum
from typing import Callable

import httpx
import psutil

from .backend_config import LOOPBACK_PROXIES, BackendConfig
from .commands import CommandResult, CommandRunner, redact, run_cmd, token_log_safe
from .config import Config

logger = logging.getLogger(__name__)

READY_ENDPOINTS = ("/openclaw", "/", "/health")
READY_POLL_INTERVAL = 0.25
STDERR_TAIL_BYTES = 4096
STREAM_LIMIT = 1024 * 1024

# Flags a headless deployment needs: (dotted key, JSON value)
REQUIRED_FLAGS = (
    ("gateway.controlUi.allowInsecureAuth", "true"),
    ("gateway.controlUi.dangerouslyDisableDeviceAuth", "true"),
    ("gateway.trustedProxies", json.dumps(LOOPBACK_PROXIES)),
)


class GatewayState(Enum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


class TokenMismatchError(RuntimeError):
    """The backend config holds a different token than the wrapper."""


class GatewayStartError(RuntimeError):
    """The gateway process could not be spawned."""


class GatewaySupervisor:
    """Manages the gateway process."""

    def __init__(
        self,
        settings: Config,
        run: CommandRunner = run_cmd,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.backend_config = BackendConfig(settings.config_path)
        self._run = run
        self._transport = transport
        self._process: asyncio.subprocess.Process | None = None
        self._state = GatewayState.ABSENT
        self._starting: asyncio.Task | None = None
        self._started_at: datetime | None = None
        self._stderr_tail = bytearray()
        self._tasks: set[asyncio.Task] = set()
        self._on_ready: Callable[[], None] | None = None

    def set_ready_callback(self, callback: Callable[[], None]):
        """Set callback invoked each time the gateway becomes ready."""
        self._on_ready = callback

    @property
    def state(self) -> GatewayState:
        return self._state

    def is_running(self) -> bool:
        return (
            self._state is GatewayState.RUNNING
            and self._process is not None
            and self._process.returncode is None
        )

    def get_pid(self) -> int | None:
        if self._process is not None and self._process.returncode is None:
            return self._process.pid
        return None

    def info(self) -> dict:
        return {
            "state": self._state.value,
            "pid": self.get_pid(),
            "starting": self._starting is not None,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "uptime_seconds": (datetime.now() - self._started_at).total_seconds()
            if self._started_at and self.is_running()
            else None,
        }

    async def ensure_running(self, token: str) -> tuple[bool, str]:
        """
        Make sure the gateway is up.

        Returns immediately when running, joins the start attempt in flight if
        there is one, and otherwise starts a new attempt.

        Returns:
            Tuple of (success, message)
        """
        if not self.settings.is_configured():
            return False, "not configured"
        if self.is_running():
            return True, "running"

        if self._starting is None:
            self._starting = asyncio.create_task(self._start_attempt(token))
        return await asyncio.shield(self._starting)

    async def restart(self, token: str) -> tuple[bool, str]:
        """Terminate the gateway (and strays from earlier runs), then start it again."""
        logger.info("Restarting gateway...")
        if self._starting is not None:
            await asyncio.shield(self._starting)

        self._terminate_owned()
        self._terminate_strays()
        await asyncio.sleep(self.settings.restart_settle_delay)
        return await self.ensure_running(token)

    async def stop(self, timeout: float = 10):
        """Stop the gateway, escalating to SIGKILL after timeout."""
        process = self._process
        self._terminate_owned()
        if process is None or process.returncode is not None:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Gateway did not stop gracefully, forcing kill")
            self._signal(process, signal.SIGKILL)
        logger.info("Stopped gateway")

    async def wait_for_ready(self, timeout: float | None = None) -> bool:
        """Poll the gateway until any endpoint answers. Any HTTP response counts."""
        timeout = timeout if timeout is not None else self.settings.ready_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        async with httpx.AsyncClient(
            base_url=self.settings.gateway_target, timeout=2.0, transport=self._transport
        ) as client:
            while loop.time() < deadline:
                if self._state is GatewayState.EXITED:
                    logger.error("Gateway exited before becoming ready")
                    return False
                for endpoint in READY_ENDPOINTS:
                    try:
                        await client.get(endpoint)
                    except httpx.TransportError:
                        continue
                    logger.info(f"Gateway ready at {endpoint}")
                    return True
                await asyncio.sleep(READY_POLL_INTERVAL)

        logger.error(f"Gateway failed to become ready after {timeout:g}s")
        return False

    async def _start_attempt(self, token: str) -> tuple[bool, str]:
        try:
            await self._start(token)
            if not await self.wait_for_ready():
                return False, f"Gateway did not become ready within {self.settings.ready_timeout:g}s"
            self._state = GatewayState.RUNNING
            if self._on_ready:
                self._on_ready()
            return True, "started"
        except (TokenMismatchError, GatewayStartError) as e:
            logger.error(f"Gateway start failed: {e}")
            return False, str(e)
        except Exception as e:
            logger.exception("Unexpected error starting gateway")
            return False, f"Unexpected error: {e}"
        finally:
            self._starting = None

    async def _start(self, token: str):
        if self._process is not None and self._process.returncode is None:
            logger.info(f"Gateway process {self._process.pid} already spawned, waiting for readiness")
            return

        self._state = GatewayState.STARTING
        self.settings.state_dir.mkdir(parents=True, exist_ok=True)
        self.settings.workspace_dir.mkdir(parents=True, exist_ok=True)

        self.clear_stale_locks()
        await self.sync_token(token)
        await self.apply_required_flags()
        await self._spawn_gateway(token)

    def clear_stale_locks(self) -> int:
        """Remove session lock files left behind by a previous gateway process."""
        removed = 0
        for lock in self.settings.state_dir.glob("agents/*/sessions/*.lock"):
            try:
                lock.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Could not remove stale lock {lock}: {e}")
        if removed:
            logger.info(f"Cleared {removed} stale session lock file(s)")
        return removed

    async def sync_token(self, token: str):
        """Write the token into the backend config and verify it took effect."""
        logger.info(
            f"Syncing gateway token to config (fingerprint: {token_log_safe(token)}, len: {len(token)})"
        )
        result = await self.config_set("gateway.auth.token", token)
        if not result.ok:
            logger.warning(
                f"config set gateway.auth.token exited {result.code}: {redact(result.output.strip(), token)}"
            )
        self.verify_token(token)

    def verify_token(self, token: str):
        """Raise TokenMismatchError unless the config holds exactly `token`."""
        configured = self.backend_config.owned().token
        if configured != token:
            raise TokenMismatchError(
                f"Token mismatch: wrapper fingerprint {token_log_safe(token)} "
                f"vs config {token_log_safe(configured)}"
            )
        logger.info(f"Token verification passed (fingerprint: {token_log_safe(token)})")

    async def apply_required_flags(self) -> bool:
        """Set the headless flags. Returns whether pairing bypass is in effect."""
        for key, value in REQUIRED_FLAGS:
            result = await self.config_set(key, value, as_json=True)
            if not result.ok:
                logger.warning(f"config set {key} exited {result.code}: {result.output.strip()}")

        device_auth = self.backend_config.owned().disable_device_auth
        if device_auth is not True:
            logger.warning(
                f"dangerouslyDisableDeviceAuth is {device_auth}; "
                "internal clients may be refused with 'pairing required'"
            )
            return False
        logger.info("Headless flags applied (device pairing bypass verified)")
        return True

    async def config_set(self, key: str, value: str, as_json: bool = False) -> CommandResult:
        args = ["config", "set"]
        if as_json:
            args.append("--json")
        args.extend([key, value])
        return await self._run(
            self.settings.claw_args(args),
            extra_env=self.settings.child_env(),
            timeout=self.settings.command_timeout,
        )

    async def _spawn_gateway(self, token: str):
        argv = self.settings.claw_args([
            "gateway", "run",
            "--bind", "loopback",
            "--port", str(self.settings.internal_port),
            "--auth", "token",
            "--token", token,
        ])
        env = os.environ.copy()
        env.update(self.settings.child_env())

        logger.info(f"Starting gateway: {redact(' '.join(argv), token)}")
        logger.info(f"State dir: {self.settings.state_dir}, workspace: {self.settings.workspace_dir}")

        try:
            process = await self._spawn(argv, env)
        except OSError as e:
            self._process = None
            self._state = GatewayState.EXITED
            raise GatewayStartError(f"Failed to spawn gateway: {e}") from e

        self._process = process
        self._started_at = datetime.now()
        self._stderr_tail.clear()
        logger.info(f"Started gateway with PID {process.pid}")

        log_dir = self.settings.logs_dir / "gateway"
        log_dir.mkdir(parents=True, exist_ok=True)
        pumps = [
            self._track(self._capture_output(process.stdout, logging.INFO, log_dir / "stdout.log")),
            self._track(self._capture_output(process.stderr, logging.WARNING, log_dir / "stderr.log", keep_tail=True)),
        ]
        self._track(self._watch(process, pumps))

    async def _spawn(self, argv: list[str], env: dict[str, str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            limit=STREAM_LIMIT,
            start_new_session=True,  # Own process group
        )

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _capture_output(self, stream, level: int, log_path, keep_tail: bool = False):
        """Forward process output to the logger and a log file."""
        if stream is None:
            return
        with open(log_path, "a") as log_file:
            while True:
                try:
                    line = await stream.readline()
                except ValueError:
                    # Line longer than STREAM_LIMIT; the buffer was discarded
                    continue
                if not line:
                    break

                if keep_tail:
                    self._stderr_tail.extend(line)
                    if len(self._stderr_tail) > STDERR_TAIL_BYTES:
                        del self._stderr_tail[:-STDERR_TAIL_BYTES]

                decoded = line.decode("utf-8", errors="replace").rstrip()
                if not decoded:
                    continue

                log_file.write(f"[{datetime.now().isoformat()}] {decoded}\n")
                log_file.flush()

                detected = level
                lower = decoded.lower()
                if "error" in lower or "exception" in lower:
                    detected = logging.ERROR
                elif "warn" in lower:
                    detected = logging.WARNING
                logger.log(detected, f"[gateway] {decoded}")

    async def _watch(self, process, pumps: list[asyncio.Task]):
        """Wait for process exit, then clear the handle if it is still ours."""
        code = await process.wait()
        await asyncio.wait(pumps, timeout=2)

        logger.warning(f"Gateway (PID {process.pid}) exited with code {code}")
        if code and code > 0 and self._stderr_tail:
            tail = self._stderr_tail.decode("utf-8", errors="replace").strip()
            if tail:
                logger.error(f"Gateway stderr before exit:\n{tail}")

        if self._process is process:
            self._process = None
            self._state = GatewayState.EXITED

    def _terminate_owned(self):
        process = self._process
        self._process = None
        self._state = GatewayState.ABSENT
        if process is None or process.returncode is not None:
            return
        logger.info(f"Terminating gateway process {process.pid}")
        self._signal(process, signal.SIGTERM)

    def _signal(self, process, sig: int):
        try:
            os.killpg(os.getpgid(process.pid), sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Could not signal gateway process {process.pid}: {e}")

    def _terminate_strays(self) -> int:
        """Terminate gateway processes this supervisor does not own."""
        name = self.settings.backend_process_name
        own_pid = os.getpid()
        terminated = 0
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                if proc.info["pid"] == own_pid:
                    continue
                cmdline = " ".join(proc.info["cmdline"] or [])
                if name in (proc.info["name"] or "") or name in cmdline:
                    proc.terminate()
                    terminated += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.warning(f"Could not terminate stray gateway process: {e}")
        logger.info(f"Terminated {terminated} stray gateway process(es)")
        return terminated
