"""
Backend CLI invocation.

Every management call into the backend (config set, onboard, devices,
doctor, pairing) goes through run_cmd. It never raises: spawn failures map
to exit code 127 and timeouts to 124, with stdout and stderr combined.
"""

import asyncio
import hashlib
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

SPAWN_FAILED = 127
TIMED_OUT = 124


@dataclass
class CommandResult:
    """Exit code and combined output of a finished command."""

    code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.code == 0


# Signature shared by run_cmd and the fakes used in tests
CommandRunner = Callable[..., Awaitable[CommandResult]]


def token_log_safe(token: str | None) -> str:
    """Short fingerprint of a secret for log correlation; never the secret itself."""
    if not token:
        return "(none)"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:8]


def redact(text: str, *secrets: str) -> str:
    """Replace every non-empty secret in text with a placeholder."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, "<redacted>")
    return text


async def run_cmd(
    argv: list[str],
    extra_env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command to completion and capture its output."""
    env = os.environ.copy()
    if extra_env:
        env.update(extra_env)

    try:
        result = await asyncio.to_thread(
            subprocess.run,
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=env,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        partial = (e.output or b"").decode("utf-8", errors="replace")
        return CommandResult(TIMED_OUT, f"{partial}\n[timeout] exceeded {timeout}s\n")
    except OSError as e:
        return CommandResult(SPAWN_FAILED, f"\n[spawn error] {e}\n")

    return CommandResult(result.returncode, result.stdout.decode("utf-8", errors="replace"))
